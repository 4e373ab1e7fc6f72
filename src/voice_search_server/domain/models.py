from __future__ import annotations

from dataclasses import dataclass

import numpy as np


@dataclass(frozen=True, slots=True)
class AudioChunk:
    sequence: int
    data: bytes


@dataclass(frozen=True, slots=True)
class TrackInfo:
    track_number: int
    codec_id: str
    sample_rate_hz: int
    channels: int
    bit_depth: int | None = None
    codec_private: bytes = b""
    codec_delay_ns: int = 0


@dataclass(frozen=True, slots=True)
class EncodedPacket:
    codec_id: str
    data: bytes
    pts_ns: int
    lace_index: int = 0

    @property
    def order_key(self) -> tuple[int, int]:
        return (self.pts_ns, self.lace_index)


@dataclass(frozen=True, slots=True)
class DecodedFrame:
    samples: np.ndarray  # mono float32
    sample_rate_hz: int
    channels: int
    pts_ns: int

    @property
    def duration_s(self) -> float:
        return self.samples.shape[0] / self.sample_rate_hz


@dataclass(frozen=True, slots=True)
class MelFeatureWindow:
    features: np.ndarray  # (frames, n_mels) float32
    content_frames: int
    sequence: int
    is_final: bool

    @property
    def n_frames(self) -> int:
        return int(self.features.shape[0])

    @property
    def n_mels(self) -> int:
        return int(self.features.shape[1])


@dataclass(frozen=True, slots=True)
class InferenceResult:
    tokens: tuple[int, ...]
    text: str
    is_final: bool
    window_sequence: int = -1


@dataclass(slots=True)
class TranscriptState:
    committed: str = ""
    pending: str = ""

    @property
    def display_text(self) -> str:
        return _join_words(self.committed, self.pending)


def _join_words(left: str, right: str) -> str:
    if not left:
        return right
    if not right:
        return left
    return f"{left} {right}"
