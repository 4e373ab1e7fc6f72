"""Decoding options and window segmenting for Whisper-style models.

The model's own `generate` does the token loop (cached decoder states,
temperature fallback, no-speech gating). This module decides which options a
partial or final pass gets, and cuts feature windows into model-sized segments
whose texts are joined into one transcript.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterator, Protocol

import numpy as np

logger = logging.getLogger(__name__)

TEMPERATURES = (0.0, 0.2, 0.4, 0.6, 0.8, 1.0)
COMPRESSION_RATIO_THRESHOLD = 2.4
LOGPROB_THRESHOLD = -1.0
NO_SPEECH_THRESHOLD = 0.6
DEFAULT_SEED = 299792458
SEGMENT_FRAMES = 3000


@dataclass(frozen=True, slots=True)
class DecodeOptions:
    max_new_tokens: int
    temperature: float | tuple[float, ...] = 0.0
    compression_ratio_threshold: float | None = None
    logprob_threshold: float | None = None
    no_speech_threshold: float | None = None
    language: str | None = None

    def __post_init__(self) -> None:
        if self.max_new_tokens <= 0:
            raise ValueError("max_new_tokens must be > 0")

    @property
    def uses_fallback(self) -> bool:
        return isinstance(self.temperature, tuple) and len(self.temperature) > 1

    def generate_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "max_new_tokens": self.max_new_tokens,
            "task": "transcribe",
            "return_timestamps": False,
            "return_dict_in_generate": True,
        }
        if self.language:
            kwargs["language"] = self.language
        if self.uses_fallback:
            kwargs["temperature"] = self.temperature
            kwargs["compression_ratio_threshold"] = self.compression_ratio_threshold
            kwargs["logprob_threshold"] = self.logprob_threshold
            kwargs["no_speech_threshold"] = self.no_speech_threshold
        else:
            kwargs["do_sample"] = False
            kwargs["num_beams"] = 1
        return kwargs


def partial_options(*, max_new_tokens: int, language: str | None = None) -> DecodeOptions:
    return DecodeOptions(max_new_tokens=max_new_tokens, language=language)


def final_options(*, max_new_tokens: int, language: str | None = None) -> DecodeOptions:
    return DecodeOptions(
        max_new_tokens=max_new_tokens,
        temperature=TEMPERATURES,
        compression_ratio_threshold=COMPRESSION_RATIO_THRESHOLD,
        logprob_threshold=LOGPROB_THRESHOLD,
        no_speech_threshold=NO_SPEECH_THRESHOLD,
        language=language,
    )


class SegmentGenerator(Protocol):
    def generate(self, segment: np.ndarray, options: DecodeOptions) -> tuple[tuple[int, ...], str]:
        """Decode one (segment_frames, n_mels) segment into text tokens and text."""
        ...


def iter_segments(features: np.ndarray, *, content_frames: int, segment_frames: int = SEGMENT_FRAMES) -> Iterator[np.ndarray]:
    """Yield model-sized segments covering the content frames, zero-padded at the end."""
    if segment_frames <= 0:
        raise ValueError("segment_frames must be > 0")
    content_frames = max(content_frames, 1)
    for seek in range(0, content_frames, segment_frames):
        segment = features[seek : seek + segment_frames]
        if segment.shape[0] < segment_frames:
            pad = np.zeros((segment_frames - segment.shape[0], features.shape[1]), dtype=features.dtype)
            segment = np.concatenate([segment, pad], axis=0)
        yield segment


def transcribe_window(
    generator: SegmentGenerator,
    features: np.ndarray,
    *,
    content_frames: int,
    options: DecodeOptions,
    segment_frames: int = SEGMENT_FRAMES,
) -> tuple[tuple[int, ...], str]:
    tokens: list[int] = []
    texts: list[str] = []
    for index, segment in enumerate(iter_segments(features, content_frames=content_frames, segment_frames=segment_frames)):
        segment_tokens, text = generator.generate(segment, options)
        text = text.strip()
        if not text:
            logger.debug(f"[INFER] Segment {index} decoded to no speech")
            continue
        tokens.extend(segment_tokens)
        texts.append(text)
    return tuple(tokens), " ".join(texts)
