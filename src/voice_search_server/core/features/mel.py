from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from functools import lru_cache

import numpy as np

from voice_search_server.domain.models import MelFeatureWindow

logger = logging.getLogger(__name__)

# Whisper front-end geometry
SAMPLE_RATE_HZ = 16000
N_FFT = 400
HOP_LENGTH = 160
CHUNK_LENGTH_S = 30.0
LOG_FLOOR = 1e-10
DYNAMIC_RANGE = 8.0


@lru_cache(maxsize=8)
def mel_filter_bank(sample_rate_hz: int, n_fft: int, n_mels: int) -> np.ndarray:
    """Slaney-normalised mel filters, shape (n_mels, n_fft // 2 + 1)."""
    import librosa

    filters = librosa.filters.mel(sr=sample_rate_hz, n_fft=n_fft, n_mels=n_mels)
    filters = np.asarray(filters, dtype=np.float32)
    filters.flags.writeable = False
    return filters


def power_to_log_mel(mel_power: np.ndarray) -> np.ndarray:
    log_spec = np.log10(np.maximum(mel_power, LOG_FLOOR))
    log_spec = np.maximum(log_spec, log_spec.max() - DYNAMIC_RANGE)
    return ((log_spec + 4.0) / 4.0).astype(np.float32)


@dataclass(slots=True)
class LogMelExtractor:
    """Turns a continuous PCM stream into fixed-geometry log-mel windows.

    `push` runs the short-time transform over whatever full frames the buffered
    samples allow and returns a streaming window each time `stream_interval_s`
    of new audio has arrived. `finalize` flushes the residual samples and returns
    the window for the final decode pass.
    """

    sample_rate_hz: int = SAMPLE_RATE_HZ
    n_mels: int = 128
    n_fft: int = N_FFT
    hop_length: int = HOP_LENGTH
    chunk_length_s: float = CHUNK_LENGTH_S
    stream_interval_s: float = 2.0

    _filters: np.ndarray = field(init=False, repr=False)
    _window: np.ndarray = field(init=False, repr=False)
    _pending: np.ndarray = field(init=False, repr=False)
    _mel_chunks: list[np.ndarray] = field(init=False, repr=False)
    _total_frames: int = field(init=False, default=0)
    _total_samples: int = field(init=False, default=0)
    _samples_since_emit: int = field(init=False, default=0)
    _sequence: int = field(init=False, default=0)
    _finalized: bool = field(init=False, default=False)
    _started: bool = field(init=False, default=False)

    def __post_init__(self) -> None:
        if self.sample_rate_hz <= 0:
            raise ValueError("sample_rate_hz must be > 0")
        if self.n_mels <= 0:
            raise ValueError("n_mels must be > 0")
        if self.n_fft <= 0 or self.hop_length <= 0:
            raise ValueError("n_fft and hop_length must be > 0")
        if self.hop_length > self.n_fft:
            raise ValueError("hop_length must be <= n_fft")
        if self.chunk_length_s <= 0:
            raise ValueError("chunk_length_s must be > 0")
        if self.stream_interval_s <= 0:
            raise ValueError("stream_interval_s must be > 0")

        self._filters = mel_filter_bank(self.sample_rate_hz, self.n_fft, self.n_mels)
        # periodic Hann window
        self._window = (0.5 - 0.5 * np.cos(2.0 * np.pi * np.arange(self.n_fft) / self.n_fft)).astype(np.float32)
        self._pending = np.zeros((0,), dtype=np.float32)
        self._mel_chunks = []

    @property
    def window_frames(self) -> int:
        return int(round(self.chunk_length_s * self.sample_rate_hz / self.hop_length))

    @property
    def total_frames(self) -> int:
        return self._total_frames

    @property
    def buffered_samples(self) -> int:
        return int(self._pending.size)

    @property
    def audio_duration_s(self) -> float:
        return self._total_samples / self.sample_rate_hz

    def push(self, samples: np.ndarray) -> list[MelFeatureWindow]:
        if self._finalized:
            raise RuntimeError("extractor already finalized")
        samples = np.asarray(samples, dtype=np.float32).reshape(-1)
        if samples.size == 0:
            return []

        buf = np.concatenate([self._pending, samples])
        if self._started or buf.size > self.n_fft // 2:
            self._frame(self._lead_in(buf))
        else:
            self._pending = buf
        self._total_samples += samples.size
        self._samples_since_emit += samples.size

        interval = int(self.stream_interval_s * self.sample_rate_hz)
        if self._samples_since_emit < interval or self._total_frames == 0:
            return []
        self._samples_since_emit = 0
        return [self._build_window(is_final=False)]

    def finalize(self) -> MelFeatureWindow:
        if self._finalized:
            raise RuntimeError("extractor already finalized")
        self._finalized = True
        tail = np.zeros((self.n_fft // 2,), dtype=np.float32)
        self._frame(np.concatenate([self._lead_in(self._pending), tail]))
        return self._build_window(is_final=True)

    def _lead_in(self, buf: np.ndarray) -> np.ndarray:
        """Centre the first frame on sample 0 by reflecting the stream start."""
        if self._started:
            return buf
        self._started = True
        pad = self.n_fft // 2
        if buf.size <= pad:
            # too short to reflect
            return np.concatenate([np.zeros((pad,), dtype=np.float32), buf])
        return np.pad(buf, (pad, 0), mode="reflect")

    def _frame(self, buf: np.ndarray) -> None:
        if buf.size < self.n_fft:
            self._pending = buf
            return

        n_frames = 1 + (buf.size - self.n_fft) // self.hop_length
        frames = np.lib.stride_tricks.sliding_window_view(buf, self.n_fft)[:: self.hop_length][:n_frames]
        spectrum = np.fft.rfft(frames * self._window, axis=-1)
        power = (spectrum.real**2 + spectrum.imag**2).astype(np.float32)
        self._mel_chunks.append(power @ self._filters.T)
        self._total_frames += n_frames
        # samples not yet covered by a full frame stay buffered
        self._pending = buf[n_frames * self.hop_length :].copy()

    def _mel_power(self) -> np.ndarray:
        if not self._mel_chunks:
            return np.zeros((0, self.n_mels), dtype=np.float32)
        if len(self._mel_chunks) > 1:
            self._mel_chunks = [np.concatenate(self._mel_chunks, axis=0)]
        return self._mel_chunks[0]

    def _build_window(self, *, is_final: bool) -> MelFeatureWindow:
        mel = self._mel_power()
        window_frames = self.window_frames
        if is_final:
            # centred STFT yields one extra trailing frame; drop it like the reference front end
            content = mel[: max(1, self._total_samples // self.hop_length)]
            target = max(1, math.ceil(content.shape[0] / window_frames)) * window_frames
        else:
            content = mel[-window_frames:]
            target = window_frames

        padded = np.zeros((target, self.n_mels), dtype=np.float32)
        padded[: content.shape[0]] = content
        window = MelFeatureWindow(
            features=power_to_log_mel(padded),
            content_frames=int(content.shape[0]),
            sequence=self._sequence,
            is_final=is_final,
        )
        self._sequence += 1
        logger.debug(
            f"[MEL] Window #{window.sequence} final={is_final} frames={window.content_frames}/{target}"
        )
        return window
