from __future__ import annotations

from dataclasses import dataclass

import numpy as np


def mixdown_to_mono_f32(samples: np.ndarray) -> np.ndarray:
    """Average channels of a (frames, channels) array into one channel."""
    if samples.ndim == 1:
        mono = samples
    elif samples.ndim == 2:
        mono = samples.mean(axis=1)
    else:
        raise ValueError("samples must be 1D (mono) or 2D (frames, channels)")

    return np.asarray(mono, dtype=np.float32)


def deinterleave(samples: np.ndarray, *, channels: int) -> np.ndarray:
    samples = np.asarray(samples).reshape(-1)
    if channels <= 0:
        raise ValueError("channels must be > 0")
    if samples.size % channels:
        raise ValueError(f"{samples.size} samples do not divide into {channels} channels")
    return samples.reshape(-1, channels)


@dataclass(slots=True)
class StreamingLinearResampler:
    """Linear-interpolation resampler that keeps its phase across calls.

    Output sample k sits at input position k * from_rate / to_rate. Only the last
    input sample is carried between calls, so feeding a signal in any number of
    pieces produces exactly the samples a single call would.
    """

    from_rate_hz: int
    to_rate_hz: int
    _consumed: int = 0  # input samples seen so far
    _next_out: int = 0  # index of the next output sample
    _tail: np.ndarray | None = None

    def __post_init__(self) -> None:
        if self.from_rate_hz <= 0 or self.to_rate_hz <= 0:
            raise ValueError("sample rates must be > 0")

    def process(self, samples: np.ndarray) -> np.ndarray:
        samples = np.asarray(samples, dtype=np.float32).reshape(-1)
        if self.from_rate_hz == self.to_rate_hz:
            return samples
        if samples.size == 0:
            return samples

        if self._tail is None:
            values = samples
            start = self._consumed
        else:
            values = np.concatenate([self._tail, samples])
            start = self._consumed - 1
        self._consumed += samples.size
        last = self._consumed - 1

        # Largest k with k * from <= last * to.
        k_max = (last * self.to_rate_hz) // self.from_rate_hz
        self._tail = samples[-1:].copy()
        if k_max < self._next_out:
            return np.zeros((0,), dtype=np.float32)

        ks = np.arange(self._next_out, k_max + 1, dtype=np.int64)
        self._next_out = int(k_max) + 1
        positions = ks * (self.from_rate_hz / self.to_rate_hz)
        xp = np.arange(start, start + values.size, dtype=np.float64)
        return np.interp(positions, xp, values).astype(np.float32)


def resample_f32_linear(samples: np.ndarray, *, from_rate_hz: int, to_rate_hz: int) -> np.ndarray:
    return StreamingLinearResampler(from_rate_hz=from_rate_hz, to_rate_hz=to_rate_hz).process(samples)


def pcm_int_le_bytes_to_float32(data: bytes, *, bit_depth: int) -> np.ndarray:
    if bit_depth == 8:
        # 8-bit PCM in Matroska is unsigned
        arr = np.frombuffer(data, dtype=np.uint8).astype(np.float32)
        return (arr - 128.0) / 128.0
    if bit_depth == 16:
        return np.frombuffer(data, dtype="<i2").astype(np.float32) / 32768.0
    if bit_depth == 24:
        if len(data) % 3:
            raise ValueError("24-bit PCM payload is not a multiple of 3 bytes")
        raw = np.frombuffer(data, dtype=np.uint8).reshape(-1, 3).astype(np.int32)
        ints = raw[:, 0] | (raw[:, 1] << 8) | (raw[:, 2] << 16)
        ints = np.where(ints & 0x800000, ints - (1 << 24), ints)
        return ints.astype(np.float32) / 8388608.0
    if bit_depth == 32:
        return (np.frombuffer(data, dtype="<i4").astype(np.float64) / 2147483648.0).astype(np.float32)
    raise ValueError(f"unsupported PCM bit depth {bit_depth}")


def pcm_float_le_bytes_to_float32(data: bytes, *, bit_depth: int) -> np.ndarray:
    if bit_depth == 32:
        return np.frombuffer(data, dtype="<f4").astype(np.float32)
    if bit_depth == 64:
        return np.frombuffer(data, dtype="<f8").astype(np.float32)
    raise ValueError(f"unsupported float PCM bit depth {bit_depth}")

