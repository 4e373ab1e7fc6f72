from __future__ import annotations

import numpy as np
import pytest

from voice_search_server.core.audio.format import (
    StreamingLinearResampler,
    deinterleave,
    mixdown_to_mono_f32,
    pcm_float_le_bytes_to_float32,
    pcm_int_le_bytes_to_float32,
    resample_f32_linear,
)


def test_mixdown_to_mono():
    stereo = np.array([[0.0, 1.0], [1.0, 0.0]], dtype=np.float32)
    mono = mixdown_to_mono_f32(stereo)
    assert mono.shape == (2,)
    assert np.allclose(mono, np.array([0.5, 0.5], dtype=np.float32))


def test_mixdown_of_identical_channels_is_exact():
    mono = np.linspace(-0.7, 0.7, num=101, dtype=np.float32)
    stereo = np.stack([mono, mono], axis=1)
    assert np.array_equal(mixdown_to_mono_f32(stereo), mono)


def test_deinterleave_rejects_partial_frames():
    assert deinterleave(np.arange(6), channels=2).shape == (3, 2)
    with pytest.raises(ValueError):
        deinterleave(np.arange(5), channels=2)


def test_resample_length_ratio():
    src = np.linspace(-1.0, 1.0, num=480, dtype=np.float32)
    dst = resample_f32_linear(src, from_rate_hz=48000, to_rate_hz=16000)
    assert dst.shape[0] == 160


def test_streaming_resampler_matches_single_call():
    rng = np.random.default_rng(7)
    signal = rng.uniform(-1.0, 1.0, size=4410).astype(np.float32)
    whole = resample_f32_linear(signal, from_rate_hz=44100, to_rate_hz=16000)

    resampler = StreamingLinearResampler(from_rate_hz=44100, to_rate_hz=16000)
    pieces = [resampler.process(signal[i : i + size]) for i, size in _ragged_slices(signal.size)]
    assert np.array_equal(np.concatenate(pieces), whole)


def _ragged_slices(total: int):
    start = 0
    sizes = [1, 7, 300, 2, 441, 1000]
    index = 0
    while start < total:
        size = sizes[index % len(sizes)]
        yield start, size
        start += size
        index += 1


def test_resampler_passthrough_at_same_rate():
    samples = np.arange(10, dtype=np.float32)
    resampler = StreamingLinearResampler(from_rate_hz=16000, to_rate_hz=16000)
    assert np.array_equal(resampler.process(samples), samples)


def test_pcm_int_conversions():
    assert np.allclose(pcm_int_le_bytes_to_float32(b"\x00\x80\xff\x7f", bit_depth=16), [-1.0, 32767 / 32768])
    assert np.allclose(pcm_int_le_bytes_to_float32(b"\x00\x80", bit_depth=8), [-1.0, 0.0])
    assert np.allclose(pcm_int_le_bytes_to_float32(b"\x00\x00\x80\xff\xff\x7f", bit_depth=24), [-1.0, 1.0], atol=1e-6)
    with pytest.raises(ValueError):
        pcm_int_le_bytes_to_float32(b"\x00", bit_depth=12)


def test_pcm_float_conversions():
    data = np.array([0.25, -0.5], dtype="<f8").tobytes()
    assert np.allclose(pcm_float_le_bytes_to_float32(data, bit_depth=64), [0.25, -0.5])
    with pytest.raises(ValueError):
        pcm_float_le_bytes_to_float32(data, bit_depth=16)
