from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

import numpy as np

from voice_search_server.core.audio.format import (
    StreamingLinearResampler,
    deinterleave,
    mixdown_to_mono_f32,
    pcm_float_le_bytes_to_float32,
    pcm_int_le_bytes_to_float32,
)
from voice_search_server.core.container.demuxer import CODEC_OPUS, CODEC_PCM_FLOAT, CODEC_PCM_INT_LE
from voice_search_server.domain.errors import DecodeError
from voice_search_server.domain.models import DecodedFrame, EncodedPacket, TrackInfo

logger = logging.getLogger(__name__)

OPUS_DECODE_SAMPLE_RATE_HZ = 48000


class Codec(Protocol):
    def decode(self, payload: bytes) -> tuple[np.ndarray, int]:
        """Return (frames, channels) float32 samples and their sample rate."""
        ...


@dataclass(slots=True)
class PcmCodec:
    sample_rate_hz: int
    channels: int
    bit_depth: int
    is_float: bool = False

    def decode(self, payload: bytes) -> tuple[np.ndarray, int]:
        try:
            if self.is_float:
                flat = pcm_float_le_bytes_to_float32(payload, bit_depth=self.bit_depth)
            else:
                flat = pcm_int_le_bytes_to_float32(payload, bit_depth=self.bit_depth)
            return deinterleave(flat, channels=self.channels), self.sample_rate_hz
        except ValueError as exc:
            raise DecodeError(f"invalid PCM packet: {exc}") from exc


@dataclass(slots=True)
class OpusCodec:
    """Opus packets decoded with ffmpeg's decoder through PyAV.

    The codec context lives as long as the session so inter-packet prediction
    state carries over. With an OpusHead in `codec_private` ffmpeg drops the
    encoder pre-skip itself; without one, `pre_skip` samples (at 48 kHz) are
    dropped here.
    """

    channels: int
    codec_private: bytes = b""
    pre_skip: int = 0
    _skip_remaining: int = field(init=False, default=0)
    _av: Any = field(init=False, repr=False)
    _error_type: Any = field(init=False, repr=False)
    _context: Any = field(init=False, repr=False)

    def __post_init__(self) -> None:
        try:
            import av  # type: ignore
            from av.error import FFmpegError  # type: ignore
        except ModuleNotFoundError as exc:
            raise ModuleNotFoundError("PyAV is required for Opus decoding; install with `pip install av`") from exc

        self._av = av
        self._error_type = FFmpegError
        context = av.CodecContext.create("opus", "r")
        context.sample_rate = OPUS_DECODE_SAMPLE_RATE_HZ
        if self.codec_private:
            context.extradata = self.codec_private
        else:
            context.layout = "stereo" if self.channels == 2 else "mono"
        self._context = context
        self._skip_remaining = 0 if self.codec_private else max(self.pre_skip, 0)

    def decode(self, payload: bytes) -> tuple[np.ndarray, int]:
        try:
            frames = self._context.decode(self._av.Packet(payload))
        except self._error_type as exc:
            raise DecodeError(f"invalid Opus packet: {exc}") from exc

        chunks: list[np.ndarray] = []
        rate = OPUS_DECODE_SAMPLE_RATE_HZ
        for frame in frames:
            rate = frame.sample_rate
            chunks.append(_frame_to_f32(frame))
        if not chunks:
            return np.zeros((0, max(self.channels, 1)), dtype=np.float32), rate
        decoded = np.concatenate(chunks, axis=0)
        if self._skip_remaining:
            drop = min(self._skip_remaining, decoded.shape[0])
            decoded = decoded[drop:]
            self._skip_remaining -= drop
        return decoded, rate


def _frame_to_f32(frame: Any) -> np.ndarray:
    arr = frame.to_ndarray()
    channels = len(frame.layout.channels)
    if frame.format.is_planar:
        arr = arr.T
    else:
        arr = arr.reshape(-1, channels)
    if np.issubdtype(arr.dtype, np.integer):
        arr = arr.astype(np.float32) / float(np.iinfo(arr.dtype).max + 1)
    return np.asarray(arr, dtype=np.float32)


def create_codec(track: TrackInfo) -> Codec:
    if track.codec_id == CODEC_OPUS:
        return OpusCodec(
            channels=track.channels,
            codec_private=track.codec_private,
            pre_skip=round(track.codec_delay_ns * OPUS_DECODE_SAMPLE_RATE_HZ / 1_000_000_000),
        )
    if track.codec_id == CODEC_PCM_INT_LE:
        return PcmCodec(
            sample_rate_hz=track.sample_rate_hz,
            channels=track.channels,
            bit_depth=track.bit_depth or 16,
        )
    if track.codec_id == CODEC_PCM_FLOAT:
        return PcmCodec(
            sample_rate_hz=track.sample_rate_hz,
            channels=track.channels,
            bit_depth=track.bit_depth or 32,
            is_float=True,
        )
    raise ValueError(f"no decoder for codec {track.codec_id}")


@dataclass(slots=True)
class PacketDecoder:
    """Decodes one packet per call into mono PCM at the target sample rate."""

    track: TrackInfo
    target_sample_rate_hz: int = 16000
    max_consecutive_failures: int = 3
    codec: Codec | None = None

    _resampler: StreamingLinearResampler | None = None
    _consecutive_failures: int = 0
    _output_samples: int = 0

    def __post_init__(self) -> None:
        if self.target_sample_rate_hz <= 0:
            raise ValueError("target_sample_rate_hz must be > 0")
        if self.max_consecutive_failures < 0:
            raise ValueError("max_consecutive_failures must be >= 0")
        if self.codec is None:
            self.codec = create_codec(self.track)

    @property
    def output_duration_s(self) -> float:
        return self._output_samples / self.target_sample_rate_hz

    def decode(self, packet: EncodedPacket) -> DecodedFrame:
        try:
            raw, rate = self.codec.decode(packet.data)  # type: ignore[union-attr]
        except DecodeError as exc:
            self._consecutive_failures += 1
            if self._consecutive_failures > self.max_consecutive_failures:
                raise DecodeError(
                    f"{self._consecutive_failures} consecutive packets failed to decode: {exc.message}",
                    fatal=True,
                ) from exc
            logger.warning(
                f"[DECODE] Skipping packet at {packet.pts_ns / 1e9:.3f}s "
                f"({self._consecutive_failures}/{self.max_consecutive_failures}): {exc.message}"
            )
            raise

        self._consecutive_failures = 0
        mono = mixdown_to_mono_f32(raw)
        samples = self._resampler_for(rate).process(mono)
        self._output_samples += samples.size
        return DecodedFrame(
            samples=samples,
            sample_rate_hz=self.target_sample_rate_hz,
            channels=1,
            pts_ns=packet.pts_ns,
        )

    def _resampler_for(self, rate: int) -> StreamingLinearResampler:
        resampler = self._resampler
        if resampler is None or resampler.from_rate_hz != rate:
            if resampler is not None:
                logger.warning(f"[DECODE] Decoded sample rate changed {resampler.from_rate_hz} -> {rate}Hz")
            resampler = StreamingLinearResampler(from_rate_hz=rate, to_rate_hz=self.target_sample_rate_hz)
            self._resampler = resampler
        return resampler
