"""In-memory WebM writer for tests (PCM audio tracks only)."""

from __future__ import annotations

import struct

import numpy as np

from voice_search_server.core.container import ebml

UNKNOWN_SIZE_BYTES = b"\x01\xff\xff\xff\xff\xff\xff\xff"


def encode_id(element_id: int) -> bytes:
    return element_id.to_bytes((element_id.bit_length() + 7) // 8, "big")


def encode_size(size: int) -> bytes:
    for length in range(1, 9):
        if size < (1 << (7 * length)) - 1:
            return (size | (1 << (7 * length))).to_bytes(length, "big")
    raise ValueError("size too large")


def element(element_id: int, body: bytes = b"", *, unknown_size: bool = False) -> bytes:
    size = UNKNOWN_SIZE_BYTES if unknown_size else encode_size(len(body))
    return encode_id(element_id) + size + body


def uint_element(element_id: int, value: int) -> bytes:
    return element(element_id, value.to_bytes(max(1, (value.bit_length() + 7) // 8), "big"))


def float_element(element_id: int, value: float) -> bytes:
    return element(element_id, struct.pack(">d", value))


def string_element(element_id: int, value: str) -> bytes:
    return element(element_id, value.encode("ascii"))


def ebml_header(doc_type: str = "webm") -> bytes:
    return element(ebml.EBML_HEADER, string_element(ebml.DOC_TYPE, doc_type))


def track_entry(
    *,
    number: int = 1,
    track_type: int = ebml.TRACK_TYPE_AUDIO,
    codec_id: str = "A_PCM/INT/LIT",
    sample_rate_hz: int = 16000,
    channels: int = 1,
    bit_depth: int | None = 16,
) -> bytes:
    audio = float_element(ebml.SAMPLING_FREQUENCY, float(sample_rate_hz)) + uint_element(ebml.CHANNELS, channels)
    if bit_depth is not None:
        audio += uint_element(ebml.BIT_DEPTH, bit_depth)
    body = (
        uint_element(ebml.TRACK_NUMBER, number)
        + uint_element(ebml.TRACK_TYPE, track_type)
        + string_element(ebml.CODEC_ID, codec_id)
        + element(ebml.AUDIO, audio)
    )
    return element(ebml.TRACK_ENTRY, body)


def simple_block(track_number: int, relative_ms: int, payload: bytes) -> bytes:
    body = encode_size(track_number) + relative_ms.to_bytes(2, "big", signed=True) + b"\x80" + payload
    return element(ebml.SIMPLE_BLOCK, body)


def pcm16_bytes(samples: np.ndarray) -> bytes:
    clipped = np.clip(np.asarray(samples, dtype=np.float32), -1.0, 32767.0 / 32768.0)
    return (clipped * 32768.0).astype("<i2").tobytes()


def build_pcm_webm(
    samples: np.ndarray,
    *,
    sample_rate_hz: int = 16000,
    block_frames: int = 320,
    cluster_blocks: int = 50,
    doc_type: str = "webm",
    unknown_size_clusters: bool = False,
    extra_tracks: tuple[bytes, ...] = (),
    track_number: int = 1,
) -> bytes:
    """Encode (frames,) or (frames, channels) float samples as 16-bit PCM WebM."""
    samples = np.asarray(samples, dtype=np.float32)
    if samples.ndim == 1:
        samples = samples[:, None]
    channels = samples.shape[1]

    tracks = element(
        ebml.TRACKS,
        b"".join(extra_tracks)
        + track_entry(number=track_number, sample_rate_hz=sample_rate_hz, channels=channels),
    )
    info = element(ebml.INFO, uint_element(ebml.TIMECODE_SCALE, 1_000_000))

    clusters = []
    blocks: list[bytes] = []
    cluster_ms = 0
    for index, start in enumerate(range(0, samples.shape[0], block_frames)):
        ms = start * 1000 // sample_rate_hz
        if index % cluster_blocks == 0:
            if blocks:
                clusters.append(_cluster(cluster_ms, blocks, unknown_size_clusters))
            blocks = []
            cluster_ms = ms
        payload = pcm16_bytes(samples[start : start + block_frames].reshape(-1))
        blocks.append(simple_block(track_number, ms - cluster_ms, payload))
    if blocks:
        clusters.append(_cluster(cluster_ms, blocks, unknown_size_clusters))

    segment = element(ebml.SEGMENT, info + tracks + b"".join(clusters), unknown_size=True)
    return ebml_header(doc_type) + segment


def _cluster(timecode_ms: int, blocks: list[bytes], unknown_size: bool) -> bytes:
    return element(ebml.CLUSTER, uint_element(ebml.TIMECODE, timecode_ms) + b"".join(blocks), unknown_size=unknown_size)


def tone(seconds: float, *, freq_hz: float = 440.0, sample_rate_hz: int = 16000, amplitude: float = 0.3) -> np.ndarray:
    t = np.arange(int(seconds * sample_rate_hz), dtype=np.float64) / sample_rate_hz
    return (amplitude * np.sin(2.0 * np.pi * freq_hz * t)).astype(np.float32)


def split_every(data: bytes, size: int) -> list[bytes]:
    return [data[i : i + size] for i in range(0, len(data), size)]
