"""EBML primitives used by the Matroska/WebM demuxer.

All readers work on a buffer plus an offset and return ``None`` when the buffer
does not hold enough bytes yet, so callers can wait for more input.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Iterator

from voice_search_server.domain.errors import ContainerParseError

# Element IDs, including their length marker bits
EBML_HEADER = 0x1A45DFA3
DOC_TYPE = 0x4282
SEGMENT = 0x18538067
SEEK_HEAD = 0x114D9B74
INFO = 0x1549A966
TIMECODE_SCALE = 0x2AD7B1
TRACKS = 0x1654AE6B
TRACK_ENTRY = 0xAE
TRACK_NUMBER = 0xD7
TRACK_TYPE = 0x83
CODEC_ID = 0x86
CODEC_PRIVATE = 0x63A2
CODEC_DELAY = 0x56AA
DEFAULT_DURATION = 0x23E383
AUDIO = 0xE1
SAMPLING_FREQUENCY = 0xB5
CHANNELS = 0x9F
BIT_DEPTH = 0x6264
CLUSTER = 0x1F43B675
TIMECODE = 0xE7
SIMPLE_BLOCK = 0xA3
BLOCK_GROUP = 0xA0
BLOCK = 0xA1
CUES = 0x1C53BB6B
TAGS = 0x1254C367
CHAPTERS = 0x1043A770
ATTACHMENTS = 0x1941A469
VOID = 0xEC
CRC32 = 0xBF

TRACK_TYPE_AUDIO = 2

# Children of Segment; any of these ends an unknown-size Cluster.
SEGMENT_CHILDREN = frozenset(
    {SEEK_HEAD, INFO, TRACKS, CLUSTER, CUES, TAGS, CHAPTERS, ATTACHMENTS}
)

UNKNOWN_SIZE = -1


@dataclass(frozen=True, slots=True)
class ElementHeader:
    element_id: int
    size: int  # UNKNOWN_SIZE when all size bits are set
    header_length: int

    @property
    def unknown_size(self) -> bool:
        return self.size == UNKNOWN_SIZE


def _vint_length(first: int, *, max_length: int) -> int:
    if first == 0:
        raise ContainerParseError("invalid EBML variable-length integer (zero leading byte)")
    length = 1
    mask = 0x80
    while not first & mask:
        mask >>= 1
        length += 1
    if length > max_length:
        raise ContainerParseError(f"EBML variable-length integer too long ({length} bytes)")
    return length


def read_element_id(buf: bytes | bytearray | memoryview, pos: int) -> tuple[int, int] | None:
    if pos >= len(buf):
        return None
    length = _vint_length(buf[pos], max_length=4)
    if pos + length > len(buf):
        return None
    return int.from_bytes(buf[pos : pos + length], "big"), length


def read_vint(buf: bytes | bytearray | memoryview, pos: int) -> tuple[int, int] | None:
    """Read a size-style vint (marker bit stripped). All-ones returns UNKNOWN_SIZE."""
    if pos >= len(buf):
        return None
    length = _vint_length(buf[pos], max_length=8)
    if pos + length > len(buf):
        return None
    value = buf[pos] & (0xFF >> length)
    all_ones = value == (0xFF >> length)
    for i in range(1, length):
        byte = buf[pos + i]
        all_ones = all_ones and byte == 0xFF
        value = (value << 8) | byte
    if all_ones:
        return UNKNOWN_SIZE, length
    return value, length


def read_signed_vint(buf: bytes | bytearray | memoryview, pos: int) -> tuple[int, int] | None:
    """Signed vint used by EBML lacing: value minus half the range."""
    raw = read_vint(buf, pos)
    if raw is None:
        return None
    value, length = raw
    if value == UNKNOWN_SIZE:
        raise ContainerParseError("invalid signed EBML lace size")
    bias = (1 << (7 * length - 1)) - 1
    return value - bias, length


def read_element_header(buf: bytes | bytearray | memoryview, pos: int) -> ElementHeader | None:
    id_part = read_element_id(buf, pos)
    if id_part is None:
        return None
    element_id, id_length = id_part
    size_part = read_vint(buf, pos + id_length)
    if size_part is None:
        return None
    size, size_length = size_part
    return ElementHeader(element_id=element_id, size=size, header_length=id_length + size_length)


def read_uint(data: bytes | memoryview) -> int:
    if len(data) > 8:
        raise ContainerParseError("unsigned integer element longer than 8 bytes")
    return int.from_bytes(data, "big") if data else 0


def read_float(data: bytes | memoryview) -> float:
    if len(data) == 0:
        return 0.0
    if len(data) == 4:
        return struct.unpack(">f", data)[0]
    if len(data) == 8:
        return struct.unpack(">d", data)[0]
    raise ContainerParseError(f"float element must be 4 or 8 bytes, got {len(data)}")


def read_string(data: bytes | memoryview) -> str:
    return bytes(data).rstrip(b"\x00").decode("ascii", errors="replace")


def iter_children(body: bytes | memoryview) -> Iterator[tuple[int, memoryview]]:
    """Iterate (id, payload) over a fully buffered master element body."""
    view = memoryview(body)
    pos = 0
    while pos < len(view):
        header = read_element_header(view, pos)
        if header is None:
            raise ContainerParseError("truncated child element header")
        if header.unknown_size:
            raise ContainerParseError(f"unknown size not allowed for element 0x{header.element_id:X}")
        start = pos + header.header_length
        end = start + header.size
        if end > len(view):
            raise ContainerParseError(f"child element 0x{header.element_id:X} overruns its parent")
        yield header.element_id, view[start:end]
        pos = end
