from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterator

from voice_search_server.core.container import ebml
from voice_search_server.core.container.ebml import ElementHeader, iter_children, read_element_header
from voice_search_server.domain.errors import ContainerParseError, UnsupportedTrack
from voice_search_server.domain.models import EncodedPacket, TrackInfo

logger = logging.getLogger(__name__)

CODEC_OPUS = "A_OPUS"
CODEC_PCM_INT_LE = "A_PCM/INT/LIT"
CODEC_PCM_FLOAT = "A_PCM/FLOAT/IEEE"
SUPPORTED_CODECS = frozenset({CODEC_OPUS, CODEC_PCM_INT_LE, CODEC_PCM_FLOAT})

DEFAULT_TIMECODE_SCALE_NS = 1_000_000
DEFAULT_MAX_ELEMENT_BYTES = 16 * 1024 * 1024
_COMPACT_THRESHOLD_BYTES = 64 * 1024

# Elements parsed from a fully buffered body. Everything not listed here and not
# entered as a container is skipped without buffering.
_BUFFERED = frozenset(
    {ebml.EBML_HEADER, ebml.INFO, ebml.TRACKS, ebml.TIMECODE, ebml.SIMPLE_BLOCK, ebml.BLOCK_GROUP}
)
_ENTERED = frozenset({ebml.SEGMENT, ebml.CLUSTER})


@dataclass(slots=True)
class _OpenElement:
    element_id: int
    end: int | None  # absolute stream offset, None for unknown size


@dataclass(slots=True)
class _TrackEntry:
    number: int = 0
    track_type: int = 0
    codec_id: str = ""
    codec_private: bytes = b""
    codec_delay_ns: int = 0
    default_duration_ns: int = 0
    sampling_frequency: float = 8000.0
    channels: int = 1
    bit_depth: int | None = None


@dataclass(slots=True)
class WebmDemuxer:
    """Incremental Matroska/WebM parser that yields the packets of one audio track.

    Input may be split at any byte boundary. Partial elements stay in an internal
    buffer until the rest arrives; consumed bytes are compacted away.
    """

    max_element_bytes: int
    _buf: bytearray
    _pos: int
    _base: int
    _stack: list[_OpenElement]
    _skip: int
    _seen_header: bool
    _track: TrackInfo | None
    _default_duration_ns: int
    _timecode_scale_ns: int
    _cluster_timecode: int | None
    _last_key: tuple[int, int] | None
    _failed: ContainerParseError | None
    _finished: bool

    def __init__(self, *, max_element_bytes: int = DEFAULT_MAX_ELEMENT_BYTES) -> None:
        if max_element_bytes <= 0:
            raise ValueError("max_element_bytes must be > 0")
        self.max_element_bytes = max_element_bytes
        self._buf = bytearray()
        self._pos = 0
        self._base = 0
        self._stack = []
        self._skip = 0
        self._seen_header = False
        self._track = None
        self._default_duration_ns = 0
        self._timecode_scale_ns = DEFAULT_TIMECODE_SCALE_NS
        self._cluster_timecode = None
        self._last_key = None
        self._failed = None
        self._finished = False

    @property
    def track(self) -> TrackInfo | None:
        return self._track

    @property
    def buffered_bytes(self) -> int:
        return len(self._buf) - self._pos

    def feed(self, data: bytes) -> Iterator[EncodedPacket]:
        self._check_usable()
        if data:
            self._buf.extend(data)
        return self._drain()

    def finish(self) -> None:
        self._check_usable()
        self._finished = True
        try:
            if self._skip:
                raise ContainerParseError(f"stream ended {self._skip} bytes short of an element end")
            if self._pos < len(self._buf):
                raise ContainerParseError(
                    f"stream ended inside an element ({len(self._buf) - self._pos} trailing bytes)"
                )
            if self._track is None:
                raise ContainerParseError("stream ended before an audio track header")
        except ContainerParseError as exc:
            self._failed = exc
            raise

    def _check_usable(self) -> None:
        if self._failed is not None:
            raise ContainerParseError(f"demuxer already failed: {self._failed.message}")
        if self._finished:
            raise ContainerParseError("demuxer already finished")

    def _drain(self) -> Iterator[EncodedPacket]:
        try:
            while True:
                packets = self._step()
                if packets is None:
                    return
                yield from packets
        except ContainerParseError as exc:
            self._failed = exc
            logger.warning(f"[DEMUX] Parse error at offset {self._base + self._pos}: {exc.message}")
            raise
        finally:
            self._compact()

    def _compact(self) -> None:
        if self._pos == 0:
            return
        if self._pos < len(self._buf) and self._pos < _COMPACT_THRESHOLD_BYTES:
            return
        del self._buf[: self._pos]
        self._base += self._pos
        self._pos = 0

    def _step(self) -> list[EncodedPacket] | None:
        """Advance by one element (or one skip slice). None means more input is needed."""
        if self._skip:
            available = len(self._buf) - self._pos
            n = min(available, self._skip)
            self._pos += n
            self._skip -= n
            return None if self._skip else []

        if self._pos >= len(self._buf):
            return None
        header = read_element_header(self._buf, self._pos)
        if header is None:
            return None

        element_id = header.element_id
        if not self._seen_header and element_id != ebml.EBML_HEADER:
            raise ContainerParseError("stream does not start with an EBML header")
        self._close_finished_parents(self._base + self._pos, element_id)

        if element_id in _ENTERED:
            return self._enter(header)
        if element_id in _BUFFERED:
            body = self._take_body(header)
            if body is None:
                return None
            return self._handle_buffered(element_id, body)

        if header.unknown_size:
            raise ContainerParseError(f"element 0x{element_id:X} has unknown size")
        self._pos += header.header_length
        self._skip = header.size
        return []

    def _close_finished_parents(self, abs_pos: int, element_id: int) -> None:
        while self._stack:
            top = self._stack[-1]
            if top.end is not None and abs_pos >= top.end:
                self._stack.pop()
                continue
            if top.end is None and top.element_id == ebml.CLUSTER and element_id in ebml.SEGMENT_CHILDREN:
                self._stack.pop()
                continue
            break

    def _enter(self, header: ElementHeader) -> list[EncodedPacket]:
        start = self._base + self._pos + header.header_length
        end = None if header.unknown_size else start + header.size
        self._stack.append(_OpenElement(element_id=header.element_id, end=end))
        self._pos += header.header_length
        if header.element_id == ebml.CLUSTER:
            self._cluster_timecode = None
        return []

    def _take_body(self, header: ElementHeader) -> bytes | None:
        if header.unknown_size:
            raise ContainerParseError(f"element 0x{header.element_id:X} has unknown size")
        if header.size > self.max_element_bytes:
            raise ContainerParseError(
                f"element 0x{header.element_id:X} is {header.size} bytes (limit {self.max_element_bytes})"
            )
        start = self._pos + header.header_length
        end = start + header.size
        if end > len(self._buf):
            return None
        body = bytes(self._buf[start:end])
        self._pos = end
        return body

    def _handle_buffered(self, element_id: int, body: bytes) -> list[EncodedPacket]:
        if element_id == ebml.EBML_HEADER:
            self._parse_ebml_header(body)
        elif element_id == ebml.INFO:
            self._parse_info(body)
        elif element_id == ebml.TRACKS:
            self._parse_tracks(body)
        elif element_id == ebml.TIMECODE:
            self._cluster_timecode = ebml.read_uint(body)
        elif element_id == ebml.SIMPLE_BLOCK:
            return self._parse_block(body)
        elif element_id == ebml.BLOCK_GROUP:
            packets: list[EncodedPacket] = []
            for child_id, payload in iter_children(body):
                if child_id == ebml.BLOCK:
                    packets.extend(self._parse_block(bytes(payload)))
            return packets
        return []

    def _parse_ebml_header(self, body: bytes) -> None:
        if self._seen_header:
            raise ContainerParseError("unexpected second EBML header")
        doc_type = "matroska"
        for child_id, payload in iter_children(body):
            if child_id == ebml.DOC_TYPE:
                doc_type = ebml.read_string(payload)
        if doc_type not in ("webm", "matroska"):
            raise ContainerParseError(f"unsupported EBML document type {doc_type!r}")
        self._seen_header = True
        logger.debug(f"[DEMUX] EBML header doc_type={doc_type}")

    def _parse_info(self, body: bytes) -> None:
        for child_id, payload in iter_children(body):
            if child_id == ebml.TIMECODE_SCALE:
                scale = ebml.read_uint(payload)
                if scale <= 0:
                    raise ContainerParseError("TimecodeScale must be > 0")
                self._timecode_scale_ns = scale

    def _parse_tracks(self, body: bytes) -> None:
        if self._track is not None:
            logger.debug("[DEMUX] Ignoring repeated Tracks element")
            return

        entries = [
            _parse_track_entry(payload) for child_id, payload in iter_children(body) if child_id == ebml.TRACK_ENTRY
        ]
        for entry in entries:
            if entry.track_type != ebml.TRACK_TYPE_AUDIO or entry.codec_id not in SUPPORTED_CODECS:
                continue
            sample_rate_hz = int(round(entry.sampling_frequency))
            if sample_rate_hz <= 0:
                raise ContainerParseError(f"invalid sampling frequency {entry.sampling_frequency}")
            if entry.channels <= 0:
                raise ContainerParseError(f"invalid channel count {entry.channels}")
            self._track = TrackInfo(
                track_number=entry.number,
                codec_id=entry.codec_id,
                sample_rate_hz=sample_rate_hz,
                channels=entry.channels,
                bit_depth=entry.bit_depth,
                codec_private=entry.codec_private,
                codec_delay_ns=entry.codec_delay_ns,
            )
            self._default_duration_ns = entry.default_duration_ns
            logger.info(
                f"[DEMUX] Selected track {entry.number}: codec={entry.codec_id} "
                f"rate={sample_rate_hz}Hz channels={entry.channels}"
            )
            return

        found = ", ".join(f"{e.number}:{e.codec_id or '?'}" for e in entries) or "none"
        raise UnsupportedTrack(f"no supported audio track (tracks: {found})")

    def _parse_block(self, body: bytes) -> list[EncodedPacket]:
        if self._track is None:
            raise ContainerParseError("block before the track header")
        head = ebml.read_vint(body, 0)
        if head is None or head[0] == ebml.UNKNOWN_SIZE:
            raise ContainerParseError("invalid block track number")
        track_number, pos = head
        if len(body) < pos + 3:
            raise ContainerParseError("truncated block header")
        if track_number != self._track.track_number:
            return []
        if self._cluster_timecode is None:
            raise ContainerParseError("block without a cluster timecode")

        relative = int.from_bytes(body[pos : pos + 2], "big", signed=True)
        flags = body[pos + 2]
        frames = _split_lacing(body, pos + 3, (flags >> 1) & 0x03)

        pts_ns = (self._cluster_timecode + relative) * self._timecode_scale_ns
        packets = []
        for index, frame in enumerate(frames):
            packet = EncodedPacket(
                codec_id=self._track.codec_id,
                data=frame,
                pts_ns=pts_ns + index * self._default_duration_ns,
                lace_index=index,
            )
            if self._last_key is not None and packet.order_key <= self._last_key:
                raise ContainerParseError(
                    f"packet timestamp {packet.pts_ns}ns is not after {self._last_key[0]}ns"
                )
            self._last_key = packet.order_key
            packets.append(packet)
        return packets


def _parse_track_entry(body: memoryview) -> _TrackEntry:
    entry = _TrackEntry()
    for child_id, payload in iter_children(body):
        if child_id == ebml.TRACK_NUMBER:
            entry.number = ebml.read_uint(payload)
        elif child_id == ebml.TRACK_TYPE:
            entry.track_type = ebml.read_uint(payload)
        elif child_id == ebml.CODEC_ID:
            entry.codec_id = ebml.read_string(payload)
        elif child_id == ebml.CODEC_PRIVATE:
            entry.codec_private = bytes(payload)
        elif child_id == ebml.CODEC_DELAY:
            entry.codec_delay_ns = ebml.read_uint(payload)
        elif child_id == ebml.DEFAULT_DURATION:
            entry.default_duration_ns = ebml.read_uint(payload)
        elif child_id == ebml.AUDIO:
            for audio_id, audio_payload in iter_children(payload):
                if audio_id == ebml.SAMPLING_FREQUENCY:
                    entry.sampling_frequency = ebml.read_float(audio_payload)
                elif audio_id == ebml.CHANNELS:
                    entry.channels = ebml.read_uint(audio_payload)
                elif audio_id == ebml.BIT_DEPTH:
                    entry.bit_depth = ebml.read_uint(audio_payload)
    return entry


def _split_lacing(body: bytes, pos: int, lacing: int) -> list[bytes]:
    if lacing == 0:
        return [body[pos:]]
    if pos >= len(body):
        raise ContainerParseError("truncated lace header")
    count = body[pos] + 1
    pos += 1

    sizes: list[int] = []
    if lacing == 1:  # Xiph
        for _ in range(count - 1):
            size = 0
            while True:
                if pos >= len(body):
                    raise ContainerParseError("truncated Xiph lace sizes")
                byte = body[pos]
                pos += 1
                size += byte
                if byte != 0xFF:
                    break
            sizes.append(size)
    elif lacing == 3:  # EBML
        first = ebml.read_vint(body, pos)
        if first is None or first[0] == ebml.UNKNOWN_SIZE:
            raise ContainerParseError("invalid EBML lace size")
        size, length = first
        pos += length
        sizes.append(size)
        for _ in range(count - 2):
            delta = ebml.read_signed_vint(body, pos)
            if delta is None:
                raise ContainerParseError("truncated EBML lace sizes")
            size += delta[0]
            pos += delta[1]
            if size < 0:
                raise ContainerParseError("negative EBML lace size")
            sizes.append(size)
    else:  # fixed-size
        remaining = len(body) - pos
        if remaining % count:
            raise ContainerParseError("fixed-size lacing does not divide the block payload")
        sizes = [remaining // count] * (count - 1)

    remaining = len(body) - pos - sum(sizes)
    if remaining < 0:
        raise ContainerParseError("lace sizes overrun the block payload")
    sizes.append(remaining)

    frames = []
    for size in sizes:
        frames.append(body[pos : pos + size])
        pos += size
    return frames
