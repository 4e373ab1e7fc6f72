from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Protocol
from uuid import uuid4

from voice_search_server.core.audio.decoder import PacketDecoder
from voice_search_server.core.clock import Clock, SystemClock
from voice_search_server.core.container.demuxer import WebmDemuxer
from voice_search_server.core.features.mel import LogMelExtractor
from voice_search_server.core.pipeline.channel import END_OF_STREAM, Channel, ChannelClosed
from voice_search_server.core.transcript.assembler import TranscriptAssembler
from voice_search_server.domain.errors import DecodeError, DurationExceeded, Overloaded
from voice_search_server.domain.events import (
    ErrorEvent,
    FinalEvent,
    PartialEvent,
    SessionEvent,
    TranscriptUpdateKind,
)
from voice_search_server.domain.models import (
    AudioChunk,
    DecodedFrame,
    EncodedPacket,
    InferenceResult,
    MelFeatureWindow,
    TrackInfo,
)

logger = logging.getLogger(__name__)


class InferenceSubmitter(Protocol):
    async def submit(self, session_id: str, window: MelFeatureWindow, *, is_final: bool) -> InferenceResult: ...
    def cancel_session(self, session_id: str) -> int: ...


@dataclass(slots=True)
class TranscriptionSession:
    """One client stream: demux -> decode -> features -> inference -> transcript.

    Every stage runs as its own task and talks to the next through a bounded
    channel. The session emits partial events while audio arrives and exactly
    one terminal event (`final` or a fatal `error`).
    """

    inference: InferenceSubmitter
    clock: Clock = field(default_factory=SystemClock)
    session_id: str = field(default_factory=lambda: uuid4().hex[:12])

    channel_capacity: int = 8
    max_session_audio_s: float = 30.0
    overload_retry_s: float = 0.25
    overload_grace_s: float = 5.0
    target_sample_rate_hz: int = 16000
    max_consecutive_decode_failures: int = 3
    extractor_factory: Callable[[], LogMelExtractor] = LogMelExtractor

    _input: Channel = field(init=False, repr=False)
    _packets: Channel = field(init=False, repr=False)
    _frames: Channel = field(init=False, repr=False)
    _windows: Channel = field(init=False, repr=False)
    _results: Channel = field(init=False, repr=False)
    _events: Channel = field(init=False, repr=False)
    _tasks: list[asyncio.Task[None]] = field(init=False, default_factory=list, repr=False)
    _chunk_sequence: int = field(init=False, default=0)
    _terminal: SessionEvent | None = field(init=False, default=None)
    _started: bool = field(init=False, default=False)
    _ended: bool = field(init=False, default=False)
    _closed: bool = field(init=False, default=False)

    def __post_init__(self) -> None:
        if self.channel_capacity <= 0:
            raise ValueError("channel_capacity must be > 0")
        if self.max_session_audio_s <= 0:
            raise ValueError("max_session_audio_s must be > 0")
        if self.overload_retry_s <= 0:
            raise ValueError("overload_retry_s must be > 0")
        if self.overload_grace_s < 0:
            raise ValueError("overload_grace_s must be >= 0")

        def channel(name: str) -> Channel:
            return Channel(capacity=self.channel_capacity, name=f"{name}[{self.session_id}]")

        self._input = channel("input")
        self._packets = channel("packets")
        self._frames = channel("frames")
        self._windows = channel("windows")
        self._results = channel("results")
        self._events = channel("events")

    @property
    def terminal_event(self) -> SessionEvent | None:
        return self._terminal

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        stages = (
            ("demux", self._demux_stage),
            ("decode", self._decode_stage),
            ("features", self._feature_stage),
            ("inference", self._inference_stage),
            ("transcript", self._transcript_stage),
        )
        for name, stage in stages:
            self._tasks.append(asyncio.create_task(self._guard(name, stage), name=f"{name}-{self.session_id}"))
        logger.info(f"[SESSION] {self.session_id} started")

    async def feed(self, data: bytes) -> bool:
        """Queue a fragment of the stream; returns False once the session stopped accepting input."""
        if self._ended or self._closed:
            return False
        chunk = AudioChunk(sequence=self._chunk_sequence, data=bytes(data))
        self._chunk_sequence += 1
        try:
            await self._input.send(chunk)
        except ChannelClosed:
            return False
        return True

    async def end(self) -> None:
        if self._ended or self._closed:
            return
        self._ended = True
        try:
            await self._input.send(END_OF_STREAM)
        except ChannelClosed:
            pass

    async def events(self) -> AsyncIterator[SessionEvent]:
        while not self._closed:
            try:
                event = await self._events.recv()
            except ChannelClosed:
                return
            if self._closed:
                return
            yield event

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for ch in self._channels():
            ch.close()
        dropped = self.inference.cancel_session(self.session_id)
        current = asyncio.current_task()
        for task in self._tasks:
            if task is not current:
                task.cancel()
        await self.wait_closed()
        logger.info(f"[SESSION] {self.session_id} closed (dropped {dropped} queued inference request(s))")

    async def wait_closed(self) -> None:
        current = asyncio.current_task()
        tasks = [t for t in self._tasks if t is not current]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _channels(self) -> tuple[Channel, ...]:
        return (self._input, self._packets, self._frames, self._windows, self._results, self._events)

    async def _guard(self, name: str, stage: Callable[[], object]) -> None:
        try:
            await stage()  # type: ignore[misc]
        except ChannelClosed:
            logger.debug(f"[SESSION] {self.session_id} {name} stage stopped: channel closed")
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            await self._fail(name, exc)

    async def _fail(self, stage: str, exc: Exception) -> None:
        if self._terminal is not None:
            logger.debug(f"[SESSION] {self.session_id} {stage} error after terminal event: {exc}")
            return
        event = ErrorEvent.from_exception(exc)
        event = ErrorEvent(kind=event.kind, message=event.message, fatal=True, close_code=event.close_code)
        self._terminal = event
        if event.kind == "InternalError":
            logger.exception(f"[SESSION] {self.session_id} {stage} stage crashed")
        else:
            logger.warning(f"[SESSION] {self.session_id} {stage} failed: {event.kind}: {event.message}")

        for ch in (self._input, self._packets, self._frames, self._windows, self._results):
            ch.close()
        self.inference.cancel_session(self.session_id)
        current = asyncio.current_task()
        for task in self._tasks:
            if task is not current:
                task.cancel()

        await self._emit(event)
        self._events.close()

    async def _emit(self, event: SessionEvent) -> None:
        if self._closed:
            return
        try:
            await self._events.send(event)
        except ChannelClosed:
            logger.debug(f"[SESSION] {self.session_id} dropped {event.type.value} event after close")

    async def _demux_stage(self) -> None:
        demuxer = WebmDemuxer()
        track_sent = False
        while True:
            item = await self._input.recv()
            if item is END_OF_STREAM:
                demuxer.finish()
                if not track_sent and demuxer.track is not None:
                    await self._packets.send(demuxer.track)
                await self._packets.send(END_OF_STREAM)
                return

            assert isinstance(item, AudioChunk)
            for packet in demuxer.feed(item.data):
                if not track_sent:
                    await self._packets.send(demuxer.track)
                    track_sent = True
                await self._packets.send(packet)
            if not track_sent and demuxer.track is not None:
                await self._packets.send(demuxer.track)
                track_sent = True

    async def _decode_stage(self) -> None:
        decoder: PacketDecoder | None = None
        while True:
            item = await self._packets.recv()
            if item is END_OF_STREAM:
                await self._frames.send(END_OF_STREAM)
                return
            if isinstance(item, TrackInfo):
                logger.info(
                    f"[DECODE] {self.session_id} track {item.track_number}: {item.codec_id} "
                    f"{item.sample_rate_hz}Hz x{item.channels}"
                )
                decoder = PacketDecoder(
                    track=item,
                    target_sample_rate_hz=self.target_sample_rate_hz,
                    max_consecutive_failures=self.max_consecutive_decode_failures,
                )
                continue

            assert isinstance(item, EncodedPacket) and decoder is not None
            try:
                frame = decoder.decode(item)
            except DecodeError as exc:
                if exc.fatal:
                    raise
                continue
            if decoder.output_duration_s > self.max_session_audio_s:
                raise DurationExceeded(
                    f"audio exceeds {self.max_session_audio_s:g}s limit "
                    f"({decoder.output_duration_s:.2f}s decoded)"
                )
            if frame.samples.size:
                await self._frames.send(frame)

    async def _feature_stage(self) -> None:
        extractor = self.extractor_factory()
        while True:
            item = await self._frames.recv()
            if item is END_OF_STREAM:
                await self._windows.send(extractor.finalize())
                await self._windows.send(END_OF_STREAM)
                return
            assert isinstance(item, DecodedFrame)
            for window in extractor.push(item.samples):
                await self._windows.send(window)

    async def _inference_stage(self) -> None:
        while True:
            item = await self._windows.recv()
            if item is END_OF_STREAM:
                await self._results.send(END_OF_STREAM)
                return
            assert isinstance(item, MelFeatureWindow)
            if item.is_final:
                result = await self._submit_final(item)
            else:
                try:
                    result = await self.inference.submit(self.session_id, item, is_final=False)
                except Overloaded as exc:
                    logger.warning(f"[SESSION] {self.session_id} skipped partial #{item.sequence}: {exc.message}")
                    await self._emit(ErrorEvent.from_exception(exc))
                    continue
            await self._results.send(result)

    async def _submit_final(self, window: MelFeatureWindow) -> InferenceResult:
        deadline = self.clock.now() + self.overload_grace_s
        while True:
            try:
                return await self.inference.submit(self.session_id, window, is_final=True)
            except Overloaded as exc:
                if self.clock.now() >= deadline:
                    raise Overloaded(
                        f"final pass rejected for {self.overload_grace_s:g}s: {exc.message}", fatal=True
                    ) from exc
                logger.info(f"[SESSION] {self.session_id} final pass overloaded, retrying")
                await self.clock.sleep(self.overload_retry_s)

    async def _transcript_stage(self) -> None:
        assembler = TranscriptAssembler()
        while True:
            item = await self._results.recv()
            if item is END_OF_STREAM:
                return
            assert isinstance(item, InferenceResult)
            for update in assembler.apply(item):
                if update.kind is TranscriptUpdateKind.FINAL:
                    await self._finish(FinalEvent(text=update.text))
                else:
                    await self._emit(PartialEvent(text=update.display_text, committed_length=update.committed_length))

    async def _finish(self, event: FinalEvent) -> None:
        if self._terminal is not None:
            return
        self._terminal = event
        logger.info(f"[SESSION] {self.session_id} final transcript ({len(event.text)} chars)")
        await self._emit(event)
        self._events.close()
