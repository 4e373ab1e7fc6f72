from __future__ import annotations

import asyncio
from functools import partial

import numpy as np

from fakes import FeatureDigestEngine, RejectingSubmitter
from voice_search_server.core.clock import FakeClock
from voice_search_server.core.features.mel import LogMelExtractor
from voice_search_server.core.inference.engine import ScriptedInferenceEngine
from voice_search_server.core.inference.worker import InferenceWorker
from voice_search_server.core.pipeline.coordinator import TranscriptionSession
from voice_search_server.domain.events import ErrorEvent, FinalEvent, PartialEvent, is_terminal
from webm_fixtures import build_pcm_webm, split_every, tone

FAST_EXTRACTOR = partial(LogMelExtractor, stream_interval_s=1.0)


async def _collect(session: TranscriptionSession) -> list:
    return [event async for event in session.events()]


async def _transcribe(chunks, *, inference, **session_kw) -> tuple[list, TranscriptionSession]:
    session_kw.setdefault("extractor_factory", FAST_EXTRACTOR)
    session = TranscriptionSession(inference=inference, **session_kw)
    session.start()
    collector = asyncio.create_task(_collect(session))
    try:
        for chunk in chunks:
            if not await session.feed(chunk):
                break
        await session.end()
        events = await asyncio.wait_for(collector, timeout=20.0)
    finally:
        await session.close()
    return events, session


async def _with_worker(engine, fn):
    worker = InferenceWorker(engine=engine)
    await worker.start()
    try:
        return await fn(worker)
    finally:
        await worker.close()


def _assert_single_terminal(events: list) -> None:
    terminals = [e for e in events if is_terminal(e)]
    assert len(terminals) == 1
    assert events[-1] is terminals[0]


def test_partials_grow_and_exactly_one_final_is_last():
    async def run():
        engine = FeatureDigestEngine()
        data = build_pcm_webm(tone(3.0))
        events, _ = await _with_worker(engine, lambda w: _transcribe(split_every(data, 4096), inference=w))

        _assert_single_terminal(events)
        partials = [e for e in events if isinstance(e, PartialEvent)]
        assert [p.text for p in partials] == ["find me", "find me a", "find me a quiet"]
        committed = [p.committed_length for p in partials]
        assert committed == sorted(committed)
        final = events[-1]
        assert isinstance(final, FinalEvent)
        assert final.text.startswith("find me a quiet coffee shop ")
        assert engine.calls[-1][1] is True
        assert sum(1 for _, is_final in engine.calls if is_final) == 1

    asyncio.run(run())


def test_stereo_and_mono_converge_to_same_transcript():
    async def run():
        mono = tone(2.0, freq_hz=330.0)
        stereo = np.stack([mono, mono], axis=1)

        async def final_text(samples):
            events, _ = await _with_worker(
                FeatureDigestEngine(),
                lambda w: _transcribe([build_pcm_webm(samples)], inference=w),
            )
            assert isinstance(events[-1], FinalEvent)
            return events[-1].text

        assert await final_text(mono) == await final_text(stereo)

    asyncio.run(run())


def test_transcript_independent_of_chunk_boundaries():
    async def run():
        data = build_pcm_webm(tone(1.5, freq_hz=500.0))

        async def final_text(size):
            events, _ = await _with_worker(
                FeatureDigestEngine(),
                lambda w: _transcribe(split_every(data, size), inference=w),
            )
            return events[-1].text

        whole = await final_text(len(data))
        assert await final_text(7) == whole
        assert await final_text(1000) == whole

    asyncio.run(run())


def test_garbage_input_yields_one_container_error():
    async def run():
        engine = ScriptedInferenceEngine()
        events, session = await _with_worker(
            engine, lambda w: _transcribe([b"\x00\x01garbage" * 100, b"more"], inference=w)
        )
        assert len(events) == 1
        error = events[0]
        assert isinstance(error, ErrorEvent)
        assert error.kind == "ContainerParseError"
        assert error.fatal
        assert error.close_code == 4400
        assert session.terminal_event is error
        assert engine.calls == []

    asyncio.run(run())


def test_overlong_input_fails_before_final_decode():
    async def run():
        engine = ScriptedInferenceEngine(final="should not happen")
        data = build_pcm_webm(tone(2.5))
        events, _ = await _with_worker(
            engine,
            lambda w: _transcribe(split_every(data, 2048), inference=w, max_session_audio_s=1.0),
        )
        _assert_single_terminal(events)
        assert isinstance(events[-1], ErrorEvent)
        assert events[-1].kind == "DurationExceeded"
        assert events[-1].close_code == 4413
        assert all(not is_final for _, is_final in engine.calls)

    asyncio.run(run())


def test_close_mid_stream_is_bounded_and_silent():
    async def run():
        submitter = RejectingSubmitter()
        session = TranscriptionSession(inference=submitter, extractor_factory=FAST_EXTRACTOR)
        session.start()
        data = build_pcm_webm(tone(2.0))
        for chunk in split_every(data, 4096)[:3]:
            await session.feed(chunk)

        await asyncio.wait_for(session.close(), timeout=2.0)
        assert session.closed
        assert [e async for e in session.events()] == []
        assert await session.feed(b"late") is False
        assert submitter.cancelled == [session.session_id]

    asyncio.run(run())


class StalledSubmitter:
    def __init__(self) -> None:
        self.release = asyncio.Event()
        self.submissions = 0

    async def submit(self, session_id, window, *, is_final):
        self.submissions += 1
        await self.release.wait()
        raise AssertionError("never released")

    def cancel_session(self, session_id: str) -> int:
        return 0


def test_backpressure_bounds_buffered_input():
    async def run():
        submitter = StalledSubmitter()
        session = TranscriptionSession(
            inference=submitter,
            channel_capacity=2,
            extractor_factory=partial(LogMelExtractor, stream_interval_s=0.1),
        )
        session.start()
        data = build_pcm_webm(tone(5.0))
        chunks = split_every(data, 640)

        async def producer():
            for chunk in chunks:
                await session.feed(chunk)

        feeding = asyncio.create_task(producer())
        await asyncio.sleep(0.5)
        assert not feeding.done()
        assert submitter.submissions == 1
        for ch in session._channels():
            assert len(ch) <= 2

        await asyncio.wait_for(session.close(), timeout=2.0)
        await asyncio.wait_for(feeding, timeout=2.0)

    asyncio.run(run())


def test_overloaded_partial_is_reported_and_skipped():
    async def run():
        submitter = RejectingSubmitter(rejections=1, final_text="play jazz")
        events, _ = await _transcribe([build_pcm_webm(tone(1.5))], inference=submitter)

        errors = [e for e in events if isinstance(e, ErrorEvent)]
        assert len(errors) == 1
        assert errors[0].kind == "Overloaded"
        assert errors[0].fatal is False
        assert isinstance(events[-1], FinalEvent)
        assert events[-1].text == "play jazz"
        _assert_single_terminal(events)

    asyncio.run(run())


def test_overloaded_final_retries_until_grace_expires():
    async def run():
        clock = FakeClock()
        submitter = RejectingSubmitter(rejections=-1)
        events, _ = await _transcribe(
            [build_pcm_webm(tone(0.5))],
            inference=submitter,
            clock=clock,
            overload_retry_s=0.25,
            overload_grace_s=1.0,
        )

        _assert_single_terminal(events)
        assert isinstance(events[-1], ErrorEvent)
        assert events[-1].kind == "Overloaded"
        assert events[-1].fatal is True
        assert events[-1].close_code == 1013
        assert clock.sleeps == 4
        assert sum(1 for _, is_final in submitter.submitted if is_final) == 5

    asyncio.run(run())


def test_overloaded_final_recovers_within_grace():
    async def run():
        clock = FakeClock()
        submitter = RejectingSubmitter(rejections=2, final_text="ok")
        events, _ = await _transcribe(
            [build_pcm_webm(tone(0.5))],
            inference=submitter,
            clock=clock,
            overload_grace_s=5.0,
        )
        assert isinstance(events[-1], FinalEvent)
        assert events[-1].text == "ok"
        assert clock.sleeps == 2

    asyncio.run(run())


def test_engine_failure_is_terminal():
    async def run():
        engine = ScriptedInferenceEngine(fail_with=RuntimeError("boom"))
        events, _ = await _with_worker(engine, lambda w: _transcribe([build_pcm_webm(tone(0.5))], inference=w))
        assert len(events) == 1
        assert isinstance(events[0], ErrorEvent)
        assert events[0].kind == "InferenceFailure"
        assert events[0].close_code == 1011

    asyncio.run(run())
