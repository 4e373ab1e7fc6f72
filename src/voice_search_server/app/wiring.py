from __future__ import annotations

from functools import partial
from typing import Callable

from voice_search_server.config.settings import AppSettings
from voice_search_server.core.clock import Clock, SystemClock
from voice_search_server.core.features.mel import LogMelExtractor
from voice_search_server.core.inference.engine import InferenceEngine
from voice_search_server.core.inference.worker import InferenceWorker
from voice_search_server.core.pipeline.coordinator import InferenceSubmitter, TranscriptionSession


def create_inference_engine(settings: AppSettings) -> InferenceEngine:
    from voice_search_server.providers.whisper import WhisperInferenceEngine

    return WhisperInferenceEngine(
        model_id=settings.inference.model_id,
        device=settings.inference.device,
        language=settings.inference.language or None,
        partial_max_tokens=settings.inference.partial_max_tokens,
        seed=settings.inference.seed,
    )


def create_inference_worker(settings: AppSettings, *, engine: InferenceEngine) -> InferenceWorker:
    return InferenceWorker(engine=engine, queue_depth=settings.inference.queue_depth)


def create_extractor_factory(settings: AppSettings) -> Callable[[], LogMelExtractor]:
    return partial(
        LogMelExtractor,
        sample_rate_hz=settings.audio.target_sample_rate_hz,
        n_mels=settings.features.n_mels,
        n_fft=settings.features.n_fft,
        hop_length=settings.features.hop_length,
        chunk_length_s=settings.features.chunk_length_s,
        stream_interval_s=settings.features.stream_interval_s,
    )


def create_session(
    settings: AppSettings,
    *,
    inference: InferenceSubmitter,
    clock: Clock | None = None,
) -> TranscriptionSession:
    return TranscriptionSession(
        inference=inference,
        clock=clock or SystemClock(),
        channel_capacity=settings.pipeline.channel_capacity,
        max_session_audio_s=settings.pipeline.max_session_audio_s,
        overload_retry_s=settings.pipeline.overload_retry_s,
        overload_grace_s=settings.pipeline.overload_grace_s,
        target_sample_rate_hz=settings.audio.target_sample_rate_hz,
        max_consecutive_decode_failures=settings.audio.max_consecutive_decode_failures,
        extractor_factory=create_extractor_factory(settings),
    )
