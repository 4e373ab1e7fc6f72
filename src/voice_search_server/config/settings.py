from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

SUPPORTED_SAMPLE_RATES_HZ = (16000,)


@dataclass(slots=True)
class ServerSettings:
    host: str = "127.0.0.1"
    port: int = 7025
    max_message_bytes: int = 1 << 20

    def validate(self) -> None:
        if not self.host:
            raise ValueError("host must be non-empty")
        if not (0 < self.port <= 65535):
            raise ValueError("port must be in 1..65535")
        if self.max_message_bytes <= 0:
            raise ValueError("max_message_bytes must be > 0")


@dataclass(slots=True)
class AudioSettings:
    target_sample_rate_hz: int = 16000
    max_consecutive_decode_failures: int = 3

    def validate(self) -> None:
        if self.target_sample_rate_hz not in SUPPORTED_SAMPLE_RATES_HZ:
            raise ValueError("target_sample_rate_hz must be 16000")
        if self.max_consecutive_decode_failures < 0:
            raise ValueError("max_consecutive_decode_failures must be >= 0")


@dataclass(slots=True)
class FeatureSettings:
    n_mels: int = 128
    n_fft: int = 400
    hop_length: int = 160
    chunk_length_s: float = 30.0
    stream_interval_s: float = 2.0

    def validate(self) -> None:
        if self.n_mels not in (80, 128):
            raise ValueError("n_mels must be 80 or 128")
        if self.n_fft <= 0 or self.hop_length <= 0:
            raise ValueError("n_fft and hop_length must be > 0")
        if self.hop_length > self.n_fft:
            raise ValueError("hop_length must be <= n_fft")
        if self.chunk_length_s <= 0:
            raise ValueError("chunk_length_s must be > 0")
        if self.stream_interval_s <= 0:
            raise ValueError("stream_interval_s must be > 0")


@dataclass(slots=True)
class PipelineSettings:
    channel_capacity: int = 8
    max_session_audio_s: float = 30.0
    overload_retry_s: float = 0.25
    overload_grace_s: float = 5.0

    def validate(self) -> None:
        if self.channel_capacity <= 0:
            raise ValueError("channel_capacity must be > 0")
        if self.max_session_audio_s <= 0:
            raise ValueError("max_session_audio_s must be > 0")
        if self.overload_retry_s <= 0:
            raise ValueError("overload_retry_s must be > 0")
        if self.overload_grace_s < 0:
            raise ValueError("overload_grace_s must be >= 0")


@dataclass(slots=True)
class InferenceSettings:
    queue_depth: int = 8
    model_id: str = "openai/whisper-large-v3-turbo"
    device: str = "cpu"
    language: str = ""
    partial_max_tokens: int = 64
    seed: int = 299792458

    def validate(self) -> None:
        if self.queue_depth <= 0:
            raise ValueError("queue_depth must be > 0")
        if not self.model_id:
            raise ValueError("model_id must be non-empty")
        if not self.device:
            raise ValueError("device must be non-empty")
        if self.language is None:
            raise ValueError("language must be a string")
        if self.partial_max_tokens <= 0:
            raise ValueError("partial_max_tokens must be > 0")


@dataclass(slots=True)
class AppSettings:
    server: ServerSettings = field(default_factory=ServerSettings)
    audio: AudioSettings = field(default_factory=AudioSettings)
    features: FeatureSettings = field(default_factory=FeatureSettings)
    pipeline: PipelineSettings = field(default_factory=PipelineSettings)
    inference: InferenceSettings = field(default_factory=InferenceSettings)

    def validate(self) -> None:
        self.server.validate()
        self.audio.validate()
        self.features.validate()
        self.pipeline.validate()
        self.inference.validate()


def to_dict(settings: AppSettings) -> dict[str, Any]:
    return {
        "server": {
            "host": settings.server.host,
            "port": settings.server.port,
            "max_message_bytes": settings.server.max_message_bytes,
        },
        "audio": {
            "target_sample_rate_hz": settings.audio.target_sample_rate_hz,
            "max_consecutive_decode_failures": settings.audio.max_consecutive_decode_failures,
        },
        "features": {
            "n_mels": settings.features.n_mels,
            "n_fft": settings.features.n_fft,
            "hop_length": settings.features.hop_length,
            "chunk_length_s": settings.features.chunk_length_s,
            "stream_interval_s": settings.features.stream_interval_s,
        },
        "pipeline": {
            "channel_capacity": settings.pipeline.channel_capacity,
            "max_session_audio_s": settings.pipeline.max_session_audio_s,
            "overload_retry_s": settings.pipeline.overload_retry_s,
            "overload_grace_s": settings.pipeline.overload_grace_s,
        },
        "inference": {
            "queue_depth": settings.inference.queue_depth,
            "model_id": settings.inference.model_id,
            "device": settings.inference.device,
            "language": settings.inference.language,
            "partial_max_tokens": settings.inference.partial_max_tokens,
            "seed": settings.inference.seed,
        },
    }


def from_dict(data: dict[str, Any]) -> AppSettings:
    server_data = data.get("server") or {}
    audio_data = data.get("audio") or {}
    features_data = data.get("features") or {}
    pipeline_data = data.get("pipeline") or {}
    inference_data = data.get("inference") or {}

    language_raw = inference_data.get("language")

    settings = AppSettings(
        server=ServerSettings(
            host=str(server_data.get("host", "127.0.0.1")),
            port=int(server_data.get("port", 7025)),
            max_message_bytes=int(server_data.get("max_message_bytes", 1 << 20)),
        ),
        audio=AudioSettings(
            target_sample_rate_hz=int(audio_data.get("target_sample_rate_hz", 16000)),
            max_consecutive_decode_failures=int(audio_data.get("max_consecutive_decode_failures", 3)),
        ),
        features=FeatureSettings(
            n_mels=int(features_data.get("n_mels", 128)),
            n_fft=int(features_data.get("n_fft", 400)),
            hop_length=int(features_data.get("hop_length", 160)),
            chunk_length_s=float(features_data.get("chunk_length_s", 30.0)),
            stream_interval_s=float(features_data.get("stream_interval_s", 2.0)),
        ),
        pipeline=PipelineSettings(
            channel_capacity=int(pipeline_data.get("channel_capacity", 8)),
            max_session_audio_s=float(pipeline_data.get("max_session_audio_s", 30.0)),
            overload_retry_s=float(pipeline_data.get("overload_retry_s", 0.25)),
            overload_grace_s=float(pipeline_data.get("overload_grace_s", 5.0)),
        ),
        inference=InferenceSettings(
            queue_depth=int(inference_data.get("queue_depth", 8)),
            model_id=str(inference_data.get("model_id", "openai/whisper-large-v3-turbo")),
            device=str(inference_data.get("device", "cpu")),
            language=str(language_raw) if language_raw is not None else "",
            partial_max_tokens=int(inference_data.get("partial_max_tokens", 64)),
            seed=int(inference_data.get("seed", 299792458)),
        ),
    )
    settings.validate()
    return settings


def load_settings(path: Path) -> AppSettings:
    raw = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        raise ValueError("settings file must contain a JSON object")
    return from_dict(raw)


def save_settings(path: Path, settings: AppSettings) -> None:
    settings.validate()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(to_dict(settings), ensure_ascii=False, indent=2), encoding="utf-8")
