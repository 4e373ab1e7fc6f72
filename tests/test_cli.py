from __future__ import annotations

import asyncio
from pathlib import Path

import voice_search_server.main as cli
from fakes import FeatureDigestEngine
from voice_search_server.config.settings import AppSettings, FeatureSettings
from voice_search_server.core.inference.engine import ScriptedInferenceEngine
from webm_fixtures import build_pcm_webm, tone


def test_version_flag(capsys):
    assert cli.main(["--version"]) == 0
    assert capsys.readouterr().out.strip() == "0.1.0"


def test_no_command_prints_help():
    assert cli.main([]) == 2


def test_transcribe_command_prints_final(monkeypatch, tmp_path, capsys):
    audio = tmp_path / "query.webm"
    audio.write_bytes(build_pcm_webm(tone(1.0)))
    engine = ScriptedInferenceEngine(final="weather tomorrow")
    monkeypatch.setattr(cli, "create_inference_engine", lambda _settings: engine)
    monkeypatch.setattr(cli, "configure_logging", lambda **_kw: None)

    code = cli.main(["--config", str(tmp_path / "settings.json"), "transcribe", str(audio), "--chunk-bytes", "512"])

    assert code == 0
    assert capsys.readouterr().out.strip().splitlines()[-1] == "weather tomorrow"
    assert engine.closed


def test_transcribe_command_reports_errors(monkeypatch, tmp_path, capsys):
    audio = tmp_path / "broken.webm"
    audio.write_bytes(b"definitely not webm")
    monkeypatch.setattr(cli, "create_inference_engine", lambda _settings: ScriptedInferenceEngine())
    monkeypatch.setattr(cli, "configure_logging", lambda **_kw: None)

    code = cli.main(["--config", str(tmp_path / "settings.json"), "transcribe", str(audio)])

    assert code == 1
    assert "ContainerParseError" in capsys.readouterr().err


def test_transcribe_missing_file(monkeypatch, tmp_path, capsys):
    monkeypatch.setattr(cli, "configure_logging", lambda **_kw: None)
    assert cli.main(["--config", str(tmp_path / "s.json"), "transcribe", str(tmp_path / "nope.webm")]) == 2


def test_invalid_settings_file_returns_error(monkeypatch, tmp_path, capsys):
    path = tmp_path / "settings.json"
    path.write_text('{"server": {"port": -1}}', encoding="utf-8")
    monkeypatch.setattr(cli, "configure_logging", lambda **_kw: None)
    assert cli.main(["--config", str(path), "serve"]) == 2


def test_run_server_serves_until_cancelled():
    async def run():
        settings = AppSettings(features=FeatureSettings(stream_interval_s=1.0))
        settings.server.port = 0
        engine = FeatureDigestEngine()
        ready = asyncio.Event()
        server = asyncio.create_task(cli.run_server(settings, engine=engine, ready=ready))
        await asyncio.wait_for(ready.wait(), timeout=5.0)
        server.cancel()
        await asyncio.gather(server, return_exceptions=True)
        assert engine.closed

    asyncio.run(run())


def test_serve_logs_to_default_file(monkeypatch, tmp_path):
    monkeypatch.setenv("VOICE_SEARCH_SERVER_HOME", str(tmp_path))
    parser = cli.build_parser()

    assert cli.resolve_log_file(parser.parse_args(["serve"])) == tmp_path / "logs" / "server.log"
    assert cli.resolve_log_file(parser.parse_args(["--no-log-file", "serve"])) is None
    assert cli.resolve_log_file(parser.parse_args(["--log-file", "x.log", "serve"])) == Path("x.log")
    assert cli.resolve_log_file(parser.parse_args(["transcribe", "a.webm"])) is None
