from __future__ import annotations

import argparse
import asyncio
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from voice_search_server.app.file_runner import FileTranscriptionRunner
from voice_search_server.app.gateway import SessionGateway
from voice_search_server.app.wiring import create_inference_engine, create_inference_worker, create_session
from voice_search_server.config.paths import default_log_path, default_settings_path
from voice_search_server.config.settings import AppSettings, load_settings
from voice_search_server.core.inference.engine import InferenceEngine

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATEFMT = "%H:%M:%S"
LOG_FILE_MAX_BYTES = 5 * 1024 * 1024
LOG_FILE_BACKUPS = 3

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="voice-search-server")
    parser.add_argument("--version", action="store_true", help="Print version and exit")
    parser.add_argument(
        "--config",
        type=Path,
        default=default_settings_path(),
        help="Path to settings JSON (default: user config dir)",
    )
    parser.add_argument(
        "--log-file",
        type=Path,
        default=None,
        help="Also write logs to a rotating file (serve default: <app home>/logs/server.log)",
    )
    parser.add_argument("--no-log-file", action="store_true", help="Log to the console only")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    sub = parser.add_subparsers(dest="command")

    serve = sub.add_parser("serve", help="Run the websocket transcription server")
    serve.add_argument("--host", default=None, help="Override server.host")
    serve.add_argument("--port", type=int, default=None, help="Override server.port")

    transcribe = sub.add_parser("transcribe", help="Transcribe a WebM file and print the transcript")
    transcribe.add_argument("file", type=Path, help="WebM (Opus or PCM) file")
    transcribe.add_argument("--chunk-bytes", type=int, default=16384, help="Bytes fed per chunk")

    return parser


def configure_logging(*, verbose: bool = False, log_file: Path | None = None) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt=LOG_DATEFMT)
    logging.getLogger().setLevel(level)
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            log_file, maxBytes=LOG_FILE_MAX_BYTES, backupCount=LOG_FILE_BACKUPS, encoding="utf-8"
        )
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logging.getLogger().addHandler(handler)


def resolve_log_file(args: argparse.Namespace) -> Path | None:
    if args.no_log_file:
        return None
    if args.log_file is not None:
        return args.log_file
    if args.command == "serve":
        return default_log_path()
    return None


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        from . import __version__

        print(__version__)
        return 0

    if args.command is None:
        parser.print_help()
        return 2

    configure_logging(verbose=args.verbose, log_file=resolve_log_file(args))
    try:
        settings = _load_settings_or_default(args.config)
    except (ValueError, OSError) as exc:
        print(f"Error: invalid settings file {args.config}: {exc}", flush=True)
        return 2

    if args.command == "serve":
        if args.host:
            settings.server.host = args.host
        if args.port is not None:
            settings.server.port = args.port
        settings.validate()
        try:
            return asyncio.run(run_server(settings, engine=create_inference_engine(settings)))
        except KeyboardInterrupt:
            return 0

    if args.command == "transcribe":
        if not args.file.exists():
            print(f"Error: no such file: {args.file}", flush=True)
            return 2
        return asyncio.run(
            run_transcribe(
                settings,
                engine=create_inference_engine(settings),
                path=args.file,
                chunk_bytes=args.chunk_bytes,
            )
        )

    parser.print_help()
    return 2


async def run_server(settings: AppSettings, *, engine: InferenceEngine, ready: asyncio.Event | None = None) -> int:
    worker = create_inference_worker(settings, engine=engine)
    await worker.start()
    gateway = SessionGateway(
        settings=settings,
        session_factory=lambda: create_session(settings, inference=worker),
    )
    try:
        await gateway.serve_forever(ready=ready)
    except asyncio.CancelledError:
        logger.info("[WS] Server stopping")
    finally:
        await worker.close()
    return 0


async def run_transcribe(settings: AppSettings, *, engine: InferenceEngine, path: Path, chunk_bytes: int) -> int:
    worker = create_inference_worker(settings, engine=engine)
    await worker.start()
    try:
        runner = FileTranscriptionRunner(
            session=create_session(settings, inference=worker),
            path=path,
            chunk_bytes=chunk_bytes,
        )
        return await runner.run()
    finally:
        await worker.close()


def _load_settings_or_default(path: Path) -> AppSettings:
    if path.exists():
        return load_settings(path)
    return AppSettings()


if __name__ == "__main__":
    raise SystemExit(main())
