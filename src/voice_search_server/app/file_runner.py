from __future__ import annotations

import asyncio
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import TextIO

from voice_search_server.core.pipeline.coordinator import TranscriptionSession
from voice_search_server.domain.events import ErrorEvent, FinalEvent, PartialEvent

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class FileTranscriptionRunner:
    """Streams a WebM file through one session, the way a websocket client would."""

    session: TranscriptionSession
    path: Path
    chunk_bytes: int = 16384
    out: TextIO | None = None

    async def run(self) -> int:
        if self.chunk_bytes <= 0:
            raise ValueError("chunk_bytes must be > 0")

        self.session.start()
        reader = asyncio.create_task(self._print_events())
        try:
            with self.path.open("rb") as f:
                while chunk := f.read(self.chunk_bytes):
                    if not await self.session.feed(chunk):
                        break
            await self.session.end()
            return await reader
        finally:
            await self.session.close()
            if not reader.done():
                reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)

    async def _print_events(self) -> int:
        async for event in self.session.events():
            if isinstance(event, PartialEvent):
                print(f"... {event.text}", file=self.out or sys.stdout, flush=True)
            elif isinstance(event, FinalEvent):
                print(event.text, file=self.out or sys.stdout, flush=True)
                return 0
            elif isinstance(event, ErrorEvent):
                print(f"error: {event.kind}: {event.message}", file=sys.stderr, flush=True)
                if event.fatal:
                    return 1
        return 1
