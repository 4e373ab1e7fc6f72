from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from websockets.asyncio.server import ServerConnection, serve
from websockets.exceptions import ConnectionClosed

from voice_search_server.config.settings import AppSettings
from voice_search_server.core.pipeline.coordinator import TranscriptionSession
from voice_search_server.domain.events import FinalEvent, SessionEvent, is_terminal

logger = logging.getLogger(__name__)

END_COMMAND = "end"
NORMAL_CLOSURE = 1000
CLOSE_TIMEOUT_S = 5.0


def is_end_message(message: str) -> bool:
    text = message.strip()
    if text == END_COMMAND:
        return True
    try:
        data: Any = json.loads(text)
    except json.JSONDecodeError:
        return False
    return isinstance(data, dict) and data.get("type") == END_COMMAND


def close_code_for(event: SessionEvent) -> int:
    if isinstance(event, FinalEvent):
        return NORMAL_CLOSURE
    return getattr(event, "close_code", 1011)


@dataclass(slots=True)
class SessionGateway:
    """Websocket front end: one connection is one transcription session."""

    settings: AppSettings
    session_factory: Callable[[], TranscriptionSession]

    _sessions: set[TranscriptionSession] = field(init=False, default_factory=set, repr=False)

    @property
    def active_sessions(self) -> int:
        return len(self._sessions)

    async def serve_forever(self, *, ready: asyncio.Event | None = None) -> None:
        host = self.settings.server.host
        port = self.settings.server.port
        async with serve(self.handle, host, port, max_size=self.settings.server.max_message_bytes) as server:
            logger.info(f"[WS] Listening on ws://{host}:{port}")
            if ready is not None:
                ready.set()
            try:
                await server.serve_forever()
            finally:
                await self.close_all()

    async def close_all(self) -> None:
        sessions = list(self._sessions)
        await asyncio.gather(*(s.close() for s in sessions), return_exceptions=True)

    async def handle(self, connection: ServerConnection) -> None:
        session = self.session_factory()
        self._sessions.add(session)
        session.start()
        logger.info(f"[WS] {connection.remote_address} -> session {session.session_id}")

        forward_task = asyncio.create_task(self._forward_events(connection, session))
        ended = False
        try:
            async for message in connection:
                if isinstance(message, bytes):
                    if ended:
                        logger.warning(f"[WS] {session.session_id} audio after end ignored")
                        continue
                    if not await session.feed(message):
                        # session already produced its terminal event
                        continue
                elif is_end_message(message):
                    ended = True
                    await session.end()
                else:
                    logger.warning(f"[WS] {session.session_id} unknown text message ignored: {message[:64]!r}")
        except ConnectionClosed as exc:
            logger.debug(f"[WS] {session.session_id} connection closed: {exc}")
        finally:
            if session.terminal_event is None:
                logger.info(f"[WS] {session.session_id} cancelled by client")
            await session.close()
            # let a close handshake started by the forwarder finish
            await asyncio.wait([forward_task], timeout=CLOSE_TIMEOUT_S)
            forward_task.cancel()
            await asyncio.gather(forward_task, return_exceptions=True)
            self._sessions.discard(session)

    async def _forward_events(self, connection: ServerConnection, session: TranscriptionSession) -> None:
        try:
            async for event in session.events():
                await connection.send(json.dumps(event.to_message(), ensure_ascii=False))
                if is_terminal(event):
                    code = close_code_for(event)
                    await connection.close(code=code, reason=event.type.value)
                    return
        except ConnectionClosed:
            logger.debug(f"[WS] {session.session_id} client gone before events were delivered")
