from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field

import janus

from voice_search_server.core.inference.engine import InferenceEngine
from voice_search_server.domain.errors import InferenceFailure, Overloaded
from voice_search_server.domain.models import InferenceResult, MelFeatureWindow

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _InferenceRequest:
    session_id: str
    window: MelFeatureWindow
    is_final: bool
    future: asyncio.Future[InferenceResult]
    loop: asyncio.AbstractEventLoop
    cancelled: bool = False
    dispatched: bool = False


@dataclass(slots=True)
class InferenceWorker:
    """Serialises every session's model calls onto one engine thread.

    Requests wait in a single FIFO queue. Admission fails with `Overloaded`
    once `queue_depth` requests are waiting to be dispatched.
    """

    engine: InferenceEngine
    queue_depth: int = 8

    _queue: janus.Queue[_InferenceRequest | None] | None = field(init=False, default=None, repr=False)
    _thread: threading.Thread | None = field(init=False, default=None, repr=False)
    _lock: threading.Lock = field(init=False, default_factory=threading.Lock, repr=False)
    _pending: list[_InferenceRequest] = field(init=False, default_factory=list, repr=False)
    _closed: bool = field(init=False, default=False)

    def __post_init__(self) -> None:
        if self.queue_depth <= 0:
            raise ValueError("queue_depth must be > 0")

    @property
    def depth(self) -> int:
        with self._lock:
            return len(self._pending)

    @property
    def running(self) -> bool:
        return self._thread is not None and not self._closed

    async def start(self) -> None:
        if self._thread is not None:
            return
        if self._closed:
            raise RuntimeError("worker is closed")
        self._queue = janus.Queue()
        self._thread = threading.Thread(target=self._run, name="inference-worker", daemon=True)
        self._thread.start()
        logger.info(f"[INFER] Worker started (queue_depth={self.queue_depth})")

    async def submit(self, session_id: str, window: MelFeatureWindow, *, is_final: bool) -> InferenceResult:
        if self._queue is None or self._closed:
            raise InferenceFailure("inference worker is not running")

        loop = asyncio.get_running_loop()
        request = _InferenceRequest(
            session_id=session_id,
            window=window,
            is_final=is_final,
            future=loop.create_future(),
            loop=loop,
        )
        with self._lock:
            if len(self._pending) >= self.queue_depth:
                raise Overloaded(f"inference queue is full ({self.queue_depth} requests waiting)")
            self._pending.append(request)
        self._queue.sync_q.put_nowait(request)

        try:
            return await request.future
        except asyncio.CancelledError:
            self._cancel(request)
            raise

    def cancel_session(self, session_id: str) -> int:
        """Drop undispatched requests of a session; returns how many were dropped."""
        with self._lock:
            dropped = [r for r in self._pending if r.session_id == session_id]
            self._pending = [r for r in self._pending if r.session_id != session_id]
            for request in dropped:
                request.cancelled = True
        for request in dropped:
            request.loop.call_soon_threadsafe(_cancel_future, request.future)
        if dropped:
            logger.debug(f"[INFER] Dropped {len(dropped)} queued request(s) for session {session_id}")
        return len(dropped)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True

        with self._lock:
            abandoned, self._pending = self._pending, []
            for request in abandoned:
                request.cancelled = True
        for request in abandoned:
            request.loop.call_soon_threadsafe(_cancel_future, request.future)

        queue = self._queue
        thread = self._thread
        if queue is not None:
            queue.sync_q.put_nowait(None)
        if thread is not None:
            await asyncio.to_thread(thread.join)
        if queue is not None:
            queue.close()
            await queue.wait_closed()

        self.engine.close()
        logger.info("[INFER] Worker closed")

    def _cancel(self, request: _InferenceRequest) -> None:
        with self._lock:
            if request.dispatched or request.cancelled:
                return
            request.cancelled = True
            self._pending.remove(request)

    def _run(self) -> None:
        assert self._queue is not None
        sync_q = self._queue.sync_q
        while True:
            request = sync_q.get()
            if request is None:
                return
            with self._lock:
                if request.cancelled:
                    continue
                request.dispatched = True
                self._pending.remove(request)

            try:
                result = self.engine.infer(request.window, is_final=request.is_final)
            except Exception as exc:
                logger.exception(f"[INFER] Engine failed for session {request.session_id}")
                error = InferenceFailure(f"{type(exc).__name__}: {exc}")
                _resolve(request, error=error)
                continue
            _resolve(request, result=result)


def _resolve(
    request: _InferenceRequest,
    *,
    result: InferenceResult | None = None,
    error: Exception | None = None,
) -> None:
    def _set() -> None:
        if request.future.done():
            return
        if error is not None:
            request.future.set_exception(error)
        else:
            request.future.set_result(result)  # type: ignore[arg-type]

    try:
        request.loop.call_soon_threadsafe(_set)
    except RuntimeError:
        # session loop already shut down; the result has no reader
        pass


def _cancel_future(future: asyncio.Future) -> None:
    if not future.done():
        future.cancel()
