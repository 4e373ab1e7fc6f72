from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field
from typing import Generic, TypeVar

T = TypeVar("T")


class ChannelClosed(Exception):
    pass


class _EndOfStream:
    _instance: "_EndOfStream | None" = None

    def __new__(cls) -> "_EndOfStream":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "END_OF_STREAM"


END_OF_STREAM = _EndOfStream()


@dataclass(slots=True)
class Channel(Generic[T]):
    """Bounded queue between two pipeline stages.

    `send` waits while the channel is full and `recv` waits while it is empty.
    After `close()` both raise `ChannelClosed`, except that the receiver first
    gets every item that was already queued.
    """

    capacity: int = 8
    name: str = "channel"

    _items: deque = field(init=False, default_factory=deque, repr=False)
    _cond: asyncio.Condition = field(init=False, default_factory=asyncio.Condition, repr=False)
    _closed: bool = field(init=False, default=False)
    _wake_task: asyncio.Task | None = field(init=False, default=None, repr=False)

    def __post_init__(self) -> None:
        if self.capacity <= 0:
            raise ValueError("capacity must be > 0")

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return len(self._items)

    async def send(self, item: T) -> None:
        async with self._cond:
            while not self._closed and len(self._items) >= self.capacity:
                await self._cond.wait()
            if self._closed:
                raise ChannelClosed(f"{self.name} is closed")
            self._items.append(item)
            self._cond.notify_all()

    async def recv(self) -> T:
        async with self._cond:
            while not self._items and not self._closed:
                await self._cond.wait()
            if not self._items:
                raise ChannelClosed(f"{self.name} is closed")
            item = self._items.popleft()
            self._cond.notify_all()
            return item

    def close(self) -> bool:
        """Close the channel; returns False when it was already closed."""
        if self._closed:
            return False
        self._closed = True
        self._wake_task = asyncio.ensure_future(self._wake())
        return True

    async def _wake(self) -> None:
        async with self._cond:
            self._cond.notify_all()
