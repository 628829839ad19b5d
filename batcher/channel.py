from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Deque, List, Optional

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())


class MessageChannel:
    """
    Bounded multi-writer / single-reader queue of raw string messages.

    Writers never block: a write to a full channel is refused and returns
    False. The reader can wait for the next write with a timeout, which is how
    the control loop cuts its sleep short.
    """

    def __init__(self, name: str = "channel", capacity: int = 50_000) -> None:
        self.name = name
        self.capacity = max(1, int(capacity))
        self._queue: Deque[str] = deque()
        self._written = asyncio.Event()
        self.dropped = 0

    def __len__(self) -> int:
        return len(self._queue)

    def empty(self) -> bool:
        return not self._queue

    def write(self, message: str) -> bool:
        if len(self._queue) >= self.capacity:
            self.dropped += 1
            if self.dropped == 1 or self.dropped % 1000 == 0:
                logger.warning("[%s] full (capacity=%d); dropped=%d", self.name, self.capacity, self.dropped)
            return False
        self._queue.append(message)
        self._written.set()
        return True

    def read(self) -> Optional[str]:
        if not self._queue:
            return None
        return self._queue.popleft()

    def drain(self) -> List[str]:
        out = list(self._queue)
        self._queue.clear()
        return out

    def clear(self) -> None:
        self._queue.clear()
        self._written.clear()

    async def next_write(self) -> None:
        """Resolve on the first write after this call (or immediately if unread data is waiting)."""
        if self._queue:
            return
        self._written.clear()
        await self._written.wait()

    async def wait(self, timeout_s: float) -> bool:
        """True when a write arrived before the timeout."""
        try:
            await asyncio.wait_for(self.next_write(), timeout=max(0.0, timeout_s))
            return True
        except asyncio.TimeoutError:
            return False


async def wait_any(channels: List[MessageChannel], timeout_s: float) -> bool:
    """Sleep up to `timeout_s`, returning early (True) on a write to any channel."""
    if any(not c.empty() for c in channels):
        return True
    tasks = [asyncio.ensure_future(c.next_write()) for c in channels]
    try:
        done, _ = await asyncio.wait(tasks, timeout=max(0.0, timeout_s), return_when=asyncio.FIRST_COMPLETED)
        return bool(done)
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()


__all__ = ["MessageChannel", "wait_any"]
