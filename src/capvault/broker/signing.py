"""Strict FIFO signing lock.

Only one key-touching operation runs at a time. Ownership is handed
directly to the oldest waiter on release, so a task that arrives later can
never overtake one that is already queued.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Deque, Optional

logger = logging.getLogger(__name__)


class SigningLock:
    """FIFO async mutex, used as ``async with lock:``."""

    def __init__(self) -> None:
        self._locked = False
        self._waiters: Deque[asyncio.Future] = deque()
        self.completed = 0

    def locked(self) -> bool:
        return self._locked

    @property
    def queued(self) -> int:
        return sum(1 for waiter in self._waiters if not waiter.done())

    async def acquire(self) -> None:
        if not self._locked and not self._waiters:
            self._locked = True
            return

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # Ownership arrived together with the cancellation.
                self._hand_off()
            else:
                try:
                    self._waiters.remove(waiter)
                except ValueError:
                    pass
            raise

    def release(self) -> None:
        if not self._locked:
            raise RuntimeError("SigningLock released while not held")
        self.completed += 1
        self._hand_off()

    def _hand_off(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
        self._locked = False

    async def __aenter__(self) -> "SigningLock":
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> Optional[bool]:
        self.release()
        return None
