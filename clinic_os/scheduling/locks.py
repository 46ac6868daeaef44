"""Per-key asyncio locks."""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Hashable


class KeyedLocks:
    """Registry of asyncio locks keyed by practitioner or patient id.

    Callers holding disjoint keys never wait on each other. Multiple keys are
    always acquired in sorted order.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, *keys: Hashable) -> AsyncIterator[None]:
        ordered = sorted({str(k) for k in keys})
        for key in ordered:
            self._waiters[key] = self._waiters.get(key, 0) + 1
        acquired: list[str] = []
        try:
            for key in ordered:
                await self._locks.setdefault(key, asyncio.Lock()).acquire()
                acquired.append(key)
            yield
        finally:
            for key in reversed(acquired):
                self._locks[key].release()
            for key in ordered:
                self._waiters[key] -= 1
                if not self._waiters[key]:
                    del self._waiters[key]
                    self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)
