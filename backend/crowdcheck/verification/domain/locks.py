"""Per-identity serialisation of report submissions."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Protocol


class SubmissionLocks(Protocol):
    def hold(self, user_id: str):
        """Async context manager held for the whole accept pipeline of one identity."""
        ...


class InMemorySubmissionLocks(SubmissionLocks):
    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, user_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(user_id, asyncio.Lock())
        self._waiters[user_id] = self._waiters.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[user_id] -= 1
            if self._waiters[user_id] == 0:
                self._waiters.pop(user_id, None)
                self._locks.pop(user_id, None)
