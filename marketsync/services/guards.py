from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Hashable
from contextlib import asynccontextmanager

from marketsync.core.errors import SkippedDuplicate


class KeyedGuard:
    """
    Process-local keyed mutual exclusion: at most one holder per key, others are skipped.

    Overlapping callers are rejected rather than queued. Running several engine
    processes needs this promoted to a shared lock (e.g. the `job_locks` table).
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._in_flight: dict[Hashable, asyncio.Task | None] = {}

    def is_held(self, key: Hashable) -> bool:
        return key in self._in_flight

    @property
    def held_keys(self) -> list[Hashable]:
        return list(self._in_flight)

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        # Check-and-set happens without an await in between, so it is atomic on one event loop.
        if key in self._in_flight:
            raise SkippedDuplicate(f"{self.name}:{key}")
        self._in_flight[key] = asyncio.current_task()
        try:
            yield
        finally:
            self._in_flight.pop(key, None)
