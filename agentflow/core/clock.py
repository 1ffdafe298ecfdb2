"""Injectable time sources used by every periodic component."""
from __future__ import annotations

import asyncio
import heapq
from datetime import datetime, timedelta, timezone
from itertools import count
from typing import List, Protocol, Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Clock(Protocol):
    def now(self) -> datetime:
        """Return the current instant as an aware UTC datetime."""

    async def sleep(self, seconds: float) -> None:
        """Suspend the caller for ``seconds`` of this clock's time."""


class SystemClock:
    """Wall clock backed by the running event loop."""

    def now(self) -> datetime:
        return utcnow()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))


class ManualClock:
    """Deterministic clock whose time only moves when :meth:`advance` is awaited.

    Sleepers are woken in deadline order and the clock reads exactly the
    sleeper's deadline when it resumes, so timers observe boundary instants
    the same way they would on a real clock.
    """

    def __init__(self, start: datetime, *, settle_rounds: int = 20) -> None:
        self._now = as_utc(start)
        self._sleepers: List[Tuple[datetime, int, asyncio.Future[None]]] = []
        self._sequence = count()
        self._settle_rounds = settle_rounds

    def now(self) -> datetime:
        return self._now

    async def sleep(self, seconds: float) -> None:
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        deadline = self._now + timedelta(seconds=seconds)
        heapq.heappush(self._sleepers, (deadline, next(self._sequence), future))
        await future

    @property
    def pending_sleepers(self) -> int:
        return sum(1 for _, _, future in self._sleepers if not future.done())

    async def advance(self, seconds: float) -> None:
        """Move time forward, waking every sleeper whose deadline is reached."""
        target = self._now + timedelta(seconds=seconds)
        while self._sleepers and self._sleepers[0][0] <= target:
            deadline, _, future = heapq.heappop(self._sleepers)
            if future.done():
                continue
            self._now = max(self._now, deadline)
            future.set_result(None)
            await self.settle()
        self._now = target
        await self.settle()

    async def advance_to(self, instant: datetime) -> None:
        delta = (as_utc(instant) - self._now).total_seconds()
        if delta > 0:
            await self.advance(delta)

    async def settle(self) -> None:
        """Yield to the loop so woken tasks can run up to their next suspension."""
        for _ in range(self._settle_rounds):
            await asyncio.sleep(0)
