"""Clocks and the single cooperative scheduler that drives every timer.

Patrol phases, detection sampling, telegraph delays, reinforcement lifetimes,
assistant arrivals and blindfold transits are all ``call_later`` timers on one
``Scheduler``.  Nothing sleeps: the host (or a test) calls ``advance(now)``
and every timer due at or before ``now`` fires in (due, insertion) order.
With a ``VirtualClock`` the clock is stepped to each timer's due time before
its callback runs, so callbacks observe the time they were scheduled for.
"""

from __future__ import annotations

import heapq
import itertools
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable

from loguru import logger


class Clock(ABC):
    @abstractmethod
    def now(self) -> float:
        """Seconds on a monotonic scale."""


class SystemClock(Clock):
    def now(self) -> float:
        return time.monotonic()


class VirtualClock(Clock):
    """Manually stepped clock for deterministic tests and headless runs."""

    def __init__(self, start: float = 0.0) -> None:
        self._now = start

    def now(self) -> float:
        return self._now

    def advance_to(self, t: float) -> None:
        if t > self._now:
            self._now = t


@dataclass(order=True)
class TimerHandle:
    due: float
    seq: int
    callback: Callable[..., Any] = field(compare=False)
    args: tuple = field(default=(), compare=False)
    owner: Any = field(default=None, compare=False)
    cancelled: bool = field(default=False, compare=False)

    def cancel(self) -> None:
        self.cancelled = True


class Scheduler:
    """Timer heap with ``advance(now)`` semantics."""

    def __init__(self, clock: Clock) -> None:
        self._clock = clock
        self._heap: list[TimerHandle] = []
        self._seq = itertools.count()

    @property
    def clock(self) -> Clock:
        return self._clock

    def now(self) -> float:
        return self._clock.now()

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any,
                   owner: Any = None) -> TimerHandle:
        handle = TimerHandle(
            due=self._clock.now() + max(0.0, delay),
            seq=next(self._seq),
            callback=callback,
            args=args,
            owner=owner,
        )
        heapq.heappush(self._heap, handle)
        return handle

    def cancel_owner(self, owner: Any) -> int:
        """Cancel every pending timer registered for ``owner``."""
        count = 0
        for handle in self._heap:
            if handle.owner is owner and not handle.cancelled:
                handle.cancel()
                count += 1
        return count

    def pending(self, owner: Any = None) -> int:
        return sum(
            1 for h in self._heap
            if not h.cancelled and (owner is None or h.owner is owner)
        )

    def advance(self, now: float | None = None) -> int:
        """Fire every timer due at or before ``now``. Returns the number fired."""
        target = self._clock.now() if now is None else now
        fired = 0
        while self._heap and self._heap[0].due <= target:
            handle = heapq.heappop(self._heap)
            if handle.cancelled:
                continue
            if isinstance(self._clock, VirtualClock):
                self._clock.advance_to(handle.due)
            try:
                handle.callback(*handle.args)
            except Exception:
                logger.exception(f"Scheduled callback {handle.callback!r} failed")
            fired += 1
        if isinstance(self._clock, VirtualClock):
            self._clock.advance_to(target)
        return fired

    def clear(self) -> None:
        for handle in self._heap:
            handle.cancel()
        self._heap.clear()
