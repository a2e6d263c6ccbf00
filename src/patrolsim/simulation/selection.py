"""Next-waypoint selection policies.

Every policy is a pure function of the waypoint list, the current index and
(for ping-pong) the travel direction.  Absent entries (ids that no longer
resolve) and disabled waypoints are never selected; when nothing is
selectable the policy returns None and the caller aborts its cycle.
"""

from __future__ import annotations

import random
from typing import TYPE_CHECKING, Sequence

if TYPE_CHECKING:
    from .waypoint import Waypoint

SEQUENTIAL = "sequential"
RANDOM = "random"
WEIGHTED = "weighted"
PING_PONG = "ping-pong"
PRIORITY = "priority"
BLINK_PATTERNS = (SEQUENTIAL, RANDOM, WEIGHTED, PING_PONG, PRIORITY)


def _usable(wp: Waypoint | None) -> bool:
    return wp is not None and not wp.disabled


def next_sequential(waypoints: Sequence[Waypoint | None], index: int) -> int | None:
    n = len(waypoints)
    for step in range(1, n + 1):
        candidate = (index + step) % n
        if _usable(waypoints[candidate]):
            return candidate
    return None


def next_random(waypoints: Sequence[Waypoint | None], rng: random.Random) -> int | None:
    usable = [i for i, wp in enumerate(waypoints) if _usable(wp)]
    if not usable:
        return None
    return rng.choice(usable)


def next_weighted(waypoints: Sequence[Waypoint | None], rng: random.Random) -> int | None:
    """Roll r in [0, total) and take the first index whose running weight exceeds r."""
    usable = [(i, wp.weight) for i, wp in enumerate(waypoints) if _usable(wp)]
    if not usable:
        return None
    total = sum(w for _, w in usable)
    if total <= 0:
        return rng.choice([i for i, _ in usable])
    r = rng.random() * total
    running = 0.0
    for i, w in usable:
        running += w
        if running > r:
            return i
    return usable[-1][0]


def step_ping_pong(index: int, direction: int, n: int) -> tuple[int, int]:
    """One bounce step on [0, n-1], flipping direction at either end."""
    index += direction
    if index >= n - 1:
        return n - 1, -1
    if index <= 0:
        return 0, 1
    return index, direction


def next_ping_pong(waypoints: Sequence[Waypoint | None], index: int,
                   direction: int) -> tuple[int, int] | None:
    n = len(waypoints)
    for _ in range(2 * n):
        index, direction = step_ping_pong(index, direction, n)
        if _usable(waypoints[index]):
            return index, direction
    return None


def next_priority(waypoints: Sequence[Waypoint | None]) -> int | None:
    """Highest priority among usable waypoints; the first one wins ties."""
    best: int | None = None
    best_priority = 0
    for i, wp in enumerate(waypoints):
        if not _usable(wp):
            continue
        if best is None or wp.priority > best_priority:
            best, best_priority = i, wp.priority
    return best


def select_next(pattern: str, waypoints: Sequence[Waypoint | None], index: int,
                direction: int, rng: random.Random) -> tuple[int, int] | None:
    """Apply ``pattern``. Returns ``(index, direction)`` or None when nothing is selectable."""
    if not waypoints:
        return None
    if pattern == SEQUENTIAL:
        picked = next_sequential(waypoints, index)
    elif pattern == WEIGHTED:
        picked = next_weighted(waypoints, rng)
    elif pattern == PING_PONG:
        return next_ping_pong(waypoints, index, direction)
    elif pattern == PRIORITY:
        picked = next_priority(waypoints)
    else:
        picked = next_random(waypoints, rng)
    if picked is None:
        return None
    return picked, direction
