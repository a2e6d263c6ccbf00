"""Dice-formula averaging shared by every adapter and the auto-resolver."""

from __future__ import annotations

import re

_FORMULA = re.compile(r"(\d+)d(\d+)([+-]\d+)?", re.IGNORECASE)


def parse_average_damage(formula: str | None) -> float | None:
    """Average of an ``NdM±K`` formula, e.g. ``"2d6 + 3"`` -> 10.0.

    Whitespace anywhere is ignored. Anything that is not exactly one dice
    term with an optional flat modifier returns None.
    """
    if not isinstance(formula, str):
        return None
    compact = "".join(formula.split())
    match = _FORMULA.fullmatch(compact)
    if match is None:
        return None
    count = int(match.group(1))
    sides = int(match.group(2))
    if count < 1 or sides < 1:
        return None
    modifier = int(match.group(3)) if match.group(3) else 0
    return count * (sides + 1) / 2 + modifier


def roll_formula(formula: str, rng) -> int | None:
    """Roll an ``NdM±K`` formula with the given RNG. None when malformed."""
    if not isinstance(formula, str):
        return None
    match = _FORMULA.fullmatch("".join(formula.split()))
    if match is None:
        return None
    count, sides = int(match.group(1)), int(match.group(2))
    if count < 1 or sides < 1:
        return None
    modifier = int(match.group(3)) if match.group(3) else 0
    return sum(rng.randint(1, sides) for _ in range(count)) + modifier
