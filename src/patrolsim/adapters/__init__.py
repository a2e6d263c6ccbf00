"""Per-game-system stat access behind one interface, plus the dice parser."""

from .base import SystemAdapter, never_raise
from .dice import parse_average_damage, roll_formula
from .registry import AdapterRegistry

__all__ = [
    "AdapterRegistry",
    "SystemAdapter",
    "never_raise",
    "parse_average_damage",
    "roll_formula",
]
