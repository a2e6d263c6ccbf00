"""Host-owned documents the engine reads and mutates through services.

These mirror the shape of a VTT's embedded documents closely enough for the
engine to work against any host: scenes own tokens and walls, tokens point at
actors, actors own items.  Actor stat blocks (``Actor.system``) are opaque to
the core and only read through a SystemAdapter.
"""

from __future__ import annotations

import copy
import math
from dataclasses import asdict, dataclass, field
from enum import IntEnum
from typing import Any


class Disposition(IntEnum):
    SECRET = -2
    HOSTILE = -1
    NEUTRAL = 0
    FRIENDLY = 1


@dataclass
class Item:
    """An owned item. ``system`` carries system-specific data (damage parts, price)."""
    id: str
    name: str
    type: str = "loot"
    quantity: int = 1
    equipped: bool = False
    rarity: str = ""
    flags: dict[str, Any] = field(default_factory=dict)
    system: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return copy.deepcopy(asdict(self))

    @classmethod
    def from_dict(cls, data: dict) -> Item:
        return cls(
            id=data.get("id", ""),
            name=data.get("name", ""),
            type=data.get("type", "loot"),
            quantity=int(data.get("quantity", 1)),
            equipped=bool(data.get("equipped", False)),
            rarity=data.get("rarity", ""),
            flags=copy.deepcopy(data.get("flags", {})),
            system=copy.deepcopy(data.get("system", {})),
        )


@dataclass
class Actor:
    """A character sheet. ``owners`` lists the non-GM users with OWNER permission."""
    id: str
    name: str
    system_id: str = "generic"
    type: str = "npc"
    owners: list[str] = field(default_factory=list)
    system: dict[str, Any] = field(default_factory=dict)
    items: list[Item] = field(default_factory=list)
    flags: dict[str, Any] = field(default_factory=dict)

    @property
    def has_player_owner(self) -> bool:
        return bool(self.owners)

    def get_item(self, item_id: str) -> Item | None:
        for item in self.items:
            if item.id == item_id:
                return item
        return None


@dataclass
class TokenDoc:
    """A token placed on a scene. ``x``/``y`` are the top-left corner in pixels."""
    id: str
    name: str
    x: float = 0.0
    y: float = 0.0
    width: float = 1.0          # grid units
    height: float = 1.0         # grid units
    hidden: bool = False
    alpha: float = 1.0
    rotation: float = 0.0
    disposition: int = Disposition.HOSTILE
    actor_id: str | None = None
    texture: str = ""
    tint: str | None = None
    flags: dict[str, Any] = field(default_factory=dict)

    def pixel_size(self, grid_size: float) -> tuple[float, float]:
        return (self.width * grid_size, self.height * grid_size)

    def center(self, grid_size: float) -> tuple[float, float]:
        w, h = self.pixel_size(grid_size)
        return (self.x + w / 2, self.y + h / 2)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["disposition"] = int(self.disposition)
        return copy.deepcopy(data)

    @classmethod
    def from_dict(cls, data: dict) -> TokenDoc:
        known = {f for f in cls.__dataclass_fields__}
        kwargs = {k: copy.deepcopy(v) for k, v in data.items() if k in known}
        return cls(**kwargs)


@dataclass
class Wall:
    """A wall segment. Each kind can be blocked independently."""
    ax: float
    ay: float
    bx: float
    by: float
    blocks_sight: bool = True
    blocks_move: bool = True

    def blocks(self, kind: str) -> bool:
        if kind == "sight":
            return self.blocks_sight
        if kind == "move":
            return self.blocks_move
        return self.blocks_sight or self.blocks_move


@dataclass
class Scene:
    id: str
    name: str
    width: float = 4000.0
    height: float = 3000.0
    grid_size: float = 100.0
    tokens: dict[str, TokenDoc] = field(default_factory=dict)
    walls: list[Wall] = field(default_factory=list)
    flags: dict[str, Any] = field(default_factory=dict)
    background: str = ""


@dataclass
class Combatant:
    token_id: str
    actor_id: str | None = None
    initiative: float | None = None
    defeated: bool = False


@dataclass
class Combat:
    id: str
    scene_id: str
    combatants: list[Combatant] = field(default_factory=list)
    round: int = 0
    turn: int = 0

    @property
    def current(self) -> Combatant | None:
        if not self.combatants:
            return None
        return self.combatants[self.turn % len(self.combatants)]

    def has_token(self, token_id: str) -> bool:
        return any(c.token_id == token_id for c in self.combatants)


@dataclass
class User:
    id: str
    name: str = ""
    is_gm: bool = False
    active: bool = True


def distance(a: tuple[float, float], b: tuple[float, float]) -> float:
    return math.hypot(b[0] - a[0], b[1] - a[1])
