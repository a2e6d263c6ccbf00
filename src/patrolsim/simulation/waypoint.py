"""Waypoint — a positioned checkpoint with detection range and vision cone.

Coordinates are scene pixels with +y pointing down (screen space).  Facing is
measured in degrees clockwise from north, so 0 faces up the screen, 90 faces
right.  A vision angle of 360 is omnidirectional.

State machine:
    inactive|active --occupy(token)--> occupied --vacate()--> active

A waypoint is owned by its scene; patrols hold its id only.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from patrolsim.host.documents import Disposition, TokenDoc

INACTIVE = "inactive"
ACTIVE = "active"
OCCUPIED = "occupied"
WAYPOINT_STATES = (INACTIVE, ACTIVE, OCCUPIED)

DEFAULT_COLOR = "#7B68EE"


def bearing_from_north(origin: tuple[float, float], point: tuple[float, float]) -> float:
    """Screen-space bearing of ``point`` from ``origin``, 0 = north, clockwise."""
    dx = point[0] - origin[0]
    dy = point[1] - origin[1]
    return (math.degrees(math.atan2(dy, dx)) + 90.0) % 360.0


def angle_difference(a: float, b: float) -> float:
    """Shortest absolute arc between two bearings, in [0, 180]."""
    return abs((a - b + 180.0) % 360.0 - 180.0)


@dataclass
class Waypoint:
    id: str
    scene_id: str
    x: float
    y: float
    name: str = ""
    state: str = INACTIVE
    detection_range: float = 5.0       # grid units
    appear_duration: float = 3.0       # seconds
    weight: float = 1.0
    priority: int = 0
    effect_type: str | None = None
    color: str | None = None
    facing_direction: float = 0.0      # degrees, 0 = north
    vision_angle: float = 360.0
    tags: list[str] = field(default_factory=list)
    notes: str = ""
    disabled: bool = False
    occupied_by: str | None = None
    listener: Callable[[Waypoint, str, str], Any] | None = field(
        default=None, repr=False, compare=False,
    )

    def __post_init__(self) -> None:
        if not self.name:
            self.name = f"Waypoint {self.id[:4]}"
        self.detection_range = max(0.0, float(self.detection_range))
        self.weight = max(0.0, float(self.weight))
        self.vision_angle = min(360.0, max(0.0, float(self.vision_angle)))
        if self.occupied_by is not None:
            self.state = OCCUPIED
        elif self.state == OCCUPIED:
            self.state = ACTIVE

    # -- Geometry ------------------------------------------------------------

    @property
    def center(self) -> tuple[float, float]:
        return (self.x, self.y)

    def is_in_range(self, point: tuple[float, float], grid_size: float) -> bool:
        if self.detection_range <= 0:
            return False
        return math.hypot(point[0] - self.x, point[1] - self.y) <= self.detection_range * grid_size

    def is_in_vision_cone(self, point: tuple[float, float]) -> bool:
        if self.vision_angle >= 360.0:
            return True
        if point[0] == self.x and point[1] == self.y:
            return True
        bearing = bearing_from_north(self.center, point)
        return angle_difference(bearing, self.facing_direction % 360.0) <= self.vision_angle / 2.0

    def can_see(self, point: tuple[float, float], grid_size: float) -> bool:
        return self.is_in_range(point, grid_size) and self.is_in_vision_cone(point)

    def tokens_in_range(self, tokens: Iterable[TokenDoc], grid_size: float) -> list[TokenDoc]:
        return [t for t in tokens if self.can_see(t.center(grid_size), grid_size)]

    def detect_player_tokens(self, tokens: Iterable[TokenDoc], grid_size: float,
                             is_player_owned: Callable[[TokenDoc], bool]) -> list[TokenDoc]:
        """Tokens in range that are player-owned or friendly."""
        return [
            t for t in self.tokens_in_range(tokens, grid_size)
            if is_player_owned(t) or t.disposition == Disposition.FRIENDLY
        ]

    def distance_to(self, other: Waypoint) -> float:
        return math.hypot(other.x - self.x, other.y - self.y)

    def grid_distance_to(self, other: Waypoint, grid_size: float) -> float:
        return self.distance_to(other) / grid_size

    # -- State ---------------------------------------------------------------

    def set_state(self, state: str) -> None:
        if state not in WAYPOINT_STATES:
            raise ValueError(f"Unknown waypoint state '{state}'")
        old = self.state
        if old == state:
            return
        self.state = state
        if self.listener is not None:
            self.listener(self, old, state)

    def occupy(self, token_id: str) -> bool:
        """Claim the waypoint for ``token_id``. Refused when disabled or held by another token."""
        if self.disabled:
            return False
        if self.occupied_by is not None and self.occupied_by != token_id:
            return False
        self.occupied_by = token_id
        self.set_state(OCCUPIED)
        return True

    def vacate(self, token_id: str | None = None) -> bool:
        if self.occupied_by is None:
            return False
        if token_id is not None and self.occupied_by != token_id:
            return False
        self.occupied_by = None
        self.set_state(ACTIVE)
        return True

    def enable(self) -> None:
        self.disabled = False

    def disable(self) -> None:
        self.disabled = True

    def effective_color(self, patrol_color: str | None = None,
                        default: str = DEFAULT_COLOR) -> str:
        return self.color or patrol_color or default

    # -- Serialization -------------------------------------------------------

    def clone(self, new_id: str) -> Waypoint:
        data = self.to_dict()
        data.update(id=new_id, name=f"{self.name} (copy)", occupiedBy=None, state=INACTIVE)
        return Waypoint.from_dict(data)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sceneId": self.scene_id,
            "x": self.x,
            "y": self.y,
            "name": self.name,
            "state": self.state,
            "detectionRange": self.detection_range,
            "appearDuration": self.appear_duration,
            "weight": self.weight,
            "priority": self.priority,
            "effectType": self.effect_type,
            "color": self.color,
            "facingDirection": self.facing_direction,
            "visionAngle": self.vision_angle,
            "tags": list(self.tags),
            "notes": self.notes,
            "disabled": self.disabled,
            "occupiedBy": self.occupied_by,
        }

    @classmethod
    def from_dict(cls, data: dict) -> Waypoint:
        return cls(
            id=data["id"],
            scene_id=data.get("sceneId", ""),
            x=float(data.get("x", 0.0)),
            y=float(data.get("y", 0.0)),
            name=data.get("name", ""),
            state=data.get("state", INACTIVE),
            detection_range=data.get("detectionRange", 5.0),
            appear_duration=data.get("appearDuration", 3.0),
            weight=data.get("weight", 1.0),
            priority=int(data.get("priority", 0)),
            effect_type=data.get("effectType"),
            color=data.get("color"),
            facing_direction=float(data.get("facingDirection", 0.0)),
            vision_angle=data.get("visionAngle", 360.0),
            tags=list(data.get("tags", [])),
            notes=data.get("notes", ""),
            disabled=bool(data.get("disabled", False)),
            occupied_by=data.get("occupiedBy"),
        )
