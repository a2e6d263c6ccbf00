"""Per-scene volatile state shared by the reinforcement and bleed-out subsystems."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class ReinforcementInstance:
    token_id: str
    source_patrol_id: str
    waypoint_id: str
    spawned_at: float
    lifetime: float
    variant: str = ""

    @property
    def expires_at(self) -> float:
        return self.spawned_at + self.lifetime

    def to_dict(self) -> dict:
        return {
            "tokenId": self.token_id,
            "sourcePatrolId": self.source_patrol_id,
            "waypointId": self.waypoint_id,
            "spawnTime": self.spawned_at,
            "lifetime": self.lifetime,
            "variant": self.variant,
        }


@dataclass
class AssistantInstance:
    token_id: str
    source_patrol_id: str
    waypoint_id: str
    spawned_at: float
    stats: dict = field(default_factory=dict)


@dataclass
class BleedState:
    token_id: str
    token_name: str
    has_disadvantage: bool = False
    saves_made: int = 0
    saves_failed: int = 0

    def to_dict(self) -> dict:
        return {
            "tokenId": self.token_id,
            "tokenName": self.token_name,
            "hasDisadvantage": self.has_disadvantage,
            "savesMade": self.saves_made,
            "savesFailed": self.saves_failed,
        }


@dataclass
class SceneRuntime:
    """Everything the engine tracks per scene that is not persisted."""
    scene_id: str
    last_alert_at: float | None = None
    reinforcements: dict[str, ReinforcementInstance] = field(default_factory=dict)
    assistants: dict[str, AssistantInstance] = field(default_factory=dict)
    bleeding: dict[str, BleedState] = field(default_factory=dict)
    pending_saves: dict[str, dict] = field(default_factory=dict)
    snapshot: list[dict] | None = None

    def clear_volatile(self) -> None:
        self.reinforcements.clear()
        self.assistants.clear()
        self.bleeding.clear()
        self.pending_saves.clear()
