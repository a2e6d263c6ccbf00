"""Detection evaluator — which tokens a guard sees from a waypoint.

Candidates are every token on the scene except the guard itself, filtered by
a DetectionPolicy, then kept when inside the waypoint's range and vision
cone and, optionally, with an unobstructed sight line from the waypoint.

Callers must not depend on the order of the returned list.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable

from patrolsim.host.documents import Disposition, TokenDoc

if TYPE_CHECKING:
    from patrolsim.host.context import HostContext
    from .waypoint import Waypoint


@dataclass
class DetectionPolicy:
    """Which candidates are ignored before the geometric tests."""
    exclude_hidden: bool = True
    exclude_friendly: bool = True
    exclude_npc: bool = False
    require_line_of_sight: bool = False

    def to_dict(self) -> dict:
        return {
            "excludeHidden": self.exclude_hidden,
            "excludeFriendly": self.exclude_friendly,
            "excludeNPC": self.exclude_npc,
            "requireLineOfSight": self.require_line_of_sight,
        }

    @classmethod
    def from_dict(cls, data: dict | None) -> DetectionPolicy:
        data = data or {}
        return cls(
            exclude_hidden=bool(data.get("excludeHidden", True)),
            exclude_friendly=bool(data.get("excludeFriendly", True)),
            exclude_npc=bool(data.get("excludeNPC", False)),
            require_line_of_sight=bool(data.get("requireLineOfSight", False)),
        )


def is_friendly(a: int, b: int) -> bool:
    """Same disposition, or either side neutral."""
    return a == b or a == Disposition.NEUTRAL or b == Disposition.NEUTRAL


def player_owned_check(ctx: HostContext) -> Callable[[TokenDoc], bool]:
    """Predicate: does the token's actor have a non-GM owner?"""
    def check(token: TokenDoc) -> bool:
        if token.actor_id is None:
            return False
        actor = ctx.actors.get(token.actor_id)
        return bool(actor and actor.has_player_owner)
    return check


def has_line_of_sight(ctx: HostContext, scene_id: str,
                      origin: tuple[float, float], target: tuple[float, float]) -> bool:
    return not ctx.geometry.collides(scene_id, origin, target, kind="sight")


def detect_tokens(
    ctx: HostContext,
    waypoint: Waypoint,
    guard: TokenDoc | None = None,
    policy: DetectionPolicy | None = None,
    scene_id: str | None = None,
) -> list[TokenDoc]:
    """Tokens visible from ``waypoint`` under ``policy``."""
    policy = policy or DetectionPolicy()
    scene_id = scene_id or waypoint.scene_id
    grid = ctx.geometry.grid_size(scene_id)
    guard_id = guard.id if guard is not None else None
    guard_disposition = guard.disposition if guard is not None else Disposition.HOSTILE
    owned = player_owned_check(ctx)

    kept: list[TokenDoc] = []
    for token in ctx.tokens.list(scene_id):
        if token.id == guard_id:
            continue
        if policy.exclude_hidden and token.hidden:
            continue
        if policy.exclude_friendly and is_friendly(guard_disposition, token.disposition):
            continue
        if policy.exclude_npc and not owned(token):
            continue
        center = token.center(grid)
        if not waypoint.can_see(center, grid):
            continue
        if policy.require_line_of_sight and not has_line_of_sight(ctx, scene_id, waypoint.center, center):
            continue
        kept.append(token)
    return kept
