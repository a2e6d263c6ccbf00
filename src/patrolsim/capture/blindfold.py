"""Blindfold-relocate outcome: overlay, covert teleport, reveal.

Timeline for a duration ``T`` drawn uniformly from the configured bounds::

    t=0      emit ``blindfold`` to the owning user
    t=0.3T   move the token to a random safe cell, hidden
    t=T      emit ``unblind``, unhide the token, notify
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from loguru import logger

if TYPE_CHECKING:
    from patrolsim.comms.broadcast import BroadcastLayer
    from patrolsim.host.context import HostContext
    from patrolsim.host.documents import TokenDoc
    from patrolsim.simulation.clock import Scheduler

SAFE_PADDING = 200
SAFE_ATTEMPTS = 100
TELEPORT_FRACTION = 0.3


def random_safe_location(ctx: HostContext, scene_id: str) -> tuple[float, float]:
    """Centre of a random grid cell reachable from the scene centre without crossing a wall."""
    width, height = ctx.geometry.dimensions(scene_id)
    centre = (width / 2, height / 2)
    span_x = max(0.0, width - 2 * SAFE_PADDING)
    span_y = max(0.0, height - 2 * SAFE_PADDING)
    for _ in range(SAFE_ATTEMPTS):
        x = SAFE_PADDING + ctx.rng.random() * span_x
        y = SAFE_PADDING + ctx.rng.random() * span_y
        sx, sy = ctx.geometry.snap_to_cell(scene_id, x, y)
        if sx <= 0 or sy <= 0:
            continue
        if ctx.geometry.collides(scene_id, centre, (sx, sy), "move"):
            continue
        if ctx.geometry.collides(scene_id, (sx - 1, sy), (sx + 1, sy), "move"):
            continue
        return (sx, sy)
    return centre


class Blindfolder:
    """Schedules the blindfold timeline for captured tokens."""

    def __init__(self, ctx: HostContext, scheduler: Scheduler,
                 broadcast: BroadcastLayer | None = None) -> None:
        self.ctx = ctx
        self.scheduler = scheduler
        self.broadcast = broadcast
        self._active: set[str] = set()

    def is_blindfolded(self, token_id: str) -> bool:
        return token_id in self._active

    def draw_duration(self) -> float:
        s = self.ctx.settings
        low, high = sorted((s.blindfold_min_duration, s.blindfold_max_duration))
        return low + self.ctx.rng.random() * (high - low)

    def start(self, scene_id: str, token: TokenDoc, owner_id: str | None,
              duration: float | None = None) -> float:
        """Begin the timeline and return its duration in seconds."""
        duration = self.draw_duration() if duration is None else duration
        self._active.add(token.id)
        if owner_id and self.broadcast is not None:
            self.broadcast.emit("blindfold", {"targetUserId": owner_id, "tokenId": token.id})
        self.scheduler.call_later(duration * TELEPORT_FRACTION, self._teleport, scene_id, token.id,
                                  owner=self)
        self.scheduler.call_later(duration, self._reveal, scene_id, token.id, owner_id, owner=self)
        logger.debug(f"Blindfolded {token.name} for {duration:.1f}s")
        return duration

    def _teleport(self, scene_id: str, token_id: str) -> None:
        token = self.ctx.tokens.get(scene_id, token_id)
        if token is None:
            logger.warning(f"Blindfolded token {token_id} vanished before relocation")
            return
        cx, cy = random_safe_location(self.ctx, scene_id)
        w, h = token.pixel_size(self.ctx.geometry.grid_size(scene_id))
        self.ctx.tokens.update(scene_id, token_id, {"x": cx - w / 2, "y": cy - h / 2, "hidden": True})

    def _reveal(self, scene_id: str, token_id: str, owner_id: str | None) -> None:
        self._active.discard(token_id)
        if owner_id and self.broadcast is not None:
            self.broadcast.emit("unblind", {"targetUserId": owner_id, "tokenId": token_id})
        token = self.ctx.tokens.get(scene_id, token_id)
        if token is None:
            return
        self.ctx.tokens.update(scene_id, token_id, {"hidden": False})
        self.ctx.dialogs.notify(f"{token.name} has been relocated... somewhere.")

    def cancel_all(self) -> int:
        self._active.clear()
        return self.scheduler.cancel_owner(self)
