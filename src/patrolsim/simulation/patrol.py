"""Patrol — one guard token cycling through a route of waypoints.

Two loops, both driven entirely by Scheduler timers:

  Blink:  appear(W) -> visible(d) -> disappear(W) -> invisible(d') -> appear(next)
  Walk:   moving(distance / walk speed) -> dwell(d) -> moving(next)

``start()`` runs the first appear (or first move) synchronously; every later
phase is a timer owned by the patrol.  ``stop()`` and ``pause()`` cancel those
timers and bump a generation counter, so a continuation that was already
popped for firing re-checks the generation and returns without touching the
host.  Only the primary executor progresses loops; other peers mirror state
from ``patrolUpdate`` messages.

During visible and dwell phases detection is sampled every
``detection_interval`` seconds.  Each newly seen token fires ``on_detection``
once per continuous presence.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable

from loguru import logger

from patrolsim.host.documents import TokenDoc

from .detection import DetectionPolicy, detect_tokens
from .selection import BLINK_PATTERNS, RANDOM, select_next

if TYPE_CHECKING:
    from patrolsim.comms.broadcast import BroadcastLayer
    from patrolsim.comms.event_bus import EventBus
    from patrolsim.host.context import HostContext
    from .clock import Scheduler
    from .waypoint import Waypoint

# Patrol states
IDLE = "idle"
ACTIVE = "active"
PAUSED = "paused"
ALERT = "alert"
RETURNING = "returning"
PATROL_STATES = (IDLE, ACTIVE, PAUSED, ALERT, RETURNING)

# Modes
BLINK = "blink"
WALK = "walk"
HYBRID = "hybrid"
PATROL_MODES = (BLINK, WALK, HYBRID)

# Phases
APPEAR = "appear"
VISIBLE = "visible"
DISAPPEAR = "disappear"
INVISIBLE = "invisible"
MOVING = "moving"
DWELL = "dwell"

DETECTION_ACTIONS = ("notify", "alert", "combat", "macro")
AGGRESSIVENESS = ("conservative", "normal", "aggressive")

PATROL_COLORS = (
    "#FF6B6B", "#4ECDC4", "#45B7D1", "#96CEB4",
    "#FFEAA7", "#DDA0DD", "#98D8C8", "#F7DC6F",
    "#BB8FCE", "#85C1E9", "#F8B500", "#58D68D",
    "#EC7063", "#5DADE2", "#AF7AC5", "#48C9B0",
)

# Probe offsets for the appear position, in grid units, tried in order
SEARCH_OFFSETS = (
    (0, 0), (1, 0), (-1, 0), (0, 1), (0, -1),
    (1, 1), (-1, 1), (1, -1), (-1, -1),
    (2, 0), (-2, 0), (0, 2), (0, -2),
)


@dataclass
class PatrolEnv:
    """What a patrol borrows from its manager. Waypoints are resolved by id."""
    ctx: HostContext
    scheduler: Scheduler
    bus: EventBus
    resolve_waypoint: Callable[[str], "Waypoint | None"]
    broadcast: BroadcastLayer | None = None
    save: Callable[["Patrol"], Any] | None = None


@dataclass
class Patrol:
    id: str
    scene_id: str
    name: str = ""
    token_id: str | None = None
    state: str = IDLE
    mode: str = BLINK
    blink_pattern: str = RANDOM
    waypoint_ids: list[str] = field(default_factory=list)
    current_waypoint_index: int = 0
    appear_duration: float = 3.0
    disappear_duration: float = 2.0
    timing_variance: float = 25.0
    detect_enabled: bool = True
    detection_action: str = "notify"
    detection_macro: str | None = None
    detection_policy: DetectionPolicy = field(default_factory=DetectionPolicy)
    effect_type: str = "fade"
    color: str | None = None
    tags: list[str] = field(default_factory=list)
    notes: str = ""
    disabled: bool = False
    alert_level: int = 0
    aggressiveness: str = "normal"
    automate_combat: bool | None = None
    automate_decisions: bool | None = None
    automate_require_approval: bool | None = None
    bribe_multiplier: float = 1.0
    guard_actor_id: str | None = None
    target_level: int | None = None

    # Runtime, never persisted
    phase: str = field(default=INVISIBLE, compare=False)
    direction: int = field(default=1, compare=False)

    def __post_init__(self) -> None:
        if not self.name:
            self.name = f"Patrol {self.id[:4]}"
        deduped: list[str] = []
        for wid in self.waypoint_ids:
            if wid not in deduped:
                deduped.append(wid)
        self.waypoint_ids = deduped
        self.timing_variance = min(100.0, max(0.0, float(self.timing_variance)))
        self._clamp_index()
        self._env: PatrolEnv | None = None
        self._generation = 0
        self._seen: set[str] = set()
        self._held_waypoint: str | None = None
        self._phase_end = 0.0

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def bind(self, env: PatrolEnv) -> Patrol:
        self._env = env
        return self

    @property
    def env(self) -> PatrolEnv:
        if self._env is None:
            raise RuntimeError(f"Patrol {self.id} is not bound to a manager")
        return self._env

    @property
    def ctx(self) -> HostContext:
        return self.env.ctx

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def is_active(self) -> bool:
        """True while the loop should progress (active, or active and alerted)."""
        return self.state in (ACTIVE, ALERT) and not self.disabled

    @property
    def is_paused(self) -> bool:
        return self.state == PAUSED

    @property
    def is_token_visible(self) -> bool:
        return self.phase in (APPEAR, VISIBLE, MOVING, DWELL)

    @property
    def waypoints(self) -> list[Waypoint]:
        resolved = (self.env.resolve_waypoint(wid) for wid in self.waypoint_ids)
        return [wp for wp in resolved if wp is not None]

    @property
    def current_waypoint(self) -> Waypoint | None:
        if not self.waypoint_ids:
            return None
        self._clamp_index()
        return self.env.resolve_waypoint(self.waypoint_ids[self.current_waypoint_index])

    @property
    def token(self) -> TokenDoc | None:
        if self.token_id is None:
            return None
        return self.ctx.tokens.get(self.scene_id, self.token_id)

    @property
    def held_waypoint_id(self) -> str | None:
        return self._held_waypoint

    @property
    def seen_tokens(self) -> frozenset[str]:
        return frozenset(self._seen)

    def _clamp_index(self) -> None:
        n = len(self.waypoint_ids)
        if n == 0:
            self.current_waypoint_index = 0
        elif not 0 <= self.current_waypoint_index < n:
            self.current_waypoint_index = max(0, min(self.current_waypoint_index, n - 1))

    # ------------------------------------------------------------------
    # Route editing
    # ------------------------------------------------------------------

    def add_waypoint(self, waypoint_id: str) -> bool:
        if waypoint_id in self.waypoint_ids:
            return False
        self.waypoint_ids.append(waypoint_id)
        return True

    def remove_waypoint(self, waypoint_id: str) -> bool:
        if waypoint_id not in self.waypoint_ids:
            return False
        self.waypoint_ids.remove(waypoint_id)
        if self._held_waypoint == waypoint_id:
            self._held_waypoint = None
        self._clamp_index()
        return True

    def reorder_waypoints(self, new_order: list[str]) -> None:
        kept = [wid for wid in new_order if wid in self.waypoint_ids]
        self.waypoint_ids = list(dict.fromkeys(kept))
        self._clamp_index()

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def start(self) -> bool:
        """Begin patrolling. Returns False (with a warning) when preconditions fail."""
        problem = self._start_problem()
        if problem is not None:
            logger.warning(f"Cannot start patrol {self.name}: {problem}")
            if problem != "disabled":
                self.ctx.dialogs.notify(f'Patrol "{self.name}" {problem}!', "warning")
            return False

        logger.info(f"Starting patrol {self.name} ({self.mode}, {len(self.waypoint_ids)} waypoints)")
        self._cancel_timers()
        self.state = ACTIVE
        self.phase = INVISIBLE
        self._seen.clear()
        self.save()
        self._emit("patrolStart", {"patrolId": self.id})
        self._start_loop()
        self._emit_update()
        self.env.bus.publish("patrolStarted", {"patrolId": self.id, "sceneId": self.scene_id})
        return True

    def _start_problem(self) -> str | None:
        if self.disabled:
            return "disabled"
        if not self.waypoint_ids:
            return "has no waypoints"
        if not self.token_id:
            return "has no token"
        if self.token is None:
            return "token not found on scene"
        return None

    def stop(self) -> None:
        was_running = self.state != IDLE
        logger.debug(f"Stopping patrol {self.name}")
        self.state = IDLE
        self._cancel_timers()
        if was_running and self.phase in (INVISIBLE, DISAPPEAR):
            self._show_token()
        self._release_waypoint()
        self._seen.clear()
        self.phase = VISIBLE
        self.save()
        self._emit("patrolStop", {"patrolId": self.id})
        self._emit_update()
        self.env.bus.publish("patrolStopped", {"patrolId": self.id, "sceneId": self.scene_id})

    def pause(self) -> bool:
        if not self.is_active:
            return False
        logger.debug(f"Pausing patrol {self.name}")
        self.state = PAUSED
        self._cancel_timers()
        self._emit("patrolPause", {"patrolId": self.id})
        self._emit_update()
        self.env.bus.publish("patrolPaused", {"patrolId": self.id})
        return True

    def resume(self) -> bool:
        if self.state != PAUSED:
            return False
        logger.debug(f"Resuming patrol {self.name}")
        self.state = ACTIVE
        self._release_waypoint()
        self._seen.clear()
        self._start_loop()
        self._emit("patrolResume", {"patrolId": self.id})
        self._emit_update()
        self.env.bus.publish("patrolResumed", {"patrolId": self.id})
        return True

    def toggle(self) -> None:
        if self.is_active:
            self.pause()
        elif self.is_paused:
            self.resume()
        else:
            self.start()

    def engage_combat(self) -> None:
        """Freeze the loop and leave the guard visible where it stands."""
        logger.debug(f"Patrol {self.name} engaging in combat")
        if self.is_active:
            self.pause()
        self._cancel_timers()
        self._show_token()
        self.phase = VISIBLE
        self._emit_update()
        self.env.bus.publish("patrolEngagedCombat", {"patrolId": self.id})

    # ------------------------------------------------------------------
    # Alert
    # ------------------------------------------------------------------

    def raise_alert(self, level: int | None = None) -> None:
        self.alert_level = self.alert_level + 1 if level is None else max(self.alert_level, level)
        if self.state == ACTIVE:
            self.state = ALERT

    def handle_alert(self, data: dict) -> None:
        """Alert raised on another peer for this patrol."""
        level = int(data.get("alertLevel", self.alert_level + 1))
        self.raise_alert(level)
        self.env.bus.publish("alertReceived", {"patrolId": self.id, **data})

    def reset_alert(self) -> None:
        self.alert_level = 0
        if self.state == ALERT:
            self.state = ACTIVE
        self._emit_update()

    # ------------------------------------------------------------------
    # Loop plumbing
    # ------------------------------------------------------------------

    def _is_primary(self) -> bool:
        broadcast = self.env.broadcast
        return broadcast is None or broadcast.is_primary()

    def _cancel_timers(self) -> None:
        self._generation += 1
        if self._env is not None:
            self.env.scheduler.cancel_owner(self)

    def _later(self, delay: float, fn: Callable[[int], None]) -> None:
        self.env.scheduler.call_later(delay, self._guarded, fn, self._generation, owner=self)

    def _guarded(self, fn: Callable[[int], None], generation: int) -> None:
        if generation != self._generation or not self.is_active:
            return
        try:
            fn(generation)
        except Exception:
            logger.exception(f"Error in patrol {self.name} phase {self.phase}; stopping")
            try:
                self.stop()
            except Exception:
                logger.exception(f"Failed to stop patrol {self.name}")

    def _start_loop(self) -> None:
        if not self._is_primary():
            logger.debug(f"Patrol {self.name}: not primary executor, mirroring only")
            return
        if self.mode == WALK:
            self._guarded(self._walk_move, self._generation)
        else:
            # hybrid runs the blink loop
            self._guarded(self._blink_appear, self._generation)

    def _apply_variance(self, base: float) -> float:
        if self.timing_variance <= 0:
            return max(0.1, base)
        spread = (self.timing_variance / 100.0) * base
        return max(0.1, base + self.ctx.rng.uniform(-1.0, 1.0) * spread)

    def effective_appear_duration(self) -> float:
        return self._apply_variance(self.appear_duration)

    def effective_disappear_duration(self) -> float:
        return self._apply_variance(self.disappear_duration)

    # ------------------------------------------------------------------
    # Blink loop
    # ------------------------------------------------------------------

    def _blink_appear(self, generation: int) -> None:
        waypoint = self.current_waypoint
        if waypoint is None or self.token is None:
            logger.warning(f"Patrol {self.name}: appear aborted, waypoint or token missing")
            return
        self.phase = APPEAR
        if not waypoint.occupy(self.token_id):
            logger.debug(f"Patrol {self.name}: {waypoint.name} held by {waypoint.occupied_by}, skipping")
            self.phase = INVISIBLE
            self._advance_and_wait(self._blink_appear)
            return
        self._held_waypoint = waypoint.id
        self._move_to(waypoint, hidden=True, animate=False)
        self._show_token()
        self._play_effect("playAppearEffect", waypoint)
        self._update_token({"rotation": waypoint.facing_direction})

        self.phase = VISIBLE
        self._emit_update()
        dwell = self.effective_appear_duration()
        self._phase_end = self.env.scheduler.now() + dwell
        self._schedule_detection()
        self._later(dwell, self._blink_disappear)

    def _blink_disappear(self, generation: int) -> None:
        waypoint = self.current_waypoint
        self.phase = DISAPPEAR
        if waypoint is not None:
            self._play_effect("playDisappearEffect", waypoint)
        self._hide_token()
        self._release_waypoint()
        self._seen.clear()
        self.phase = INVISIBLE
        self._advance_and_wait(self._blink_appear)

    def _advance_and_wait(self, then: Callable[[int], None]) -> None:
        if not self.select_next_waypoint():
            logger.warning(f"Patrol {self.name}: no selectable waypoint, loop aborted")
            return
        self._emit_update()
        self._later(self.effective_disappear_duration(), then)

    # ------------------------------------------------------------------
    # Walk loop
    # ------------------------------------------------------------------

    def _walk_move(self, generation: int) -> None:
        waypoint = self.current_waypoint
        token = self.token
        if waypoint is None or token is None:
            logger.warning(f"Patrol {self.name}: walk aborted, waypoint or token missing")
            return
        if token.hidden:
            self._show_token()
        self.phase = MOVING
        grid = self.ctx.geometry.grid_size(self.scene_id)
        cx, cy = token.center(grid)
        travel = math.hypot(waypoint.x - cx, waypoint.y - cy) / max(1.0, self.ctx.settings.walk_speed)
        self._move_to(waypoint, hidden=False, animate=True)
        self._emit_update()
        self._later(travel, self._walk_arrive)

    def _walk_arrive(self, generation: int) -> None:
        waypoint = self.current_waypoint
        if waypoint is None:
            logger.warning(f"Patrol {self.name}: walk target vanished")
            return
        self.phase = DWELL
        if waypoint.occupy(self.token_id):
            self._held_waypoint = waypoint.id
        self._update_token({"rotation": waypoint.facing_direction})
        self._emit_update()
        dwell = self.effective_appear_duration()
        self._phase_end = self.env.scheduler.now() + dwell
        self._schedule_detection()
        self._later(dwell, self._walk_depart)

    def _walk_depart(self, generation: int) -> None:
        self._release_waypoint()
        self._seen.clear()
        if not self.select_next_waypoint():
            logger.warning(f"Patrol {self.name}: no selectable waypoint, loop aborted")
            return
        self._walk_move(generation)

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def select_next_waypoint(self) -> bool:
        """Advance ``current_waypoint_index`` per the blink pattern."""
        resolved = [self.env.resolve_waypoint(wid) for wid in self.waypoint_ids]
        pattern = self.blink_pattern if self.blink_pattern in BLINK_PATTERNS else RANDOM
        picked = select_next(pattern, resolved, self.current_waypoint_index,
                             self.direction, self.ctx.rng)
        if picked is None:
            return False
        self.current_waypoint_index, self.direction = picked
        logger.debug(f"Patrol {self.name}: next waypoint index {self.current_waypoint_index}")
        return True

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    def _schedule_detection(self) -> None:
        interval = self.ctx.settings.detection_interval
        if not self.detect_enabled or interval <= 0:
            return
        if self.env.scheduler.now() + interval < self._phase_end:
            self._later(interval, self._detection_tick)

    def _detection_tick(self, generation: int) -> None:
        if self.phase not in (VISIBLE, DWELL):
            return
        self.run_detection()
        self._schedule_detection()

    def run_detection(self) -> list[TokenDoc]:
        """Sample detection at the current waypoint. Returns the newly seen tokens."""
        waypoint = self.current_waypoint
        if waypoint is None:
            return []
        detected = detect_tokens(self.ctx, waypoint, self.token, self.detection_policy,
                                 scene_id=self.scene_id)
        fresh = [t for t in detected if t.id not in self._seen]
        self._seen = {t.id for t in detected}
        for token in fresh:
            self.on_detection(token, waypoint)
        return fresh

    def on_detection(self, token: TokenDoc, waypoint: Waypoint | None = None) -> None:
        logger.debug(f"Detection: {self.name} spotted {token.name}")
        waypoint = waypoint or self.current_waypoint
        self.alert_level += 1
        ctx = self.ctx

        if self.detection_action == "notify":
            ctx.dialogs.notify(f"{self.name} spotted {token.name}!", "warning")
        elif self.detection_action == "alert":
            self.state = ALERT
            self.env.bus.publish("alert", {
                "patrolId": self.id,
                "sceneId": self.scene_id,
                "waypointId": waypoint.id if waypoint else None,
                "tokenIds": [token.id],
            })
        elif self.detection_action == "combat":
            self._initiate_combat(token)
        elif self.detection_action == "macro":
            self._execute_macro(token, waypoint)

        self._emit("alertTriggered", {
            "patrolId": self.id,
            "patrolName": self.name,
            "tokenId": token.id,
            "tokenName": token.name,
            "alertLevel": self.alert_level,
        })
        self._prompt_player_interaction(token)
        self.env.bus.publish("detection", {
            "patrolId": self.id,
            "sceneId": self.scene_id,
            "tokenId": token.id,
            "tokenName": token.name,
            "waypointId": waypoint.id if waypoint else None,
            "alertLevel": self.alert_level,
        })

    def _prompt_player_interaction(self, token: TokenDoc) -> None:
        if not self.ctx.is_gm() or token.actor_id is None:
            return
        actor = self.ctx.actors.get(token.actor_id)
        if actor is None:
            return
        gm_ids = {u.id for u in self.ctx.transport.users() if u.is_gm}
        for owner_id in actor.owners:
            if owner_id in gm_ids:
                continue
            self._emit("openInteractionWindow", {
                "targetUserId": owner_id,
                "patrolId": self.id,
                "patrolName": self.name,
                "tokenId": token.id,
                "tokenName": token.name,
                "alertLevel": self.alert_level,
            })

    def _initiate_combat(self, token: TokenDoc) -> None:
        combat = self.ctx.combat.active(self.scene_id) or self.ctx.combat.create(self.scene_id)
        ids = [tid for tid in (self.token_id, token.id) if tid]
        self.ctx.combat.add_combatants(combat.id, ids)
        self.ctx.combat.roll_initiative(combat.id)

    def _execute_macro(self, token: TokenDoc, waypoint: Waypoint | None) -> None:
        if not self.detection_macro:
            return
        guard = self.token
        found = self.ctx.dialogs.execute_macro(self.detection_macro, {
            "patrol": self.to_dict(),
            "guardToken": guard.to_dict() if guard else None,
            "detectedToken": token.to_dict(),
            "waypoint": waypoint.to_dict() if waypoint else None,
        })
        if not found:
            logger.warning(f"Detection macro not found: {self.detection_macro}")

    # ------------------------------------------------------------------
    # Token control
    # ------------------------------------------------------------------

    def find_valid_position(self, target_x: float, target_y: float,
                            width: float, height: float) -> tuple[float, float]:
        """Top-left corner for a token centred near (target_x, target_y) clear of walls."""
        grid = self.ctx.geometry.grid_size(self.scene_id)
        for dx, dy in SEARCH_OFFSETS:
            x = target_x + dx * grid
            y = target_y + dy * grid
            try:
                blocked = self.ctx.geometry.collides(
                    self.scene_id, (x - 1, y - 1), (x + 1, y + 1), kind="move")
            except Exception as exc:
                logger.debug(f"Collision probe failed at ({x}, {y}): {exc}")
                blocked = False
            if not blocked:
                return (x - width / 2, y - height / 2)
        return (target_x - width / 2, target_y - height / 2)

    def _move_to(self, waypoint: Waypoint, hidden: bool, animate: bool) -> None:
        token = self.token
        if token is None:
            return
        w, h = token.pixel_size(self.ctx.geometry.grid_size(self.scene_id))
        if animate:
            x, y = waypoint.x - w / 2, waypoint.y - h / 2
        else:
            x, y = self.find_valid_position(waypoint.x, waypoint.y, w, h)
        self.ctx.tokens.update(self.scene_id, self.token_id,
                               {"x": x, "y": y, "hidden": hidden}, animate=animate)

    def _update_token(self, changes: dict) -> None:
        if self.token is not None:
            self.ctx.tokens.update(self.scene_id, self.token_id, changes)

    def _show_token(self) -> None:
        token = self.token
        if token is None:
            return
        self.ctx.tokens.update(self.scene_id, self.token_id, {"hidden": False})
        self._emit("tokenAppear", {"tokenId": token.id, "x": token.x, "y": token.y})

    def _hide_token(self) -> None:
        token = self.token
        if token is None:
            return
        self.ctx.tokens.update(self.scene_id, self.token_id, {"hidden": True})
        self._emit("tokenDisappear", {"tokenId": token.id, "x": token.x, "y": token.y})

    def _release_waypoint(self) -> None:
        if self._held_waypoint is None:
            return
        waypoint = self.env.resolve_waypoint(self._held_waypoint)
        if waypoint is not None:
            waypoint.vacate(self.token_id)
        self._held_waypoint = None

    def _play_effect(self, kind: str, waypoint: Waypoint) -> None:
        payload = {
            "x": waypoint.x,
            "y": waypoint.y,
            "effectType": waypoint.effect_type or self.effect_type,
            "color": waypoint.effective_color(self.color, self.ctx.settings.waypoint_color),
            "tokenId": self.token_id,
        }
        self.env.bus.publish(kind, payload)
        self._emit(kind, payload)

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    def _emit(self, message_type: str, payload: dict) -> None:
        if self.env.broadcast is not None:
            self.env.broadcast.emit(message_type, payload)

    def update_payload(self) -> dict:
        return {
            "patrolId": self.id,
            "state": self.state,
            "currentWaypointIndex": self.current_waypoint_index,
            "alertLevel": self.alert_level,
            "phase": self.phase,
        }

    def _emit_update(self) -> None:
        self._emit("patrolUpdate", self.update_payload())

    def sync_from_remote(self, data: dict) -> None:
        """Mirror a peer's ``patrolUpdate``. Applying the same payload twice is a no-op."""
        if data.get("state") in PATROL_STATES:
            self.state = data["state"]
        if "currentWaypointIndex" in data:
            self.current_waypoint_index = int(data["currentWaypointIndex"])
            self._clamp_index()
        if "alertLevel" in data:
            self.alert_level = int(data["alertLevel"])
        if data.get("phase"):
            self.phase = data["phase"]

    def save(self) -> None:
        if self._env is not None and self._env.save is not None:
            self._env.save(self)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "sceneId": self.scene_id,
            "tokenId": self.token_id,
            "state": self.state,
            "mode": self.mode,
            "blinkPattern": self.blink_pattern,
            "waypointIds": list(self.waypoint_ids),
            "currentWaypointIndex": self.current_waypoint_index,
            "appearDuration": self.appear_duration,
            "disappearDuration": self.disappear_duration,
            "timingVariance": self.timing_variance,
            "detectEnabled": self.detect_enabled,
            "detectionAction": self.detection_action,
            "detectionMacro": self.detection_macro,
            "detectionPolicy": self.detection_policy.to_dict(),
            "effectType": self.effect_type,
            "color": self.color,
            "tags": list(self.tags),
            "notes": self.notes,
            "disabled": self.disabled,
            "alertLevel": self.alert_level,
            "aggressiveness": self.aggressiveness,
            "automateCombat": self.automate_combat,
            "automateDecisions": self.automate_decisions,
            "automateRequireApproval": self.automate_require_approval,
            "bribeMultiplier": self.bribe_multiplier,
            "guardActorId": self.guard_actor_id,
            "targetLevel": self.target_level,
        }

    @classmethod
    def from_dict(cls, data: dict, defaults: dict | None = None) -> Patrol:
        """Build from a persisted record; ``defaults`` fill keys the record lacks."""
        merged = dict(defaults or {})
        merged.update({k: v for k, v in data.items() if v is not None or k in _NULLABLE})
        return cls(
            id=merged["id"],
            scene_id=merged.get("sceneId", ""),
            name=merged.get("name", ""),
            token_id=merged.get("tokenId"),
            state=merged.get("state", IDLE),
            mode=merged.get("mode", BLINK),
            blink_pattern=merged.get("blinkPattern", RANDOM),
            waypoint_ids=list(merged.get("waypointIds", [])),
            current_waypoint_index=int(merged.get("currentWaypointIndex", 0)),
            appear_duration=float(merged.get("appearDuration", 3.0)),
            disappear_duration=float(merged.get("disappearDuration", 2.0)),
            timing_variance=float(merged.get("timingVariance", 25.0)),
            detect_enabled=bool(merged.get("detectEnabled", True)),
            detection_action=merged.get("detectionAction", "notify"),
            detection_macro=merged.get("detectionMacro"),
            detection_policy=DetectionPolicy.from_dict(merged.get("detectionPolicy")),
            effect_type=merged.get("effectType", "fade"),
            color=merged.get("color"),
            tags=list(merged.get("tags", [])),
            notes=merged.get("notes", ""),
            disabled=bool(merged.get("disabled", False)),
            alert_level=int(merged.get("alertLevel", 0)),
            aggressiveness=merged.get("aggressiveness", "normal"),
            automate_combat=merged.get("automateCombat"),
            automate_decisions=merged.get("automateDecisions"),
            automate_require_approval=merged.get("automateRequireApproval"),
            bribe_multiplier=float(merged.get("bribeMultiplier", 1.0)),
            guard_actor_id=merged.get("guardActorId"),
            target_level=merged.get("targetLevel"),
        )


# Keys where an explicit None in a record overrides a default
_NULLABLE = frozenset({
    "tokenId", "detectionMacro", "color", "automateCombat", "automateDecisions",
    "automateRequireApproval", "guardActorId", "targetLevel",
})
