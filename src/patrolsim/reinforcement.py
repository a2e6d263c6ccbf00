"""Alert-triggered reinforcements and encounter assistants.

Reinforcements answer a patrol ``alert``: after a per-scene cooldown check,
1-4 hostile guards appear at other active patrols' waypoints, each preceded
by a telegraph, and despawn after their lifetime.

Assistants answer a capture that turned into combat: with
``assistant_chance`` probability, 1-2 boosted "Elite Backup" guards arrive at
waypoints adjacent to the patrol's current one after 1-2 combat rounds and
join the running combat.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import TYPE_CHECKING

from loguru import logger

from patrolsim.adapters.base import FLAG_SCOPE
from patrolsim.host.documents import Disposition, TokenDoc
from patrolsim.jail import GUARD_TEXTURE
from patrolsim.simulation.runtime import AssistantInstance, ReinforcementInstance

if TYPE_CHECKING:
    from patrolsim.comms.broadcast import BroadcastLayer
    from patrolsim.comms.event_bus import EventBus
    from patrolsim.host.context import HostContext
    from patrolsim.jail import JailSystem
    from patrolsim.journal import UndoLog
    from patrolsim.simulation.clock import Scheduler
    from patrolsim.simulation.manager import PatrolManager
    from patrolsim.simulation.patrol import Patrol
    from patrolsim.simulation.waypoint import Waypoint


@dataclass(frozen=True)
class GuardVariant:
    name: str
    tint: str


GUARD_VARIANTS = (
    GuardVariant("Guard", "#cc0000"),
    GuardVariant("Soldier", "#0066cc"),
    GuardVariant("Watchman", "#009933"),
    GuardVariant("Sentry", "#996600"),
    GuardVariant("Enforcer", "#660066"),
    GuardVariant("Warden", "#cc6600"),
)

MAX_REINFORCEMENTS = 4
MAX_ASSISTANTS = 2
SPAWN_OFFSET = 25
TELEGRAPH_COLOR = "#ff4444"
ASSISTANT_NAME = "Elite Backup"
ASSISTANT_TINT = "#ff6600"
ASSISTANT_TELEGRAPH = 1.5
DEFAULT_TARGET_LEVEL = 5


def boosted_stats(template, target_level: int, multiplier: float) -> dict:
    """Template stats at ``target_level`` scaled by ``multiplier``."""
    if template is None:
        return {
            "hp": round(50 * multiplier),
            "ac": round(14 * multiplier),
            "damage": round(10 * multiplier),
            "level": target_level,
        }
    diff = max(0, target_level - template.base_level)
    return {
        "hp": round((template.base_hp + template.hp_per_level * diff) * multiplier),
        "ac": round((template.base_ac + template.ac_per_level * diff) * multiplier),
        "damage": round((template.base_damage + template.damage_per_level * diff) * multiplier),
        "level": target_level,
    }


class ReinforcementSystem:
    """Spawns and despawns reinforcement and assistant tokens for the GM peer."""

    def __init__(self, ctx: HostContext, scheduler: Scheduler, bus: EventBus,
                 manager: PatrolManager,
                 journal: UndoLog | None = None, jail: JailSystem | None = None,
                 broadcast: BroadcastLayer | None = None) -> None:
        self.ctx = ctx
        self.scheduler = scheduler
        self.bus = bus
        self.manager = manager
        self.journal = journal
        self.jail = jail
        self.broadcast = broadcast

    def _scene_id(self, scene_id: str | None = None) -> str | None:
        return scene_id or self.manager.scene_id

    def _is_primary(self) -> bool:
        if not self.ctx.is_gm():
            return False
        return self.broadcast is None or self.broadcast.is_primary()

    # ------------------------------------------------------------------
    # Cooldown
    # ------------------------------------------------------------------

    def alert_cooldown_remaining(self, scene_id: str | None = None) -> int:
        """Whole seconds until the next alert may spawn reinforcements."""
        sid = self._scene_id(scene_id)
        if sid is None:
            return 0
        last = self.manager.runtime(sid).last_alert_at
        if last is None:
            return 0
        remaining = self.ctx.settings.alert_cooldown - (self.ctx.clock.now() - last)
        return max(0, math.ceil(remaining))

    def reset_alert_cooldown(self, scene_id: str | None = None) -> None:
        sid = self._scene_id(scene_id)
        if sid is None:
            return
        self.manager.runtime(sid).last_alert_at = None
        self.ctx.dialogs.notify("Alert cooldown reset")

    # ------------------------------------------------------------------
    # Alert-triggered reinforcements
    # ------------------------------------------------------------------

    def on_alert(self, data: dict) -> list[str]:
        """Bus listener for ``alert``. Returns the chosen waypoint ids."""
        if not self._is_primary():
            return []
        patrol = self.manager.get_patrol(data.get("patrolId", ""))
        scene_id = data.get("sceneId") or self.manager.scene_id
        if patrol is None or scene_id is None:
            return []
        runtime = self.manager.runtime(scene_id)
        now = self.ctx.clock.now()
        if runtime.last_alert_at is not None and now - runtime.last_alert_at < self.ctx.settings.alert_cooldown:
            logger.debug(f"Reinforcement cooldown active: {self.alert_cooldown_remaining(scene_id)}s remaining")
            return []
        runtime.last_alert_at = now

        exclude = data.get("waypointId")
        if exclude is None and patrol.current_waypoint is not None:
            exclude = patrol.current_waypoint.id
        pool = self.available_waypoints(exclude)
        if not pool:
            logger.debug("No available waypoints for reinforcements")
            return []
        count = self.ctx.rng.randint(1, MAX_REINFORCEMENTS)
        chosen = self.ctx.rng.sample(pool, min(count, len(pool)))
        logger.info(f"Alert by {patrol.name}: {len(chosen)} reinforcements incoming")

        self._send_alert_popup(data.get("tokenIds") or [], scene_id, len(chosen))
        for waypoint in chosen:
            self._telegraph(scene_id, waypoint, self.ctx.settings.telegraph_delay, TELEGRAPH_COLOR)
            self.scheduler.call_later(self.ctx.settings.telegraph_delay, self._spawn_reinforcement,
                                      scene_id, waypoint.id, patrol.id, owner=self)
        return [w.id for w in chosen]

    def available_waypoints(self, exclude_id: str | None = None) -> list[Waypoint]:
        """Waypoints of every active patrol, once each, minus ``exclude_id``."""
        seen: dict[str, Waypoint] = {}
        for patrol in self.manager.get_active_patrols():
            for waypoint in patrol.waypoints:
                if waypoint.id != exclude_id:
                    seen.setdefault(waypoint.id, waypoint)
        return list(seen.values())

    def _send_alert_popup(self, token_ids: list[str], scene_id: str, count: int) -> None:
        pc = None
        for token_id in token_ids:
            token = self.ctx.tokens.get(scene_id, token_id)
            actor = self.ctx.token_actor(token)
            if actor is not None and actor.has_player_owner:
                pc = (token, actor)
                break
        name = pc[0].name if pc else "Unknown"
        self.ctx.dialogs.notify(f"{name} has been spotted! {count} reinforcements are responding!", "warning")
        if pc is None or self.broadcast is None:
            return
        owner = self.ctx.player_owner(pc[1])
        if owner:
            self.broadcast.emit("alertPopup", {
                "userId": owner,
                "data": {"tokenName": name, "reinforcementCount": count},
            })

    def _telegraph(self, scene_id: str, waypoint: Waypoint, duration: float, color: str) -> None:
        payload = {"sceneId": scene_id, "x": waypoint.x, "y": waypoint.y,
                   "duration": duration, "color": color, "type": "warning"}
        self.bus.publish("telegraph", payload)
        if self.broadcast is not None:
            self.broadcast.emit("telegraph", payload)

    def _template_and_level(self, patrol: Patrol | None):
        template = None
        if self.jail is not None:
            template = self.jail.get_guard_template("elite-guard") or self.jail.get_guard_template("default-guard")
        level = (patrol.target_level if patrol is not None else None) or DEFAULT_TARGET_LEVEL
        return template, int(level)

    def _guard_texture(self, patrol: Patrol | None) -> str:
        guard = patrol.token if patrol is not None else None
        return guard.texture if guard is not None and guard.texture else GUARD_TEXTURE

    def _guard_actor_id(self, patrol: Patrol | None) -> str | None:
        if self.ctx.settings.guard_source != "actors":
            return None
        if patrol is not None and patrol.guard_actor_id:
            return patrol.guard_actor_id
        return self.ctx.settings.guard_actor_id

    def _spawn_reinforcement(self, scene_id: str, waypoint_id: str, patrol_id: str) -> TokenDoc | None:
        waypoint = self.manager.get_waypoint(waypoint_id)
        if waypoint is None:
            logger.warning(f"Reinforcement waypoint {waypoint_id} is gone")
            return None
        patrol = self.manager.get_patrol(patrol_id)
        variant = self.ctx.rng.choice(GUARD_VARIANTS)
        template, level = self._template_and_level(patrol)
        stats = template.scaled(level) if template is not None else boosted_stats(None, level, 1.0)
        actor_id = self._guard_actor_id(patrol)
        flags = {"isReinforcement": True, "variant": variant.name,
                 "sourcePatrolId": patrol_id, "scaledStats": stats}
        if actor_id:
            flags["guardActorId"] = actor_id
        token = self.ctx.tokens.create(scene_id, TokenDoc(
            id="",
            name=f"{variant.name} (Reinforcement)",
            x=waypoint.x - SPAWN_OFFSET,
            y=waypoint.y - SPAWN_OFFSET,
            disposition=Disposition.HOSTILE,
            actor_id=actor_id,
            texture=self._guard_texture(patrol),
            tint=variant.tint,
            flags={FLAG_SCOPE: flags},
        ))
        lifetime = self.ctx.settings.reinforcement_lifetime
        self.manager.runtime(scene_id).reinforcements[token.id] = ReinforcementInstance(
            token_id=token.id,
            source_patrol_id=patrol_id,
            waypoint_id=waypoint.id,
            spawned_at=self.ctx.clock.now(),
            lifetime=lifetime,
            variant=variant.name,
        )
        logger.debug(f"Created reinforcement: {variant.name} at ({waypoint.x}, {waypoint.y})")
        if self.journal is not None:
            self.journal.log({
                "type": "reinforcement",
                "message": f"{token.name} arrived at {waypoint.name or waypoint.id}",
                "payload": {"tokenId": token.id, "sceneId": scene_id, "sourcePatrolId": patrol_id},
                "provider": "local",
                "undo": {"actions": [{"action": "removeToken", "sceneId": scene_id, "tokenId": token.id}]},
            })
        self.bus.publish("reinforcementSpawned", {"sceneId": scene_id, "tokenId": token.id,
                                                  "variant": variant.name, "sourcePatrolId": patrol_id})
        self.scheduler.call_later(lifetime, self.despawn, scene_id, token.id, owner=self)
        return token

    def despawn(self, scene_id: str, token_id: str) -> bool:
        runtime = self.manager.runtime(scene_id)
        if runtime.reinforcements.pop(token_id, None) is None:
            return False
        token = self.ctx.tokens.get(scene_id, token_id)
        if token is None:
            return False
        payload = {"tokenId": token_id, "x": token.x, "y": token.y, "effectType": "fade"}
        self.bus.publish("playDisappearEffect", payload)
        if self.broadcast is not None:
            self.broadcast.emit("playDisappearEffect", payload)
        self.ctx.tokens.delete(scene_id, token_id)
        logger.debug(f"Despawned reinforcement: {token_id}")
        return True

    def despawn_all(self, scene_id: str | None = None) -> int:
        sid = self._scene_id(scene_id)
        if sid is None:
            return 0
        return sum(1 for token_id in list(self.manager.runtime(sid).reinforcements)
                   if self.despawn(sid, token_id))

    # ------------------------------------------------------------------
    # Encounter assistants
    # ------------------------------------------------------------------

    def on_capture_start(self, data: dict) -> int:
        """Bus listener for ``captureStart``. Returns the number of assistants scheduled."""
        if not self._is_primary():
            return 0
        patrol = self.manager.get_patrol(data.get("patrolId", ""))
        if patrol is None:
            return 0
        if self.ctx.rng.random() >= self.ctx.settings.assistant_chance:
            logger.debug("No encounter assistants this time")
            return 0
        count = self.ctx.rng.randint(1, MAX_ASSISTANTS)
        return self.schedule_assistants(patrol, count, data.get("combatId"))

    def adjacent_waypoints(self, patrol: Patrol) -> list[Waypoint]:
        ids = patrol.waypoint_ids
        index = patrol.current_waypoint_index
        neighbours = [ids[i] for i in (index - 1, index + 1) if 0 <= i < len(ids)]
        resolved = (self.manager.get_waypoint(wid) for wid in neighbours)
        return [wp for wp in resolved if wp is not None]

    def schedule_assistants(self, patrol: Patrol, count: int, combat_id: str | None = None) -> int:
        adjacent = self.adjacent_waypoints(patrol)
        if not adjacent:
            logger.debug("No adjacent waypoints for assistants")
            return 0
        template, level = self._template_and_level(patrol)
        multiplier = 1 + (0.1 + self.ctx.rng.random() * 0.1)
        stats = boosted_stats(template, level, multiplier)
        round_seconds = self.ctx.settings.combat_round_seconds
        for i in range(count):
            waypoint = adjacent[i % len(adjacent)]
            delay = self.ctx.rng.randint(1, 2) * round_seconds
            self.scheduler.call_later(delay, self._telegraph_assistant, patrol.scene_id, waypoint.id,
                                      patrol.id, stats, combat_id, owner=self)
            logger.debug(f"Scheduling assistant spawn in {delay:.0f}s")
        return count

    def _telegraph_assistant(self, scene_id: str, waypoint_id: str, patrol_id: str,
                             stats: dict, combat_id: str | None) -> None:
        waypoint = self.manager.get_waypoint(waypoint_id)
        if waypoint is None:
            return
        self._telegraph(scene_id, waypoint, ASSISTANT_TELEGRAPH, ASSISTANT_TINT)
        self.scheduler.call_later(ASSISTANT_TELEGRAPH, self._spawn_assistant, scene_id, waypoint_id,
                                  patrol_id, stats, combat_id, owner=self)

    def _spawn_assistant(self, scene_id: str, waypoint_id: str, patrol_id: str,
                         stats: dict, combat_id: str | None) -> TokenDoc | None:
        waypoint = self.manager.get_waypoint(waypoint_id)
        if waypoint is None:
            return None
        patrol = self.manager.get_patrol(patrol_id)
        token = self.ctx.tokens.create(scene_id, TokenDoc(
            id="",
            name=ASSISTANT_NAME,
            x=waypoint.x - SPAWN_OFFSET,
            y=waypoint.y - SPAWN_OFFSET,
            disposition=Disposition.HOSTILE,
            texture=self._guard_texture(patrol),
            tint=ASSISTANT_TINT,
            flags={FLAG_SCOPE: {"isAssistant": True, "scaledStats": dict(stats),
                                "sourcePatrolId": patrol_id}},
        ))
        self.manager.runtime(scene_id).assistants[token.id] = AssistantInstance(
            token_id=token.id,
            source_patrol_id=patrol_id,
            waypoint_id=waypoint_id,
            spawned_at=self.ctx.clock.now(),
            stats=dict(stats),
        )
        combat = (self.ctx.combat.get(combat_id) if combat_id else None) or self.ctx.combat.active(scene_id)
        if combat is not None:
            self.ctx.combat.add_combatants(combat.id, [token.id], initiative=self.ctx.rng.randint(1, 20))
        logger.debug(f"Spawned assistant with stats {stats}")
        self.bus.publish("assistantSpawned", {"sceneId": scene_id, "tokenId": token.id,
                                              "sourcePatrolId": patrol_id,
                                              "combatId": combat.id if combat else None})
        return token

    def cancel_all(self) -> int:
        return self.scheduler.cancel_owner(self)
