"""PatrolManager — scene-scoped registry of patrols and waypoints.

The manager owns every Waypoint and Patrol of the current scene (patrols
reference waypoints by id and resolve them through the manager), persists
them, and drives scene transitions:

    canvas ready  -> load_scene_patrols(scene)  (auto-starts persisted active patrols)
    canvas teardown -> save_scene_state(scene); cleanup()

Patrol records live in storage under ``scenePatrolData[sceneId]``; waypoint
records live on the scene itself under the ``waypoints`` flag.  A
``SceneRuntime`` per scene holds the volatile state other subsystems share.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from loguru import logger

from patrolsim.host.documents import Disposition, TokenDoc

from .patrol import ACTIVE, IDLE, PATROL_COLORS, WALK, BLINK, Patrol, PatrolEnv
from .runtime import SceneRuntime
from .waypoint import Waypoint

if TYPE_CHECKING:
    from patrolsim.comms.broadcast import BroadcastLayer
    from patrolsim.comms.event_bus import EventBus
    from patrolsim.host.context import HostContext
    from .clock import Scheduler

PATROL_STORE_KEY = "scenePatrolData"
WAYPOINT_FLAG = "waypoints"
EXPORT_VERSION = "1.0"


def new_id() -> str:
    return uuid.uuid4().hex[:16]


class PatrolManager:
    """Owns patrols and waypoints for the scene currently on the canvas."""

    def __init__(self, ctx: HostContext, scheduler: Scheduler, bus: EventBus,
                 broadcast: BroadcastLayer | None = None) -> None:
        self.ctx = ctx
        self.scheduler = scheduler
        self.bus = bus
        self.broadcast = broadcast
        self._scene_id: str | None = None
        self._patrols: dict[str, Patrol] = {}
        self._waypoints: dict[str, Waypoint] = {}
        self._runtimes: dict[str, SceneRuntime] = {}
        self._color_index = 0
        self._persist_enabled = True
        self._env = PatrolEnv(
            ctx=ctx,
            scheduler=scheduler,
            bus=bus,
            resolve_waypoint=self.get_waypoint,
            broadcast=broadcast,
            save=self._persist_patrol,
        )

    # ------------------------------------------------------------------
    # Scene lifecycle
    # ------------------------------------------------------------------

    @property
    def scene_id(self) -> str | None:
        return self._scene_id

    def runtime(self, scene_id: str | None = None) -> SceneRuntime:
        sid = scene_id or self._scene_id or ""
        if sid not in self._runtimes:
            self._runtimes[sid] = SceneRuntime(scene_id=sid)
        return self._runtimes[sid]

    def load_scene_patrols(self, scene_id: str) -> list[Patrol]:
        """Replace the in-memory registry with ``scene_id``'s persisted patrols."""
        logger.debug(f"Loading patrols for scene {scene_id}")
        self.cleanup(persist=False)
        self._scene_id = scene_id
        self._load_waypoints(scene_id)

        records = self._stored_records(scene_id)
        snapshot = self.runtime(scene_id).snapshot
        if snapshot is not None:
            by_id = {r["id"]: r for r in records}
            by_id.update({r["id"]: r for r in snapshot})
            records = list(by_id.values())
            self.runtime(scene_id).snapshot = None

        for record in records:
            patrol = Patrol.from_dict(record, self._patrol_defaults()).bind(self._env)
            self._patrols[patrol.id] = patrol
            if not patrol.token_id and self.ctx.settings.guard_source == "actors":
                self._spawn_guard_token(patrol)

        logger.info(f"Loaded {len(self._patrols)} patrols for scene {scene_id}")
        if self._is_primary():
            for patrol in self._patrols.values():
                if patrol.state == ACTIVE and not patrol.disabled:
                    patrol.state = IDLE
                    patrol.start()
        self.bus.publish("patrolsLoaded", {"sceneId": scene_id, "count": len(self._patrols)})
        return self.get_patrols()

    def save_scene_state(self, scene_id: str | None = None) -> list[dict]:
        """Snapshot patrols before teardown so returning restores them."""
        sid = scene_id or self._scene_id
        if sid is None or sid != self._scene_id:
            return []
        records = [p.to_dict() for p in self._patrols.values()]
        self.runtime(sid).snapshot = records
        if self.ctx.is_gm():
            self._write_records(sid, records)
            self.save_waypoints()
        logger.debug(f"Saved state of {len(records)} patrols for scene {sid}")
        return records

    def cleanup(self, persist: bool = True) -> None:
        """Stop every patrol and clear the registry.

        With ``persist=False`` the stops are not written back, so persisted
        ``active`` states survive for the next load.
        """
        self._persist_enabled = persist
        try:
            for patrol in list(self._patrols.values()):
                patrol.stop()
        finally:
            self._persist_enabled = True
        for waypoint in self._waypoints.values():
            waypoint.listener = None
        self._patrols.clear()
        self._waypoints.clear()

    def _is_primary(self) -> bool:
        return self.broadcast is None or self.broadcast.is_primary()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _stored_records(self, scene_id: str) -> list[dict]:
        return list(self.ctx.storage.get(PATROL_STORE_KEY, {}).get(scene_id, []))

    def _write_records(self, scene_id: str, records: list[dict]) -> None:
        store = self.ctx.storage.get(PATROL_STORE_KEY, {})
        store[scene_id] = records
        self.ctx.storage.set(PATROL_STORE_KEY, store)

    def _persist_patrol(self, patrol: Patrol) -> None:
        if not self._persist_enabled or not self.ctx.is_gm():
            return
        records = self._stored_records(patrol.scene_id)
        for i, record in enumerate(records):
            if record.get("id") == patrol.id:
                records[i] = patrol.to_dict()
                break
        else:
            records.append(patrol.to_dict())
        self._write_records(patrol.scene_id, records)

    def _forget_patrol(self, patrol: Patrol) -> None:
        records = [r for r in self._stored_records(patrol.scene_id) if r.get("id") != patrol.id]
        self._write_records(patrol.scene_id, records)

    def _load_waypoints(self, scene_id: str) -> None:
        self._waypoints.clear()
        for data in self.ctx.scenes.get_flag(scene_id, WAYPOINT_FLAG, []) or []:
            waypoint = Waypoint.from_dict({**data, "sceneId": scene_id, "occupiedBy": None})
            waypoint.listener = self._on_waypoint_state
            self._waypoints[waypoint.id] = waypoint

    def save_waypoints(self) -> None:
        if self._scene_id is None:
            return
        self.ctx.scenes.set_flag(self._scene_id, WAYPOINT_FLAG,
                                 [w.to_dict() for w in self._waypoints.values()])

    def _on_waypoint_state(self, waypoint: Waypoint, old: str, new: str) -> None:
        self.bus.publish("waypointStateChange", {
            "waypointId": waypoint.id,
            "sceneId": waypoint.scene_id,
            "oldState": old,
            "newState": new,
            "occupiedBy": waypoint.occupied_by,
        })

    # ------------------------------------------------------------------
    # Patrol CRUD
    # ------------------------------------------------------------------

    def _patrol_defaults(self) -> dict:
        s = self.ctx.settings
        return {
            "mode": s.default_patrol_mode,
            "blinkPattern": s.default_blink_pattern,
            "appearDuration": s.default_appear_duration,
            "disappearDuration": s.default_disappear_duration,
            "timingVariance": s.timing_variance,
            "detectEnabled": s.enable_detection,
            "effectType": s.default_effect_type,
            "guardActorId": s.guard_actor_id,
        }

    def next_color(self) -> str:
        color = PATROL_COLORS[self._color_index % len(PATROL_COLORS)]
        self._color_index += 1
        return color

    def create_patrol(self, config: dict[str, Any]) -> Patrol | None:
        """Create, persist and register a patrol on the current scene.

        Returns None when the scene is at ``max_active_patrols``.
        """
        if self._scene_id is None:
            logger.warning("Cannot create patrol: no scene loaded")
            return None
        limit = self.ctx.settings.max_active_patrols
        if len(self._patrols) >= limit:
            logger.warning(f"Maximum patrol limit reached ({limit})")
            self.ctx.dialogs.notify(f"Maximum of {limit} patrols per scene reached", "warning")
            return None
        record = dict(config)
        record["id"] = record.get("id") or new_id()
        record["sceneId"] = self._scene_id
        record.setdefault("color", self.next_color())
        patrol = Patrol.from_dict(record, self._patrol_defaults()).bind(self._env)
        self._patrols[patrol.id] = patrol
        patrol.save()
        logger.info(f"Created patrol {patrol.name}")
        self.bus.publish("patrolCreated", {"patrolId": patrol.id, "sceneId": self._scene_id})
        return patrol

    def get_patrol(self, patrol_id: str) -> Patrol | None:
        return self._patrols.get(patrol_id)

    def get_patrols(self) -> list[Patrol]:
        return list(self._patrols.values())

    def get_active_patrols(self) -> list[Patrol]:
        return [p for p in self._patrols.values() if p.is_active]

    def get_patrols_by_tag(self, tag: str) -> list[Patrol]:
        return [p for p in self._patrols.values() if tag in p.tags]

    def get_patrol_for_token(self, token_id: str) -> Patrol | None:
        for patrol in self._patrols.values():
            if patrol.token_id == token_id:
                return patrol
        return None

    def delete_patrol(self, patrol_id: str) -> bool:
        patrol = self._patrols.pop(patrol_id, None)
        if patrol is None:
            return False
        patrol.stop()
        if self.ctx.is_gm():
            self._forget_patrol(patrol)
        self.bus.publish("patrolDeleted", {"patrolId": patrol_id, "sceneId": patrol.scene_id})
        return True

    def _spawn_guard_token(self, patrol: Patrol) -> None:
        """Give a token-less patrol a guard token built from an NPC actor."""
        if not self._is_primary():
            return
        actor = self.ctx.actors.get(patrol.guard_actor_id) if patrol.guard_actor_id else None
        if actor is None:
            npcs = [a for a in self.ctx.actors.all() if not a.has_player_owner]
            actor = self.ctx.rng.choice(npcs) if npcs else None
        if actor is None:
            return
        first = self.get_waypoint(patrol.waypoint_ids[0]) if patrol.waypoint_ids else None
        grid = self.ctx.geometry.grid_size(patrol.scene_id)
        x, y = (first.x, first.y) if first else (grid, grid)
        token = self.ctx.tokens.create(patrol.scene_id, TokenDoc(
            id="", name=actor.name, x=x - grid / 2, y=y - grid / 2,
            disposition=Disposition.HOSTILE, actor_id=actor.id,
            flags={"isPatrolToken": True, "sourcePatrolId": patrol.id, "guardActorId": actor.id},
        ))
        patrol.token_id = token.id
        patrol.save()
        logger.debug(f"Spawned guard token {token.id} for patrol {patrol.name}")

    # ------------------------------------------------------------------
    # Waypoints
    # ------------------------------------------------------------------

    def create_waypoint(self, config: dict[str, Any]) -> Waypoint | None:
        if self._scene_id is None:
            logger.warning("Cannot create waypoint: no scene loaded")
            return None
        data = {"detectionRange": self.ctx.settings.default_detection_range, **config}
        data["id"] = data.get("id") or new_id()
        data["sceneId"] = self._scene_id
        waypoint = Waypoint.from_dict(data)
        waypoint.listener = self._on_waypoint_state
        self._waypoints[waypoint.id] = waypoint
        self.save_waypoints()
        self.bus.publish("waypointCreated", {"waypointId": waypoint.id, "sceneId": self._scene_id})
        return waypoint

    def get_waypoint(self, waypoint_id: str) -> Waypoint | None:
        return self._waypoints.get(waypoint_id)

    def get_waypoints(self) -> list[Waypoint]:
        return list(self._waypoints.values())

    def get_unassigned_waypoints(self) -> list[Waypoint]:
        assigned = {wid for p in self._patrols.values() for wid in p.waypoint_ids}
        return [w for w in self._waypoints.values() if w.id not in assigned]

    def delete_waypoint(self, waypoint_id: str) -> bool:
        """Remove a waypoint and every patrol reference to it."""
        for patrol in self._patrols.values():
            if patrol.remove_waypoint(waypoint_id):
                patrol.save()
        waypoint = self._waypoints.pop(waypoint_id, None)
        if waypoint is None:
            return False
        waypoint.listener = None
        self.save_waypoints()
        self.bus.publish("waypointDeleted", {"waypointId": waypoint_id, "sceneId": waypoint.scene_id})
        return True

    # ------------------------------------------------------------------
    # Bulk operations
    # ------------------------------------------------------------------

    def start_all(self) -> int:
        return sum(1 for p in self.get_patrols()
                   if not p.is_active and not p.disabled and p.start())

    def stop_all(self) -> int:
        patrols = self.get_patrols()
        for patrol in patrols:
            patrol.stop()
        return len(patrols)

    def pause_all(self) -> int:
        return sum(1 for p in self.get_patrols() if p.is_active and p.pause())

    def resume_all(self) -> int:
        return sum(1 for p in self.get_patrols() if p.is_paused and p.resume())

    def reset_all_alerts(self) -> int:
        patrols = self.get_patrols()
        for patrol in patrols:
            patrol.reset_alert()
        return len(patrols)

    # ------------------------------------------------------------------
    # Host events
    # ------------------------------------------------------------------

    def handle_token_delete(self, scene_id: str, token_id: str) -> Patrol | None:
        if scene_id != self._scene_id:
            return None
        patrol = self.get_patrol_for_token(token_id)
        if patrol is None:
            return None
        logger.warning(f"Token deleted for patrol {patrol.name}")
        patrol.stop()
        patrol.token_id = None
        patrol.save()
        return patrol

    def apply_remote_update(self, payload: dict) -> bool:
        patrol = self.get_patrol(payload.get("patrolId", ""))
        if patrol is None:
            return False
        patrol.sync_from_remote(payload)
        return True

    # ------------------------------------------------------------------
    # Import / export
    # ------------------------------------------------------------------

    def export_patrols(self) -> dict:
        scene = self.ctx.scenes.get(self._scene_id) if self._scene_id else None
        return {
            "version": EXPORT_VERSION,
            "sceneId": self._scene_id,
            "sceneName": scene.name if scene else None,
            "exportDate": datetime.now(timezone.utc).isoformat(),
            "patrols": [p.to_dict() for p in self._patrols.values()],
            "waypoints": [w.to_dict() for w in self._waypoints.values()],
        }

    def import_patrols(self, data: dict, replace: bool = False,
                       import_waypoints: bool = True) -> dict:
        """Import an export blob. Ids are re-allocated; patrols arrive idle and token-less."""
        if replace:
            for patrol_id in list(self._patrols):
                self.delete_patrol(patrol_id)
        id_map: dict[str, str] = {}
        waypoint_count = 0
        if import_waypoints:
            for wp_data in data.get("waypoints", []):
                created = self.create_waypoint({**wp_data, "id": None, "occupiedBy": None,
                                                "state": "inactive"})
                if created is not None:
                    id_map[wp_data["id"]] = created.id
                    waypoint_count += 1

        imported = 0
        for patrol_data in data.get("patrols", []):
            record = dict(patrol_data)
            record.update(
                id=None,
                tokenId=None,
                state=IDLE,
                waypointIds=[id_map.get(wid, wid) for wid in record.get("waypointIds", [])],
            )
            if self.create_patrol(record) is not None:
                imported += 1
        self.ctx.dialogs.notify(f"Imported {imported} patrols and {waypoint_count} waypoints")
        return {"patrols": imported, "waypoints": waypoint_count}

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def get_statistics(self) -> dict:
        patrols = self.get_patrols()
        return {
            "totalPatrols": len(patrols),
            "activePatrols": sum(1 for p in patrols if p.is_active),
            "pausedPatrols": sum(1 for p in patrols if p.is_paused),
            "alertedPatrols": sum(1 for p in patrols if p.alert_level > 0),
            "disabledPatrols": sum(1 for p in patrols if p.disabled),
            "totalWaypoints": len(self._waypoints),
            "unassignedWaypoints": len(self.get_unassigned_waypoints()),
            "blinkPatrols": sum(1 for p in patrols if p.mode == BLINK),
            "walkPatrols": sum(1 for p in patrols if p.mode == WALK),
        }
