"""Jail subsystem — bundled jail templates, lazy scene creation, prisoner registry.

Jail scenes are materialised on demand from a code-resident template table.
A materialised scene is stamped with the ``jailConfigKey``, ``cellLocations``
and ``jailSpawnPoint`` flags so later rolls find it again.  The first prisoner
sent to a jail prepares it once: placeholder tokens are removed and guard
tokens, scaled to the prisoner's level, are spawned at the guard anchors.

Prisoner records are persisted in storage under ``prisoners``; at most one
unreleased record exists per actor.
"""

from __future__ import annotations

import copy
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from loguru import logger

from patrolsim.host.documents import Disposition, Scene, TokenDoc
from patrolsim.simulation.waypoint import ACTIVE, Waypoint

if TYPE_CHECKING:
    from patrolsim.comms.broadcast import BroadcastLayer
    from patrolsim.comms.event_bus import EventBus
    from patrolsim.host.context import HostContext

PRISONERS_KEY = "prisoners"
JAIL_SCENES_KEY = "jailScenes"
GUARD_TEXTURE = "icons/svg/mystery-man.svg"
GUARD_TINT = "#cc0000"


@dataclass(frozen=True)
class GuardTemplate:
    """Linear stat scaling: ``stat = base + perLevel * max(0, target - baseLevel)``."""
    name: str
    base_level: int
    base_hp: float
    hp_per_level: float
    base_ac: float
    ac_per_level: float
    base_damage: float
    damage_per_level: float

    def scaled(self, target_level: int) -> dict:
        diff = max(0, target_level - self.base_level)
        return {
            "hp": round(self.base_hp + self.hp_per_level * diff),
            "ac": round(self.base_ac + self.ac_per_level * diff),
            "damage": round(self.base_damage + self.damage_per_level * diff),
            "level": target_level,
        }


DEFAULT_GUARD_TEMPLATES = {
    "default-guard": GuardTemplate("Default Guard", 1, 30, 6, 12, 0.5, 6, 1),
    "elite-guard": GuardTemplate("Elite Guard", 3, 45, 8, 14, 0.5, 8, 1.5),
}


@dataclass(frozen=True)
class JailTemplate:
    """A bundled jail map and its anchors (scene pixels)."""
    id: str
    name: str
    description: str
    map_path: str
    width: float
    height: float
    grid_size: float
    spawn_point: tuple[float, float]
    group_spawn_point: tuple[float, float]
    cell_locations: tuple[tuple[float, float], ...]
    guard_spawns: tuple[tuple[float, float, str], ...]
    inmate_spawns: tuple[tuple[float, float, str], ...]
    patrol_routes: tuple[tuple[str, tuple[tuple[float, float], ...]], ...] = ()
    placeholder_names: tuple[str, ...] = field(default=())


JAIL_TEMPLATES: dict[str, JailTemplate] = {
    "jail_1": JailTemplate(
        id="jail_1",
        name="Jail 1",
        description="Castle dungeon prison with multiple cells",
        map_path="assets/maps/jails/jail-1.jpg",
        width=1000,
        height=1000,
        grid_size=100,
        spawn_point=(146, 224),
        group_spawn_point=(755, 24),
        cell_locations=((146, 224), (65, 361), (273, 629), (600, 907)),
        guard_spawns=(
            (198, 661, "Patrol 1"),
            (98, 752, "Patrol 2"),
            (752, 855, "Patrol 3"),
            (477, 489, "Patrol 4"),
        ),
        inmate_spawns=(
            (65, 361, "In-mate 1"),
            (273, 629, "In-mate 2"),
            (600, 907, "In-mate 3"),
        ),
        patrol_routes=(
            ("Route 1 - Main Hall", ((198, 661), (300, 661), (300, 500), (198, 500))),
            ("Route 2 - Cell Block A", ((98, 752), (98, 400), (200, 400), (200, 752))),
            ("Route 3 - Cell Block B", ((752, 855), (600, 855), (600, 700), (752, 700))),
            ("Route 4 - Central", ((477, 489), (550, 489), (550, 600), (477, 600))),
        ),
        placeholder_names=(
            "captured", "Patrol 1", "Patrol 2", "Patrol 3", "Patrol 4",
            "In-mate 1", "In-mate 2", "In-mate 3",
        ),
    ),
}


def _point(p) -> dict:
    return {"x": p[0], "y": p[1]}


class JailSystem:
    """Owns jail scenes and the prisoner registry."""

    def __init__(self, ctx: HostContext, bus: EventBus | None = None,
                 broadcast: BroadcastLayer | None = None,
                 templates: dict[str, JailTemplate] | None = None) -> None:
        self.ctx = ctx
        self.bus = bus
        self.broadcast = broadcast
        self.templates = dict(templates or JAIL_TEMPLATES)
        self._guard_templates: dict[str, GuardTemplate] = dict(DEFAULT_GUARD_TEMPLATES)

    # ------------------------------------------------------------------
    # Guard templates
    # ------------------------------------------------------------------

    def register_guard_template(self, key: str, template: GuardTemplate) -> None:
        self._guard_templates[key] = template

    def get_guard_template(self, key: str) -> GuardTemplate | None:
        return self._guard_templates.get(key)

    def guard_template_keys(self) -> list[str]:
        return list(self._guard_templates)

    # ------------------------------------------------------------------
    # Jail scenes
    # ------------------------------------------------------------------

    def jail_scene_ids(self) -> list[str]:
        return list(self.ctx.storage.get(JAIL_SCENES_KEY, []))

    def is_jail_scene(self, scene_id: str) -> bool:
        return scene_id in self.jail_scene_ids()

    def _track(self, scene_id: str) -> None:
        ids = self.jail_scene_ids()
        if scene_id not in ids:
            ids.append(scene_id)
            self.ctx.storage.set(JAIL_SCENES_KEY, ids)

    def find_jail_scene(self, key: str) -> Scene | None:
        return self.ctx.scenes.find_by_flag("jailConfigKey", key)

    def roll_random_jail(self) -> Scene | None:
        """Uniform draw over template ids; reuse the scene if one exists."""
        if not self.templates:
            return None
        key = self.ctx.rng.choice(sorted(self.templates))
        logger.debug(f"Rolled jail type: {key}")
        existing = self.find_jail_scene(key)
        if existing is not None:
            self._track(existing.id)
            return existing
        return self.create_jail_scene(key)

    def create_jail_scene(self, key: str) -> Scene | None:
        template = self.templates.get(key)
        if template is None:
            logger.warning(f"Unknown jail type: {key}")
            return None
        existing = self.find_jail_scene(key)
        if existing is not None:
            return existing
        scene = Scene(
            id=f"jail-{uuid.uuid4().hex[:12]}",
            name=f"[JAIL] {template.name}",
            width=template.width,
            height=template.height,
            grid_size=template.grid_size,
            background=template.map_path,
            flags={
                "isJail": True,
                "jailConfigKey": key,
                "jailSpawnPoint": _point(template.spawn_point),
                "cellLocations": [_point(c) for c in template.cell_locations],
                "description": template.description,
            },
        )
        try:
            scene = self.ctx.scenes.create(scene)
        except Exception:
            logger.exception(f"Failed to create jail scene {key}")
            return None
        self._place_placeholders(scene, template)
        waypoints = [w.to_dict() for w in self._default_waypoints(scene.id, template)]
        self.ctx.scenes.set_flag(scene.id, "waypoints", waypoints)
        self._track(scene.id)
        logger.info(f"Created jail scene {scene.name} ({scene.id})")
        return scene

    def _place_placeholders(self, scene: Scene, template: JailTemplate) -> None:
        anchors = [(*template.spawn_point, "captured"), *template.guard_spawns, *template.inmate_spawns]
        for x, y, name in anchors:
            if name not in template.placeholder_names:
                continue
            self.ctx.tokens.create(scene.id, TokenDoc(
                id="", name=name, x=x, y=y, disposition=Disposition.NEUTRAL,
                flags={"isPlaceholder": True},
            ))

    def _default_waypoints(self, scene_id: str, template: JailTemplate) -> list[Waypoint]:
        settings = self.ctx.settings
        waypoints: list[Waypoint] = []

        def add(x, y, name, tags, priority=0):
            waypoints.append(Waypoint(
                id=uuid.uuid4().hex[:16], scene_id=scene_id, x=x, y=y, name=name,
                state=ACTIVE, detection_range=settings.default_detection_range,
                appear_duration=settings.default_appear_duration,
                priority=priority, tags=list(tags),
            ))

        for i, (x, y, name) in enumerate(template.guard_spawns):
            add(x, y, name or f"Guard Spawn {i + 1}", ["guard-spawn"])
        for i, (x, y, name) in enumerate(template.inmate_spawns):
            add(x, y, name or f"Inmate Spawn {i + 1}", ["inmate-spawn"])
        for route_name, points in template.patrol_routes:
            for i, (x, y) in enumerate(points):
                add(x, y, f"{route_name} {i + 1}", ["patrol-route"], priority=i)
        return waypoints

    def jail_spawn_point(self, scene_id: str) -> dict:
        scene = self.ctx.scenes.get(scene_id)
        if scene is None:
            return {"x": 500, "y": 500}
        return scene.flags.get("jailSpawnPoint") or {"x": scene.width / 2, "y": scene.height / 2}

    def get_group_spawn_point(self, scene_id: str) -> dict | None:
        key = self.ctx.scenes.get_flag(scene_id, "jailConfigKey")
        template = self.templates.get(key) if key else None
        return _point(template.group_spawn_point) if template else None

    def next_available_cell(self, jail_scene_id: str) -> dict:
        """First cell anchor not held by an unreleased prisoner, else the spawn anchor."""
        cells = self.ctx.scenes.get_flag(jail_scene_id, "cellLocations", []) or []
        taken = {
            (p["cellLocation"]["x"], p["cellLocation"]["y"])
            for p in self.get_prisoners_in_jail(jail_scene_id)
            if p.get("cellLocation")
        }
        for cell in cells:
            if (cell["x"], cell["y"]) not in taken:
                return dict(cell)
        return dict(self.jail_spawn_point(jail_scene_id))

    # ------------------------------------------------------------------
    # Preparation
    # ------------------------------------------------------------------

    def prepare_jail_scene(self, scene: Scene, template_key: str | None = None,
                            scale_info: dict | None = None) -> None:
        """One-shot per scene: remove placeholders and spawn scaled guards."""
        if scene.flags.get("jailPrepared"):
            return
        key = scene.flags.get("jailConfigKey")
        template = self.templates.get(key)
        if template is None:
            return
        for token in self.ctx.tokens.list(scene.id):
            if token.name in template.placeholder_names:
                self.ctx.tokens.delete(scene.id, token.id)
        self._spawn_scaled_guards(scene.id, template, template_key, scale_info or {})
        self.ctx.scenes.set_flag(scene.id, "jailPrepared", True)
        logger.debug(f"Jail scene {scene.name} prepared")

    def _spawn_scaled_guards(self, scene_id: str, template: JailTemplate,
                             template_key: str | None, scale_info: dict) -> None:
        key = template_key if template_key in self._guard_templates else "default-guard"
        guard = self._guard_templates.get(key)
        if guard is None:
            return
        level = int(scale_info.get("partyLevel") or scale_info.get("playerLevel") or 1)
        stats = guard.scaled(level)
        for x, y, name in template.guard_spawns:
            self.ctx.tokens.create(scene_id, TokenDoc(
                id="", name=name or "Guard", x=x, y=y,
                texture=GUARD_TEXTURE, tint=GUARD_TINT,
                disposition=Disposition.HOSTILE,
                flags={"isJailGuard": True, "scaledStats": stats,
                       "templateKey": key, "targetLevel": level},
            ))
        logger.debug(f"Spawned {len(template.guard_spawns)} guards at level ~{level}")

    def reset_jail_scene(self, scene_id: str, reprepare: bool = False,
                         scale_info: dict | None = None) -> bool:
        scene = self.ctx.scenes.get(scene_id)
        if scene is None or not scene.flags.get("jailConfigKey"):
            logger.warning(f"Not a configured jail scene: {scene_id}")
            return False
        for token in self.ctx.tokens.list(scene_id):
            if token.flags.get("isJailGuard"):
                self.ctx.tokens.delete(scene_id, token.id)
        self.ctx.scenes.unset_flag(scene_id, "jailPrepared")
        if reprepare:
            self.prepare_jail_scene(scene, scale_info=scale_info)
        return True

    # ------------------------------------------------------------------
    # Prisoners
    # ------------------------------------------------------------------

    def _records(self) -> dict[str, dict]:
        return {p["actorId"]: p for p in self.ctx.storage.get(PRISONERS_KEY, [])}

    def _save_records(self, records: dict[str, dict]) -> None:
        self.ctx.storage.set(PRISONERS_KEY, list(records.values()))

    def get_prisoners(self) -> list[dict]:
        return [p for p in self._records().values() if not p.get("released")]

    def get_prisoners_in_jail(self, jail_scene_id: str) -> list[dict]:
        return [p for p in self.get_prisoners() if p.get("jailSceneId") == jail_scene_id]

    def is_prisoner(self, actor_id: str) -> bool:
        record = self._records().get(actor_id)
        return bool(record and not record.get("released"))

    def get_prisoner_info(self, actor_id: str) -> dict | None:
        return self._records().get(actor_id)

    def _pull(self, actor_id: str | None, scene_id: str) -> None:
        owner = self.ctx.player_owner(self.ctx.actors.get(actor_id) if actor_id else None)
        if owner and self.broadcast is not None:
            self.broadcast.emit("pullToScene", {"userId": owner, "sceneId": scene_id})

    def send_to_jail(self, scene_id: str, token_id: str, captured_by: str = "Unknown",
                     jail_scene_id: str | None = None, scale_info: dict | None = None,
                     guard_template_key: str | None = None) -> dict | None:
        """Move a token into a jail cell and record the prisoner.

        Returns the prisoner record, or None when nothing was moved.
        """
        token = self.ctx.tokens.get(scene_id, token_id)
        if token is None or token.actor_id is None:
            logger.warning(f"Cannot jail token {token_id}: missing token or actor")
            return None
        if self.is_prisoner(token.actor_id):
            logger.warning(f"{token.name} is already a prisoner")
            return None
        jail = self.ctx.scenes.get(jail_scene_id) if jail_scene_id else self.roll_random_jail()
        if jail is None:
            logger.warning("No jail scene available")
            return None

        self.prepare_jail_scene(jail, guard_template_key, scale_info)
        cell = self.next_available_cell(jail.id)
        origin = {"x": token.x, "y": token.y}
        doc = token.to_dict()
        doc.update({"x": cell["x"], "y": cell["y"], "hidden": False})

        self.ctx.tokens.delete(scene_id, token_id)
        try:
            jailed = self.ctx.tokens.create(jail.id, TokenDoc.from_dict(doc))
        except Exception:
            logger.exception(f"Failed to create {token.name} in {jail.name}, restoring")
            self.ctx.tokens.create(scene_id, token)
            return None

        record = {
            "actorId": token.actor_id,
            "actorName": token.name,
            "tokenId": jailed.id,
            "jailSceneId": jail.id,
            "jailName": jail.name,
            "jailConfigKey": jail.flags.get("jailConfigKey"),
            "originalSceneId": scene_id,
            "originalPosition": origin,
            "cellLocation": cell,
            "groupSpawnPoint": self.get_group_spawn_point(jail.id),
            "capturedAt": self.ctx.clock.now(),
            "capturedBy": captured_by,
            "scaleInfo": scale_info,
            "released": False,
        }
        records = self._records()
        records[token.actor_id] = record
        self._save_records(records)

        logger.info(f"{token.name} sent to {jail.name}")
        self.ctx.dialogs.notify(f"{token.name} has been sent to {jail.name}!", "info")
        if self.bus is not None:
            self.bus.publish("prisonerAdded", copy.deepcopy(record))
        self._pull(token.actor_id, jail.id)
        return copy.deepcopy(record)

    def release_prisoner(self, actor_id: str, return_to_origin: bool = False,
                         clear_record: bool = False) -> bool:
        records = self._records()
        record = records.get(actor_id)
        if record is None or record.get("released"):
            return False
        record["released"] = True
        record["releasedAt"] = self.ctx.clock.now()
        if return_to_origin:
            self._return_prisoner(record)
        if clear_record:
            records.pop(actor_id)
        self._save_records(records)
        logger.info(f"{record.get('actorName')} released")
        self.ctx.dialogs.notify(f"{record.get('actorName')} has been released!", "info")
        if self.bus is not None:
            self.bus.publish("prisonerReleased", copy.deepcopy(record))
        return True

    def _jail_token(self, record: dict) -> TokenDoc | None:
        jail_id = record.get("jailSceneId", "")
        token = self.ctx.tokens.get(jail_id, record.get("tokenId", ""))
        if token is not None:
            return token
        for candidate in self.ctx.tokens.list(jail_id):
            if candidate.actor_id == record.get("actorId"):
                return candidate
        return None

    def _return_prisoner(self, record: dict) -> None:
        origin_id = record.get("originalSceneId")
        if not origin_id or self.ctx.scenes.get(origin_id) is None:
            return
        token = self._jail_token(record)
        if token is None:
            return
        doc = token.to_dict()
        doc.update(record.get("originalPosition") or {})
        self.ctx.tokens.delete(record["jailSceneId"], token.id)
        self.ctx.tokens.create(origin_id, TokenDoc.from_dict(doc))
        self._pull(record.get("actorId"), origin_id)

    def reimprison(self, record: dict) -> bool:
        """Restore a released prisoner from its record, moving the token back to its cell."""
        actor_id = record.get("actorId")
        if not actor_id or self.is_prisoner(actor_id):
            return False
        jail_id = record.get("jailSceneId", "")
        if self.ctx.scenes.get(jail_id) is None:
            return False
        origin_id = record.get("originalSceneId", "")
        token = self.ctx.tokens.get(origin_id, record.get("tokenId", "")) if origin_id else None
        if token is not None and self._jail_token(record) is None:
            doc = token.to_dict()
            doc.update(record.get("cellLocation") or {})
            self.ctx.tokens.delete(origin_id, token.id)
            self.ctx.tokens.create(jail_id, TokenDoc.from_dict(doc))
        restored = copy.deepcopy(record)
        restored["released"] = False
        restored.pop("releasedAt", None)
        records = self._records()
        records[actor_id] = restored
        self._save_records(records)
        if self.bus is not None:
            self.bus.publish("prisonerAdded", copy.deepcopy(restored))
        return True

    def release_all_prisoners(self) -> int:
        count = 0
        for prisoner in self.get_prisoners():
            if self.release_prisoner(prisoner["actorId"], return_to_origin=True, clear_record=True):
                count += 1
        return count
