"""In-memory host — a complete, dependency-free implementation of every service.

Used by the test suite, the headless demo, and as a reference for hosts
embedding the engine.  Every mutating call on the token service is recorded in
``InMemoryTokenService.calls`` so callers can assert exactly which writes a
patrol issued.
"""

from __future__ import annotations

import copy
import itertools
import random
import uuid
from typing import Any, Callable

from loguru import logger

from patrolsim.config import PatrolSettings
from patrolsim.simulation.clock import VirtualClock

from .context import HostContext
from .documents import Actor, Combat, Combatant, Item, Scene, TokenDoc, User, Wall
from .services import (
    ActorService,
    CombatService,
    DialogService,
    GeometryService,
    SceneService,
    StorageService,
    TokenService,
    Transport,
)


def _orientation(p, q, r) -> int:
    val = (q[1] - p[1]) * (r[0] - q[0]) - (q[0] - p[0]) * (r[1] - q[1])
    if abs(val) < 1e-9:
        return 0
    return 1 if val > 0 else 2


def _on_segment(p, q, r) -> bool:
    return (min(p[0], r[0]) - 1e-9 <= q[0] <= max(p[0], r[0]) + 1e-9
            and min(p[1], r[1]) - 1e-9 <= q[1] <= max(p[1], r[1]) + 1e-9)


def segments_intersect(p1, p2, q1, q2) -> bool:
    """Standard orientation test, touching endpoints count as intersecting."""
    o1 = _orientation(p1, p2, q1)
    o2 = _orientation(p1, p2, q2)
    o3 = _orientation(q1, q2, p1)
    o4 = _orientation(q1, q2, p2)
    if o1 != o2 and o3 != o4:
        return True
    if o1 == 0 and _on_segment(p1, q1, p2):
        return True
    if o2 == 0 and _on_segment(p1, q2, p2):
        return True
    if o3 == 0 and _on_segment(q1, p1, q2):
        return True
    if o4 == 0 and _on_segment(q1, p2, q2):
        return True
    return False


class InMemorySceneService(SceneService):
    def __init__(self) -> None:
        self._scenes: dict[str, Scene] = {}
        self._active: str | None = None
        self.viewed: list[str] = []

    def add(self, scene: Scene, activate: bool = False) -> Scene:
        self._scenes[scene.id] = scene
        if activate or self._active is None:
            self._active = scene.id
        return scene

    def activate(self, scene_id: str) -> None:
        self._active = scene_id

    def active_scene_id(self) -> str | None:
        return self._active

    def get(self, scene_id: str) -> Scene | None:
        return self._scenes.get(scene_id)

    def all(self) -> list[Scene]:
        return list(self._scenes.values())

    def create(self, scene: Scene) -> Scene:
        self._scenes[scene.id] = scene
        return scene

    def view(self, scene_id: str) -> None:
        self.viewed.append(scene_id)


class InMemoryGeometry(GeometryService):
    def __init__(self, scenes: InMemorySceneService) -> None:
        self._scenes = scenes

    def grid_size(self, scene_id: str) -> float:
        scene = self._scenes.get(scene_id)
        return scene.grid_size if scene else 100.0

    def dimensions(self, scene_id: str) -> tuple[float, float]:
        scene = self._scenes.get(scene_id)
        return (scene.width, scene.height) if scene else (0.0, 0.0)

    def collides(self, scene_id, origin, dest, kind="move") -> bool:
        scene = self._scenes.get(scene_id)
        if scene is None:
            return False
        for wall in scene.walls:
            if not wall.blocks(kind):
                continue
            if segments_intersect(origin, dest, (wall.ax, wall.ay), (wall.bx, wall.by)):
                return True
        return False


class InMemoryTokenService(TokenService):
    def __init__(self, scenes: InMemorySceneService) -> None:
        self._scenes = scenes
        self._ids = itertools.count(1)
        self.calls: list[tuple[str, str, str]] = []

    def get(self, scene_id: str, token_id: str) -> TokenDoc | None:
        scene = self._scenes.get(scene_id)
        if scene is None:
            return None
        return scene.tokens.get(token_id)

    def list(self, scene_id: str) -> list[TokenDoc]:
        scene = self._scenes.get(scene_id)
        return list(scene.tokens.values()) if scene else []

    def create(self, scene_id: str, token: TokenDoc) -> TokenDoc:
        scene = self._scenes.get(scene_id)
        if scene is None:
            raise KeyError(f"Unknown scene {scene_id}")
        if not token.id or token.id in scene.tokens:
            token.id = self.random_id()
        scene.tokens[token.id] = token
        self.calls.append(("create", scene_id, token.id))
        return token

    def update(self, scene_id, token_id, changes, animate=False) -> TokenDoc | None:
        token = self.get(scene_id, token_id)
        if token is None:
            return None
        for key, value in changes.items():
            if key == "flags":
                token.flags.update(copy.deepcopy(value))
            else:
                setattr(token, key, value)
        self.calls.append(("update", scene_id, token_id))
        return token

    def delete(self, scene_id: str, token_id: str) -> bool:
        scene = self._scenes.get(scene_id)
        if scene is None or token_id not in scene.tokens:
            return False
        del scene.tokens[token_id]
        self.calls.append(("delete", scene_id, token_id))
        return True

    def random_id(self) -> str:
        return f"tok{next(self._ids):05d}{uuid.uuid4().hex[:6]}"


class InMemoryActorService(ActorService):
    def __init__(self) -> None:
        self._actors: dict[str, Actor] = {}
        self._item_ids = itertools.count(1)
        self.saves = 0

    def add(self, actor: Actor) -> Actor:
        self._actors[actor.id] = actor
        return actor

    def get(self, actor_id: str) -> Actor | None:
        return self._actors.get(actor_id)

    def all(self) -> list[Actor]:
        return list(self._actors.values())

    def save(self, actor: Actor) -> None:
        self.saves += 1

    def create_item(self, actor_id: str, item: Item) -> Item | None:
        actor = self._actors.get(actor_id)
        if actor is None:
            return None
        if not item.id or actor.get_item(item.id) is not None:
            item.id = f"item{next(self._item_ids):05d}"
        actor.items.append(item)
        return item

    def update_item(self, actor_id: str, item_id: str, changes: dict) -> Item | None:
        actor = self._actors.get(actor_id)
        item = actor.get_item(item_id) if actor else None
        if item is None:
            return None
        for key, value in changes.items():
            setattr(item, key, value)
        return item

    def delete_item(self, actor_id: str, item_id: str) -> bool:
        actor = self._actors.get(actor_id)
        if actor is None:
            return False
        before = len(actor.items)
        actor.items = [i for i in actor.items if i.id != item_id]
        return len(actor.items) < before


class InMemoryCombatService(CombatService):
    def __init__(self, tokens: InMemoryTokenService, rng: random.Random) -> None:
        self._tokens = tokens
        self._rng = rng
        self._combats: dict[str, Combat] = {}
        self._ids = itertools.count(1)

    def active(self, scene_id: str | None = None) -> Combat | None:
        for combat in self._combats.values():
            if scene_id is None or combat.scene_id == scene_id:
                return combat
        return None

    def get(self, combat_id: str) -> Combat | None:
        return self._combats.get(combat_id)

    def create(self, scene_id: str) -> Combat:
        combat = Combat(id=f"combat{next(self._ids)}", scene_id=scene_id)
        self._combats[combat.id] = combat
        return combat

    def add_combatants(self, combat_id, token_ids, initiative=None) -> None:
        combat = self._combats.get(combat_id)
        if combat is None:
            return
        for token_id in token_ids:
            if combat.has_token(token_id):
                continue
            token = self._tokens.get(combat.scene_id, token_id)
            combat.combatants.append(Combatant(
                token_id=token_id,
                actor_id=token.actor_id if token else None,
                initiative=initiative,
            ))

    def remove_combatant(self, combat_id: str, token_id: str) -> None:
        combat = self._combats.get(combat_id)
        if combat is not None:
            combat.combatants = [c for c in combat.combatants if c.token_id != token_id]

    def roll_initiative(self, combat_id: str) -> None:
        combat = self._combats.get(combat_id)
        if combat is None:
            return
        for c in combat.combatants:
            if c.initiative is None:
                c.initiative = self._rng.randint(1, 20)
        combat.combatants.sort(key=lambda c: -(c.initiative or 0))

    def delete(self, combat_id: str) -> None:
        self._combats.pop(combat_id, None)


class InMemoryDialogService(DialogService):
    def __init__(self) -> None:
        self.notifications: list[tuple[str, str, str | None]] = []
        self.chats: list[tuple[str, list[str] | None]] = []
        self.macros: dict[str, Callable[[dict], Any]] = {}
        self.macro_calls: list[tuple[str, dict]] = []

    def notify(self, message: str, level: str = "info", user_id: str | None = None) -> None:
        self.notifications.append((level, message, user_id))

    def chat(self, message: str, whisper: list[str] | None = None) -> None:
        self.chats.append((message, whisper))

    def execute_macro(self, name: str, context: dict) -> bool:
        macro = self.macros.get(name)
        self.macro_calls.append((name, context))
        if macro is None:
            return False
        macro(context)
        return True


class LoopbackNetwork:
    """Fans every emitted message out to every connected transport, sender included."""

    def __init__(self) -> None:
        self.users: dict[str, User] = {}
        self._transports: list[InMemoryTransport] = []
        self.log: list[dict] = []

    def connect(self, transport: InMemoryTransport) -> None:
        self._transports.append(transport)
        self.users[transport.user.id] = transport.user

    def deliver(self, message: dict) -> None:
        self.log.append(message)
        for transport in list(self._transports):
            transport.receive(message)


class InMemoryTransport(Transport):
    def __init__(self, network: LoopbackNetwork, user: User) -> None:
        self.user = user
        self._network = network
        self._handler: Callable[[dict], None] | None = None
        network.connect(self)

    @property
    def user_id(self) -> str:
        return self.user.id

    def users(self) -> list[User]:
        return list(self._network.users.values())

    def emit(self, message: dict) -> None:
        self._network.deliver(copy.deepcopy(message))

    def set_handler(self, handler: Callable[[dict], None]) -> None:
        self._handler = handler

    def receive(self, message: dict) -> None:
        if self._handler is None:
            return
        try:
            self._handler(copy.deepcopy(message))
        except Exception:
            logger.exception(f"Transport handler failed for {self.user.id}")


class InMemoryStorage(StorageService):
    def __init__(self) -> None:
        self._data: dict[str, Any] = {}

    def get(self, key: str, default: Any = None) -> Any:
        if key not in self._data:
            return copy.deepcopy(default)
        return copy.deepcopy(self._data[key])

    def set(self, key: str, value: Any) -> None:
        self._data[key] = copy.deepcopy(value)


class InMemoryHost:
    """Builds a ready-to-use HostContext backed by in-memory services."""

    def __init__(self, seed: int | None = 0, settings: PatrolSettings | None = None,
                 network: LoopbackNetwork | None = None,
                 user: User | None = None) -> None:
        self.rng = random.Random(seed)
        self.clock = VirtualClock()
        self.scenes = InMemorySceneService()
        self.geometry = InMemoryGeometry(self.scenes)
        self.tokens = InMemoryTokenService(self.scenes)
        self.actors = InMemoryActorService()
        self.combat = InMemoryCombatService(self.tokens, self.rng)
        self.dialogs = InMemoryDialogService()
        self.network = network or LoopbackNetwork()
        self.transport = InMemoryTransport(self.network, user or User(id="gm", name="GM", is_gm=True))
        self.storage = InMemoryStorage()
        self.settings = settings or PatrolSettings()

    def context(self) -> HostContext:
        return HostContext(
            scenes=self.scenes,
            geometry=self.geometry,
            tokens=self.tokens,
            actors=self.actors,
            combat=self.combat,
            dialogs=self.dialogs,
            transport=self.transport,
            clock=self.clock,
            storage=self.storage,
            rng=self.rng,
            settings=self.settings,
        )

    def add_scene(self, scene_id: str = "scene-1", name: str = "Keep", *,
                  width: float = 4000.0, height: float = 3000.0,
                  grid_size: float = 100.0, walls: list[Wall] | None = None,
                  activate: bool = False) -> Scene:
        scene = Scene(id=scene_id, name=name, width=width, height=height,
                      grid_size=grid_size, walls=list(walls or []))
        return self.scenes.add(scene, activate=activate)

    def add_actor(self, actor: Actor) -> Actor:
        return self.actors.add(actor)

    def add_token(self, scene_id: str, token: TokenDoc) -> TokenDoc:
        scene = self.scenes.get(scene_id)
        scene.tokens[token.id] = token
        return token
