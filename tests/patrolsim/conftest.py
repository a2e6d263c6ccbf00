"""Shared fixtures for patrolsim tests.

Every test runs against ``InMemoryHost``: a GM peer on a loopback network
with one active scene.  ``World`` wraps the engine with helpers for the
documents most tests need (waypoints, guard tokens, player characters,
patrols).
"""

from __future__ import annotations

import pytest

from patrolsim.config import PatrolSettings
from patrolsim.engine import PatrolEngine
from patrolsim.host.documents import Actor, Disposition, Item, TokenDoc, User
from patrolsim.host.memory import InMemoryHost, LoopbackNetwork

SCENE = "scene-1"
PLAYER = "player1"


def dnd_system(hp: int = 30, max_hp: int | None = None, gold: int = 100, level: int = 3,
               ac: int = 12, con: int = 2) -> dict:
    """A dnd5e-shaped stat block."""
    return {
        "attributes": {"hp": {"value": hp, "max": max_hp if max_hp is not None else hp},
                       "ac": {"value": ac}},
        "currency": {"gp": gold},
        "details": {"level": level},
        "abilities": {"con": {"mod": con}, "str": {"mod": 0}},
    }


class World:
    """An engine plus the in-memory host behind it."""

    def __init__(self, host: InMemoryHost, engine: PatrolEngine) -> None:
        self.host = host
        self.engine = engine

    @property
    def ctx(self):
        return self.engine.ctx

    @property
    def manager(self):
        return self.engine.manager

    def waypoint(self, x: float, y: float, **kwargs):
        return self.manager.create_waypoint({"x": x, "y": y, "state": "active", **kwargs})

    def guard(self, name: str = "Guard", x: float = 0.0, y: float = 0.0,
              actor: Actor | None = None, **kwargs) -> TokenDoc:
        token = TokenDoc(id=kwargs.pop("id", ""), name=name, x=x, y=y, hidden=True,
                         disposition=Disposition.HOSTILE,
                         actor_id=actor.id if actor else None, **kwargs)
        return self.host.tokens.create(SCENE, token)

    def npc(self, actor_id: str = "npc-1", name: str = "Bandit", system: dict | None = None,
            items: list[Item] | None = None) -> Actor:
        return self.host.add_actor(Actor(id=actor_id, name=name, system_id="dnd5e",
                                         system=system if system is not None else dnd_system(),
                                         items=list(items or [])))

    def player(self, actor_id: str = "pc-1", name: str = "Hero", x: float = 450.0,
               y: float = 450.0, owner: str = PLAYER, system: dict | None = None,
               items: list[Item] | None = None,
               disposition: int = Disposition.FRIENDLY) -> tuple[Actor, TokenDoc]:
        actor = self.host.add_actor(Actor(
            id=actor_id, name=name, system_id="dnd5e", type="character",
            owners=[owner], system=system if system is not None else dnd_system(),
            items=list(items or []),
        ))
        token = self.host.tokens.create(SCENE, TokenDoc(
            id=f"tok-{actor_id}", name=name, x=x, y=y,
            disposition=disposition, actor_id=actor.id,
        ))
        return actor, token

    def patrol(self, waypoints, token: TokenDoc | None = None, **kwargs):
        config = {
            "name": kwargs.pop("name", "Night Watch"),
            "tokenId": token.id if token else None,
            "waypointIds": [w.id for w in waypoints],
            "blinkPattern": "sequential",
            "timingVariance": 0,
            "detectEnabled": False,
            **kwargs,
        }
        return self.manager.create_patrol(config)

    def advance(self, seconds: float) -> int:
        return self.engine.advance(self.host.clock.now() + seconds)

    def notifications(self) -> list[str]:
        return [message for _, message, _ in self.host.dialogs.notifications]

    def sent(self, message_type: str) -> list[dict]:
        """Payloads of every wire message of ``message_type``."""
        return [m["payload"] for m in self.host.network.log if m["type"] == message_type]


def make_world(settings: PatrolSettings | None = None, network: LoopbackNetwork | None = None,
               user: User | None = None, seed: int = 7) -> World:
    host = InMemoryHost(seed=seed, settings=settings or PatrolSettings(), network=network,
                        user=user)
    host.add_scene(SCENE, activate=True)
    engine = PatrolEngine(host.context())
    engine.on_canvas_ready(SCENE)
    return World(host, engine)


@pytest.fixture
def settings():
    """Deterministic defaults: no bribery, no assistants, no bleed-out."""
    return PatrolSettings(
        bribery_enabled=False,
        assistant_chance=0.0,
        bleed_out_enabled=False,
        capture_outcome_weights={"disregard": 100},
    )


@pytest.fixture
def world(settings):
    return make_world(settings)


@pytest.fixture
def network():
    return LoopbackNetwork()


@pytest.fixture
def stat_block():
    return dnd_system


@pytest.fixture
def world_factory():
    """Build extra peers, e.g. a player on the same network as ``world``."""
    return make_world
