"""HostContext — the capability bundle handed to the engine at construction."""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from patrolsim.config import PatrolSettings

if TYPE_CHECKING:
    from patrolsim.simulation.clock import Clock
    from .documents import Actor, TokenDoc
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


@dataclass
class HostContext:
    """One implementation of every host capability the engine consumes."""
    scenes: SceneService
    geometry: GeometryService
    tokens: TokenService
    actors: ActorService
    combat: CombatService
    dialogs: DialogService
    transport: Transport
    clock: Clock
    storage: StorageService
    rng: random.Random = field(default_factory=random.Random)
    settings: PatrolSettings = field(default_factory=PatrolSettings)

    @property
    def user_id(self) -> str:
        return self.transport.user_id

    def is_gm(self) -> bool:
        user = self.transport.current_user()
        return bool(user and user.is_gm)

    def gm_ids(self) -> list[str]:
        return [u.id for u in self.transport.users() if u.is_gm]

    def player_owner(self, actor: Actor | None) -> str | None:
        """First non-GM user owning ``actor``."""
        if actor is None:
            return None
        gms = set(self.gm_ids())
        for owner in actor.owners:
            if owner not in gms:
                return owner
        return None

    def token_actor(self, token: TokenDoc | None) -> Actor | None:
        if token is None or token.actor_id is None:
            return None
        return self.actors.get(token.actor_id)
