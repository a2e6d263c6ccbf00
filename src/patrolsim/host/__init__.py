"""Host capability bundle: documents, service interfaces, and the in-memory host."""

from .context import HostContext
from .documents import (
    Actor,
    Combat,
    Combatant,
    Disposition,
    Item,
    Scene,
    TokenDoc,
    User,
    Wall,
    distance,
)
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

__all__ = [
    "Actor", "ActorService", "Combat", "CombatService", "Combatant",
    "DialogService", "Disposition", "GeometryService", "HostContext", "Item",
    "Scene", "SceneService", "StorageService", "TokenDoc", "TokenService",
    "Transport", "User", "Wall", "distance",
]
