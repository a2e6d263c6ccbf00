"""Capability interfaces the engine consumes from its host.

Each service covers one concern of the host runtime.  The engine never
touches a global; it receives one ``HostContext`` holding an implementation
of each service.  ``patrolsim.host.memory`` implements all of them in memory.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Callable

from .documents import Actor, Combat, Item, Scene, TokenDoc, User


class SceneService(ABC):
    """Scenes and their flags."""

    @abstractmethod
    def active_scene_id(self) -> str | None:
        """Id of the scene currently shown on the canvas."""

    @abstractmethod
    def get(self, scene_id: str) -> Scene | None: ...

    @abstractmethod
    def all(self) -> list[Scene]: ...

    @abstractmethod
    def create(self, scene: Scene) -> Scene: ...

    @abstractmethod
    def view(self, scene_id: str) -> None:
        """Navigate the local session to a scene."""

    def get_flag(self, scene_id: str, key: str, default: Any = None) -> Any:
        scene = self.get(scene_id)
        if scene is None:
            return default
        return scene.flags.get(key, default)

    def set_flag(self, scene_id: str, key: str, value: Any) -> None:
        scene = self.get(scene_id)
        if scene is not None:
            scene.flags[key] = value

    def unset_flag(self, scene_id: str, key: str) -> None:
        scene = self.get(scene_id)
        if scene is not None:
            scene.flags.pop(key, None)

    def find_by_flag(self, key: str, value: Any) -> Scene | None:
        for scene in self.all():
            if scene.flags.get(key) == value:
                return scene
        return None


class GeometryService(ABC):
    """Grid and wall geometry for a scene."""

    @abstractmethod
    def grid_size(self, scene_id: str) -> float: ...

    @abstractmethod
    def dimensions(self, scene_id: str) -> tuple[float, float]: ...

    @abstractmethod
    def collides(
        self,
        scene_id: str,
        origin: tuple[float, float],
        dest: tuple[float, float],
        kind: str = "move",
    ) -> bool:
        """True when the segment origin->dest crosses a wall blocking ``kind``."""

    def snap_to_cell(self, scene_id: str, x: float, y: float) -> tuple[float, float]:
        """Centre of the grid cell containing (x, y)."""
        g = self.grid_size(scene_id)
        return ((x // g) * g + g / 2, (y // g) * g + g / 2)


class TokenService(ABC):
    """Embedded token documents."""

    @abstractmethod
    def get(self, scene_id: str, token_id: str) -> TokenDoc | None: ...

    @abstractmethod
    def list(self, scene_id: str) -> list[TokenDoc]: ...

    @abstractmethod
    def create(self, scene_id: str, token: TokenDoc) -> TokenDoc: ...

    @abstractmethod
    def update(
        self, scene_id: str, token_id: str, changes: dict, animate: bool = False,
    ) -> TokenDoc | None: ...

    @abstractmethod
    def delete(self, scene_id: str, token_id: str) -> bool: ...

    @abstractmethod
    def random_id(self) -> str: ...


class ActorService(ABC):
    """Actors and their owned items."""

    @abstractmethod
    def get(self, actor_id: str) -> Actor | None: ...

    @abstractmethod
    def all(self) -> list[Actor]: ...

    @abstractmethod
    def save(self, actor: Actor) -> None:
        """Persist in-place changes to ``actor.system``."""

    @abstractmethod
    def create_item(self, actor_id: str, item: Item) -> Item | None: ...

    @abstractmethod
    def update_item(self, actor_id: str, item_id: str, changes: dict) -> Item | None: ...

    @abstractmethod
    def delete_item(self, actor_id: str, item_id: str) -> bool: ...


class CombatService(ABC):
    """The host's combat tracker."""

    @abstractmethod
    def active(self, scene_id: str | None = None) -> Combat | None: ...

    @abstractmethod
    def get(self, combat_id: str) -> Combat | None: ...

    @abstractmethod
    def create(self, scene_id: str) -> Combat: ...

    @abstractmethod
    def add_combatants(self, combat_id: str, token_ids: list[str],
                       initiative: float | None = None) -> None: ...

    @abstractmethod
    def remove_combatant(self, combat_id: str, token_id: str) -> None: ...

    @abstractmethod
    def roll_initiative(self, combat_id: str) -> None: ...

    @abstractmethod
    def delete(self, combat_id: str) -> None: ...


class DialogService(ABC):
    """Notifications, chat, and macros.  Modal prompts stay on the host side."""

    @abstractmethod
    def notify(self, message: str, level: str = "info", user_id: str | None = None) -> None: ...

    @abstractmethod
    def chat(self, message: str, whisper: list[str] | None = None) -> None: ...

    @abstractmethod
    def execute_macro(self, name: str, context: dict) -> bool: ...


class Transport(ABC):
    """Raw socket channel between peers of one session."""

    @property
    @abstractmethod
    def user_id(self) -> str: ...

    @abstractmethod
    def users(self) -> list[User]: ...

    @abstractmethod
    def emit(self, message: dict) -> None: ...

    @abstractmethod
    def set_handler(self, handler: Callable[[dict], None]) -> None: ...

    def current_user(self) -> User | None:
        for user in self.users():
            if user.id == self.user_id:
                return user
        return None


class StorageService(ABC):
    """World-scoped key/value settings store."""

    @abstractmethod
    def get(self, key: str, default: Any = None) -> Any: ...

    @abstractmethod
    def set(self, key: str, value: Any) -> None: ...
