"""Adapter registry — selects a SystemAdapter by game-system id.

Lookups are exact; any id without a registered adapter gets the generic
default.  Built-in adapters are registered under their canonical id plus the
aliases hosts commonly report.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from loguru import logger

from .base import Orchestrator, SystemAdapter
from .systems import (
    CallOfCthulhuAdapter,
    Cyberpunk2020Adapter,
    Dnd5eAdapter,
    Pf2eAdapter,
    SimpleWorldBuildingAdapter,
    StarfinderAdapter,
    SwadeAdapter,
)

if TYPE_CHECKING:
    from patrolsim.host.context import HostContext
    from patrolsim.host.documents import Actor

_BUILTIN: list[tuple[type[SystemAdapter], tuple[str, ...]]] = [
    (Dnd5eAdapter, ()),
    (Pf2eAdapter, ()),
    (SwadeAdapter, ()),
    (CallOfCthulhuAdapter, ("cof", "call_of_cthulhu", "cthulhu", "CoC7")),
    (Cyberpunk2020Adapter, ("cyberpunk",)),
    (StarfinderAdapter, ("starfinder",)),
    (SimpleWorldBuildingAdapter, ("worldbuilding",)),
]


class AdapterRegistry:
    """Maps system ids to bound adapter instances."""

    def __init__(self, ctx: HostContext | None = None, builtins: bool = True) -> None:
        self._ctx = ctx
        self._adapters: dict[str, SystemAdapter] = {}
        self._default = SystemAdapter(ctx)
        if builtins:
            for cls, aliases in _BUILTIN:
                self.register(cls(ctx), aliases=aliases)

    def register(self, adapter: SystemAdapter, aliases: tuple[str, ...] = ()) -> None:
        """Register an adapter under its system id and aliases.

        Raises ValueError if any of those ids is already taken.
        """
        keys = (adapter.system_id, *aliases)
        for key in keys:
            if key in self._adapters:
                raise ValueError(
                    f"Adapter '{key}' already registered "
                    f"(existing: {type(self._adapters[key]).__name__})"
                )
        if self._ctx is not None:
            adapter.bind(self._ctx)
        for key in keys:
            self._adapters[key] = adapter
        logger.debug(f"Adapter registered: {adapter.system_id} (aliases: {list(aliases)})")

    def get(self, system_id: str | None) -> SystemAdapter:
        """Exact match, else the generic default."""
        if system_id is None:
            return self._default
        return self._adapters.get(system_id, self._default)

    def for_actor(self, actor: Actor | None) -> SystemAdapter:
        return self.get(actor.system_id if actor is not None else None)

    @property
    def default(self) -> SystemAdapter:
        return self._default

    def system_ids(self) -> list[str]:
        return sorted(self._adapters)

    def set_orchestrator(self, orchestrator: Orchestrator | None) -> None:
        """Attach an external combat/damage orchestrator to every adapter."""
        for adapter in {id(a): a for a in self._adapters.values()}.values():
            adapter.orchestrator = orchestrator
        self._default.orchestrator = orchestrator
