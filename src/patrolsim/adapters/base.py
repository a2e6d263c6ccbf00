"""SystemAdapter — uniform stat, item, and damage access over opaque actor data.

The core never reads ``Actor.system`` directly.  Every read and write goes
through an adapter chosen by the actor's game-system id.  Subclasses only
override the small layout hooks (where HP lives, which item types attack,
where a weapon's damage formula sits); the public operations are shared.

Adapters never raise.  Every public operation is wrapped so that a failure
logs at debug level and returns the operation's neutral value (None, False,
an empty list, or the documented default), letting callers fall back.
"""

from __future__ import annotations

import copy
import functools
from typing import TYPE_CHECKING, Any, Callable

from loguru import logger

from patrolsim.host.documents import Actor, Item, TokenDoc

from .dice import parse_average_damage, roll_formula

if TYPE_CHECKING:
    from patrolsim.host.context import HostContext

FLAG_SCOPE = "patrolsim"

# Orchestrator signature: (item, attacker actor, target tokens) -> workflow dict or None
Orchestrator = Callable[[Item, Actor, list], "dict | None"]


def never_raise(default: Any = None):
    """Decorator: swallow and log failures, returning ``default`` (called if callable)."""
    def wrap(fn):
        @functools.wraps(fn)
        def inner(self, *args, **kwargs):
            try:
                return fn(self, *args, **kwargs)
            except Exception as exc:
                logger.debug(f"Adapter {self.system_id}.{fn.__name__} failed: {exc!r}")
                return default() if callable(default) else default
        return inner
    return wrap


def _dig(data: Any, *keys: str) -> Any:
    for key in keys:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    return None


class SystemAdapter:
    """Generic adapter; also the fallback for unknown system ids."""

    system_id: str = "generic"
    ATTACK_TYPES: tuple[str, ...] = ("weapon",)

    def __init__(self, ctx: HostContext | None = None) -> None:
        self._ctx = ctx
        self.orchestrator: Orchestrator | None = None

    def bind(self, ctx: HostContext) -> SystemAdapter:
        self._ctx = ctx
        return self

    # ------------------------------------------------------------------
    # Layout hooks
    # ------------------------------------------------------------------

    def _hp_block(self, system: dict) -> dict | None:
        """The dict holding ``value``/``max`` HP, or None when the sheet has none."""
        for block in (
            _dig(system, "attributes", "hp"),
            system.get("hp"),
            system.get("health"),
            system.get("vitality"),
        ):
            if isinstance(block, dict) and _as_int(block.get("value")) is not None:
                return block
        return None

    def _ac_value(self, system: dict) -> int | None:
        ac = _dig(system, "attributes", "ac")
        if isinstance(ac, dict):
            return _as_int(ac.get("value")) or _as_int(ac.get("flat"))
        return _as_int(ac)

    def _gold_slot(self, system: dict) -> tuple[dict, str] | None:
        currency = system.get("currency")
        if isinstance(currency, dict) and "gp" in currency:
            return currency, "gp"
        wealth = _dig(system, "details", "wealth")
        if isinstance(wealth, dict) and "value" in wealth:
            return wealth, "value"
        if "gold" in system:
            return system, "gold"
        return None

    def _damage_formula(self, item: Item) -> str | None:
        damage = item.system.get("damage")
        if isinstance(damage, str):
            return damage
        if isinstance(damage, dict):
            parts = damage.get("parts")
            if parts and isinstance(parts[0], (list, tuple)) and parts[0]:
                return parts[0][0]
            for key in ("value", "formula"):
                if isinstance(damage.get(key), str):
                    return damage[key]
        formula = item.system.get("formula")
        return formula if isinstance(formula, str) else None

    def _attack_bonus(self, item: Item, actor: Actor) -> int:
        for key in ("attackBonus", "attack", "bonus"):
            value = _as_int(item.system.get(key))
            if value is not None:
                return value
        return 0

    def _proficiency(self, system: dict) -> int:
        return _as_int(_dig(system, "attributes", "prof")) or 0

    def _level(self, system: dict) -> float | None:
        for value in (_dig(system, "details", "level"), _dig(system, "details", "cr"),
                      system.get("level")):
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                return float(value)
        return None

    def _fallback_attack_bonus(self, actor: Actor) -> int:
        return self._proficiency(actor.system)

    # ------------------------------------------------------------------
    # Flags used when a sheet has no native field
    # ------------------------------------------------------------------

    @staticmethod
    def _flag(actor: Actor, key: str) -> Any:
        return actor.flags.get(FLAG_SCOPE, {}).get(key)

    @staticmethod
    def _set_flag(actor: Actor, key: str, value: Any) -> None:
        actor.flags.setdefault(FLAG_SCOPE, {})[key] = value

    def _save(self, actor: Actor) -> None:
        if self._ctx is not None:
            self._ctx.actors.save(actor)

    # ------------------------------------------------------------------
    # HP
    # ------------------------------------------------------------------

    @never_raise()
    def get_hp(self, actor: Actor | None) -> int | None:
        if actor is None:
            return None
        block = self._hp_block(actor.system)
        if block is not None:
            return _as_int(block.get("value"))
        return _as_int(self._flag(actor, "lastKnownHp"))

    @never_raise()
    def get_max_hp(self, actor: Actor | None) -> int | None:
        if actor is None:
            return None
        block = self._hp_block(actor.system)
        if block is not None:
            return _as_int(block.get("max"))
        return None

    def get_hp_pair(self, actor: Actor | None) -> tuple[int, int] | None:
        current = self.get_hp(actor)
        maximum = self.get_max_hp(actor)
        if current is None or maximum is None:
            return None
        return (current, maximum)

    @never_raise(False)
    def set_hp(self, actor: Actor | None, value: int) -> bool:
        if actor is None:
            return False
        block = self._hp_block(actor.system)
        if block is not None:
            block["value"] = int(value)
        else:
            self._set_flag(actor, "lastKnownHp", int(value))
        self._save(actor)
        return True

    @never_raise()
    def apply_damage(self, actor: Actor | None, amount: int) -> dict | None:
        if actor is None:
            return None
        before = self.get_hp(actor) or 0
        after = max(0, before - int(amount or 0))
        if not self.set_hp(actor, after):
            return None
        return {"before": before, "after": after}

    @never_raise()
    def restore_damage(self, actor: Actor | None, before: int | dict) -> dict | None:
        if actor is None:
            return None
        target = before.get("before") if isinstance(before, dict) else before
        current = self.get_hp(actor) or 0
        if not self.set_hp(actor, int(target)):
            return None
        return {"before": current, "after": int(target)}

    # ------------------------------------------------------------------
    # Defence, level
    # ------------------------------------------------------------------

    @never_raise(10)
    def get_ac(self, actor: Actor | None) -> int:
        if actor is None:
            return 10
        value = self._ac_value(actor.system)
        return value if value is not None else 10

    @never_raise(0)
    def get_con_mod(self, actor: Actor | None) -> int:
        if actor is None:
            return 0
        for value in (
            _dig(actor.system, "abilities", "con", "mod"),
            _dig(actor.system, "attributes", "con", "mod"),
            _dig(actor.system, "stats", "constitution", "mod"),
        ):
            if _as_int(value) is not None:
                return _as_int(value)
        return 0

    @never_raise()
    def get_level(self, actor: Actor | None) -> float | None:
        return self._level(actor.system) if actor else None

    def is_player_actor(self, actor: Actor | None) -> bool:
        return bool(actor and actor.has_player_owner)

    # ------------------------------------------------------------------
    # Gold
    # ------------------------------------------------------------------

    @never_raise(0)
    def get_gold(self, actor: Actor | None) -> int:
        if actor is None:
            return 0
        slot = self._gold_slot(actor.system)
        if slot is not None:
            container, key = slot
            return _as_int(container.get(key)) or 0
        return _as_int(self._flag(actor, "lastKnownGold")) or 0

    @never_raise()
    def set_gold(self, actor: Actor | None, amount: int) -> dict | None:
        if actor is None:
            return None
        before = self.get_gold(actor)
        after = max(0, int(amount))
        slot = self._gold_slot(actor.system)
        if slot is not None:
            container, key = slot
            container[key] = after
        else:
            self._set_flag(actor, "lastKnownGold", after)
        self._save(actor)
        return {"before": before, "after": after}

    def add_gold(self, actor: Actor | None, amount: int) -> dict | None:
        return self.set_gold(actor, self.get_gold(actor) + int(amount))

    def remove_gold(self, actor: Actor | None, amount: int) -> dict | None:
        return self.set_gold(actor, self.get_gold(actor) - int(amount))

    # ------------------------------------------------------------------
    # Items and attacks
    # ------------------------------------------------------------------

    @never_raise(list)
    def list_attack_items(self, actor: Actor | None) -> list[Item]:
        if actor is None:
            return []
        return [i for i in actor.items
                if i.type in self.ATTACK_TYPES or self._damage_formula(i)]

    @never_raise()
    def estimate_best_attack(self, token: TokenDoc | None) -> dict | None:
        """Best attack by average damage: ``{avgDamage, attackBonus, weapon}``."""
        if token is None or token.actor_id is None or self._ctx is None:
            return None
        actor = self._ctx.actors.get(token.actor_id)
        if actor is None:
            return None
        best: tuple[float, int, Item] | None = None
        for item in self.list_attack_items(actor):
            avg = parse_average_damage(self._damage_formula(item))
            if avg is None:
                continue
            if best is None or avg > best[0]:
                best = (avg, self._attack_bonus(item, actor), item)
        if best is not None:
            return {"avgDamage": round(best[0]), "attackBonus": best[1], "weapon": best[2]}
        return {
            "avgDamage": round(self._level(actor.system) or 5),
            "attackBonus": self._fallback_attack_bonus(actor),
            "weapon": None,
        }

    @never_raise()
    def roll_item_use(self, item: Item | None, attacker: Actor | None,
                      targets: list | None = None) -> dict | None:
        """Orchestrator workflow if one is attached, else the item's own damage roll."""
        if item is None:
            return None
        if self.orchestrator is not None:
            workflow = self.orchestrator(item, attacker, list(targets or []))
            if workflow is not None:
                return workflow
        formula = self._damage_formula(item)
        if formula is None or self._ctx is None:
            return None
        total = roll_formula(formula, self._ctx.rng)
        if total is None:
            return None
        return {"source": "item", "itemId": item.id, "damageTotal": total}

    @never_raise()
    def restore_item(self, actor: Actor | None, item_data: dict) -> dict | None:
        """Give an item back, merging quantity into a same-name, same-type stack.

        Returns ``{itemId, merged, quantity}`` describing what changed.
        """
        if actor is None or self._ctx is None:
            return None
        qty = int(item_data.get("quantity", 1) or 1)
        for item in actor.items:
            if item.name == item_data.get("name") and item.type == item_data.get("type"):
                self._ctx.actors.update_item(actor.id, item.id, {"quantity": item.quantity + qty})
                return {"itemId": item.id, "merged": True, "quantity": qty}
        data = copy.deepcopy(item_data)
        data["quantity"] = qty
        created = self._ctx.actors.create_item(actor.id, Item.from_dict(data))
        if created is None:
            return None
        return {"itemId": created.id, "merged": False, "quantity": qty}

    @never_raise()
    def remove_item(self, actor: Actor | None, id_or_name: str,
                    quantity: int | None = None) -> dict | None:
        """Remove an item by id, then by name.

        With ``quantity`` only that many are taken from the stack; the stack is
        deleted when it runs out.  Returns the removed item data, with
        ``quantity`` set to the amount actually removed.
        """
        if actor is None or self._ctx is None:
            return None
        item = actor.get_item(id_or_name)
        if item is None:
            item = next((i for i in actor.items if i.name == id_or_name), None)
        if item is None:
            return None
        removed = item.to_dict()
        if quantity is not None and item.quantity > quantity:
            self._ctx.actors.update_item(actor.id, item.id, {"quantity": item.quantity - quantity})
            removed["quantity"] = quantity
            return removed
        self._ctx.actors.delete_item(actor.id, item.id)
        return removed

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    @never_raise()
    def token_hide_remove(self, scene_id: str, token_id: str,
                          apply_to_players: bool = False) -> dict | None:
        """Defeat a token: zero HP and delete it, or hide it when it has no HP.

        Player-owned tokens are left alone unless ``apply_to_players``.
        Returns the undo action describing how to bring it back.
        """
        if self._ctx is None:
            return None
        token = self._ctx.tokens.get(scene_id, token_id)
        if token is None:
            return None
        actor = self._ctx.actors.get(token.actor_id) if token.actor_id else None
        if actor is not None and actor.has_player_owner and not apply_to_players:
            return None
        doc = token.to_dict()
        hp = self.get_hp(actor) if actor is not None else None
        if hp is not None:
            self.set_hp(actor, 0)
            self._ctx.tokens.delete(scene_id, token_id)
            return {"action": "restoreToken", "sceneId": scene_id, "tokenDoc": doc,
                    "actorId": actor.id, "beforeHp": hp}
        self._ctx.tokens.update(scene_id, token_id, {"hidden": True})
        return {"action": "unhideToken", "sceneId": scene_id, "tokenId": token_id,
                "tokenDoc": doc}
