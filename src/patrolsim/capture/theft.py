"""Theft outcome: weighted picks over currency, equipment and misc items.

Each pick draws a category from ``theft_targeting_weights``.  A category that
yields nothing drops out of the draw; currency drops out after its first
take.  Picks stop at ``theft_max_items`` takes or when nothing is left, so an
unproductive first draw falls back to currency naturally.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from loguru import logger

from patrolsim.adapters.base import FLAG_SCOPE
from patrolsim.host.documents import Actor, Item

from .outcomes import weighted_draw

if TYPE_CHECKING:
    from patrolsim.adapters.base import SystemAdapter
    from patrolsim.host.context import HostContext

CURRENCY = "currency"
EQUIPMENT = "equipment"
MISC = "misc"

EQUIPMENT_TYPES = ("weapon", "equipment", "armor", "tool", "consumable")
MISC_TYPES = ("loot", "backpack", "treasure")
NON_MISC_TYPES = ("weapon", "equipment", "armor", "tool", "spell", "feat", "class", "consumable")
QUEST_WORDS = ("quest", "key", "mcguffin")


def is_quest_item(item: Item) -> bool:
    if item.flags.get("questItem") or item.flags.get("critical"):
        return True
    if (item.flags.get(FLAG_SCOPE) or {}).get("questItem"):
        return True
    if item.rarity == "artifact" or item.system.get("rarity") == "artifact":
        return True
    name = item.name.lower()
    return any(word in name for word in QUEST_WORDS)


def equipment_candidates(actor: Actor) -> list[Item]:
    return [i for i in actor.items
            if i.type in EQUIPMENT_TYPES and not i.equipped
            and i.quantity > 0 and not is_quest_item(i)]


def misc_candidates(actor: Actor) -> list[Item]:
    return [i for i in actor.items
            if (i.type in MISC_TYPES or i.type not in NON_MISC_TYPES)
            and i.quantity > 0 and not is_quest_item(i)]


class Thief:
    """Runs the picks for one capture and accumulates the undo actions."""

    def __init__(self, ctx: HostContext, adapter: SystemAdapter) -> None:
        self.ctx = ctx
        self.adapter = adapter
        self.stolen: list[dict] = []
        self.undo: list[dict] = []

    def steal(self, actor: Actor) -> list[dict]:
        settings = self.ctx.settings
        weights = {k: w for k, w in settings.theft_targeting_weights.items()
                   if k in (CURRENCY, EQUIPMENT, MISC) and w > 0}
        limit = max(1, int(settings.theft_max_items))
        tried: set[str] = set()
        while weights and len(self.stolen) < limit:
            kind = weighted_draw(weights, self.ctx.rng)
            tried.add(kind)
            taken = self._take(kind, actor)
            if taken is None or kind == CURRENCY:
                weights.pop(kind)
            if taken is not None:
                self.stolen.append(taken)
        if not self.stolen and CURRENCY not in tried:
            taken = self._take(CURRENCY, actor)
            if taken is not None:
                self.stolen.append(taken)
        return self.stolen

    def _take(self, kind: str, actor: Actor) -> dict | None:
        if kind == CURRENCY:
            return self.steal_currency(actor)
        candidates = equipment_candidates(actor) if kind == EQUIPMENT else misc_candidates(actor)
        if not candidates:
            return None
        item = self.ctx.rng.choice(candidates)
        removed = self.adapter.remove_item(actor, item.id, quantity=1)
        if removed is None:
            return None
        self.undo.append({"action": "restoreItem", "actorId": actor.id, "itemData": removed})
        return {"type": kind, "name": item.name, "itemData": removed}

    def steal_currency(self, actor: Actor) -> dict | None:
        gold = self.adapter.get_gold(actor)
        amount = gold * int(self.ctx.settings.theft_percent) // 100
        if amount <= 0:
            return None
        result = self.adapter.remove_gold(actor, amount)
        if result is None:
            return None
        self.undo.append({"action": "restoreGold", "actorId": actor.id, "before": result["before"]})
        return {"type": CURRENCY, "name": f"{amount} gold", "amount": amount}

    def transfer_to(self, guard: Actor, guard_adapter: SystemAdapter) -> int:
        """Hand the haul to the guard's actor. Returns the number of entries moved."""
        moved = 0
        for stolen in self.stolen:
            if stolen["type"] == CURRENCY:
                result = guard_adapter.add_gold(guard, stolen["amount"])
                if result is not None:
                    self.undo.append({"action": "restoreGold", "actorId": guard.id,
                                      "before": result["before"]})
                    moved += 1
                continue
            created = guard_adapter.restore_item(guard, stolen["itemData"])
            if created is not None:
                self.undo.append({"action": "removeItem", "actorId": guard.id,
                                  "itemId": created["itemId"], "quantity": created["quantity"]})
                moved += 1
        logger.debug(f"Transferred {moved} stolen entries to {guard.name}")
        return moved
