"""Per-game-system adapters.

Each adapter only overrides the layout hooks that differ from the generic
sheet: where HP and AC live, which item types count as attacks, and where a
weapon's damage formula and attack bonus sit.
"""

from __future__ import annotations

from patrolsim.host.documents import Actor, Item

from .base import SystemAdapter, _as_int, _dig


class Dnd5eAdapter(SystemAdapter):
    system_id = "dnd5e"
    ATTACK_TYPES = ("weapon", "melee", "ranged")

    def _damage_formula(self, item: Item) -> str | None:
        parts = _dig(item.system, "damage", "parts")
        if parts and isinstance(parts[0], (list, tuple)) and parts[0]:
            return parts[0][0]
        return super()._damage_formula(item)

    def _attack_bonus(self, item: Item, actor: Actor) -> int:
        bonus = _as_int(item.system.get("attackBonus"))
        if bonus is None:
            bonus = _as_int(_dig(item.system, "properties", "atk"))
        return bonus or 0

    def _fallback_attack_bonus(self, actor: Actor) -> int:
        strength = _as_int(_dig(actor.system, "abilities", "str", "mod")) or 0
        return self._proficiency(actor.system) + strength


class Pf2eAdapter(SystemAdapter):
    system_id = "pf2e"
    ATTACK_TYPES = ("strike", "weapon", "melee")

    def _ac_value(self, system: dict) -> int | None:
        value = super()._ac_value(system)
        if value is None:
            value = _as_int(_dig(system, "defences", "ac"))
        return value

    def _damage_formula(self, item: Item) -> str | None:
        damage = item.system.get("damage")
        if isinstance(damage, dict):
            dice, die = damage.get("dice"), damage.get("die")
            if isinstance(dice, int) and isinstance(die, str):
                return f"{dice}{die}"
        return super()._damage_formula(item)

    def _attack_bonus(self, item: Item, actor: Actor) -> int:
        attack = item.system.get("attack")
        if isinstance(attack, dict):
            return _as_int(attack.get("mod")) or 0
        return _as_int(attack) or 0

    def _fallback_attack_bonus(self, actor: Actor) -> int:
        return _as_int(_dig(actor.system, "skills", "perception", "rank")) or 0


class SwadeAdapter(SystemAdapter):
    """Savage Worlds: wounds stand in for HP, Parry for AC."""

    system_id = "swade"
    ATTACK_TYPES = ("weapon", "combat")

    def _hp_block(self, system: dict) -> dict | None:
        wounds = _dig(system, "status", "wounds")
        if isinstance(wounds, dict) and _as_int(wounds.get("value")) is not None:
            return wounds
        return super()._hp_block(system)

    def _ac_value(self, system: dict) -> int | None:
        parry = _dig(system, "stats", "parry")
        if isinstance(parry, dict):
            parry = parry.get("value")
        value = _as_int(parry)
        return value if value is not None else super()._ac_value(system)

    def _damage_formula(self, item: Item) -> str | None:
        for key in ("damage", "effect"):
            if isinstance(item.system.get(key), str):
                return item.system[key]
        return super()._damage_formula(item)


class CallOfCthulhuAdapter(SystemAdapter):
    system_id = "call-of-cthulhu"
    ATTACK_TYPES = ("weapon", "melee")

    def _hp_block(self, system: dict) -> dict | None:
        for block in (_dig(system, "status", "hp"), system.get("wounds")):
            if isinstance(block, dict) and _as_int(block.get("value")) is not None:
                return block
        return super()._hp_block(system)

    def _ac_value(self, system: dict) -> int | None:
        value = super()._ac_value(system)
        if value is None:
            value = _as_int(_dig(system, "defences", "parry"))
        return value


class Cyberpunk2020Adapter(SystemAdapter):
    system_id = "cyberpunk-2020"

    def list_attack_items(self, actor: Actor | None) -> list[Item]:
        if actor is None:
            return []
        return [i for i in actor.items if i.type == "weapon" or i.system.get("weaponType")]


class StarfinderAdapter(SystemAdapter):
    system_id = "sfrpg"
    ATTACK_TYPES = ("weapon", "strike")

    def _ac_value(self, system: dict) -> int | None:
        value = super()._ac_value(system)
        if value is None:
            eac = _dig(system, "attributes", "eac", "value")
            value = _as_int(eac) if eac is not None else _as_int(_dig(system, "defenses", "ac"))
        return value


class SimpleWorldBuildingAdapter(SystemAdapter):
    """Free-form sheets: HP and gold live in ``attributes`` as ``{value, max}`` entries."""

    system_id = "simple-world-building"

    def _hp_block(self, system: dict) -> dict | None:
        attributes = system.get("attributes")
        if isinstance(attributes, dict):
            for key in ("hp", "health", "HP"):
                block = attributes.get(key)
                if isinstance(block, dict) and _as_int(block.get("value")) is not None:
                    return block
        return super()._hp_block(system)

    def _gold_slot(self, system: dict) -> tuple[dict, str] | None:
        attributes = system.get("attributes")
        if isinstance(attributes, dict):
            gold = attributes.get("gold")
            if isinstance(gold, dict) and "value" in gold:
                return gold, "value"
        return super()._gold_slot(system)
