"""DecisionHook — heuristic decisions with an optional external oracle.

Decision points:
    decide_bribery          accept or refuse a bribe
    decide_capture_outcome  pick a capture outcome from a weight table
    decide_combat_action    attack / defend / pursue / flee
    auto_resolve_combat     simulate a whole combat and defeat the losers
    perform_action          roll one attack for a combatant

Every invocation is written to the decision journal with the provider label.
When ``ai_provider`` is ``openai`` and a key is configured, the oracle is
asked first; any ``OracleError`` falls through to the heuristic.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from loguru import logger

from patrolsim.adapters.base import FLAG_SCOPE
from patrolsim.errors import OracleError
from patrolsim.host.documents import TokenDoc

if TYPE_CHECKING:
    from patrolsim.adapters.registry import AdapterRegistry
    from patrolsim.host.context import HostContext
    from patrolsim.journal import UndoLog
    from .oracle import OpenAIOracle

COMBAT_ACTIONS = ("attack", "defend", "pursue", "flee")
MAX_SIM_ROUNDS = 6
DEFAULT_HP = 50
DEFAULT_DPR = 5


def hit_chance(target_ac: float, attack_bonus: float) -> float:
    """Probability that ``1d20 + attack_bonus`` meets ``target_ac``, clamped to [0.05, 0.95]."""
    return max(0.05, min(0.95, (21 - (target_ac - attack_bonus)) / 20))


def _scaled_stats(token: TokenDoc) -> dict:
    """Scaled guard stats from either the flat jail flags or the scoped spawn flags."""
    return token.flags.get("scaledStats") or (token.flags.get(FLAG_SCOPE) or {}).get("scaledStats") or {}


def bias_weights(weights: dict[str, int], aggressiveness: str) -> dict[str, int]:
    biased = dict(weights)
    if aggressiveness == "aggressive":
        if biased.get("combat"):
            biased["combat"] = max(0, min(100, round(biased["combat"] * 1.2)))
        if biased.get("theft"):
            biased["theft"] = round(biased["theft"] * 0.8)
    elif aggressiveness == "conservative":
        if biased.get("combat"):
            biased["combat"] = round(biased["combat"] * 0.7)
        if biased.get("theft"):
            biased["theft"] = round(biased["theft"] * 1.1)
    return biased


class DecisionHook:
    """Decision points shared by capture, reinforcement, and the combat hooks."""

    def __init__(self, ctx: HostContext, registry: AdapterRegistry, journal: UndoLog,
                 oracle: OpenAIOracle | None = None) -> None:
        self.ctx = ctx
        self.registry = registry
        self.journal = journal
        self.oracle = oracle

    @property
    def provider(self) -> str:
        return self.ctx.settings.ai_provider

    @property
    def enabled(self) -> bool:
        """False when the provider is ``none``; combat automation is then skipped."""
        return self.provider != "none"

    def _oracle(self) -> OpenAIOracle | None:
        if self.provider == "openai" and self.oracle is not None and self.oracle.available:
            return self.oracle
        return None

    def _log(self, kind: str, message: str, payload: dict, provider: str | None = None,
             undo: dict | None = None) -> dict:
        entry = {"type": kind, "message": message, "payload": payload,
                 "provider": provider or self.provider}
        if undo is not None:
            entry["undo"] = undo
        return self.journal.log(entry)

    # ------------------------------------------------------------------
    # Bribery
    # ------------------------------------------------------------------

    def decide_bribery(self, bribe: int, gold: int, base_cost: int = 50, scale: float = 1.0,
                       aggressiveness: str = "normal") -> bool:
        data = {"bribeAmount": bribe, "playerGold": gold, "baseCost": base_cost,
                "patrolScale": scale, "aggressiveness": aggressiveness}
        oracle = self._oracle()
        if oracle is not None:
            try:
                result = oracle.decide_bribery(data)
                self._log("bribery", f"Bribery decision (openai): {result}", data, "openai")
                return result
            except OracleError as exc:
                logger.warning(f"Oracle bribery decision failed, using heuristic: {exc}")

        threshold = base_cost * 0.75 * scale
        if aggressiveness == "aggressive":
            threshold *= 0.6
        elif aggressiveness == "conservative":
            threshold *= 1.1
        chance = self.ctx.settings.bribery_chance
        accepted = gold >= bribe and bribe >= threshold
        if accepted:
            accepted = self.ctx.rng.random() * 100 < chance
        self._log("bribery", f"Bribery decision (system): {accepted}",
                  {**data, "threshold": threshold, "briberyChance": chance}, "system")
        return accepted

    # ------------------------------------------------------------------
    # Capture outcome
    # ------------------------------------------------------------------

    def decide_capture_outcome(self, weights: dict[str, int], context: dict | None = None) -> str:
        context = context or {}
        options = [k for k, w in weights.items() if w > 0]
        oracle = self._oracle()
        if oracle is not None and options:
            try:
                result = oracle.choose("captureOutcome", {"weights": weights, "context": context},
                                       options)
                self._log("captureOutcome", f"OpenAI decision: {result}",
                          {"weights": weights, "context": context}, "openai")
                return result
            except OracleError as exc:
                logger.warning(f"Oracle capture decision failed, using heuristic: {exc}")

        biased = bias_weights(weights, context.get("aggressiveness", "normal"))
        outcome = max(biased, key=biased.get) if biased else "combat"
        self._log("captureOutcome", f"System decision: {outcome}",
                  {"weights": biased, "context": context}, "system")
        return outcome

    # ------------------------------------------------------------------
    # Combat
    # ------------------------------------------------------------------

    def decide_combat_action(self, token: TokenDoc, enemies: list[TokenDoc],
                             state: dict | None = None) -> str:
        actor = self.ctx.token_actor(token)
        oracle = self._oracle()
        if oracle is not None:
            data = {"combatant": token.name, "enemies": len(enemies), "state": state or {}}
            try:
                result = oracle.choose("combatAction", data, list(COMBAT_ACTIONS))
                self._log("combatAction", f"OpenAI combat action: {result}", data, "openai")
                return result
            except OracleError as exc:
                logger.warning(f"Oracle combat decision failed, using heuristic: {exc}")

        pair = self.registry.for_actor(actor).get_hp_pair(actor)
        hp, max_hp = pair if pair and pair[1] else (DEFAULT_HP, DEFAULT_HP)
        ratio = hp / max_hp
        if ratio < 0.2:
            action = "flee"
        elif ratio < 0.4 and len(enemies) > 2:
            action = "defend"
        else:
            action = "attack"
        self._log("combatAction", f"System combat action for {token.name}: {action}",
                  {"combatant": token.name, "enemies": len(enemies), "hpRatio": round(ratio, 3)},
                  "system")
        return action

    def _combat_tokens(self, combat_id: str) -> tuple[str, list[TokenDoc]] | None:
        combat = self.ctx.combat.get(combat_id)
        if combat is None:
            return None
        tokens = [self.ctx.tokens.get(combat.scene_id, c.token_id) for c in combat.combatants]
        return combat.scene_id, [t for t in tokens if t is not None]

    def _token_hp(self, token: TokenDoc) -> float:
        actor = self.ctx.token_actor(token)
        adapter = self.registry.for_actor(actor)
        hp = adapter.get_max_hp(actor) or adapter.get_hp(actor)
        if hp:
            return hp
        return _scaled_stats(token).get("hp") or DEFAULT_HP

    def _token_dpr(self, token: TokenDoc, opponents: list[TokenDoc]) -> float:
        actor = self.ctx.token_actor(token)
        attack = self.registry.for_actor(actor).estimate_best_attack(token)
        if attack is None:
            return _scaled_stats(token).get("damage") or DEFAULT_DPR
        acs = [self.registry.for_actor(a).get_ac(a)
               for a in (self.ctx.token_actor(o) for o in opponents)]
        avg_ac = sum(acs) / len(acs) if acs else 10
        return (attack.get("avgDamage") or DEFAULT_DPR) * hit_chance(avg_ac, attack.get("attackBonus") or 0)

    def auto_resolve_combat(self, combat_id: str) -> dict | None:
        """Simulate the combat by group attrition and defeat the losing side(s).

        Returns ``{losers, defeated, spared}`` (dispositions and token ids) or
        None when the combat is missing or has fewer than two sides.
        """
        found = self._combat_tokens(combat_id)
        if found is None:
            return None
        scene_id, tokens = found
        groups: dict[int, list[TokenDoc]] = {}
        for token in tokens:
            groups.setdefault(int(token.disposition), []).append(token)
        if len(groups) < 2:
            logger.debug(f"Auto-resolve skipped for {combat_id}: fewer than two sides")
            return None

        stats: dict[int, dict] = {}
        for key, members in groups.items():
            opponents = [t for k, g in groups.items() if k != key for t in g]
            stats[key] = {
                "hp": sum(self._token_hp(t) for t in members),
                "dpr": sum(self._token_dpr(t, opponents) for t in members),
            }

        losers = self._simulate(stats)
        settings = self.ctx.settings
        defeated: list[str] = []
        spared: list[str] = []
        for key in losers:
            for token in groups[key]:
                actor = self.ctx.token_actor(token)
                if actor is not None and actor.has_player_owner and not settings.auto_resolve_affects_players:
                    self.ctx.dialogs.chat(
                        f"{token.name} would be defeated by auto-resolve. Manual action recommended.",
                        whisper=self.ctx.gm_ids(),
                    )
                    spared.append(token.id)
                    continue
                if self._defeat(scene_id, token, combat_id):
                    defeated.append(token.id)

        self.ctx.combat.delete(combat_id)
        self._log("autoResolve", "Combat auto-resolved",
                  {"combatId": combat_id, "losers": losers, "defeated": defeated})
        self.ctx.dialogs.notify("Combat auto-resolved")
        logger.info(f"Combat {combat_id} auto-resolved: {len(defeated)} defeated")
        return {"losers": losers, "defeated": defeated, "spared": spared}

    @staticmethod
    def _simulate(stats: dict[int, dict]) -> list[int]:
        keys = list(stats)
        hp = {k: stats[k]["hp"] for k in keys}
        for _ in range(MAX_SIM_ROUNDS):
            hp = {k: hp[k] - sum(stats[o]["dpr"] for o in keys if o != k) for k in keys}
            losers = [k for k in keys if hp[k] <= 0]
            if losers:
                return losers

        def time_to_die(k: int) -> float:
            incoming = sum(stats[o]["dpr"] for o in keys if o != k)
            return stats[k]["hp"] / incoming if incoming > 0 else float("inf")

        return [min(keys, key=time_to_die)]

    def _defeat(self, scene_id: str, token: TokenDoc, combat_id: str) -> bool:
        actor = self.ctx.token_actor(token)
        adapter = self.registry.for_actor(actor)
        undo = adapter.token_hide_remove(
            scene_id, token.id, apply_to_players=self.ctx.settings.auto_resolve_affects_players,
        )
        if undo is None:
            # hide as the softer fallback
            if self.ctx.tokens.update(scene_id, token.id, {"hidden": True}) is None:
                logger.error(f"Auto-resolve could not defeat {token.name}")
                return False
            undo = {"action": "unhideToken", "sceneId": scene_id, "tokenId": token.id}
        self._log("autoResolve", f"Token {token.name} defeated by auto-resolve",
                  {"tokenId": token.id, "combatId": combat_id}, undo={"actions": [undo]})
        return True

    def suggest_action(self, combat_id: str, token_id: str) -> dict | None:
        """Suggest an action for one combatant: ``{action, attackerId, targetId}``."""
        found = self._combat_tokens(combat_id)
        if found is None:
            return None
        _, tokens = found
        token = next((t for t in tokens if t.id == token_id), None)
        if token is None:
            return None
        enemies = [t for t in tokens if t.disposition != token.disposition]
        action = self.decide_combat_action(token, enemies)
        return {
            "action": action,
            "combatId": combat_id,
            "attackerId": token.id,
            "targetId": enemies[0].id if enemies else None,
        }

    def perform_action(self, combat_id: str, attacker_id: str, action: str = "attack",
                       target_id: str | None = None) -> bool:
        """Roll an attack for ``attacker_id``. Only ``attack`` is supported."""
        if action != "attack":
            return False
        found = self._combat_tokens(combat_id)
        if found is None:
            return False
        scene_id, tokens = found
        attacker = next((t for t in tokens if t.id == attacker_id), None)
        if attacker is None:
            return False
        target = next((t for t in tokens if t.id == target_id), None) if target_id else None
        if target is None:
            target = next((t for t in tokens if t.disposition != attacker.disposition), None)
        target_actor = self.ctx.token_actor(target)
        if target is None or target_actor is None:
            return False

        attacker_actor = self.ctx.token_actor(attacker)
        adapter = self.registry.for_actor(attacker_actor)
        info = adapter.estimate_best_attack(attacker) or {}
        bonus = info.get("attackBonus") or 0
        weapon = info.get("weapon")
        target_adapter = self.registry.for_actor(target_actor)
        target_ac = target_adapter.get_ac(target_actor)

        if weapon is not None and adapter.orchestrator is not None:
            workflow = adapter.roll_item_use(weapon, attacker_actor, [target])
            if workflow is not None and workflow.get("source") != "item":
                self._log("performAction", f"Performed action via orchestrator: {weapon.name}",
                          {"itemId": weapon.id, "attackerId": attacker.id,
                           "targetId": target.id, "workflow": workflow})
                return True

        attack_roll = self.ctx.rng.randint(1, 20) + bonus
        payload = {"attackerId": attacker.id, "targetId": target.id, "attackRoll": attack_roll,
                   "attackBonus": bonus, "targetAc": target_ac}
        if attack_roll < target_ac:
            self._log("performAction", f"AI attack missed: {attacker.name} -> {target.name}", payload)
            return False

        damage = round(info.get("avgDamage") or DEFAULT_DPR)
        if weapon is not None and adapter.orchestrator is None:
            rolled = adapter.roll_item_use(weapon, attacker_actor)
            if rolled and rolled.get("damageTotal") is not None:
                damage = int(rolled["damageTotal"])
        result = target_adapter.apply_damage(target_actor, damage)
        if result is None:
            logger.error(f"AI attack could not damage {target.name}")
            return False
        self._log(
            "performAction",
            f"Performed attack by {attacker.name} on {target.name}: {damage} damage",
            {**payload, "damage": damage, "sceneId": scene_id},
            undo={"actions": [{"action": "restoreHp", "actorId": target_actor.id,
                               "before": result["before"]}]},
        )
        return True
