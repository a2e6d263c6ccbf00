"""Bleed-out gate: a desperate-struggle save for badly wounded combatants.

On every combat turn advance each combatant at or below
``bleed_out_threshold`` percent of max HP gets a Constitution save::

    DC   = base_dc + floor((maxHP - HP) / 2), capped at bleed_out_dc_cap
    roll = 1d20 + con     (2d20 keep lowest + con once a save has been made)

A success leaves the token fighting with disadvantage on later saves.  A
failure captures player characters (jail) and knocks NPCs out.  Player saves
are routed per ``bleed_out_player_control``: ``auto`` rolls immediately,
``gm`` waits on the GM, ``player`` prompts the owning user.  A waiting save
is resolved by a choice: ``fight`` (no roll), ``roll``, ``surrender`` or the
GM-only ``force_capture``.
"""

from __future__ import annotations

import math
from typing import TYPE_CHECKING

from loguru import logger

from patrolsim.capture.outcomes import JAIL
from patrolsim.simulation.runtime import BleedState

if TYPE_CHECKING:
    from patrolsim.adapters.registry import AdapterRegistry
    from patrolsim.capture.pipeline import CaptureSystem
    from patrolsim.comms.broadcast import BroadcastLayer
    from patrolsim.comms.event_bus import EventBus
    from patrolsim.host.context import HostContext
    from patrolsim.host.documents import TokenDoc
    from patrolsim.journal import UndoLog
    from patrolsim.simulation.manager import PatrolManager

FIGHT = "fight"
ROLL = "roll"
SURRENDER = "surrender"
FORCE_CAPTURE = "force_capture"
CHOICES = (FIGHT, ROLL, SURRENDER, FORCE_CAPTURE)

CAPTURE_PATROL_NAME = "Bleed-Out Capture"

# Wire payload fields for the owner prompt and the public result
SAVE_PROMPT_FIELDS = ("tokenId", "tokenName", "dc", "conMod", "hasDisadvantage", "isPC")
RESULT_FIELDS = ("tokenName", "rollTotal", "dc", "success")


class BleedOutGate:
    def __init__(self, ctx: HostContext, manager: PatrolManager, registry: AdapterRegistry,
                 capture: CaptureSystem, journal: UndoLog | None = None,
                 bus: EventBus | None = None,
                 broadcast: BroadcastLayer | None = None) -> None:
        self.ctx = ctx
        self.manager = manager
        self.registry = registry
        self.capture = capture
        self.journal = journal
        self.bus = bus
        self.broadcast = broadcast

    def _is_primary(self) -> bool:
        if not self.ctx.is_gm():
            return False
        return self.broadcast is None or self.broadcast.is_primary()

    def save_dc(self, current: int, maximum: int) -> int:
        settings = self.ctx.settings
        dc = settings.bleed_out_base_dc + math.floor((maximum - current) / 2)
        return min(dc, settings.bleed_out_dc_cap)

    # ------------------------------------------------------------------
    # Turn hook
    # ------------------------------------------------------------------

    def check_combat(self, combat_id: str) -> list[str]:
        """Run the gate over every combatant. Returns ids of tokens that are bleeding."""
        if not self.ctx.settings.bleed_out_enabled or not self._is_primary():
            return []
        combat = self.ctx.combat.get(combat_id)
        if combat is None:
            return []
        bleeding = []
        for combatant in list(combat.combatants):
            token = self.ctx.tokens.get(combat.scene_id, combatant.token_id)
            if token is not None and self.check_token(combat.scene_id, token, combat_id) is not None:
                bleeding.append(token.id)
        return bleeding

    def check_token(self, scene_id: str, token: TokenDoc, combat_id: str | None = None) -> dict | None:
        """Evaluate one token; returns the save data when it is bleeding."""
        actor = self.ctx.token_actor(token)
        if actor is None:
            return None
        adapter = self.registry.for_actor(actor)
        hp = adapter.get_hp_pair(actor)
        if hp is None or hp[1] <= 0:
            return None
        current, maximum = hp
        runtime = self.manager.runtime(scene_id)
        if current > maximum * self.ctx.settings.bleed_out_threshold / 100:
            runtime.bleeding.pop(token.id, None)
            return None

        state = runtime.bleeding.get(token.id)
        if state is None:
            state = runtime.bleeding[token.id] = BleedState(token_id=token.id, token_name=token.name)
        save = {
            "tokenId": token.id,
            "tokenName": token.name,
            "sceneId": scene_id,
            "combatId": combat_id,
            "dc": self.save_dc(current, maximum),
            "conMod": adapter.get_con_mod(actor),
            "hasDisadvantage": state.has_disadvantage,
            "isPC": actor.has_player_owner,
        }
        logger.debug(f"{token.name} is bleeding out (DC {save['dc']})")
        self._prompt(save, actor)
        return save

    def _prompt(self, save: dict, actor) -> None:
        policy = self.ctx.settings.bleed_out_player_control
        if not save["isPC"] or policy == "auto":
            self.roll_save(save)
            return
        self.manager.runtime(save["sceneId"]).pending_saves[save["tokenId"]] = save
        self.ctx.dialogs.notify(f"{save['tokenName']} is bleeding out! Save DC {save['dc']}", "warning")
        if policy == "player" and self.broadcast is not None:
            owner = self.ctx.player_owner(actor)
            if owner:
                self.broadcast.emit("bleedOutSave", {
                    "userId": owner,
                    "data": {k: save[k] for k in SAVE_PROMPT_FIELDS},
                })

    def pending_saves(self, scene_id: str | None = None) -> list[dict]:
        return list(self.manager.runtime(scene_id).pending_saves.values())

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def roll_save(self, save: dict) -> dict:
        """Roll the save, emit ``bleedOutResult`` and capture on failure."""
        rng = self.ctx.rng
        die = rng.randint(1, 20)
        if save.get("hasDisadvantage"):
            die = min(die, rng.randint(1, 20))
        total = die + int(save.get("conMod") or 0)
        success = total >= save["dc"]

        runtime = self.manager.runtime(save["sceneId"])
        runtime.pending_saves.pop(save["tokenId"], None)
        state = runtime.bleeding.get(save["tokenId"])
        if state is not None:
            if success:
                state.saves_made += 1
                state.has_disadvantage = True
            else:
                state.saves_failed += 1

        name = save["tokenName"]
        result = {
            "tokenId": save["tokenId"],
            "tokenName": name,
            "rollTotal": total,
            "dc": save["dc"],
            "success": success,
            "message": (f"{name} grits their teeth and keeps fighting! (Disadvantage on actions)"
                        if success else f"{name} collapses! CAPTURED!"),
        }
        self.ctx.dialogs.chat(f"{name} Bleed-Out Save (DC {save['dc']}): {total}")
        if self.bus is not None:
            self.bus.publish("bleedOutResult", result)
        if self.broadcast is not None:
            self.broadcast.emit("bleedOutResult", {"data": {k: result[k] for k in RESULT_FIELDS}})
        logger.info(f"Bleed-out save for {name}: {total} vs DC {save['dc']} -> "
                    f"{'success' if success else 'failure'}")
        if not success:
            self.execute_capture(save)
        return result

    def choose(self, token_id: str, choice: str, user_id: str | None = None,
               scene_id: str | None = None) -> bool:
        """Resolve a waiting save with a player or GM choice."""
        runtime = self.manager.runtime(scene_id)
        save = runtime.pending_saves.get(token_id)
        if save is None:
            logger.warning(f"No bleed-out save waiting for {token_id}")
            return False
        if choice == FORCE_CAPTURE and user_id is not None and user_id not in self.ctx.gm_ids():
            logger.warning(f"force_capture refused for non-GM user {user_id}")
            return False
        if choice == FIGHT:
            runtime.pending_saves.pop(token_id, None)
            self.ctx.dialogs.notify(f"{save['tokenName']} fights on despite their wounds!")
        elif choice == ROLL:
            self.roll_save(save)
        elif choice in (SURRENDER, FORCE_CAPTURE):
            if choice == SURRENDER:
                self.ctx.dialogs.notify(f"{save['tokenName']} surrenders to capture.")
            self.execute_capture(save)
        else:
            logger.warning(f"Unknown bleed-out choice '{choice}'")
            return False
        return True

    def on_choice_message(self, payload: dict, sender_id: str) -> None:
        """Broadcast handler for ``bleedOutChoice``."""
        if not self._is_primary():
            return
        self.choose(payload.get("tokenId", ""), payload.get("choice", ""), user_id=sender_id,
                    scene_id=payload.get("sceneId"))

    def execute_capture(self, save: dict) -> bool:
        scene_id = save["sceneId"]
        runtime = self.manager.runtime(scene_id)
        runtime.bleeding.pop(save["tokenId"], None)
        runtime.pending_saves.pop(save["tokenId"], None)
        token = self.ctx.tokens.get(scene_id, save["tokenId"])
        if token is None:
            return False
        actor = self.ctx.token_actor(token)
        if actor is not None and actor.has_player_owner:
            event = self.capture.trigger_outcome(token, JAIL, patrol_name=CAPTURE_PATROL_NAME,
                                                 scene_id=scene_id)
            return event is not None

        combat = (self.ctx.combat.get(save["combatId"]) if save.get("combatId") else None) \
            or self.ctx.combat.active(scene_id)
        if combat is not None:
            self.ctx.combat.remove_combatant(combat.id, token.id)
        undo = self.registry.for_actor(actor).token_hide_remove(scene_id, token.id, apply_to_players=False)
        if undo is None:
            self.ctx.tokens.update(scene_id, token.id, {"hidden": True})
            undo = {"action": "unhideToken", "sceneId": scene_id, "tokenId": token.id}
        if self.journal is not None:
            self.journal.log({
                "type": "bleedOut",
                "message": f"{token.name} knocked out after failing a bleed-out save",
                "payload": {"tokenId": token.id, "sceneId": scene_id},
                "provider": "local",
                "undo": {"actions": [undo]},
            })
        self.ctx.dialogs.notify(f"{save['tokenName']} has been knocked out!")
        return True
