"""Combat automation hooks driven by the AI decision hook.

``on_combat_created``: when a patrol in the new combat automates combat and
the automation level is ``autoResolve``, resolve it (or queue it for
approval).  ``on_combat_turn``: in ``assisted`` mode, suggest an action for
the combatant whose turn it is and perform or queue it.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from loguru import logger

from patrolsim.adapters.base import FLAG_SCOPE

if TYPE_CHECKING:
    from patrolsim.ai.decisions import DecisionHook
    from patrolsim.comms.broadcast import BroadcastLayer
    from patrolsim.host.context import HostContext
    from patrolsim.host.documents import TokenDoc
    from patrolsim.journal import PendingQueue
    from patrolsim.simulation.manager import PatrolManager
    from patrolsim.simulation.patrol import Patrol

AUTO_RESOLVE = "autoResolve"
ASSISTED = "assisted"


class CombatAutomation:
    def __init__(self, ctx: HostContext, manager: PatrolManager, decisions: DecisionHook,
                 pending: PendingQueue | None = None,
                 broadcast: BroadcastLayer | None = None) -> None:
        self.ctx = ctx
        self.manager = manager
        self.decisions = decisions
        self.pending = pending
        self.broadcast = broadcast

    def _is_primary(self) -> bool:
        if not self.ctx.is_gm():
            return False
        return self.broadcast is None or self.broadcast.is_primary()

    def patrol_for(self, token: TokenDoc) -> Patrol | None:
        """The patrol a combatant belongs to: its guard token, or the patrol that spawned it."""
        patrol = self.manager.get_patrol_for_token(token.id)
        if patrol is not None:
            return patrol
        source = (token.flags.get(FLAG_SCOPE) or {}).get("sourcePatrolId")
        return self.manager.get_patrol(source) if source else None

    def automates(self, patrol: Patrol | None) -> bool:
        if patrol is None:
            return False
        if patrol.automate_combat is not None:
            return patrol.automate_combat
        return self.ctx.settings.automate_combat

    def requires_approval(self, patrol: Patrol | None) -> bool:
        if patrol is not None and patrol.automate_require_approval is not None:
            return patrol.automate_require_approval
        return self.ctx.settings.automate_require_approval

    def _tokens(self, combat) -> list[TokenDoc]:
        tokens = [self.ctx.tokens.get(combat.scene_id, c.token_id) for c in combat.combatants]
        return [t for t in tokens if t is not None]

    def on_combat_created(self, combat_id: str) -> str | None:
        """Returns ``resolved``, ``queued`` or None when nothing happened."""
        if not self._is_primary() or not self.decisions.enabled:
            return None
        if self.ctx.settings.combat_automation_level != AUTO_RESOLVE:
            return None
        combat = self.ctx.combat.get(combat_id)
        if combat is None:
            return None
        patrols = [self.patrol_for(t) for t in self._tokens(combat)]
        automated = [p for p in patrols if self.automates(p)]
        if not automated:
            return None
        if any(p.automate_require_approval for p in automated) or \
                self.ctx.settings.automate_require_approval:
            if self.pending is not None:
                self.pending.push({
                    "type": "autoResolveCombat",
                    "message": f"AI suggests auto-resolve for combat {combat_id}",
                    "payload": {"combatId": combat_id},
                })
                self.ctx.dialogs.notify("AI auto-resolve suggestion queued for approval")
                return "queued"
        try:
            self.decisions.auto_resolve_combat(combat_id)
        except Exception:
            logger.exception(f"Error auto-resolving combat {combat_id}")
            return None
        return "resolved"

    def on_combat_turn(self, combat_id: str, turn_changed: bool = True) -> dict | None:
        """Assisted-mode suggestion for the current combatant."""
        settings = self.ctx.settings
        if not turn_changed or not settings.automate_combat:
            return None
        if settings.combat_automation_level != ASSISTED or not self.decisions.enabled:
            return None
        if not self._is_primary():
            return None
        combat = self.ctx.combat.get(combat_id)
        current = combat.current if combat is not None else None
        if current is None:
            return None
        token = self.ctx.tokens.get(combat.scene_id, current.token_id)
        if token is None:
            return None
        patrol = self.patrol_for(token)
        if not self.automates(patrol):
            return None
        try:
            suggestion = self.decisions.suggest_action(combat_id, token.id)
        except Exception:
            logger.exception("AI combat suggestion error")
            return None
        if suggestion is None:
            return None
        self.ctx.dialogs.chat(f"Suggestion for {token.name}: {suggestion['action']}",
                              whisper=self.ctx.gm_ids())
        approval = self.requires_approval(patrol)
        if settings.auto_perform_suggestions and not approval:
            self.decisions.perform_action(combat_id, token.id, suggestion["action"],
                                          suggestion["targetId"])
        elif approval and self.pending is not None:
            self.pending.push({
                "type": "performAction",
                "message": f"AI suggestion for {token.name}: {suggestion['action']}",
                "payload": suggestion,
            })
            self.ctx.dialogs.notify("AI suggestion queued for approval")
        return suggestion

    # ------------------------------------------------------------------
    # Pending approval handlers
    # ------------------------------------------------------------------

    def approve_auto_resolve(self, entry: dict) -> bool:
        combat_id = entry.get("payload", {}).get("combatId", "")
        return self.decisions.auto_resolve_combat(combat_id) is not None

    def approve_perform_action(self, entry: dict) -> bool:
        payload = entry.get("payload", {})
        return self.decisions.perform_action(
            payload.get("combatId", ""), payload.get("attackerId", ""),
            payload.get("action", "attack"), payload.get("targetId"),
        )
