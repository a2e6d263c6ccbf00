"""CaptureSystem — bribery pre-step, outcome selection, and the outcome executors.

Flow for a patrol catching a token::

    initiate_capture(patrol, token)
        -> bribery (decision hook; optional GM approval)
             accepted -> bribe_success
             refused  -> outcome selection
        -> outcome selection (weighted draw, or the decision hook when the
           patrol automates decisions; optional GM approval)
        -> executor (combat / theft / blindfold / disregard / jail)

Each executed outcome writes one journal record holding its compensating
actions and publishes ``captureResolved`` on the bus.  Captures waiting on
GM approval stay unresolved until ``resolve_bribery`` is called, either by
the pending queue or directly by the GM.
"""

from __future__ import annotations

import math
from typing import TYPE_CHECKING

from loguru import logger

from patrolsim.errors import UnknownOutcomeError
from patrolsim.host.documents import distance

from .blindfold import Blindfolder
from .outcomes import (
    BLINDFOLD,
    BRIBE_BETRAYAL,
    BRIBE_GENEROUS,
    BRIBE_SUCCESS,
    BRIBERY_RESULTS,
    CAPTURE_OUTCOMES,
    COMBAT,
    DISREGARD,
    GM_TRIGGERED,
    JAIL,
    RANDOM,
    THEFT,
    CaptureEvent,
    weighted_draw,
)
from .theft import Thief

if TYPE_CHECKING:
    from patrolsim.adapters.registry import AdapterRegistry
    from patrolsim.ai.decisions import DecisionHook
    from patrolsim.comms.broadcast import BroadcastLayer
    from patrolsim.comms.event_bus import EventBus
    from patrolsim.host.context import HostContext
    from patrolsim.host.documents import TokenDoc
    from patrolsim.jail import JailSystem
    from patrolsim.journal import PendingQueue, UndoLog
    from patrolsim.simulation.clock import Scheduler
    from patrolsim.simulation.manager import PatrolManager
    from patrolsim.simulation.patrol import Patrol


class CaptureSystem:
    """Runs captures for the GM peer."""

    def __init__(self, ctx: HostContext, scheduler: Scheduler, bus: EventBus,
                 registry: AdapterRegistry, journal: UndoLog, decisions: DecisionHook,
                 jail: JailSystem, manager: PatrolManager,
                 pending: PendingQueue | None = None,
                 broadcast: BroadcastLayer | None = None) -> None:
        self.ctx = ctx
        self.bus = bus
        self.registry = registry
        self.journal = journal
        self.decisions = decisions
        self.jail = jail
        self.manager = manager
        self.pending = pending
        self.broadcast = broadcast
        self.blindfold = Blindfolder(ctx, scheduler, broadcast)
        self._captures: dict[str, CaptureEvent] = {}

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def get_capture(self, capture_id: str) -> CaptureEvent | None:
        return self._captures.get(capture_id)

    def get_captures(self, unresolved_only: bool = False) -> list[CaptureEvent]:
        return [c for c in self._captures.values() if not (unresolved_only and c.resolved)]

    def _new_event(self, patrol_id: str, patrol_name: str, scene_id: str,
                   token: TokenDoc, gm_triggered: bool = False) -> CaptureEvent:
        event = CaptureEvent(
            patrol_id=patrol_id,
            patrol_name=patrol_name,
            token_id=token.id,
            token_name=token.name,
            scene_id=scene_id,
            actor_id=token.actor_id,
            timestamp=self.ctx.clock.now(),
            gm_triggered=gm_triggered,
        )
        self._captures[event.id] = event
        return event

    def _automates(self, patrol: Patrol | None) -> bool:
        if patrol is not None and patrol.automate_decisions is not None:
            return patrol.automate_decisions
        return self.ctx.settings.automate_decisions

    def _requires_approval(self, patrol: Patrol | None) -> bool:
        if self.pending is None:
            return False
        if patrol is not None and patrol.automate_require_approval is not None:
            return patrol.automate_require_approval
        return self.ctx.settings.automate_require_approval

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def initiate_capture(self, patrol: Patrol, token: TokenDoc,
                         skip_bribery: bool = False) -> CaptureEvent | None:
        """Start a capture of ``token`` by ``patrol``. GM only."""
        if not self.ctx.is_gm():
            logger.warning("Capture ignored: not a GM peer")
            return None
        if not self.ctx.settings.capture_enabled:
            logger.debug("Capture disabled in settings")
            return None
        event = self._new_event(patrol.id, patrol.name, patrol.scene_id, token)
        logger.info(f"Capture initiated: {patrol.name} caught {token.name}")
        self.bus.publish("captureInitiated", event.to_dict())
        if self.ctx.settings.bribery_enabled and not skip_bribery:
            self._offer_bribery(event, patrol, token)
        else:
            self._select_outcome(event, patrol, token)
        return event

    def trigger_outcome(self, token: TokenDoc, outcome: str, patrol_name: str = "Guard",
                        scene_id: str | None = None,
                        patrol: Patrol | None = None) -> CaptureEvent | None:
        """GM-forced outcome: no bribery and no draw."""
        if not self.ctx.is_gm():
            return None
        sid = scene_id or (patrol.scene_id if patrol else self.ctx.scenes.active_scene_id())
        if sid is None:
            return None
        event = self._new_event(patrol.id if patrol else GM_TRIGGERED,
                                patrol.name if patrol else patrol_name, sid, token,
                                gm_triggered=True)
        self._execute(event, patrol, token, outcome)
        return event

    def resolve_bribery(self, capture_id: str, decision: str) -> bool:
        """Resolve a capture that is waiting on the GM.

        ``decision`` is a bribery result, ``random``, or any capture outcome.
        """
        event = self._captures.get(capture_id)
        if event is None or event.resolved:
            logger.warning(f"No unresolved capture {capture_id}")
            return False
        token = self.ctx.tokens.get(event.scene_id, event.token_id)
        if token is None:
            logger.warning(f"Captured token {event.token_id} is gone")
            return False
        patrol = self.manager.get_patrol(event.patrol_id)
        event.details.pop("awaiting", None)
        if decision == RANDOM:
            self._select_outcome(event, patrol, token, allow_pending=False)
            return True
        if decision not in CAPTURE_OUTCOMES and decision not in BRIBERY_RESULTS:
            logger.warning(f"Unknown capture decision '{decision}'")
            return False
        self._execute(event, patrol, token, decision)
        return True

    # ------------------------------------------------------------------
    # Bribery and selection
    # ------------------------------------------------------------------

    def _offer_bribery(self, event: CaptureEvent, patrol: Patrol, token: TokenDoc) -> None:
        actor = self.ctx.token_actor(token)
        if actor is None:
            self._select_outcome(event, patrol, token)
            return
        settings = self.ctx.settings
        multiplier = patrol.bribe_multiplier or 1.0
        bribe = math.floor(settings.bribery_base_cost * multiplier)
        gold = self.registry.for_actor(actor).get_gold(actor)
        event.bribe_amount = bribe
        accepted = self.decisions.decide_bribery(
            bribe, gold, settings.bribery_base_cost, multiplier, patrol.aggressiveness,
        )
        if self._requires_approval(patrol):
            event.details["awaiting"] = "bribery"
            self.pending.push({
                "type": "bribery",
                "message": f"AI suggests {'accepting' if accepted else 'refusing'} "
                           f"a {bribe} gold bribe from {token.name}",
                "payload": {"captureId": event.id, "playerId": actor.id, "tokenId": token.id,
                            "patrolId": patrol.id, "accepted": accepted, "bribeAmount": bribe},
            })
            return
        if accepted:
            self._execute(event, patrol, token, BRIBE_SUCCESS)
        else:
            self._select_outcome(event, patrol, token)

    def _outcome_weights(self) -> dict[str, int]:
        weights = self.ctx.settings.capture_outcome_weights
        return {k: int(weights.get(k, 0)) for k in CAPTURE_OUTCOMES if weights.get(k, 0) > 0}

    def _select_outcome(self, event: CaptureEvent, patrol: Patrol | None, token: TokenDoc,
                        allow_pending: bool = True) -> None:
        weights = self._outcome_weights()
        if self._automates(patrol):
            outcome = self.decisions.decide_capture_outcome(
                weights, {"aggressiveness": patrol.aggressiveness if patrol else "normal",
                          "tokenName": token.name},
            )
            if allow_pending and self._requires_approval(patrol):
                event.details["awaiting"] = "captureOutcome"
                self.pending.push({
                    "type": "captureOutcome",
                    "message": f"AI suggests {outcome} for {token.name}",
                    "payload": {"captureId": event.id, "playerId": event.actor_id,
                                "patrolId": event.patrol_id, "outcome": outcome},
                })
                return
        else:
            try:
                outcome = weighted_draw(weights, self.ctx.rng)
            except UnknownOutcomeError:
                logger.warning("All capture outcome weights are zero, defaulting to combat")
                outcome = COMBAT
        logger.debug(f"Capture outcome selected: {outcome}")
        self._execute(event, patrol, token, outcome)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _execute(self, event: CaptureEvent, patrol: Patrol | None, token: TokenDoc,
                 outcome: str) -> None:
        event.outcome = outcome
        undo: list[dict] = []
        executors = {
            COMBAT: self._execute_combat,
            THEFT: self._execute_theft,
            BLINDFOLD: self._execute_blindfold,
            DISREGARD: self._execute_disregard,
            JAIL: self._execute_jail,
            BRIBE_SUCCESS: self._execute_bribe,
            BRIBE_GENEROUS: self._execute_bribe,
            BRIBE_BETRAYAL: self._execute_bribe,
        }
        executor = executors.get(outcome)
        if executor is None:
            logger.warning(f"Unknown outcome: {outcome}")
        else:
            try:
                undo = executor(event, patrol, token) or []
            except Exception:
                logger.exception(f"Capture outcome {outcome} failed for {token.name}")
                self._soft_fallback(event, token, undo)
        event.resolved = True
        self.journal.log({
            "type": "capture",
            "message": f"{event.patrol_name} captured {event.token_name}: {event.outcome}",
            "payload": event.to_dict(),
            "undo": {"actions": undo},
        })
        logger.info(f"Capture resolved: {event.token_name} -> {event.outcome}")
        self.bus.publish("captureResolved", event.to_dict())

    def _soft_fallback(self, event: CaptureEvent, token: TokenDoc, undo: list[dict]) -> None:
        if self.ctx.tokens.update(event.scene_id, token.id, {"hidden": True}) is not None:
            undo.append({"action": "unhideToken", "sceneId": event.scene_id, "tokenId": token.id})
            event.details["fallback"] = "hidden"

    def _execute_bribe(self, event: CaptureEvent, patrol: Patrol | None,
                       token: TokenDoc) -> list[dict]:
        undo: list[dict] = []
        actor = self.ctx.token_actor(token)
        bribe = event.bribe_amount
        if bribe is None:
            multiplier = patrol.bribe_multiplier if patrol else 1.0
            bribe = event.bribe_amount = math.floor(self.ctx.settings.bribery_base_cost * multiplier)
        if event.outcome in (BRIBE_SUCCESS, BRIBE_BETRAYAL) and actor is not None:
            result = self.registry.for_actor(actor).remove_gold(actor, bribe)
            if result is not None:
                undo.append({"action": "restoreGold", "actorId": actor.id, "before": result["before"]})
        name = event.patrol_name
        if event.outcome == BRIBE_SUCCESS:
            self.ctx.dialogs.notify(f"{name} accepted the bribe and released {token.name}")
        elif event.outcome == BRIBE_GENEROUS:
            self.ctx.dialogs.notify(f"{name} let {token.name} go without taking the bribe")
        else:
            self.ctx.dialogs.notify(f"{name} took the bribe and STILL arrested {token.name}!", "warning")
            undo.extend(self._execute_jail(event, patrol, token))
            event.outcome = BRIBE_BETRAYAL
        return undo

    def _execute_combat(self, event: CaptureEvent, patrol: Patrol | None,
                        token: TokenDoc) -> list[dict]:
        guard = patrol.token if patrol is not None else None
        if guard is not None:
            combat = self.ctx.combat.active(event.scene_id) or self.ctx.combat.create(event.scene_id)
            self.ctx.combat.add_combatants(combat.id, [guard.id, token.id])
            self.ctx.combat.roll_initiative(combat.id)
            event.details["combatId"] = combat.id
            patrol.engage_combat()
            self.ctx.dialogs.notify(f"{event.patrol_name} attacks {token.name}!", "warning")
            self.bus.publish("captureStart", {
                "captureId": event.id,
                "patrolId": event.patrol_id,
                "sceneId": event.scene_id,
                "tokenId": token.id,
                "combatId": combat.id,
            })
        if patrol is not None:
            event.details["alerted"] = self.alert_nearby_patrols(patrol)
        return []

    def alert_nearby_patrols(self, patrol: Patrol) -> list[str]:
        """Raise the alert of every other active patrol within ``alert_radius`` px."""
        guard = patrol.token
        if guard is None:
            return []
        radius = self.ctx.settings.alert_radius
        alerted = []
        for other in self.manager.get_patrols():
            if other.id == patrol.id or not other.is_active:
                continue
            other_token = other.token
            if other_token is None:
                continue
            if distance((guard.x, guard.y), (other_token.x, other_token.y)) <= radius:
                other.raise_alert()
                alerted.append(other.id)
                logger.debug(f"{other.name} alerted by {patrol.name}")
        return alerted

    def _execute_theft(self, event: CaptureEvent, patrol: Patrol | None,
                       token: TokenDoc) -> list[dict]:
        settings = self.ctx.settings
        actor = self.ctx.token_actor(token)
        if actor is None:
            self.ctx.dialogs.notify(f"{event.patrol_name} searched {token.name} but found nothing.")
            return []
        thief = Thief(self.ctx, self.registry.for_actor(actor))
        stolen = thief.steal(actor)
        event.details["stolen"] = [{k: v for k, v in s.items() if k != "itemData"} for s in stolen]
        if not stolen:
            self.ctx.dialogs.notify(
                f"{event.patrol_name} searched {token.name} but found nothing worth taking.")
        else:
            if settings.theft_notify_player:
                listing = ", ".join(s["name"] for s in stolen)
                self.ctx.dialogs.notify(f"{event.patrol_name} confiscated: {listing}", "warning",
                                        user_id=self.ctx.player_owner(actor))
            guard_actor = self.ctx.token_actor(patrol.token) if patrol is not None else None
            if settings.theft_transfer_to_guard and guard_actor is not None:
                thief.transfer_to(guard_actor, self.registry.for_actor(guard_actor))
        self.ctx.dialogs.notify(f'{event.patrol_name} released {token.name} after the "inspection".')
        return thief.undo

    def _execute_blindfold(self, event: CaptureEvent, patrol: Patrol | None,
                           token: TokenDoc) -> list[dict]:
        owner = self.ctx.player_owner(self.ctx.token_actor(token))
        before = token.to_dict()
        event.details["duration"] = self.blindfold.start(event.scene_id, token, owner)
        return [{"action": "restoreToken", "sceneId": event.scene_id, "tokenDoc": before}]

    def _execute_disregard(self, event: CaptureEvent, patrol: Patrol | None,
                           token: TokenDoc) -> list[dict]:
        self.ctx.dialogs.notify(
            f'{event.patrol_name} glances at {token.name}... "Must\'ve been the wind."')
        if patrol is not None:
            patrol.reset_alert()
        return []

    def _execute_jail(self, event: CaptureEvent, patrol: Patrol | None,
                      token: TokenDoc) -> list[dict]:
        actor = self.ctx.token_actor(token)
        record = None
        if self.ctx.settings.jail_enabled and actor is not None:
            adapter = self.registry.for_actor(actor)
            level = adapter.get_level(actor)
            scale = {"playerLevel": round(level) if level else 1}
            if patrol is not None and patrol.target_level:
                scale["partyLevel"] = patrol.target_level
            record = self.jail.send_to_jail(event.scene_id, token.id,
                                            captured_by=event.patrol_name, scale_info=scale)
        if record is None:
            self.ctx.dialogs.notify("Failed to send player to jail!", "error")
            event.details["jailFailed"] = True
            event.outcome = COMBAT
            return self._execute_combat(event, patrol, token)
        event.details["jailSceneId"] = record["jailSceneId"]
        self.bus.publish("playerJailed", {
            "tokenId": token.id,
            "actorId": record["actorId"],
            "jailSceneId": record["jailSceneId"],
            "jailName": record["jailName"],
            "patrolName": event.patrol_name,
        })
        return [{"action": "releasePrisoner", "actorId": record["actorId"], "returnToOrigin": True}]

    # ------------------------------------------------------------------
    # Pending approval handlers
    # ------------------------------------------------------------------

    def approve_bribery(self, entry: dict) -> bool:
        payload = entry.get("payload", {})
        decision = BRIBE_SUCCESS if payload.get("accepted") else RANDOM
        return self.resolve_bribery(payload.get("captureId", ""), decision)

    def approve_outcome(self, entry: dict) -> bool:
        payload = entry.get("payload", {})
        return self.resolve_bribery(payload.get("captureId", ""), payload.get("outcome", RANDOM))
