"""PatrolEngine — wires every subsystem over one HostContext.

The host calls the ``on_*`` hook methods from its own lifecycle events and
drives time with ``advance(now)``.  Subsystems talk to each other through the
shared EventBus (``alert`` spawns reinforcements, ``captureStart`` schedules
encounter assistants) and to remote peers through the BroadcastLayer.

Peer roles:
    primary GM  runs patrol loops, captures, reinforcements and bleed-out saves
    other GMs   mirror patrol state from ``patrolUpdate`` / ``syncAll``
    players     render prompts and overlays addressed to them and answer
                interaction and bleed-out prompts
"""

from __future__ import annotations

from loguru import logger

from patrolsim.adapters.registry import AdapterRegistry
from patrolsim.ai.decisions import DecisionHook
from patrolsim.ai.oracle import OpenAIOracle
from patrolsim.automation import CombatAutomation
from patrolsim.barks import BarkSystem
from patrolsim.bleedout import BleedOutGate
from patrolsim.capture.pipeline import CaptureSystem
from patrolsim.comms.broadcast import BroadcastLayer
from patrolsim.comms.event_bus import EventBus
from patrolsim.host.context import HostContext
from patrolsim.jail import JailSystem
from patrolsim.journal import PendingQueue, UndoLog
from patrolsim.reinforcement import ReinforcementSystem
from patrolsim.simulation.clock import Scheduler
from patrolsim.simulation.manager import PatrolManager

# Presentation-only messages re-published on the local bus for renderers
RENDER_MESSAGES = (
    "tokenAppear", "tokenDisappear", "playAppearEffect", "playDisappearEffect",
    "alertTriggered", "telegraph", "bleedOutResult",
)

SURRENDER = "surrender"
NEGOTIATE = "negotiate"
EVADE = "evade"
INTERACTION_DECISIONS = (EVADE, NEGOTIATE, SURRENDER)


class PatrolEngine:
    """One engine per peer."""

    def __init__(self, ctx: HostContext, registry: AdapterRegistry | None = None,
                 oracle: OpenAIOracle | None = None) -> None:
        self.ctx = ctx
        self.scheduler = Scheduler(ctx.clock)
        self.bus = EventBus()
        self.broadcast = BroadcastLayer(ctx.transport)
        self.registry = registry or AdapterRegistry(ctx)
        self.jail = JailSystem(ctx, self.bus, self.broadcast)
        self.journal = UndoLog(ctx, self.registry, self.bus, self.jail)
        self.pending = PendingQueue(ctx, self.journal, self.bus)
        self.decisions = DecisionHook(ctx, self.registry, self.journal,
                                      oracle or OpenAIOracle(ctx.settings))
        self.manager = PatrolManager(ctx, self.scheduler, self.bus, self.broadcast)
        self.capture = CaptureSystem(ctx, self.scheduler, self.bus, self.registry, self.journal,
                                     self.decisions, self.jail, self.manager,
                                     pending=self.pending, broadcast=self.broadcast)
        self.reinforcement = ReinforcementSystem(ctx, self.scheduler, self.bus, self.manager,
                                                 journal=self.journal, jail=self.jail,
                                                 broadcast=self.broadcast)
        self.bleedout = BleedOutGate(ctx, self.manager, self.registry, self.capture,
                                     journal=self.journal, bus=self.bus, broadcast=self.broadcast)
        self.automation = CombatAutomation(ctx, self.manager, self.decisions,
                                           pending=self.pending, broadcast=self.broadcast)
        self.barks = BarkSystem(ctx, self.bus, self.manager, broadcast=self.broadcast)

        # Prompts addressed to this peer, keyed by token id
        self.interaction_prompts: dict[str, dict] = {}
        self.bleed_out_prompts: dict[str, dict] = {}
        self.blindfolded = False

        self._register_pending_handlers()
        self._register_bus_listeners()
        self._register_socket_handlers()

    @property
    def is_primary(self) -> bool:
        return self.ctx.is_gm() and self.broadcast.is_primary()

    def _register_pending_handlers(self) -> None:
        self.pending.register("performAction", self.automation.approve_perform_action)
        self.pending.register("autoResolveCombat", self.automation.approve_auto_resolve)
        self.pending.register("bribery", self.capture.approve_bribery)
        self.pending.register("captureOutcome", self.capture.approve_outcome)

    def _register_bus_listeners(self) -> None:
        self.bus.on("alert", lambda msg: self.reinforcement.on_alert(msg.get("data") or {}))
        self.bus.on("captureStart", lambda msg: self.reinforcement.on_capture_start(msg.get("data") or {}))
        self.barks.attach()

    def _register_socket_handlers(self) -> None:
        b = self.broadcast
        b.on("patrolUpdate", self._on_patrol_update)
        b.on("syncAll", self._on_sync_all)
        b.on("requestSync", self._on_request_sync)
        b.on("interactionResponse", self._on_interaction_response)
        b.on("bleedOutChoice", self.bleedout.on_choice_message)
        b.on("openInteractionWindow", self._on_open_interaction)
        b.on("bleedOutSave", self._on_bleed_out_save)
        b.on("alertPopup", self._on_alert_popup)
        b.on("pullToScene", self._on_pull_to_scene)
        b.on("blindfold", self._on_blindfold)
        b.on("unblind", self._on_unblind)
        for message_type in RENDER_MESSAGES:
            b.on(message_type, self._republisher(message_type))

    def _republisher(self, message_type: str):
        def handler(payload: dict, sender_id: str) -> None:
            self.bus.publish(message_type, {**payload, "remote": True, "senderId": sender_id})
        return handler

    # ------------------------------------------------------------------
    # Host hooks
    # ------------------------------------------------------------------

    def ready(self) -> None:
        """Host finished loading. Players ask the GM for the current patrol state."""
        logger.info(f"Patrol engine ready for user {self.ctx.user_id} "
                    f"({'GM' if self.ctx.is_gm() else 'player'}, primary={self.is_primary})")
        if not self.ctx.is_gm():
            self.broadcast.emit("requestSync", {"requesterId": self.ctx.user_id})
        self.bus.publish("ready", {"userId": self.ctx.user_id})

    def on_canvas_ready(self, scene_id: str) -> list:
        if self.jail.is_jail_scene(scene_id) and self.ctx.is_gm():
            scene = self.ctx.scenes.get(scene_id)
            if scene is not None:
                self.jail.prepare_jail_scene(scene)
        return self.manager.load_scene_patrols(scene_id)

    def on_canvas_teardown(self) -> None:
        scene_id = self.manager.scene_id
        logger.debug("Canvas teardown - cleaning up")
        self.manager.save_scene_state(scene_id)
        self.reinforcement.cancel_all()
        self.capture.blindfold.cancel_all()
        self.manager.cleanup(persist=False)
        if scene_id is not None:
            self.manager.runtime(scene_id).clear_volatile()

    def on_pre_update_scene(self, scene_id: str) -> list[dict]:
        """The host is about to switch away from ``scene_id``."""
        return self.manager.save_scene_state(scene_id)

    def on_token_deleted(self, scene_id: str, token_id: str) -> None:
        self.manager.handle_token_delete(scene_id, token_id)
        runtime = self.manager.runtime(scene_id)
        runtime.reinforcements.pop(token_id, None)
        runtime.assistants.pop(token_id, None)
        runtime.bleeding.pop(token_id, None)
        runtime.pending_saves.pop(token_id, None)

    def on_combat_created(self, combat_id: str) -> str | None:
        return self.automation.on_combat_created(combat_id)

    def on_combat_turn(self, combat_id: str, turn_changed: bool = True,
                       round_changed: bool = False) -> None:
        if not turn_changed and not round_changed:
            return
        self.automation.on_combat_turn(combat_id, turn_changed)
        self.bleedout.check_combat(combat_id)

    def advance(self, now: float | None = None) -> int:
        """Fire every timer due at ``now``. Returns the number fired."""
        return self.scheduler.advance(now)

    # ------------------------------------------------------------------
    # GM-side socket handlers
    # ------------------------------------------------------------------

    def _on_patrol_update(self, payload: dict, sender_id: str) -> None:
        if self.is_primary:
            return
        self.manager.apply_remote_update(payload)

    def _on_sync_all(self, payload: dict, sender_id: str) -> None:
        if self.is_primary:
            return
        for update in payload.get("patrols", []):
            self.manager.apply_remote_update(update)

    def _on_request_sync(self, payload: dict, sender_id: str) -> None:
        if not self.is_primary:
            return
        self.broadcast.emit("syncAll", {
            "requesterId": payload.get("requesterId", sender_id),
            "patrols": [p.update_payload() for p in self.manager.get_patrols()],
        })

    def _on_interaction_response(self, payload: dict, sender_id: str) -> None:
        if not self.is_primary:
            return
        decision = payload.get("decision")
        token_name = payload.get("tokenName", "Someone")
        patrol_name = payload.get("patrolName", "Patrol")
        self.ctx.dialogs.chat(f"{patrol_name} spotted {token_name}. Decision: {decision}")
        self.ctx.dialogs.notify(f"{token_name} chose to {decision}.")
        self.bus.publish("interactionResponse", {**payload, "senderId": sender_id})
        if decision not in (SURRENDER, NEGOTIATE):
            return
        patrol = self.manager.get_patrol(payload.get("patrolId", ""))
        if patrol is None:
            return
        token = self.ctx.tokens.get(patrol.scene_id, payload.get("tokenId", ""))
        if token is None:
            return
        self.capture.initiate_capture(patrol, token, skip_bribery=decision == SURRENDER)

    # ------------------------------------------------------------------
    # Player-side socket handlers
    # ------------------------------------------------------------------

    def _for_me(self, payload: dict, key: str = "targetUserId") -> bool:
        return payload.get(key) == self.ctx.user_id

    def _on_open_interaction(self, payload: dict, sender_id: str) -> None:
        if not self._for_me(payload):
            return
        self.interaction_prompts[payload.get("tokenId", "")] = payload
        self.ctx.dialogs.notify(f"{payload.get('patrolName', 'A patrol')} spotted "
                                f"{payload.get('tokenName', 'you')}!", "warning",
                                user_id=self.ctx.user_id)

    def respond_to_interaction(self, token_id: str, decision: str) -> bool:
        """Answer an open interaction prompt with evade, negotiate or surrender."""
        prompt = self.interaction_prompts.pop(token_id, None)
        if prompt is None or decision not in INTERACTION_DECISIONS:
            return False
        payload = {k: v for k, v in prompt.items() if k != "targetUserId"}
        self.ctx.dialogs.notify(f"You chose to {decision}.", user_id=self.ctx.user_id)
        return self.broadcast.emit("interactionResponse", {**payload, "decision": decision})

    def _on_bleed_out_save(self, payload: dict, sender_id: str) -> None:
        if not self._for_me(payload, "userId"):
            return
        data = payload.get("data") or {}
        self.bleed_out_prompts[data.get("tokenId", "")] = data
        self.ctx.dialogs.notify(f"{data.get('tokenName')} is bleeding out! DC {data.get('dc')}",
                                "warning", user_id=self.ctx.user_id)

    def send_bleed_out_choice(self, token_id: str, choice: str) -> bool:
        prompt = self.bleed_out_prompts.pop(token_id, None)
        if prompt is None:
            return False
        return self.broadcast.emit("bleedOutChoice", {
            "tokenId": token_id,
            "choice": choice,
        })

    def _on_alert_popup(self, payload: dict, sender_id: str) -> None:
        if not self._for_me(payload, "userId"):
            return
        count = (payload.get("data") or {}).get("reinforcementCount", 0)
        self.ctx.dialogs.notify(f"ALERT TRIGGERED! {count} reinforcements incoming!", "warning",
                                user_id=self.ctx.user_id)

    def _on_pull_to_scene(self, payload: dict, sender_id: str) -> None:
        if self._for_me(payload, "userId") and payload.get("sceneId"):
            self.ctx.scenes.view(payload["sceneId"])

    def _on_blindfold(self, payload: dict, sender_id: str) -> None:
        if self._for_me(payload):
            self.blindfolded = True
            self.bus.publish("blindfold", payload)

    def _on_unblind(self, payload: dict, sender_id: str) -> None:
        if self._for_me(payload):
            self.blindfolded = False
            self.bus.publish("unblind", payload)
