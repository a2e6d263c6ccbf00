"""Guard barks — short in-character chat lines for patrol events.

The primary GM peer listens on the EventBus and speaks a random line from the
matching table when a patrol appears or vanishes, raises an alert, or
resolves a capture.  Each bark type has its own cooldown so a busy scene does
not flood the chat.  Barks are text only.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from loguru import logger

from patrolsim.capture.outcomes import (
    BLINDFOLD,
    BRIBE_BETRAYAL,
    BRIBE_GENEROUS,
    BRIBE_SUCCESS,
    COMBAT,
    DISREGARD,
    JAIL,
    THEFT,
)

if TYPE_CHECKING:
    from patrolsim.comms.broadcast import BroadcastLayer
    from patrolsim.comms.event_bus import EventBus
    from patrolsim.host.context import HostContext
    from patrolsim.simulation.manager import PatrolManager

SPAWN = "spawn"
DESPAWN = "despawn"
CAPTURE = "capture"
THEFT_RELEASE = "theft_release"
BRIBERY_ACCEPT = "bribery_accept"
BRIBERY_GENEROUS = "bribery_generous"
BRIBERY_BETRAYAL = "bribery_betrayal"
ALERT = "alert"

BARK_TEXT: dict[str, tuple[str, ...]] = {
    SPAWN: (
        "Resuming patrol.",
        "Something feels off tonight.",
        "All quiet... for now.",
        "Back to work.",
        "Stay vigilant.",
    ),
    DESPAWN: (
        "All clear here.",
        "Moving to next position.",
        "Sector secure.",
        "Nothing to report.",
        "Continuing patrol.",
    ),
    CAPTURE: (
        "Freeze!",
        "Got one!",
        "You're under arrest!",
        "Don't move!",
        "Halt! You're coming with me!",
        "End of the line, criminal!",
    ),
    DISREGARD: (
        "Must've been the wind.",
        "False alarm.",
        "Hmm... nothing here.",
        "Thought I saw something.",
        "Rats again, probably.",
    ),
    THEFT: (
        "I'll be taking this.",
        "Consider it a fine.",
        "This'll cover the paperwork.",
        "A little contribution to the guard fund.",
        "You won't be needing this.",
    ),
    THEFT_RELEASE: (
        "Now get out of my sight.",
        "Don't let me catch you again.",
        "Move along.",
        "Consider yourself lucky.",
        "Scram!",
    ),
    BRIBERY_ACCEPT: (
        "Very well... move along quickly.",
        "This never happened.",
        "A wise decision.",
        "You've got good sense.",
        "Pleasure doing business.",
    ),
    BRIBERY_GENEROUS: (
        "Just get out of here.",
        "Keep your coin, but don't come back.",
        "I'm feeling generous today.",
        "Go. Now. Before I change my mind.",
        "This one's on me.",
    ),
    BRIBERY_BETRAYAL: (
        "I'll take that... and you're still coming with me!",
        "Thanks for the gold. Now move it!",
        "Did you really think that would work?",
        "Nice try. Now you're REALLY in trouble.",
        "Double the crime, double the punishment!",
    ),
    ALERT: (
        "What was that?!",
        "Stay alert!",
        "Something's wrong!",
        "I heard something!",
        "Eyes open, everyone!",
    ),
}

OUTCOME_BARKS: dict[str, tuple[str, ...]] = {
    COMBAT: (CAPTURE,),
    JAIL: (CAPTURE,),
    BLINDFOLD: (CAPTURE,),
    DISREGARD: (DISREGARD,),
    THEFT: (THEFT, THEFT_RELEASE),
    BRIBE_SUCCESS: (BRIBERY_ACCEPT,),
    BRIBE_GENEROUS: (BRIBERY_GENEROUS,),
    BRIBE_BETRAYAL: (BRIBERY_BETRAYAL,),
}

DEFAULT_SPEAKER = "Guard"


class BarkSystem:
    def __init__(self, ctx: HostContext, bus: EventBus, manager: PatrolManager,
                 broadcast: BroadcastLayer | None = None) -> None:
        self.ctx = ctx
        self.bus = bus
        self.manager = manager
        self.broadcast = broadcast
        self._last_bark: dict[str, float] = {}

    def attach(self) -> None:
        self.bus.on("playAppearEffect", lambda msg: self._on_effect(SPAWN, msg))
        self.bus.on("playDisappearEffect", lambda msg: self._on_effect(DESPAWN, msg))
        self.bus.on("alert", self._on_alert)
        self.bus.on("captureResolved", self._on_capture_resolved)

    def _is_primary(self) -> bool:
        if not self.ctx.is_gm():
            return False
        return self.broadcast is None or self.broadcast.is_primary()

    def play(self, bark_type: str, speaker: str | None = None, force: bool = False) -> str | None:
        """Speak one random line of ``bark_type``. Returns the line, or None when silent."""
        settings = self.ctx.settings
        if not settings.barks_enabled:
            return None
        now = self.ctx.clock.now()
        last = self._last_bark.get(bark_type)
        if not force and last is not None and now - last < settings.bark_cooldown:
            logger.debug(f"Bark '{bark_type}' on cooldown")
            return None
        lines = BARK_TEXT.get(bark_type)
        if not lines:
            logger.warning(f"Unknown bark type '{bark_type}'")
            return None
        self._last_bark[bark_type] = now
        text = self.ctx.rng.choice(lines)
        self.ctx.dialogs.chat(f'{speaker or DEFAULT_SPEAKER}: "{text}"')
        return text

    def _on_effect(self, bark_type: str, msg: dict) -> None:
        data = msg.get("data") or {}
        if data.get("remote") or not self._is_primary():
            return
        patrol = self.manager.get_patrol_for_token(data.get("tokenId") or "")
        if patrol is not None:
            self.play(bark_type, patrol.name)

    def _on_alert(self, msg: dict) -> None:
        if not self._is_primary():
            return
        patrol = self.manager.get_patrol((msg.get("data") or {}).get("patrolId", ""))
        self.play(ALERT, patrol.name if patrol else None)

    def _on_capture_resolved(self, msg: dict) -> None:
        if not self._is_primary():
            return
        data = msg.get("data") or {}
        for bark_type in OUTCOME_BARKS.get(data.get("outcome") or "", ()):
            self.play(bark_type, data.get("patrolName"))
