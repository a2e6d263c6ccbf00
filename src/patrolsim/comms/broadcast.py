"""Peer sync layer — primary-executor election and typed socket messages.

Every message on the wire is an envelope ``{type, payload, userId}``.  The
sender's own echo is dropped on receipt.  Delivery is best effort,
at-most-once and unordered, so every receiver must be idempotent.

Primary election:
    Among active GM peers, the one with the lexicographically smallest id is
    the primary executor.  Only the primary progresses patrol loops, captures,
    reinforcements, and bleed-out saves; every other peer mirrors state from
    the messages it receives.
"""

from __future__ import annotations

from typing import Any, Callable

from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from patrolsim.host.documents import User
from patrolsim.host.services import Transport

MESSAGE_TYPES = frozenset({
    "patrolStart", "patrolStop", "patrolPause", "patrolResume",
    "patrolUpdate",
    "tokenAppear", "tokenDisappear",
    "playAppearEffect", "playDisappearEffect",
    "alertTriggered", "alertPopup",
    "openInteractionWindow", "interactionResponse",
    "bleedOutSave", "bleedOutResult", "bleedOutChoice",
    "pullToScene",
    "requestSync", "syncAll", "syncPatrol",
    "blindfold", "unblind",
    "telegraph",
})

Handler = Callable[[dict, str], Any]


class SocketMessage(BaseModel):
    """Wire envelope."""
    type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    userId: str


def active_gms(users: list[User]) -> list[User]:
    """Active GM peers sorted by id."""
    return sorted((u for u in users if u.active and u.is_gm), key=lambda u: u.id)


class BroadcastLayer:
    """Wraps a raw Transport with typing, self-filtering, and election."""

    def __init__(self, transport: Transport) -> None:
        self._transport = transport
        self._handlers: dict[str, list[Handler]] = {}
        self._sent = 0
        self._dropped = 0
        transport.set_handler(self._receive)

    @property
    def user_id(self) -> str:
        return self._transport.user_id

    @property
    def stats(self) -> dict:
        return {"sent": self._sent, "dropped": self._dropped}

    def is_primary(self) -> bool:
        gms = active_gms(self._transport.users())
        return bool(gms) and gms[0].id == self.user_id

    def primary_id(self) -> str | None:
        gms = active_gms(self._transport.users())
        return gms[0].id if gms else None

    def is_gm(self, user_id: str | None = None) -> bool:
        uid = user_id or self.user_id
        return any(u.id == uid and u.is_gm for u in self._transport.users())

    def on(self, message_type: str, handler: Handler) -> None:
        """Register a receiver. Handlers get ``(payload, sender_id)``."""
        if message_type not in MESSAGE_TYPES:
            raise ValueError(f"Unknown message type '{message_type}'")
        self._handlers.setdefault(message_type, []).append(handler)

    def emit(self, message_type: str, payload: dict | None = None) -> bool:
        """Send to every peer. Failures are logged and never raised."""
        if message_type not in MESSAGE_TYPES:
            logger.warning(f"Refusing to emit unknown message type '{message_type}'")
            return False
        envelope = SocketMessage(type=message_type, payload=payload or {}, userId=self.user_id)
        try:
            self._transport.emit(envelope.model_dump())
        except Exception as exc:
            logger.warning(f"Broadcast of {message_type} failed: {exc}")
            return False
        self._sent += 1
        return True

    def _receive(self, raw: dict) -> None:
        try:
            msg = SocketMessage.model_validate(raw)
        except ValidationError as exc:
            self._dropped += 1
            logger.warning(f"Dropping malformed socket message: {exc.errors()[:1]}")
            return
        if msg.userId == self.user_id:
            return
        handlers = self._handlers.get(msg.type, [])
        if not handlers:
            logger.debug(f"No handler for {msg.type}")
            return
        for handler in handlers:
            try:
                handler(msg.payload, msg.userId)
            except Exception:
                logger.exception(f"Handler for {msg.type} failed")
