"""Decision journal — the undo log and the pending-approval ring.

Every state-mutating decision (capture outcome, auto-resolve defeat, AI
attack, reinforcement spawn) appends one record to the undo log::

    {timestamp, type, message, payload, provider, undo: {actions: [...]}}

``timestamp`` is a strictly increasing integer (milliseconds) and doubles as
the record id.  ``undo.actions`` is an ordered list of compensating actions,
each carrying the snapshot it needs:

    restoreToken    {sceneId, tokenDoc, actorId?, beforeHp?}
    unhideToken     {sceneId, tokenId}
    restoreGold     {actorId, before}
    restoreItem     {actorId, itemData}
    restoreHp       {actorId, before}
    releasePrisoner {actorId, returnToOrigin?}

Undo runs the actions in order.  Before each action runs, the state it is
about to overwrite is captured as that action's inverse.  When an action
fails, the inverses of the actions already applied run in reverse order and
every failure is collected into ``errors``.

The pending ring holds forward actions awaiting GM approval.  Approval pops
the entry and dispatches it to the handler registered for its ``type``.
"""

from __future__ import annotations

import copy
import time
from typing import TYPE_CHECKING, Any, Callable

from loguru import logger

from patrolsim.host.documents import TokenDoc

if TYPE_CHECKING:
    from patrolsim.adapters.registry import AdapterRegistry
    from patrolsim.comms.event_bus import EventBus
    from patrolsim.host.context import HostContext
    from patrolsim.jail import JailSystem

LOG_KEY = "aiLog"
PENDING_KEY = "aiPending"

UNDO_ACTIONS = (
    "restoreToken", "unhideToken", "restoreGold",
    "restoreItem", "restoreHp", "releasePrisoner",
)


class UndoStepError(Exception):
    """One compensating action could not be applied."""


def undo_actions(entry: dict) -> list[dict]:
    """Normalise ``entry["undo"]`` to a list of actions.

    Single-action records (``undo: {action: ...}``) are accepted as a list of one.
    """
    undo = entry.get("undo")
    if not undo:
        return []
    if isinstance(undo, dict) and "actions" in undo:
        return [a for a in undo["actions"] if isinstance(a, dict)]
    if isinstance(undo, dict) and "action" in undo:
        return [undo]
    if isinstance(undo, list):
        return [a for a in undo if isinstance(a, dict)]
    return []


class _Stamp:
    """Strictly increasing millisecond stamps."""

    def __init__(self) -> None:
        self._last = 0

    def next(self) -> int:
        now = int(time.time() * 1000)
        self._last = max(now, self._last + 1)
        return self._last

    def seen(self, value: int) -> None:
        self._last = max(self._last, int(value))


class UndoLog:
    """Append-only decision log with compensating undo."""

    def __init__(self, ctx: HostContext, registry: AdapterRegistry,
                 bus: EventBus | None = None, jail: JailSystem | None = None) -> None:
        self.ctx = ctx
        self.registry = registry
        self.bus = bus
        self.jail = jail
        self._stamp = _Stamp()
        for entry in self.entries():
            self._stamp.seen(entry.get("timestamp", 0))

    # ------------------------------------------------------------------
    # Log
    # ------------------------------------------------------------------

    def entries(self) -> list[dict]:
        return list(self.ctx.storage.get(LOG_KEY, []))

    def _write(self, entries: list[dict]) -> None:
        limit = max(1, int(self.ctx.settings.ai_log_max_entries))
        self.ctx.storage.set(LOG_KEY, entries[-limit:])

    def log(self, entry: dict) -> dict:
        """Append ``entry`` and return the stored record."""
        record = copy.deepcopy(entry)
        record.setdefault("type", "decision")
        record.setdefault("message", "")
        record.setdefault("payload", {})
        record.setdefault("provider", self.ctx.settings.ai_provider)
        stamp = record.get("timestamp")
        existing = {e.get("timestamp") for e in self.entries()}
        if not isinstance(stamp, int) or stamp in existing:
            record["timestamp"] = self._stamp.next()
        else:
            self._stamp.seen(stamp)
        entries = self.entries()
        entries.append(record)
        self._write(entries)
        logger.debug(f"Journal [{record['provider']}] {record['type']}: {record['message']}")
        if self.bus is not None:
            self.bus.publish("aiDecision", record)
        return record

    def find(self, timestamp: int) -> dict | None:
        for entry in self.entries():
            if entry.get("timestamp") == timestamp:
                return entry
        return None

    def update(self, timestamp: int, patch: dict) -> dict | None:
        """Merge ``patch`` into the record with ``timestamp``. Dict fields merge one level deep."""
        entries = self.entries()
        for entry in entries:
            if entry.get("timestamp") != timestamp:
                continue
            for key, value in patch.items():
                if key == "timestamp":
                    continue
                if isinstance(value, dict) and isinstance(entry.get(key), dict):
                    entry[key].update(copy.deepcopy(value))
                else:
                    entry[key] = copy.deepcopy(value)
            self._write(entries)
            return entry
        return None

    def remove(self, timestamp: int) -> bool:
        entries = self.entries()
        kept = [e for e in entries if e.get("timestamp") != timestamp]
        if len(kept) == len(entries):
            return False
        self.ctx.storage.set(LOG_KEY, kept)
        return True

    def clear(self) -> None:
        self.ctx.storage.set(LOG_KEY, [])

    # ------------------------------------------------------------------
    # Undo
    # ------------------------------------------------------------------

    def undo(self, entry: dict | int, remove_on_success: bool = True) -> dict:
        """Apply an entry's compensating actions.

        Returns ``{success, errors, applied}``.  On a failed step the actions
        already applied are reverted in reverse order.
        """
        if isinstance(entry, int):
            found = self.find(entry)
            if found is None:
                return {"success": False, "errors": [f"No log entry {entry}"], "applied": 0}
            entry = found
        actions = undo_actions(entry)
        if not actions:
            return {"success": False, "errors": ["No undo available for this entry"], "applied": 0}

        errors: list[str] = []
        inverses: list[dict] = []
        failed = False
        for action in actions:
            try:
                inverses.append(self.apply(action))
            except Exception as exc:
                errors.append(f"{action.get('action')}: {exc}")
                failed = True
                break

        if failed:
            logger.warning(f"Undo of {entry.get('type')} failed, reverting {len(inverses)} step(s)")
            for inverse in reversed(inverses):
                try:
                    self.apply(inverse)
                except Exception as exc:
                    errors.append(f"revert {inverse.get('action')}: {exc}")
            return {"success": False, "errors": errors, "applied": 0}

        if remove_on_success and entry.get("timestamp") is not None:
            self.remove(entry["timestamp"])
        if self.bus is not None:
            self.bus.publish("aiUndo", {"timestamp": entry.get("timestamp"), "type": entry.get("type")})
        return {"success": True, "errors": errors, "applied": len(inverses)}

    def apply(self, action: dict) -> dict:
        """Run one action and return its inverse. Raises UndoStepError on failure."""
        kind = action.get("action")
        handler = self._handlers().get(kind)
        if handler is None:
            raise UndoStepError(f"unsupported action '{kind}'")
        return handler(action)

    def _handlers(self) -> dict[str, Callable[[dict], dict]]:
        return {
            "restoreGold": self._restore_gold,
            "restoreHp": self._restore_hp,
            "restoreItem": self._restore_item,
            "removeItem": self._remove_item,
            "restoreToken": self._restore_token,
            "removeToken": self._remove_token,
            "unhideToken": self._unhide_token,
            "hideToken": self._hide_token,
            "releasePrisoner": self._release_prisoner,
            "reimprison": self._reimprison,
        }

    # ------------------------------------------------------------------
    # Action executors
    # ------------------------------------------------------------------

    def _actor(self, action: dict):
        actor = self.ctx.actors.get(action.get("actorId") or "")
        if actor is None:
            raise UndoStepError(f"actor {action.get('actorId')} not found")
        return actor

    def _scene_id(self, action: dict) -> str:
        sid = action.get("sceneId") or self.ctx.scenes.active_scene_id()
        if sid is None:
            raise UndoStepError("no scene to restore into")
        return sid

    def _restore_gold(self, action: dict) -> dict:
        actor = self._actor(action)
        adapter = self.registry.for_actor(actor)
        result = adapter.set_gold(actor, int(action.get("before", 0)))
        if result is None:
            raise UndoStepError(f"could not set gold on {actor.name}")
        return {"action": "restoreGold", "actorId": actor.id, "before": result["before"]}

    def _restore_hp(self, action: dict) -> dict:
        actor = self._actor(action)
        adapter = self.registry.for_actor(actor)
        result = adapter.restore_damage(actor, action.get("before", 0))
        if result is None:
            raise UndoStepError(f"could not restore HP on {actor.name}")
        return {"action": "restoreHp", "actorId": actor.id, "before": result["before"]}

    def _restore_item(self, action: dict) -> dict:
        actor = self._actor(action)
        adapter = self.registry.for_actor(actor)
        item_data = action.get("itemData") or {}
        result = adapter.restore_item(actor, item_data)
        if result is None:
            raise UndoStepError(f"could not restore item {item_data.get('name')}")
        return {"action": "removeItem", "actorId": actor.id,
                "itemId": result["itemId"], "quantity": result["quantity"]}

    def _remove_item(self, action: dict) -> dict:
        actor = self._actor(action)
        adapter = self.registry.for_actor(actor)
        removed = adapter.remove_item(actor, action.get("itemId") or action.get("name", ""),
                                      action.get("quantity"))
        if removed is None:
            raise UndoStepError(f"could not remove item {action.get('itemId')}")
        return {"action": "restoreItem", "actorId": actor.id, "itemData": removed}

    def _restore_token(self, action: dict) -> dict:
        scene_id = self._scene_id(action)
        doc = action.get("tokenDoc")
        if not doc:
            raise UndoStepError("restoreToken without tokenDoc")
        inverse_hp = None
        actor_id = action.get("actorId") or doc.get("actor_id")
        if action.get("beforeHp") is not None and actor_id:
            actor = self._actor({"actorId": actor_id})
            adapter = self.registry.for_actor(actor)
            inverse_hp = adapter.get_hp(actor)
            if not adapter.set_hp(actor, int(action["beforeHp"])):
                raise UndoStepError(f"could not restore HP on {actor.name}")

        existing = self.ctx.tokens.get(scene_id, doc.get("id", ""))
        if existing is not None:
            previous = existing.to_dict()
            changes = {k: doc[k] for k in ("x", "y", "hidden", "alpha") if k in doc}
            self.ctx.tokens.update(scene_id, existing.id, changes)
            inverse = {"action": "restoreToken", "sceneId": scene_id, "tokenDoc": previous}
        else:
            created = self.ctx.tokens.create(scene_id, TokenDoc.from_dict(doc))
            inverse = {"action": "removeToken", "sceneId": scene_id, "tokenId": created.id}
        if inverse_hp is not None:
            inverse.update({"actorId": actor_id, "beforeHp": inverse_hp})
        return inverse

    def _remove_token(self, action: dict) -> dict:
        scene_id = self._scene_id(action)
        token = self.ctx.tokens.get(scene_id, action.get("tokenId", ""))
        if token is None:
            raise UndoStepError(f"token {action.get('tokenId')} not found")
        doc = token.to_dict()
        inverse: dict[str, Any] = {"action": "restoreToken", "sceneId": scene_id, "tokenDoc": doc}
        if action.get("beforeHp") is not None and action.get("actorId"):
            actor = self._actor(action)
            adapter = self.registry.for_actor(actor)
            inverse.update({"actorId": actor.id, "beforeHp": adapter.get_hp(actor)})
            adapter.set_hp(actor, int(action["beforeHp"]))
        if not self.ctx.tokens.delete(scene_id, token.id):
            raise UndoStepError(f"could not delete token {token.id}")
        return inverse

    def _set_hidden(self, action: dict, hidden: bool) -> dict:
        scene_id = self._scene_id(action)
        token_id = action.get("tokenId") or (action.get("tokenDoc") or {}).get("id", "")
        token = self.ctx.tokens.get(scene_id, token_id)
        if token is None:
            raise UndoStepError(f"token {token_id} not found")
        was_hidden = token.hidden
        self.ctx.tokens.update(scene_id, token_id, {"hidden": hidden})
        return {"action": "hideToken" if was_hidden else "unhideToken",
                "sceneId": scene_id, "tokenId": token_id}

    def _unhide_token(self, action: dict) -> dict:
        return self._set_hidden(action, False)

    def _hide_token(self, action: dict) -> dict:
        return self._set_hidden(action, True)

    def _release_prisoner(self, action: dict) -> dict:
        if self.jail is None:
            raise UndoStepError("jail subsystem unavailable")
        actor_id = action.get("actorId", "")
        record = self.jail.get_prisoner_info(actor_id)
        if record is None or record.get("released"):
            raise UndoStepError(f"{actor_id} is not a prisoner")
        snapshot = copy.deepcopy(record)
        if not self.jail.release_prisoner(actor_id, return_to_origin=action.get("returnToOrigin", True),
                                          clear_record=True):
            raise UndoStepError(f"could not release {actor_id}")
        return {"action": "reimprison", "record": snapshot}

    def _reimprison(self, action: dict) -> dict:
        if self.jail is None:
            raise UndoStepError("jail subsystem unavailable")
        record = action.get("record") or {}
        if not self.jail.reimprison(record):
            raise UndoStepError(f"could not re-imprison {record.get('actorId')}")
        return {"action": "releasePrisoner", "actorId": record.get("actorId"), "returnToOrigin": True}


PendingHandler = Callable[[dict], bool]


class PendingQueue:
    """Bounded FIFO of forward actions awaiting GM approval."""

    def __init__(self, ctx: HostContext, journal: UndoLog, bus: EventBus | None = None) -> None:
        self.ctx = ctx
        self.journal = journal
        self.bus = bus
        self._handlers: dict[str, PendingHandler] = {}
        self._stamp = _Stamp()

    def register(self, action_type: str, handler: PendingHandler) -> None:
        self._handlers[action_type] = handler

    def list(self) -> list[dict]:
        return list(self.ctx.storage.get(PENDING_KEY, []))

    def push(self, entry: dict) -> dict:
        record = copy.deepcopy(entry)
        record.setdefault("payload", {})
        record.setdefault("provider", self.ctx.settings.ai_provider)
        record["timestamp"] = self._stamp.next()
        pending = self.list()
        pending.append(record)
        limit = max(1, int(self.ctx.settings.ai_pending_max_entries))
        self.ctx.storage.set(PENDING_KEY, pending[-limit:])
        logger.info(f"Pending approval queued: {record.get('type')}")
        if self.bus is not None:
            self.bus.publish("pendingAdded", record)
        return record

    def pop(self, index: int) -> dict | None:
        pending = self.list()
        if not 0 <= index < len(pending):
            return None
        entry = pending.pop(index)
        self.ctx.storage.set(PENDING_KEY, pending)
        return entry

    def approve(self, index: int) -> bool:
        """Pop entry ``index`` and execute it. False when missing, unsupported, or failed."""
        entry = self.pop(index)
        if entry is None:
            logger.warning(f"No pending entry at index {index}")
            return False
        handler = self._handlers.get(entry.get("type", ""))
        if handler is None:
            logger.warning(f"Approval type not supported: {entry.get('type')}")
            self.ctx.dialogs.notify("Approval type not supported", "warning")
            return False
        try:
            ok = bool(handler(entry))
        except Exception:
            logger.exception(f"Approving pending {entry.get('type')} failed")
            ok = False
        if self.bus is not None:
            self.bus.publish("pendingApproved", {"type": entry.get("type"), "success": ok})
        return ok

    def reject(self, index: int) -> dict | None:
        entry = self.pop(index)
        if entry is None:
            return None
        self.journal.log({
            "type": "pendingRejected",
            "message": f"GM rejected pending action: {entry.get('type')}",
            "payload": entry.get("payload", {}),
            "provider": "local",
        })
        return entry
