"""EventBus — domain hook bus for patrol, capture, and jail events.

Two delivery styles share one publish path:

  - Queue subscribers (``subscribe()``) receive ``{"type", "data"}`` dicts on a
    bounded queue, dropping the oldest message when full.  Hosts and the hub
    API drain these.
  - Listeners (``on()``) are called synchronously on the publishing thread.
    Subsystems use them to react to each other (an ``alert`` hook spawns
    reinforcements, ``captureStart`` schedules encounter assistants).

A short history of recent events is kept for inspection and tests.
"""

from __future__ import annotations

import queue
import threading
from collections import deque
from typing import Any, Callable

from loguru import logger

Listener = Callable[[dict], Any]


class EventBus:
    """Thread-safe pub/sub for domain hooks."""

    QUEUE_SIZE = 100
    HISTORY_SIZE = 500

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: list[tuple[queue.Queue, frozenset[str] | None]] = []
        self._listeners: dict[str, list[Listener]] = {}
        self._history: deque[dict] = deque(maxlen=self.HISTORY_SIZE)

    def subscribe(self, _filter: str | set[str] | None = None) -> queue.Queue:
        """Subscribe to events. Returns a Queue that receives matching events.

        ``_filter`` restricts delivery to one event type or a set of types;
        ``None`` delivers everything.
        """
        q: queue.Queue = queue.Queue(maxsize=self.QUEUE_SIZE)
        if _filter is None:
            types = None
        elif isinstance(_filter, str):
            types = frozenset({_filter})
        else:
            types = frozenset(_filter)
        with self._lock:
            self._subscribers.append((q, types))
        return q

    def unsubscribe(self, q: queue.Queue) -> None:
        with self._lock:
            self._subscribers = [(s, t) for s, t in self._subscribers if s is not q]

    def on(self, event_type: str, listener: Listener) -> None:
        """Register a synchronous listener for one event type."""
        with self._lock:
            self._listeners.setdefault(event_type, []).append(listener)

    def off(self, event_type: str, listener: Listener) -> None:
        with self._lock:
            listeners = self._listeners.get(event_type, [])
            if listener in listeners:
                listeners.remove(listener)

    def publish(self, event_type: str, data: dict | None = None) -> None:
        msg: dict = {"type": event_type}
        if data is not None:
            msg["data"] = data
        with self._lock:
            self._history.append(msg)
            subscribers = list(self._subscribers)
            listeners = list(self._listeners.get(event_type, []))
        for q, types in subscribers:
            if types is not None and event_type not in types:
                continue
            try:
                q.put_nowait(msg)
            except queue.Full:
                # Drop oldest so fresh state changes still land
                try:
                    q.get_nowait()
                except queue.Empty:
                    pass
                try:
                    q.put_nowait(msg)
                except queue.Full:
                    pass
        for listener in listeners:
            try:
                listener(msg)
            except Exception:
                logger.exception(f"Listener for '{event_type}' failed")

    def recent(self, event_type: str | None = None) -> list[dict]:
        """Return recent events, optionally restricted to one type."""
        with self._lock:
            history = list(self._history)
        if event_type is None:
            return history
        return [m for m in history if m["type"] == event_type]
