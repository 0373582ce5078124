"""In-process event bus feeding the realtime transport.

Publishing is fire-and-forget: listeners are called synchronously, and a
failing listener is logged without affecting the publisher or other
listeners.
"""

from __future__ import annotations

import itertools
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

MESSAGE_CREATED = "message.created"
MESSAGE_UPDATED = "message.updated"
POLL_UPDATED = "poll.updated"
RANK_UP = "rank.up"
TASTE_UPDATED = "taste.updated"

EVENT_NAMES = frozenset(
    {MESSAGE_CREATED, MESSAGE_UPDATED, POLL_UPDATED, RANK_UP, TASTE_UPDATED}
)


@dataclass(frozen=True, slots=True)
class EventEnvelope:
    id: str
    event: str
    data: dict[str, Any]


Listener = Callable[[EventEnvelope], None]


class EventBus:
    __slots__ = ("_listeners", "_sequence", "_lock")

    def __init__(self) -> None:
        self._listeners: list[Listener] = []
        self._sequence = itertools.count(1)
        self._lock = threading.Lock()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a callable that unsubscribes it."""
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def publish(self, event: str, payload: dict[str, Any]) -> EventEnvelope:
        if event not in EVENT_NAMES:
            raise ValueError(f"Unknown event name: {event}")
        envelope = EventEnvelope(
            id=f"{int(time.time() * 1000)}-{next(self._sequence)}",
            event=event,
            data=payload,
        )
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(envelope)
            except Exception:
                logger.warning("Event listener failed for %s", event, exc_info=True)
        return envelope
