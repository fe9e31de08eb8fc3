"""
In-process publish/subscribe bus for call lifecycle events.
"""

import threading
from collections.abc import Mapping
from typing import Any, Callable, Dict, List, Union

from dialer.events.models import EventKind, OutgoingCallEvent
from dialer.utils.logging import LoggerMixin

Subscriber = Callable[[Any], None]

# Payload shape expected for each event kind
_PAYLOAD_TYPES = {
    EventKind.OUTGOING_CALL_INITIATED: OutgoingCallEvent,
    EventKind.OUTGOING_CALL_UPDATED: OutgoingCallEvent,
    EventKind.OUTGOING_CALL_ENDED: type(None),
    EventKind.INCOMING_CALL_RECEIVED: Mapping,
    EventKind.INCOMING_CALL_CLEARED: type(None),
}


class EventBus(LoggerMixin):
    """
    Fan-out registry keyed by event kind.

    The bus keeps no history: a subscriber that attaches after a publish
    misses that delivery. Delivery is synchronous and goes to the
    subscribers registered when publish() was called, in registration order.
    Subscriber errors are logged and never stop delivery to the others.
    """

    def __init__(self):
        # dict keys give set semantics with a stable iteration order
        self._subscribers: Dict[EventKind, Dict[Subscriber, None]] = {
            kind: {} for kind in EventKind
        }
        self._lock = threading.RLock()

    @staticmethod
    def _resolve_kind(kind: Union[EventKind, str]):
        if isinstance(kind, EventKind):
            return kind
        try:
            return EventKind(kind)
        except ValueError:
            return None

    def subscribe(self, kind: Union[EventKind, str], callback: Subscriber) -> None:
        """Register a callback. Registering the same callback again is a no-op."""
        event_kind = self._resolve_kind(kind)
        if event_kind is None:
            self.logger.warning("Ignoring subscription to unknown event kind", kind=str(kind))
            return

        with self._lock:
            self._subscribers[event_kind][callback] = None

    def unsubscribe(self, kind: Union[EventKind, str], callback: Subscriber) -> None:
        """Remove a callback. Removing one that is not registered is a no-op."""
        event_kind = self._resolve_kind(kind)
        if event_kind is None:
            return

        with self._lock:
            self._subscribers[event_kind].pop(callback, None)

    def publish(self, kind: Union[EventKind, str], payload: Any = None) -> None:
        """
        Deliver a payload to every current subscriber of a kind.

        Args:
            kind: Event kind (enum member or its string value)
            payload: OutgoingCallEvent for outgoing initiated/updated,
                the provider mapping for incoming received, None otherwise

        Raises:
            TypeError: If the payload does not match the event kind
        """
        event_kind = self._resolve_kind(kind)
        if event_kind is None:
            self.logger.warning("Ignoring publish of unknown event kind", kind=str(kind))
            return

        expected = _PAYLOAD_TYPES[event_kind]
        if not isinstance(payload, expected):
            raise TypeError(
                f"{event_kind.value} expects {expected.__name__} payload, "
                f"got {type(payload).__name__}"
            )

        with self._lock:
            callbacks: List[Subscriber] = list(self._subscribers[event_kind])

        for callback in callbacks:
            try:
                callback(payload)
            except Exception as e:
                self.log_error(
                    "event_delivery",
                    e,
                    kind=event_kind.value,
                    subscriber=getattr(callback, "__qualname__", repr(callback)),
                )

    def subscriber_count(self, kind: Union[EventKind, str]) -> int:
        event_kind = self._resolve_kind(kind)
        if event_kind is None:
            return 0
        with self._lock:
            return len(self._subscribers[event_kind])

    def clear(self) -> None:
        """Drop every subscription."""
        with self._lock:
            for callbacks in self._subscribers.values():
                callbacks.clear()
