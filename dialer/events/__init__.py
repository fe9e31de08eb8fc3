"""
Call lifecycle events and the bus that carries them.
"""

from .models import (
    EventKind,
    CallStatus,
    OutgoingCallEvent,
    IncomingCallNotification,
)
from .bus import EventBus

__all__ = [
    "EventKind",
    "CallStatus",
    "OutgoingCallEvent",
    "IncomingCallNotification",
    "EventBus",
]
