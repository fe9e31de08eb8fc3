"""
Event kinds and payload types carried on the call event bus.
"""

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from dialer.errors import InvalidTransitionError


class EventKind(str, Enum):
    """Call lifecycle notifications published on the bus."""
    OUTGOING_CALL_INITIATED = "outgoing_call_initiated"
    OUTGOING_CALL_UPDATED = "outgoing_call_updated"
    OUTGOING_CALL_ENDED = "outgoing_call_ended"
    INCOMING_CALL_RECEIVED = "incoming_call_received"
    INCOMING_CALL_CLEARED = "incoming_call_cleared"


class CallStatus(str, Enum):
    """Status of an outgoing call as shown to the agent."""
    INITIATING = "Initiating"
    RINGING = "Ringing"
    CONNECTED = "Connected"
    ENDED = "Ended"

    @property
    def rank(self) -> int:
        return _STATUS_ORDER.index(self)

    def can_transition_to(self, new_status: "CallStatus") -> bool:
        """Statuses only move forward; any status may jump straight to Ended."""
        if new_status == CallStatus.ENDED:
            return True
        return new_status.rank >= self.rank


_STATUS_ORDER = [
    CallStatus.INITIATING,
    CallStatus.RINGING,
    CallStatus.CONNECTED,
    CallStatus.ENDED,
]


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class OutgoingCallEvent:
    """Snapshot of an outgoing call, owned by whoever publishes it."""
    call_id: str
    to: str
    status: CallStatus = CallStatus.INITIATING
    start_time: str = ""

    def __post_init__(self):
        if not isinstance(self.status, CallStatus):
            object.__setattr__(self, "status", CallStatus(self.status))
        if not self.start_time:
            object.__setattr__(self, "start_time", utc_now_iso())

    def with_status(self, status: CallStatus, **changes) -> "OutgoingCallEvent":
        """
        Return a copy moved to a new status.

        Raises:
            InvalidTransitionError: If the move would go backwards
        """
        status = CallStatus(status)
        if not self.status.can_transition_to(status):
            raise InvalidTransitionError(
                f"Cannot move call {self.call_id} from {self.status.value} to {status.value}"
            )
        return replace(self, status=status, **changes)

    @property
    def is_ended(self) -> bool:
        return self.status == CallStatus.ENDED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "callId": self.call_id,
            "to": self.to,
            "status": self.status.value,
            "startTime": self.start_time,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "OutgoingCallEvent":
        return cls(
            call_id=str(data["callId"]),
            to=str(data["to"]),
            status=CallStatus(data.get("status", CallStatus.INITIATING.value)),
            start_time=data.get("startTime") or "",
        )


# Inbound call payloads belong to the provider and are passed through untouched.
IncomingCallNotification = Mapping[str, Any]


def incoming_call_id(notification: IncomingCallNotification) -> Optional[str]:
    """Best-effort call id lookup on a provider payload."""
    for key in ("call_id", "CALL_ID", "callid", "id"):
        value = notification.get(key)
        if value:
            return str(value)
    return None


def incoming_caller(notification: IncomingCallNotification) -> Optional[str]:
    """Best-effort caller number lookup on a provider payload."""
    for key in ("A_PARTY_NO", "aparty", "from", "caller_id"):
        value = notification.get(key)
        if value:
            return str(value)
    return None
