"""
Normalization of provider call pingbacks.

Providers report call progress with inconsistent field names. These
helpers map the known aliases onto one canonical shape and decide which
lifecycle event a pingback represents.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, Mapping, Optional

from dialer.events.models import utc_now_iso

CALL_ID_KEYS = ("CALL_ID", "call_id", "id", "uuid", "call_uuid", "session_id", "sessionId", "callid")
A_PARTY_KEYS = ("A_PARTY_NO", "aparty", "from", "caller", "ani", "caller_id", "a_party_number", "clid")
B_PARTY_KEYS = ("B_PARTY_NO", "bparty", "to", "callee", "dnis", "did", "b_party_number")
START_TIME_KEYS = ("CALL_START_TIME", "timestamp", "time_stamp", "call_time", "created_at", "Dial_start_time")
EVENT_TYPE_KEYS = ("EVENT_TYPE", "event_type", "type")
DTMF_KEYS = ("DTMF", "dtmf", "digits", "key")
AGENT_NUMBER_KEYS = ("Agent_number", "agent_number", "Agent_no", "AGENT NUMBER", "Agent_in_flow")
AGENT_ID_KEYS = ("Agent_ID", "agent_id")
END_TIME_KEYS = ("Call_endtime", "call_endtime", "end_time", "disconnect_time")
END_MARKERS = ("DISCONNECT", "HANGUP", "CALL_END", "ENDED", "TERMINATED")


class PingbackKind(str, Enum):
    """Classification of a provider pingback."""
    INCOMING_CALL = "incoming_call"
    ANSWERED_CALL = "answered_call"
    MISSED_CALL = "missed_call"
    IVR_MISSED_CALL = "ivr_missed_call"
    CALL_END = "call_end"

    @property
    def is_terminal(self) -> bool:
        return self in (PingbackKind.MISSED_CALL, PingbackKind.IVR_MISSED_CALL, PingbackKind.CALL_END)


@dataclass
class PingbackEvent:
    """A classified pingback ready for fan-out."""
    kind: PingbackKind
    data: Dict[str, Any]
    timestamp: str = field(default_factory=utc_now_iso)

    @property
    def call_id(self) -> Optional[str]:
        value = self.data.get("call_id")
        return str(value) if value else None

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.kind.value, "timestamp": self.timestamp, "data": self.data}


def _first(raw: Mapping[str, Any], keys: Iterable[str]) -> Any:
    for key in keys:
        value = raw.get(key)
        if value not in (None, ""):
            return value
    return None


def clean_number(number: Any) -> str:
    """Compare phone numbers by their last ten digits."""
    if number in (None, ""):
        return ""
    return "".join(ch for ch in str(number) if ch.isdigit())[-10:]


def normalize_call_data(raw: Mapping[str, Any]) -> Dict[str, Any]:
    """Map provider field aliases onto canonical keys, keeping the original."""
    call_id = _first(raw, CALL_ID_KEYS)
    a_party = _first(raw, A_PARTY_KEYS)
    b_party = _first(raw, B_PARTY_KEYS)

    return {
        "call_id": call_id,
        "CALL_ID": call_id,
        "A_PARTY_NO": a_party,
        "B_PARTY_NO": b_party,
        "CALL_START_TIME": _first(raw, START_TIME_KEYS) or utc_now_iso(),
        "EVENT_TYPE": _first(raw, EVENT_TYPE_KEYS) or "INCOMING_CALL",
        "DTMF": _first(raw, DTMF_KEYS),
        "Agent_number": _first(raw, AGENT_NUMBER_KEYS),
        "Agent_ID": _first(raw, AGENT_ID_KEYS),
        "_original": dict(raw),
    }


def has_end_time(raw: Mapping[str, Any]) -> bool:
    value = _first(raw, END_TIME_KEYS)
    return value is not None and str(value) != "0"


def classify_event(normalized: Mapping[str, Any]) -> PingbackKind:
    """Decide which lifecycle event a normalized pingback represents."""
    original = normalized.get("_original") or {}
    event_type = str(normalized.get("EVENT_TYPE") or "INCOMING_CALL").upper()

    if has_end_time(original) or event_type == "DISCONNECTED":
        return PingbackKind.MISSED_CALL
    if event_type in ("IVR_TIMEOUT", "IVR_HANGUP"):
        return PingbackKind.IVR_MISSED_CALL
    # "DISCONNECTED" contains "CONNECTED", so end markers are checked first
    if any(marker in event_type for marker in END_MARKERS):
        return PingbackKind.CALL_END
    if "ANSWERED" in event_type or "CONNECTED" in event_type:
        return PingbackKind.ANSWERED_CALL
    return PingbackKind.INCOMING_CALL


def parse_pingback(raw: Mapping[str, Any]) -> PingbackEvent:
    """Normalize and classify a raw provider payload."""
    normalized = normalize_call_data(raw)
    return PingbackEvent(kind=classify_event(normalized), data=normalized)
