"""
Call lifecycle management for the dialer.
"""

from .controller import CallController, AgentIdentity, AgentPermissions
from .pingback import PingbackEvent, PingbackKind, parse_pingback

__all__ = [
    "CallController",
    "AgentIdentity",
    "AgentPermissions",
    "PingbackEvent",
    "PingbackKind",
    "parse_pingback",
]
