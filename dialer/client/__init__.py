"""
Agent-side client for the call-control proxy.
"""

from .session import CallSessionClient
from .stream import PingbackListener

__all__ = ["CallSessionClient", "PingbackListener"]
