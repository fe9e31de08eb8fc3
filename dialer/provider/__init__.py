"""
Call-control provider implementations.
"""

from .base import CallControlProvider, ProviderResponse
from .factory import get_call_control_provider

__all__ = ["CallControlProvider", "ProviderResponse", "get_call_control_provider"]
