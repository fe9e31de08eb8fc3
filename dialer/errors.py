"""
Error taxonomy for the dialer.
"""

from typing import Any, Optional


class DialerError(Exception):
    """Base class for all dialer errors."""

    def __init__(self, message: str, status_code: Optional[int] = None, details: Any = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.details = details


class AuthenticationError(DialerError):
    """Token issuance failed."""


class CallActionError(DialerError):
    """A call-control request failed."""


class UploadError(DialerError):
    """A media upload failed."""


class ProviderError(DialerError):
    """The call-control provider rejected or failed a request."""


class PermissionDeniedError(DialerError):
    """The agent is not allowed to perform the requested call action."""


class InvalidTransitionError(DialerError):
    """A call status change that would move the lifecycle backwards."""
