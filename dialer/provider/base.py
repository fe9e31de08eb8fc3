"""
Base interface for call-control providers.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

from dialer.utils.logging import LoggerMixin


@dataclass
class ProviderResponse:
    """Result of a request forwarded to the provider."""
    status_code: int
    body: Any
    text: Optional[str] = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


class CallControlProvider(ABC, LoggerMixin):
    """Abstract base class for click-to-call providers."""

    # Endpoint that issues tokens and needs no bearer token itself
    AUTH_ENDPOINT = "AuthToken"

    def __init__(self, base_url: str, **kwargs):
        """
        Initialize the provider.

        Args:
            base_url: Root URL of the provider's click-to-call API
            **kwargs: Additional provider-specific configuration
        """
        self.base_url = base_url.rstrip("/")
        self.config = kwargs
        self._initialized = False

    async def initialize(self):
        """Initialize the provider."""
        if not self._initialized:
            await self._initialize()
            self._initialized = True
            self.logger.info(f"{self.__class__.__name__} initialized")

    @abstractmethod
    async def _initialize(self):
        """Provider-specific initialization logic."""
        pass

    @abstractmethod
    async def issue_token(self, username: str, password: str) -> ProviderResponse:
        """
        Exchange line credentials for a bearer token.

        Returns:
            ProviderResponse whose body carries ``idToken`` on success
        """
        pass

    @abstractmethod
    async def call_endpoint(
        self,
        endpoint: str,
        payload: Dict[str, Any],
        token: Optional[str] = None,
    ) -> ProviderResponse:
        """
        Forward a call-control request.

        Args:
            endpoint: Provider endpoint name, e.g. "initiate-call"
            payload: JSON body
            token: Bearer token; not sent for the auth endpoint
        """
        pass

    @abstractmethod
    async def upload_voice(
        self,
        token: str,
        filename: str,
        content: bytes,
        content_type: Optional[str] = None,
    ) -> ProviderResponse:
        """Forward a voice file upload."""
        pass

    async def close(self):
        """Clean up resources."""
        if self._initialized:
            await self._close()
            self._initialized = False
            self.logger.info(f"{self.__class__.__name__} closed")

    async def _close(self):
        """Provider-specific cleanup logic."""
        pass
