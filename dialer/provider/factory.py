"""
Factory for creating call-control provider instances.
"""

from typing import Optional
from dialer.config import settings, CallControlProviderType
from dialer.provider.base import CallControlProvider
from dialer.provider.cpaas import CpaasProvider
from dialer.utils.logging import get_logger

logger = get_logger(__name__)


def get_call_control_provider(
    provider_type: Optional[CallControlProviderType] = None,
    **kwargs
) -> CallControlProvider:
    """
    Factory function to get a call-control provider instance.

    Raises:
        ValueError: If provider type is not supported
    """
    provider_type = provider_type or settings.call_control_provider

    logger.info(f"Creating call-control provider: {provider_type}")

    if provider_type == CallControlProviderType.CPAAS:
        return CpaasProvider(**kwargs)
    else:
        raise ValueError(f"Unsupported call-control provider: {provider_type}")
