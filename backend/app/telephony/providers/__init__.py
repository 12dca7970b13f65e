"""
DialBridge - Carrier Providers

Provider-specific implementations for the carrier integration.

Supported Providers:
- smartflo: Tata Smartflo click-to-call API
- simulator: Development carrier that accepts every dial
"""

from app.config import Settings
from app.core.exceptions import ConfigurationError

from .base import CarrierProvider, DialResult
from .simulator import SimulatorProvider
from .smartflo import SmartfloProvider


def create_carrier(settings: Settings) -> CarrierProvider:
    """
    Create the carrier configured by ``carrier_provider``.

    Raises:
        ConfigurationError: Unknown provider name
    """
    provider = settings.carrier_provider.lower()
    if provider == "smartflo":
        return SmartfloProvider(
            base_url=settings.carrier_base_url,
            api_key=settings.carrier_api_key,
            timeout=settings.carrier_timeout_seconds,
        )
    if provider == "simulator":
        return SimulatorProvider()
    raise ConfigurationError(
        f"Unknown carrier provider: {settings.carrier_provider}",
        details={"supported": ["smartflo", "simulator"]},
    )


__all__ = [
    "CarrierProvider",
    "DialResult",
    "SmartfloProvider",
    "SimulatorProvider",
    "create_carrier",
]
