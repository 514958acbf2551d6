"""
Rate Provider Registry

Provider implementations register themselves with @register_provider. The
registry is filled at import time and build_providers() instantiates every
registered provider once at startup; there is no runtime discovery.
"""
from typing import Dict, List, Type
import logging

from app.modules.shipping.providers.base import ShippingProviderClient

logger = logging.getLogger(__name__)

# Registry of provider implementations
_PROVIDER_REGISTRY: Dict[str, Type[ShippingProviderClient]] = {}


def register_provider(name: str):
    """
    Decorator to register a provider implementation.

    Usage:
        @register_provider("EasyPost")
        class EasyPostProvider(ShippingProviderClient):
            ...
    """
    def decorator(cls: Type[ShippingProviderClient]):
        _PROVIDER_REGISTRY[name] = cls
        logger.debug(f"Registered rate provider: {name} -> {cls.__name__}")
        return cls
    return decorator


def get_registered_providers() -> List[str]:
    """Names of all registered providers, in registration order."""
    return list(_PROVIDER_REGISTRY.keys())


def build_providers(settings) -> List[ShippingProviderClient]:
    """
    Instantiate every registered provider.

    Disabled or unconfigured providers are still built so they show up in
    status reports; the aggregator skips them via is_available().
    """
    providers = []
    for name, provider_cls in _PROVIDER_REGISTRY.items():
        provider = provider_cls(settings)
        logger.info(f"Rate provider {name}: available={provider.is_available()}")
        providers.append(provider)
    return providers


# Import providers to trigger registration
# These imports must be at the bottom to avoid circular imports
from app.modules.shipping.providers.easypost import EasyPostProvider  # noqa: E402, F401
from app.modules.shipping.providers.vnpost import VNPostProvider  # noqa: E402, F401
