"""
Base Rate Provider Interface

Every external rate source implements this interface. The aggregator only
talks to providers through it:
- is_available() / supports_route() decide whether a provider is dispatched
- get_shipping_quotes() returns options for a single-vendor request and
  raises on failure (the aggregator isolates the failure)

Providers that set blocking = True declare get_shipping_quotes as a plain
method; the aggregator then runs it in a worker thread.
"""
import inspect
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Dict, List, Optional

from app.schemas.quote import Dimensions, ShippingOption, ShippingQuoteRequest


class ShippingProviderClient(ABC):
    """
    Abstract base class for external rate providers.

    Args:
        settings: Application settings; providers read their own credentials
    """

    # True when get_shipping_quotes is a plain blocking method
    blocking: bool = False

    def __init__(self, settings=None):
        self._settings = settings

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the provider name used in errors, metadata and routes."""
        pass

    @abstractmethod
    def is_available(self) -> bool:
        """Return True when the provider is enabled and configured."""
        pass

    @abstractmethod
    def get_supported_countries(self) -> List[str]:
        pass

    @abstractmethod
    def get_max_package_weight(self) -> Decimal:
        pass

    @abstractmethod
    def get_max_declared_value(self) -> Decimal:
        pass

    @abstractmethod
    async def get_shipping_quotes(self, request: ShippingQuoteRequest) -> List[ShippingOption]:
        """
        Quote a single-vendor request.

        Raises:
            ProviderCallError: the provider could not produce quotes
        """
        pass

    def supports_route(self, origin_country: str, destination_country: str) -> bool:
        countries = self.get_supported_countries()
        return origin_country in countries and destination_country in countries

    def supports_package(
        self,
        weight: Decimal,
        dimensions: Optional[Dimensions],
        declared_value: Decimal,
    ) -> bool:
        if weight > self.get_max_package_weight():
            return False
        return declared_value <= self.get_max_declared_value()

    async def get_multi_vendor_quotes(self, request: ShippingQuoteRequest) -> Dict[str, List[ShippingOption]]:
        """Quote each vendor package separately, keyed by vendor_id."""
        result: Dict[str, List[ShippingOption]] = {}
        for vendor_request in request.split_by_vendor():
            if not self.supports_route(vendor_request.origin.country, vendor_request.destination.country):
                continue
            options = self.get_shipping_quotes(vendor_request)
            if inspect.isawaitable(options):
                options = await options
            if options:
                result[vendor_request.vendor.vendor_id] = options
        return result

    def get_provider_configuration(self) -> Dict[str, Any]:
        return {
            "provider": self.provider_name,
            "max_weight": str(self.get_max_package_weight()),
            "max_value": str(self.get_max_declared_value()),
        }

    async def close(self):
        """Release network resources. No-op by default."""
        return None

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}(name={self.provider_name!r})>"
