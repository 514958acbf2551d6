"""
Shared fixtures for the shipping quote engine tests.
"""
import asyncio
import os
from decimal import Decimal
from typing import List

import pytest

# Set test environment before any app import
os.environ["ENVIRONMENT"] = "development"
os.environ["DATABASE_URL"] = ""
os.environ["REDIS_URL"] = ""
os.environ["EASYPOST_ENABLED"] = "false"
os.environ["VNPOST_ENABLED"] = "false"

from app.core.exceptions import ProviderCallError
from app.modules.shipping.catalog import InMemoryCatalog
from app.modules.shipping.providers.base import ShippingProviderClient
from app.modules.shipping.rate_engine import RateEngine, ShippingMethodDef
from app.modules.shipping.zones import ZoneDefinition
from app.schemas.quote import (
    Address,
    CustomerInfo,
    PackageInfo,
    RequestType,
    ShippingOption,
    ShippingQuoteRequest,
    VendorInfo,
    VendorPackage,
)
from app.services.quote_aggregator import AggregatorConfig, QuoteAggregator
from app.services.quote_cache import InMemoryQuoteCache


# ==================== Fake providers ====================


class FakeProvider(ShippingProviderClient):
    """Async provider returning fixed options; records every call."""

    def __init__(self, name="FastShip", options=None, countries=("US", "CA", "VN"), available=True):
        super().__init__()
        self._name = name
        self._options = options if options is not None else []
        self._countries = list(countries)
        self._available = available
        self.calls = 0

    @property
    def provider_name(self):
        return self._name

    def is_available(self):
        return self._available

    def get_supported_countries(self):
        return self._countries

    def get_max_package_weight(self):
        return Decimal("70")

    def get_max_declared_value(self):
        return Decimal("50000")

    async def get_shipping_quotes(self, request):
        self.calls += 1
        return list(self._options)


class FailingProvider(FakeProvider):
    """Always raises; code "503" or "NETWORK_ERROR" makes the failure transient."""

    def __init__(self, code=None, **kwargs):
        super().__init__(**kwargs)
        self.code = code

    async def get_shipping_quotes(self, request):
        self.calls += 1
        raise ProviderCallError(f"upstream rejected the request ({self.code})", provider=self._name, code=self.code)


class SlowProvider(FakeProvider):
    """Sleeps before answering."""

    def __init__(self, delay: float, **kwargs):
        super().__init__(**kwargs)
        self.delay = delay

    async def get_shipping_quotes(self, request):
        self.calls += 1
        await asyncio.sleep(self.delay)
        return list(self._options)


class BlockingProvider(FakeProvider):
    """Plain synchronous provider, run in a worker thread by the aggregator."""

    blocking = True

    def get_shipping_quotes(self, request):
        self.calls += 1
        return list(self._options)


def make_option(provider: str, service: str, cost: str, days: int) -> ShippingOption:
    return ShippingOption(provider=provider, service=service, cost=Decimal(cost), estimated_days=days)


# ==================== Request builders ====================


def make_request(
    country="US",
    state="NY",
    postal_code="10001",
    origin_country="US",
    weight="5",
    value="100",
    **kwargs,
) -> ShippingQuoteRequest:
    return ShippingQuoteRequest(
        customer=CustomerInfo(
            name="Jane Buyer",
            email="jane@example.com",
            address=Address(street="1 Main St", city="New York", state=state, postal_code=postal_code, country=country),
        ),
        vendor=VendorInfo(
            vendor_id="V1",
            name="Comic Vault",
            address=Address(street="9 Market St", city="Newark", state="NJ", postal_code="07102", country=origin_country),
        ),
        package_info=PackageInfo(weight=Decimal(weight), declared_value=Decimal(value)),
        **kwargs,
    )


def make_multi_vendor_request(*vendors) -> ShippingQuoteRequest:
    """vendors: (vendor_id, origin_country, weight, value) tuples."""
    return ShippingQuoteRequest(
        request_type=RequestType.MULTI_VENDOR,
        customer=CustomerInfo(
            name="Jane Buyer",
            address=Address(city="New York", state="NY", postal_code="10001", country="US"),
        ),
        vendor_packages=[
            VendorPackage(
                vendor=VendorInfo(
                    vendor_id=vendor_id,
                    name=f"Vendor {vendor_id}",
                    address=Address(city="Origin", postal_code="90001" if origin == "US" else None, country=origin),
                ),
                package_info=PackageInfo(weight=Decimal(weight), declared_value=Decimal(value)),
            )
            for vendor_id, origin, weight, value in vendors
        ],
    )


# ==================== Catalog fixtures ====================


@pytest.fixture
def zones() -> List[ZoneDefinition]:
    return [
        ZoneDefinition.from_strings(id=1, name="United States", code="US_ALL", countries=["US"]),
        ZoneDefinition.from_strings(
            id=2, name="New York Metro", code="US_NYC", countries=["US"],
            states_provinces=["NY"], postal_patterns=["10000-11999"],
        ),
        ZoneDefinition.from_strings(id=3, name="North America", code="NA", countries=["US", "CA", "MX"]),
    ]


@pytest.fixture
def methods() -> List[ShippingMethodDef]:
    return [
        ShippingMethodDef(
            id=1, carrier_id=1, zone_id=2, service_type="STANDARD",
            base_rate=Decimal("10"), per_kg_rate=Decimal("2"), per_item_rate=Decimal("1"),
            carrier_name="USPS", name="Ground", code="GROUND",
            estimated_days_min=3, estimated_days_max=5,
        ),
        ShippingMethodDef(
            id=2, carrier_id=2, zone_id=2, service_type="EXPRESS",
            base_rate=Decimal("25"), per_kg_rate=Decimal("3"), per_item_rate=Decimal("0"),
            carrier_name="UPS", name="Next Day", code="NEXT_DAY",
            estimated_days_min=1, estimated_days_max=1,
        ),
        ShippingMethodDef(
            id=3, carrier_id=1, zone_id=1, service_type="STANDARD",
            base_rate=Decimal("12"), per_kg_rate=Decimal("2"), per_item_rate=Decimal("1"),
            carrier_name="USPS", name="Ground National", code="GROUND_NATL",
            estimated_days_min=4, estimated_days_max=7,
        ),
        ShippingMethodDef(
            id=4, carrier_id=2, zone_id=3, service_type="STANDARD",
            base_rate=Decimal("30"), per_kg_rate=Decimal("5"), per_item_rate=Decimal("2"),
            carrier_name="UPS", name="Standard International", code="STD_INTL",
            estimated_days_min=5, estimated_days_max=8,
        ),
    ]


@pytest.fixture
def catalog(zones, methods) -> InMemoryCatalog:
    return InMemoryCatalog(zones, methods)


@pytest.fixture
def aggregator_config() -> AggregatorConfig:
    return AggregatorConfig(
        provider_timeout_seconds=0.5,
        overall_timeout_seconds=1.0,
        retry_attempts=1,
        retry_base_delay_seconds=0,
        retry_max_delay_seconds=0,
        circuit_failure_threshold=3,
        circuit_recovery_seconds=60,
    )


@pytest.fixture
def make_aggregator(catalog, aggregator_config):
    """Factory: aggregator over the test catalog with the given providers."""
    def _make(providers=(), cache=None, config=None):
        return QuoteAggregator(
            providers=providers,
            catalog=catalog,
            cache=cache if cache is not None else InMemoryQuoteCache(max_size=100),
            rate_engine=RateEngine(),
            config=config or aggregator_config,
        )
    return _make
