"""
EasyPost Rate Provider

Creates an EasyPost shipment for the vendor -> customer route and maps the
returned carrier rates to shipping options. Authentication is HTTP basic
with the API key as username.

Errors (HTTP >= 400, network failures, unreadable payloads) are raised as
ProviderCallError so the aggregator can retry and isolate them.
"""
import logging
from datetime import date, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

import httpx

from app.core.exceptions import ProviderCallError
from app.modules.shipping.providers import register_provider
from app.modules.shipping.providers.base import ShippingProviderClient
from app.schemas.quote import Address, ProviderRating, ShippingOption, ShippingQuoteRequest

logger = logging.getLogger(__name__)

PROVIDER_NAME = "EasyPost"
SUPPORTED_COUNTRIES = ["US", "CA", "GB", "AU", "DE", "FR", "JP", "VN", "TH", "SG", "MY", "ID", "PH"]
MAX_PACKAGE_WEIGHT = Decimal("70")  # kg
MAX_DECLARED_VALUE = Decimal("50000")
MAX_DIMENSION_CM = Decimal("150")
KG_TO_OZ = Decimal("35.274")

DEFAULT_RATING = ProviderRating(
    overall_rating=4.2,
    reliability=4.0,
    speed=4.5,
    customer_service=4.1,
    review_count=1250,
)


@register_provider(PROVIDER_NAME)
class EasyPostProvider(ShippingProviderClient):
    """EasyPost multi-carrier rating."""

    def __init__(self, settings=None, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(settings)
        self.enabled = bool(getattr(settings, "EASYPOST_ENABLED", False))
        self.api_key = getattr(settings, "EASYPOST_API_KEY", "") or ""
        self.base_url = getattr(settings, "EASYPOST_BASE_URL", "https://api.easypost.com/v2").rstrip("/")
        self.timeout = float(getattr(settings, "EASYPOST_TIMEOUT_SECONDS", 10.0))
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None

    @property
    def provider_name(self) -> str:
        return PROVIDER_NAME

    def is_available(self) -> bool:
        return self.enabled and bool(self.api_key.strip())

    def get_supported_countries(self) -> List[str]:
        return list(SUPPORTED_COUNTRIES)

    def get_max_package_weight(self) -> Decimal:
        return MAX_PACKAGE_WEIGHT

    def get_max_declared_value(self) -> Decimal:
        return MAX_DECLARED_VALUE

    def supports_package(self, weight, dimensions, declared_value) -> bool:
        if dimensions is not None and max(dimensions.length, dimensions.width, dimensions.height) > MAX_DIMENSION_CM:
            return False
        return super().supports_package(weight, dimensions, declared_value)

    def get_provider_configuration(self) -> Dict[str, Any]:
        config = super().get_provider_configuration()
        config.update({
            "enabled": self.enabled,
            "base_url": self.base_url,
            "has_api_key": bool(self.api_key.strip()),
        })
        return config

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                auth=(self.api_key, ""),
                headers={"Content-Type": "application/json"},
                transport=self._transport,
            )
        return self._http_client

    async def close(self):
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def _post(self, path: str, data: Dict) -> Dict:
        client = await self._get_http_client()
        try:
            response = await client.post(path, json=data)
        except httpx.RequestError as e:
            logger.error(f"EasyPost request failed: {e}")
            raise ProviderCallError(f"Network error: {e}", provider=PROVIDER_NAME, code="NETWORK_ERROR")

        logger.debug(f"EasyPost POST {path} -> {response.status_code}")

        if response.status_code >= 400:
            try:
                error_data = response.json()
            except ValueError:
                error_data = {"raw": response.text[:500]}
            error = error_data.get("error") or {}
            error_msg = error.get("message") or f"EasyPost API error ({response.status_code})"
            error_code = error.get("code") or str(response.status_code)
            logger.error(f"EasyPost API error: {error_code} - {error_msg}")
            raise ProviderCallError(
                error_msg,
                provider=PROVIDER_NAME,
                status_code=response.status_code,
                code=error_code,
                details=error_data,
            )

        try:
            return response.json()
        except ValueError:
            raise ProviderCallError("EasyPost returned a non-JSON body", provider=PROVIDER_NAME)

    @staticmethod
    def _address(name: str, address: Address) -> Dict[str, Any]:
        return {
            "name": name,
            "street1": address.street,
            "city": address.city,
            "state": address.state,
            "zip": address.postal_code,
            "country": address.country,
        }

    def build_shipment(self, request: ShippingQuoteRequest) -> Dict[str, Any]:
        package = request.package_info
        parcel: Dict[str, Any] = {"weight": float(package.weight * KG_TO_OZ)}
        if package.dimensions:
            parcel.update({
                "length": float(package.dimensions.length),
                "width": float(package.dimensions.width),
                "height": float(package.dimensions.height),
            })
        return {
            "shipment": {
                "to_address": self._address(request.customer.name, request.customer.address),
                "from_address": self._address(request.vendor.name, request.vendor.address),
                "parcel": parcel,
            }
        }

    def parse_rates(self, payload: Dict[str, Any]) -> List[ShippingOption]:
        """Map EasyPost rates to options. Rates that cannot be read are skipped."""
        options = []
        for rate in payload.get("rates") or []:
            try:
                days = int(rate["delivery_days"])
                options.append(ShippingOption(
                    provider=rate["carrier"],
                    service=rate["service"],
                    cost=Decimal(str(rate["rate"])),
                    currency=rate.get("currency") or "USD",
                    estimated_days=days,
                    estimated_delivery_date=date.today() + timedelta(days=days),
                    service_code=rate.get("id"),
                    tracking_supported=True,
                    insurance_included=False,
                    delivery_type="DOOR_TO_DOOR",
                    features=["Tracking", "Insurance available"],
                    rating=DEFAULT_RATING,
                ))
            except (KeyError, TypeError, ValueError, InvalidOperation) as e:
                logger.warning(f"Skipping unreadable EasyPost rate {rate.get('id') if isinstance(rate, dict) else rate}: {e}")
        return options

    async def get_shipping_quotes(self, request: ShippingQuoteRequest) -> List[ShippingOption]:
        if request.vendor is None or request.package_info is None:
            raise ProviderCallError("EasyPost quotes need a vendor and package", provider=PROVIDER_NAME)

        payload = await self._post("/shipments", self.build_shipment(request))
        options = self.parse_rates(payload)
        logger.info(f"EasyPost returned {len(options)} rates for {request.vendor.address.country}->{request.destination.country}")
        return options
