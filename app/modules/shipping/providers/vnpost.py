"""
VNPost Rate Provider

Vietnam Post publishes a fixed tariff, so rates are computed locally from
the tariff tables rather than over HTTP. Costs are in VND.

Domestic (VN -> VN): Express (same city only), Standard, Economy.
International (VN -> listed destinations): EMS and Regular, scaled by a
destination region multiplier.

get_shipping_quotes is a plain blocking method; the aggregator runs it in a
worker thread.
"""
import logging
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List

from app.core.exceptions import ProviderCallError
from app.modules.shipping.providers import register_provider
from app.modules.shipping.providers.base import ShippingProviderClient
from app.schemas.quote import ShippingOption, ShippingQuoteRequest

logger = logging.getLogger(__name__)

PROVIDER_NAME = "VNPost"
HOME_COUNTRY = "VN"
INTERNATIONAL_DESTINATIONS = [
    "US", "CA", "GB", "AU", "JP", "KR", "TH", "SG", "MY", "ID", "PH", "CN", "TW", "HK",
]
MAX_PACKAGE_WEIGHT = Decimal("30")  # kg
MAX_DECLARED_VALUE = Decimal("240000000")  # VND
MAX_SINGLE_DIMENSION_CM = Decimal("100")
MAX_TOTAL_DIMENSIONS_CM = Decimal("200")

# (service, base rate for the first kg, rate per additional kg, days, code)
DOMESTIC_TARIFF = {
    "EXPRESS": ("Express", Decimal("25000"), Decimal("8000"), 1, "VNP_EXPRESS"),
    "STANDARD": ("Standard", Decimal("15000"), Decimal("5000"), 3, "VNP_STANDARD"),
    "ECONOMY": ("Economy", Decimal("10000"), Decimal("3000"), 5, "VNP_ECONOMY"),
}
INTERNATIONAL_TARIFF = {
    "EMS": ("EMS International", Decimal("200000"), Decimal("50000"), 7, "VNP_EMS_INTL"),
    "REGULAR": ("Regular International", Decimal("80000"), Decimal("20000"), 14, "VNP_REG_INTL"),
}

REGION_MULTIPLIERS = [
    ({"TH", "SG", "MY", "ID", "PH", "KH", "LA"}, Decimal("1.0")),
    ({"CN", "TW", "HK", "JP", "KR"}, Decimal("1.2")),
    ({"AU", "NZ"}, Decimal("1.5")),
    ({"US", "CA"}, Decimal("1.8")),
    ({"GB", "DE", "FR"}, Decimal("2.0")),
]
DEFAULT_REGION_MULTIPLIER = Decimal("2.5")


def region_multiplier(country: str) -> Decimal:
    for countries, multiplier in REGION_MULTIPLIERS:
        if country in countries:
            return multiplier
    return DEFAULT_REGION_MULTIPLIER


def tariff_rate(weight: Decimal, base_rate: Decimal, per_kg_rate: Decimal) -> Decimal:
    additional_weight = max(weight - Decimal("1"), Decimal("0"))
    return base_rate + additional_weight * per_kg_rate


@register_provider(PROVIDER_NAME)
class VNPostProvider(ShippingProviderClient):
    """Vietnam Post tariff rating."""

    blocking = True

    def __init__(self, settings=None):
        super().__init__(settings)
        self.enabled = bool(getattr(settings, "VNPOST_ENABLED", False))

    @property
    def provider_name(self) -> str:
        return PROVIDER_NAME

    def is_available(self) -> bool:
        return self.enabled

    def get_supported_countries(self) -> List[str]:
        return [HOME_COUNTRY] + INTERNATIONAL_DESTINATIONS

    def get_max_package_weight(self) -> Decimal:
        return MAX_PACKAGE_WEIGHT

    def get_max_declared_value(self) -> Decimal:
        return MAX_DECLARED_VALUE

    def supports_route(self, origin_country: str, destination_country: str) -> bool:
        if origin_country != HOME_COUNTRY:
            return False
        return destination_country == HOME_COUNTRY or destination_country in INTERNATIONAL_DESTINATIONS

    def supports_package(self, weight, dimensions, declared_value) -> bool:
        if dimensions is not None:
            sides = (dimensions.length, dimensions.width, dimensions.height)
            if max(sides) > MAX_SINGLE_DIMENSION_CM or sum(sides) > MAX_TOTAL_DIMENSIONS_CM:
                return False
        return super().supports_package(weight, dimensions, declared_value)

    def get_provider_configuration(self) -> Dict[str, Any]:
        config = super().get_provider_configuration()
        config.update({"enabled": self.enabled, "primary_market": "Vietnam"})
        return config

    def _option(self, service: str, cost: Decimal, days: int, code: str, features: List[str]) -> ShippingOption:
        return ShippingOption(
            provider=PROVIDER_NAME,
            service=service,
            cost=cost.quantize(Decimal("1"), rounding=ROUND_HALF_UP),
            currency="VND",
            estimated_days=days,
            estimated_delivery_date=date.today() + timedelta(days=days),
            service_code=code,
            tracking_supported=True,
            insurance_included=True,
            delivery_type="DOOR_TO_DOOR",
            features=features,
        )

    def get_shipping_quotes(self, request: ShippingQuoteRequest) -> List[ShippingOption]:
        if request.vendor is None or request.package_info is None:
            raise ProviderCallError("VNPost quotes need a vendor and package", provider=PROVIDER_NAME)

        origin = request.vendor.address
        destination = request.customer.address
        package = request.package_info
        if not self.supports_route(origin.country, destination.country):
            raise ProviderCallError(
                f"VNPost does not serve {origin.country}->{destination.country}", provider=PROVIDER_NAME
            )
        if not self.supports_package(package.weight, package.dimensions, package.declared_value):
            raise ProviderCallError("Package exceeds VNPost limits", provider=PROVIDER_NAME)

        options = []
        if destination.country == HOME_COUNTRY:
            same_city = bool(origin.city) and origin.city.strip().lower() == (destination.city or "").strip().lower()
            for key, (service, base, per_kg, days, code) in DOMESTIC_TARIFF.items():
                if key == "EXPRESS" and not same_city:
                    continue
                cost = tariff_rate(package.weight, base, per_kg)
                options.append(self._option(service, cost, days, code, ["Tracking", "Insurance included", "COD available"]))
        else:
            multiplier = region_multiplier(destination.country)
            for service, base, per_kg, days, code in INTERNATIONAL_TARIFF.values():
                cost = tariff_rate(package.weight, base, per_kg) * multiplier
                options.append(self._option(service, cost, days, code, ["Tracking", "Insurance included"]))

        logger.debug(f"VNPost tariff produced {len(options)} options for {origin.country}->{destination.country}")
        return options
