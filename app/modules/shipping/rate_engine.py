"""
Internal Rate Engine

Prices a shipment against the method catalog of a zone. Used directly by the
rate estimate endpoint and as the aggregator's fallback when no external
provider returns options.

Pricing per eligible method:
    subtotal = base_rate + per_kg_rate * weight + per_item_rate * package_count
    insurance = value * insurance_rate        (only when value > threshold)
    fuel = subtotal * fuel_surcharge_rate     (always)
    total = subtotal + insurance + fuel, rounded half-up to cents

All money math is Decimal.
"""
import logging
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, Iterable, List, Optional

from app.schemas.quote import Address, ShippingOption

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")
INTERNAL_PROVIDER = "Internal"


def to_decimal(value) -> Optional[Decimal]:
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_money(value: Decimal) -> Decimal:
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class ShippingMethodDef:
    """A carrier's priced service within a zone. None bounds are unbounded."""
    id: int
    carrier_id: int
    zone_id: int
    service_type: str
    base_rate: Decimal
    per_kg_rate: Decimal = Decimal("0")
    per_item_rate: Decimal = Decimal("0")
    carrier_name: str = ""
    name: str = ""
    code: Optional[str] = None
    min_weight: Optional[Decimal] = None
    max_weight: Optional[Decimal] = None
    min_order_value: Optional[Decimal] = None
    max_order_value: Optional[Decimal] = None
    estimated_days_min: Optional[int] = None
    estimated_days_max: Optional[int] = None
    is_active: bool = True

    def __post_init__(self):
        for low, high, label in (
            (self.min_weight, self.max_weight, "weight"),
            (self.min_order_value, self.max_order_value, "order value"),
            (self.estimated_days_min, self.estimated_days_max, "estimated days"),
        ):
            if low is not None and high is not None and low > high:
                raise ValueError(f"Method {self.id}: min {label} {low} exceeds max {high}")


@dataclass(frozen=True)
class RateRequest:
    from_address: Address
    to_address: Address
    total_weight: Decimal
    total_value: Decimal
    package_count: int = 1
    requested_service_type: Optional[str] = None
    specific_carrier_id: Optional[int] = None
    currency: str = "USD"

    def __post_init__(self):
        if self.total_weight is None or self.total_weight <= 0:
            raise ValueError("total_weight must be greater than 0")
        if self.total_value is None or self.total_value <= 0:
            raise ValueError("total_value must be greater than 0")
        if self.package_count < 1:
            raise ValueError("package_count must be at least 1")


@dataclass(frozen=True)
class RateQuote:
    """Priced result for one method. unavailable_reason is set iff not available."""
    method_id: int
    carrier_id: int
    carrier_name: str
    method_name: str
    service_type: str
    currency: str
    is_available: bool
    base_rate: Optional[Decimal] = None
    weight_rate: Optional[Decimal] = None
    insurance_fee: Optional[Decimal] = None
    fuel_surcharge: Optional[Decimal] = None
    total_rate: Optional[Decimal] = None
    estimated_days_min: Optional[int] = None
    estimated_days_max: Optional[int] = None
    estimated_delivery_date: Optional[date] = None
    service_code: Optional[str] = None
    unavailable_reason: Optional[str] = None


class RateEngine:
    """Computes ranked internal quotes for a shipment."""

    def __init__(
        self,
        insurance_threshold: Decimal = Decimal("1000"),
        insurance_rate: Decimal = Decimal("0.01"),
        fuel_surcharge_rate: Decimal = Decimal("0.10"),
        currency: str = "USD",
        today: Optional[Callable[[], date]] = None,
    ):
        self.insurance_threshold = to_decimal(insurance_threshold)
        self.insurance_rate = to_decimal(insurance_rate)
        self.fuel_surcharge_rate = to_decimal(fuel_surcharge_rate)
        self.currency = currency
        self._today = today or date.today

    @classmethod
    def from_settings(cls, settings) -> "RateEngine":
        return cls(
            insurance_threshold=Decimal(settings.RATE_INSURANCE_THRESHOLD),
            insurance_rate=Decimal(settings.RATE_INSURANCE_RATE),
            fuel_surcharge_rate=Decimal(settings.RATE_FUEL_SURCHARGE_RATE),
            currency=settings.RATE_CURRENCY,
        )

    def is_eligible(self, request: RateRequest, method: ShippingMethodDef) -> bool:
        if not method.is_active:
            return False
        if request.specific_carrier_id is not None and method.carrier_id != request.specific_carrier_id:
            return False
        if (
            request.requested_service_type
            and method.service_type.upper() != request.requested_service_type.upper()
        ):
            return False

        weight = request.total_weight
        if method.min_weight is not None and weight < method.min_weight:
            return False
        if method.max_weight is not None and weight > method.max_weight:
            return False

        value = request.total_value
        if method.min_order_value is not None and value < method.min_order_value:
            return False
        if method.max_order_value is not None and value > method.max_order_value:
            return False
        return True

    def price(self, request: RateRequest, method: ShippingMethodDef) -> RateQuote:
        """Price one method. Raises on bad method data."""
        weight = to_decimal(request.total_weight)
        value = to_decimal(request.total_value)

        base_rate = to_decimal(method.base_rate)
        weight_rate = to_decimal(method.per_kg_rate) * weight
        item_rate = to_decimal(method.per_item_rate) * request.package_count
        subtotal = base_rate + weight_rate + item_rate

        insurance_fee = Decimal("0")
        if value > self.insurance_threshold:
            insurance_fee = value * self.insurance_rate
        fuel_surcharge = subtotal * self.fuel_surcharge_rate

        if method.estimated_days_max is None:
            raise ValueError("method has no maximum delivery estimate")

        return RateQuote(
            method_id=method.id,
            carrier_id=method.carrier_id,
            carrier_name=method.carrier_name,
            method_name=method.name,
            service_type=method.service_type,
            currency=self.currency,
            is_available=True,
            base_rate=round_money(base_rate),
            weight_rate=round_money(weight_rate),
            insurance_fee=round_money(insurance_fee),
            fuel_surcharge=round_money(fuel_surcharge),
            total_rate=round_money(subtotal + insurance_fee + fuel_surcharge),
            estimated_days_min=method.estimated_days_min,
            estimated_days_max=method.estimated_days_max,
            estimated_delivery_date=self._today() + timedelta(days=method.estimated_days_max),
            service_code=method.code,
        )

    def quote(self, request: RateRequest, methods: Iterable[ShippingMethodDef]) -> List[RateQuote]:
        """
        Price every eligible method.

        A method that fails to price becomes an unavailable quote; the rest
        of the batch still prices. Sorted by total_rate, unavailable last.
        """
        quotes: List[RateQuote] = []
        seen = set()
        for method in methods:
            if method.id in seen or not self.is_eligible(request, method):
                continue
            seen.add(method.id)
            try:
                quotes.append(self.price(request, method))
            except Exception as e:
                logger.warning(f"Rate calculation failed for method {method.id}: {e}")
                quotes.append(RateQuote(
                    method_id=method.id,
                    carrier_id=method.carrier_id,
                    carrier_name=method.carrier_name,
                    method_name=method.name,
                    service_type=method.service_type,
                    currency=self.currency,
                    is_available=False,
                    unavailable_reason=f"Rate calculation failed: {e}",
                ))

        quotes.sort(key=lambda q: (not q.is_available, q.total_rate if q.is_available else Decimal("0")))
        return quotes

    @staticmethod
    def cheapest(quotes: Iterable[RateQuote]) -> Optional[RateQuote]:
        available = [q for q in quotes if q.is_available]
        return min(available, key=lambda q: q.total_rate) if available else None

    @staticmethod
    def fastest(quotes: Iterable[RateQuote]) -> Optional[RateQuote]:
        available = [q for q in quotes if q.is_available]
        return min(available, key=lambda q: q.estimated_days_max) if available else None

    @staticmethod
    def to_option(quote: RateQuote) -> ShippingOption:
        """Present an available internal quote as a shipping option."""
        label = " ".join(part for part in (quote.carrier_name, quote.method_name) if part)
        features = ["Basic tracking"]
        if quote.insurance_fee:
            features.append("Insurance included")
        return ShippingOption(
            provider=INTERNAL_PROVIDER,
            service=label or quote.service_type,
            cost=quote.total_rate,
            currency=quote.currency,
            estimated_days=quote.estimated_days_max,
            estimated_delivery_date=quote.estimated_delivery_date,
            service_code=f"INTERNAL_{quote.service_code or quote.method_id}",
            tracking_supported=True,
            insurance_included=bool(quote.insurance_fee),
            delivery_type=quote.service_type,
            features=features,
        )
