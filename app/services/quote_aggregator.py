"""
Shipping Quote Aggregator

Turns a quote request into one ranked AggregatedQuote.

Per call:
    CacheLookup -> hit: return cached value
                -> miss: ProviderFanout -> Merge -> FallbackIfEmpty -> Rank -> CacheWrite

Provider fan-out:
- Only providers that are available, serve the route and accept the package
- At most max_parallel_providers, one asyncio task each
- Each attempt is time-boxed; timeouts, connection failures and upstream
  5xx responses retry with exponential backoff and jitter, other errors
  fail at once; each call counts one result on the provider's breaker
- Providers with an open breaker are skipped without being called
- The whole fan-out has an overall deadline; no retry starts after it,
  tasks still running are cancelled, their results dropped and a failure
  counted on their breakers
- A provider failure is recorded in metadata.provider_errors and never fails
  the aggregate call

When no provider returns options the internal rate engine prices the
destination zone's methods. Only an unroutable destination (ZoneNotFoundError)
or an empty fallback (AggregationExhaustedError) fails the call.

Multi-vendor requests run one single-vendor aggregation per vendor package
concurrently and rank the union.
"""
import asyncio
import logging
import random
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from app.core.circuit_breaker import CircuitBreakerRegistry
from app.core.exceptions import (
    AggregationExhaustedError,
    CacheError,
    ProviderCallError,
    ProviderError as ProviderFault,
    ProviderNotFoundError,
    QuoteValidationError,
    ZoneNotFoundError,
)
from app.modules.shipping.catalog import ShippingCatalog
from app.modules.shipping.providers.base import ShippingProviderClient
from app.modules.shipping.rate_engine import RateEngine, RateQuote, RateRequest
from app.modules.shipping.zones import ZoneDefinition, list_matching_zones, resolve_zone
from app.schemas.quote import (
    AggregatedQuote,
    CalculationMethod,
    ProviderError,
    QuoteMetadata,
    RequestType,
    ShippingOption,
    ShippingQuoteRequest,
    ValidationResult,
)
from app.services.quote_cache import QuoteCache, make_cache_key

logger = logging.getLogger(__name__)

FALLBACK_NOTE = "Internal calculation"
MULTI_ORIGIN = "MULTI"

MAX_PACKAGE_WEIGHT_KG = Decimal("70")
HEAVY_PACKAGE_WARNING_KG = Decimal("50")
MAX_DECLARED_VALUE = Decimal("50000")
US_POSTAL_CODE = re.compile(r"^\d{5}(-\d{4})?$")


@dataclass
class AggregatorConfig:
    """Tuning knobs for aggregation. Defaults mirror the settings defaults."""
    max_parallel_providers: int = 5
    provider_timeout_seconds: float = 10.0
    overall_timeout_seconds: float = 30.0
    retry_attempts: int = 2
    retry_base_delay_seconds: float = 0.5
    retry_max_delay_seconds: float = 5.0
    retry_jitter_factor: float = 0.1
    circuit_failure_threshold: int = 5
    circuit_recovery_seconds: float = 30
    cache_ttl_seconds: int = 600
    balanced_cost_scale: float = 100000.0
    quick_estimate_default: int = 3

    @classmethod
    def from_settings(cls, settings) -> "AggregatorConfig":
        return cls(
            max_parallel_providers=settings.QUOTE_MAX_PARALLEL_PROVIDERS,
            provider_timeout_seconds=settings.QUOTE_PROVIDER_TIMEOUT_SECONDS,
            overall_timeout_seconds=settings.QUOTE_OVERALL_TIMEOUT_SECONDS,
            retry_attempts=settings.QUOTE_PROVIDER_RETRY_ATTEMPTS,
            retry_base_delay_seconds=settings.QUOTE_RETRY_BASE_DELAY_SECONDS,
            circuit_failure_threshold=settings.QUOTE_CIRCUIT_FAILURE_THRESHOLD,
            circuit_recovery_seconds=settings.QUOTE_CIRCUIT_RECOVERY_SECONDS,
            cache_ttl_seconds=settings.QUOTE_CACHE_TTL_MINUTES * 60,
            balanced_cost_scale=settings.QUOTE_BALANCED_COST_SCALE,
            quick_estimate_default=settings.QUOTE_QUICK_ESTIMATE_DEFAULT,
        )


# ----- Ranking -----


def _option_sort_key(option: ShippingOption):
    # Full tie-break so provider completion order never shows in the result
    return (option.cost, option.estimated_days, option.provider, option.service, option.service_code or "")


def rank_options(options: Iterable[ShippingOption]) -> List[ShippingOption]:
    return sorted(options, key=_option_sort_key)


def select_cheapest(options: Sequence[ShippingOption]) -> Optional[ShippingOption]:
    return min(options, key=lambda o: o.cost) if options else None


def select_fastest(options: Sequence[ShippingOption]) -> Optional[ShippingOption]:
    return min(options, key=lambda o: o.estimated_days) if options else None


def select_recommended(options: Sequence[ShippingOption], cost_scale: float) -> Optional[ShippingOption]:
    """Lowest balanced score: cost / cost_scale + estimated_days."""
    if not options:
        return None
    scale = Decimal(str(cost_scale))
    return min(options, key=lambda o: o.cost / scale + o.estimated_days)


def new_quote_id(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return f"SQ_{int(now.timestamp() * 1000)}_{uuid.uuid4().hex[:8]}"


# ----- Fan-out accumulator -----


class _FanOutAccumulator:
    """
    Results of one fan-out, appended from concurrent provider tasks.

    Each append holds the lock. Once sealed (overall deadline reached) late
    appends are dropped.
    """

    def __init__(self):
        self._lock = asyncio.Lock()
        self._sealed = False
        self.options: List[ShippingOption] = []
        self.available: List[str] = []
        self.unavailable: List[str] = []
        self.errors: List[ProviderError] = []

    async def add_success(self, provider: str, options: List[ShippingOption]):
        async with self._lock:
            if self._sealed:
                return
            self.options.extend(options)
            self.available.append(provider)

    async def add_failure(self, provider: str, error_code: str, message: str):
        async with self._lock:
            if self._sealed:
                return
            self._record_failure(provider, error_code, message)

    def _record_failure(self, provider: str, error_code: str, message: str):
        if provider not in self.unavailable:
            self.unavailable.append(provider)
        self.errors.append(ProviderError(provider=provider, error_code=error_code, error_message=message))

    def seal(self, abandoned: Iterable[str], message: str):
        """Stop accepting results and record the abandoned providers."""
        self._sealed = True
        for provider in abandoned:
            self._record_failure(provider, "DEADLINE_EXCEEDED", message)


class QuoteAggregator:
    """
    Orchestrates providers, the internal rate engine and the quote cache.

    Args:
        providers: Registered provider clients
        catalog: Source of active zones and methods for the fallback
        cache: Optional quote cache; None disables caching
        rate_engine: Internal pricing; defaults to RateEngine()
        config: Aggregation limits and tuning
    """

    def __init__(
        self,
        providers: Iterable[ShippingProviderClient],
        catalog: ShippingCatalog,
        cache: Optional[QuoteCache] = None,
        rate_engine: Optional[RateEngine] = None,
        config: Optional[AggregatorConfig] = None,
    ):
        self.providers = list(providers)
        self.catalog = catalog
        self.cache = cache
        self.rate_engine = rate_engine or RateEngine()
        self.config = config or AggregatorConfig()
        self.breakers = CircuitBreakerRegistry(
            failure_threshold=self.config.circuit_failure_threshold,
            recovery_timeout=self.config.circuit_recovery_seconds,
        )

    # ==================== Public operations ====================

    async def calculate(self, request: ShippingQuoteRequest, use_cache: bool = True) -> AggregatedQuote:
        """
        Quote a request of either type.

        use_cache=False skips the cache read (the fresh result is still
        written back).

        Raises:
            QuoteValidationError: request rejected before any provider call
            ZoneNotFoundError: fallback needed and destination unroutable
            AggregationExhaustedError: no options from providers or fallback
        """
        self._raise_if_invalid(request)
        if request.is_multi_vendor:
            return await self.get_multi_vendor_quotes(request, use_cache=use_cache)
        return await self.get_shipping_quotes(request, use_cache=use_cache)

    async def get_shipping_quotes(self, request: ShippingQuoteRequest, use_cache: bool = True) -> AggregatedQuote:
        key = make_cache_key(request)
        if use_cache:
            cached = await self._cache_get(key)
            if cached is not None:
                logger.info(f"Returning cached quote {cached.quote_id}")
                return cached

        quote = await self._aggregate_single(request)
        await self._cache_put(key, quote)
        return quote

    async def get_multi_vendor_quotes(self, request: ShippingQuoteRequest, use_cache: bool = True) -> AggregatedQuote:
        key = make_cache_key(request)
        if use_cache:
            cached = await self._cache_get(key)
            if cached is not None:
                logger.info(f"Returning cached multi-vendor quote {cached.quote_id}")
                return cached

        vendor_requests = request.split_by_vendor()
        results = await asyncio.gather(
            *(self.get_shipping_quotes(vr, use_cache=use_cache) for vr in vendor_requests),
            return_exceptions=True,
        )
        for vendor_request, result in zip(vendor_requests, results):
            if isinstance(result, BaseException):
                logger.warning(f"Vendor {vendor_request.vendor.vendor_id} could not be quoted: {result}")
                raise result

        quote = self._combine_vendor_quotes(request, vendor_requests, results)
        await self._cache_put(key, quote)
        return quote

    async def get_cached_quotes(self, request: ShippingQuoteRequest) -> Optional[AggregatedQuote]:
        return await self._cache_get(make_cache_key(request))

    async def quick_estimate(self, request: ShippingQuoteRequest, max_options: Optional[int] = None) -> AggregatedQuote:
        """Cached or fresh quote cut to the first max_options options, as a new value."""
        limit = self.config.quick_estimate_default if max_options is None else max_options
        if limit < 1:
            raise QuoteValidationError("maxProviders must be at least 1")
        quote = await self.calculate(request, use_cache=True)
        return self.truncate(quote, limit)

    def truncate(self, quote: AggregatedQuote, limit: int) -> AggregatedQuote:
        options = list(quote.options[:limit])
        return quote.model_copy(update={
            "options": options,
            "cheapest_option": select_cheapest(options),
            "fastest_option": select_fastest(options),
            "recommended_option": select_recommended(options, self.config.balanced_cost_scale),
        })

    async def get_quotes_from_provider(self, request: ShippingQuoteRequest, provider_name: str) -> List[ShippingOption]:
        """
        Quote through one named provider (same breaker and retry policy).

        Raises:
            ProviderNotFoundError: no provider with that name
            ProviderCallError: provider unavailable, circuit open or call failed
        """
        provider = self._find_provider(provider_name)
        self._raise_if_invalid(request)
        name = provider.provider_name

        if not provider.is_available():
            raise ProviderCallError(f"Provider {name} is not available", provider=name, code="PROVIDER_UNAVAILABLE")

        breaker = self.breakers.get(name)
        if not breaker.is_call_permitted():
            raise ProviderCallError(
                f"Provider {name} is temporarily disabled after repeated failures",
                provider=name,
                code="CIRCUIT_OPEN",
            )

        vendor_requests = request.split_by_vendor() if request.is_multi_vendor else [request]
        deadline = asyncio.get_running_loop().time() + self.config.overall_timeout_seconds
        options: List[ShippingOption] = []
        for vendor_request in vendor_requests:
            try:
                vendor_options = await self._call_with_retry(provider, vendor_request, deadline)
            except asyncio.TimeoutError:
                raise ProviderCallError(f"Provider {name} timed out", provider=name, code="PROVIDER_TIMEOUT")
            except ProviderFault:
                raise
            except Exception as e:
                raise ProviderCallError(f"Provider {name} failed: {e}", provider=name)
            if request.is_multi_vendor:
                vendor_options = self._tag_vendor(vendor_options, vendor_request)
            options.extend(vendor_options)
        return rank_options(options)

    def get_available_providers(self, origin_country: str, destination_country: str) -> List[str]:
        origin_country = origin_country.upper()
        destination_country = destination_country.upper()
        return [
            p.provider_name for p in self.providers
            if self._safe_check(p, lambda: p.is_available() and p.supports_route(origin_country, destination_country))
        ]

    def validate_request(self, request: ShippingQuoteRequest) -> ValidationResult:
        errors: List[str] = []
        warnings: List[str] = []

        if request.is_multi_vendor:
            if not request.vendor_packages:
                errors.append("Multi-vendor requests need at least one vendor package")
            if request.vendor is not None or request.package_info is not None:
                errors.append("Multi-vendor requests must use vendor_packages, not vendor/package_info")
            vendor_ids = [vp.vendor.vendor_id for vp in request.vendor_packages]
            if len(vendor_ids) != len(set(vendor_ids)):
                errors.append("Each vendor may appear only once in vendor_packages")
            legs = [(vp.vendor.vendor_id, vp.vendor.address, vp.package_info) for vp in request.vendor_packages]
        else:
            if request.vendor is None:
                errors.append("Vendor information is required")
            if request.package_info is None:
                errors.append("Package information is required")
            if request.vendor_packages:
                errors.append("Single-vendor requests must not include vendor_packages")
            legs = []
            if request.vendor is not None and request.package_info is not None:
                legs.append((request.vendor.vendor_id, request.vendor.address, request.package_info))

        errors.extend(self._address_errors("Customer", request.customer.address))

        destination = request.customer.address.country
        for vendor_id, origin, package in legs:
            prefix = f"Vendor {vendor_id}: " if request.is_multi_vendor else ""
            errors.extend(f"{prefix}{e}" for e in self._address_errors("Vendor", origin))

            if package.weight <= 0:
                errors.append(f"{prefix}Package weight must be greater than 0")
            elif package.weight > MAX_PACKAGE_WEIGHT_KG:
                errors.append(f"{prefix}Package weight cannot exceed {MAX_PACKAGE_WEIGHT_KG} kg")
            elif package.weight > HEAVY_PACKAGE_WARNING_KG:
                warnings.append(f"{prefix}Heavy package - limited shipping options may be available")

            if package.declared_value <= 0:
                errors.append(f"{prefix}Declared value must be greater than 0")
            elif package.declared_value > MAX_DECLARED_VALUE:
                errors.append(f"{prefix}Declared value cannot exceed {MAX_DECLARED_VALUE}")

            if origin.country != destination:
                warnings.append(f"{prefix}International shipment - customs documentation required")
            if not self.get_available_providers(origin.country, destination):
                warnings.append(
                    f"{prefix}No external provider serves {origin.country} -> {destination}; internal rates will be used"
                )

        return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)

    def get_provider_status(self) -> Dict[str, Dict[str, Any]]:
        status = {}
        for provider in self.providers:
            name = provider.provider_name
            status[name] = {
                "available": self._safe_check(provider, provider.is_available),
                "configuration": provider.get_provider_configuration(),
                "supported_countries": provider.get_supported_countries(),
                "max_weight": provider.get_max_package_weight(),
                "max_value": provider.get_max_declared_value(),
                "circuit": self.breakers.get(name).get_metrics(),
            }
        return status

    def test_provider_connectivity(self) -> Dict[str, bool]:
        return {
            p.provider_name: self._safe_check(p, lambda: p.is_available() and bool(p.get_supported_countries()))
            for p in self.providers
        }

    async def internal_rates(self, rate_request: RateRequest) -> Tuple[ZoneDefinition, List[RateQuote]]:
        """Resolve the destination zone and price its methods with the rate engine."""
        destination = rate_request.to_address
        zones = await self.catalog.list_active_zones()
        zone = resolve_zone(destination.country, destination.state, destination.postal_code, zones)
        methods = await self.catalog.find_methods(zone.id, rate_request.specific_carrier_id)
        return zone, self.rate_engine.quote(rate_request, methods)

    async def lookup_zone(
        self,
        country: str,
        state: Optional[str] = None,
        postal_code: Optional[str] = None,
    ) -> List[Tuple[ZoneDefinition, int]]:
        """Eligible zones with scores, best first. Raises ZoneNotFoundError when none."""
        zones = await self.catalog.list_active_zones()
        winner = resolve_zone(country, state, postal_code, zones)
        matches = list_matching_zones(country, state, postal_code, zones)
        return sorted(matches, key=lambda item: item[0] is not winner)

    async def close(self):
        for provider in self.providers:
            await provider.close()

    # ==================== Aggregation ====================

    async def _aggregate_single(self, request: ShippingQuoteRequest) -> AggregatedQuote:
        origin = request.origin.country
        destination = request.destination.country

        providers = self._select_providers(request)
        accumulator = await self._fan_out(providers, request)

        options = accumulator.options
        provider_errors = accumulator.errors
        method = CalculationMethod.EXTERNAL_API

        if not options:
            logger.info(f"No provider options for {origin}->{destination}, using internal rates")
            options = await self._internal_options(request)
            method = CalculationMethod.INTERNAL_CALCULATION
            provider_errors = [e.model_copy(update={"fallback_used": FALLBACK_NOTE}) for e in provider_errors]
            if not options:
                raise AggregationExhaustedError(
                    f"No shipping options available for {origin} -> {destination}",
                    details={"provider_errors": [e.model_dump() for e in provider_errors]},
                )

        package = request.package_info
        metadata = QuoteMetadata(
            origin_country=origin,
            destination_country=destination,
            is_domestic=origin == destination,
            requires_customs=origin != destination,
            total_packages=package.package_count,
            total_weight=package.weight,
            total_declared_value=package.declared_value,
            base_currency=request.preferred_currency,
            available_providers=accumulator.available,
            unavailable_providers=accumulator.unavailable,
            provider_errors=provider_errors,
            calculation_method=method,
        )
        quote = self._build_quote(RequestType.SINGLE_VENDOR, options, metadata)
        logger.info(
            f"Quote {quote.quote_id}: {len(quote.options)} options for {origin}->{destination} "
            f"via {method.value} ({len(provider_errors)} provider errors)"
        )
        return quote

    def _select_providers(self, request: ShippingQuoteRequest) -> List[ShippingProviderClient]:
        origin = request.origin.country
        destination = request.destination.country
        package = request.package_info

        eligible = [
            p for p in self.providers
            if self._safe_check(p, lambda: (
                p.is_available()
                and p.supports_route(origin, destination)
                and p.supports_package(package.weight, package.dimensions, package.declared_value)
            ))
        ]
        limit = self.config.max_parallel_providers
        if len(eligible) > limit:
            skipped = [p.provider_name for p in eligible[limit:]]
            logger.info(f"Fan-out capped at {limit} providers, skipping {skipped}")
        return eligible[:limit]

    async def _fan_out(self, providers: List[ShippingProviderClient], request: ShippingQuoteRequest) -> _FanOutAccumulator:
        accumulator = _FanOutAccumulator()
        if not providers:
            return accumulator

        deadline = asyncio.get_running_loop().time() + self.config.overall_timeout_seconds
        tasks = {
            asyncio.create_task(self._query_provider(provider, request, accumulator, deadline)): provider.provider_name
            for provider in providers
        }
        _, pending = await asyncio.wait(tasks.keys(), timeout=self.config.overall_timeout_seconds)

        abandoned = [tasks[task] for task in pending]
        for task in pending:
            task.cancel()
        if abandoned:
            logger.warning(f"Quote deadline of {self.config.overall_timeout_seconds}s reached, abandoning {abandoned}")
        accumulator.seal(abandoned, f"No response within the {self.config.overall_timeout_seconds}s quote deadline")
        return accumulator

    async def _query_provider(
        self,
        provider: ShippingProviderClient,
        request: ShippingQuoteRequest,
        accumulator: _FanOutAccumulator,
        deadline: float,
    ):
        name = provider.provider_name
        breaker = self.breakers.get(name)
        if not breaker.is_call_permitted():
            retry_after = breaker.get_retry_after_seconds()
            logger.warning(f"Skipping {name}: circuit open, retry after {retry_after:.0f}s")
            await accumulator.add_failure(name, "CIRCUIT_OPEN", f"Provider temporarily disabled, retry after {retry_after:.0f}s")
            return

        try:
            options = await self._call_with_retry(provider, request, deadline)
        except asyncio.TimeoutError:
            await accumulator.add_failure(
                name, "PROVIDER_TIMEOUT", f"No response within {self.config.provider_timeout_seconds}s"
            )
        except Exception as e:
            await accumulator.add_failure(name, "PROVIDER_ERROR", str(e) or type(e).__name__)
        else:
            await accumulator.add_success(name, options)

    async def _call_with_retry(
        self,
        provider: ShippingProviderClient,
        request: ShippingQuoteRequest,
        deadline: Optional[float] = None,
    ) -> List[ShippingOption]:
        """
        Call a provider with per-attempt timeout and bounded retries.

        Only timeouts, connection failures and upstream 5xx responses are
        retried, and no retry starts once it could not begin before the
        deadline (event loop time). Records exactly one success or one
        failure on the provider's breaker, including when the call is
        cancelled at the overall deadline.
        """
        name = provider.provider_name
        breaker = self.breakers.get(name)
        loop = asyncio.get_running_loop()
        timeout = self.config.provider_timeout_seconds
        attempts = self.config.retry_attempts + 1

        try:
            for attempt in range(attempts):
                try:
                    options = await asyncio.wait_for(self._invoke(provider, request), timeout=timeout)
                except Exception as e:
                    if isinstance(e, asyncio.TimeoutError):
                        logger.warning(f"{name} attempt {attempt + 1}/{attempts} timed out after {timeout}s")
                    else:
                        logger.warning(f"{name} attempt {attempt + 1}/{attempts} failed: {type(e).__name__}: {e}")

                    if attempt == attempts - 1 or not self._is_retryable(e):
                        breaker.record_failure(e)
                        raise
                    delay = self._backoff_delay(attempt)
                    if deadline is not None and loop.time() + delay >= deadline:
                        logger.info(f"{name}: no time left before the quote deadline, not retrying")
                        breaker.record_failure(e)
                        raise
                    await asyncio.sleep(delay)
                    continue

                breaker.record_success()
                return list(options or [])
        except asyncio.CancelledError:
            breaker.record_failure(asyncio.TimeoutError(f"{name} abandoned at the quote deadline"))
            raise

    @staticmethod
    def _is_retryable(error: Exception) -> bool:
        if isinstance(error, (asyncio.TimeoutError, ConnectionError)):
            return True
        if isinstance(error, ProviderCallError):
            return error.is_transient
        return False

    async def _invoke(self, provider: ShippingProviderClient, request: ShippingQuoteRequest) -> List[ShippingOption]:
        if provider.blocking:
            return await asyncio.to_thread(provider.get_shipping_quotes, request)
        return await provider.get_shipping_quotes(request)

    def _backoff_delay(self, attempt: int) -> float:
        delay = min(
            self.config.retry_base_delay_seconds * (2 ** attempt),
            self.config.retry_max_delay_seconds,
        )
        jitter = delay * self.config.retry_jitter_factor * random.random()
        return delay + jitter

    async def _internal_options(self, request: ShippingQuoteRequest) -> List[ShippingOption]:
        _, quotes = await self.internal_rates(self._rate_request(request))
        return [self.rate_engine.to_option(q) for q in quotes if q.is_available]

    def _rate_request(self, request: ShippingQuoteRequest) -> RateRequest:
        package = request.package_info
        return RateRequest(
            from_address=request.origin,
            to_address=request.destination,
            total_weight=package.weight,
            total_value=package.declared_value,
            package_count=package.package_count,
            requested_service_type=request.service_type,
            specific_carrier_id=request.carrier_id,
            currency=self.rate_engine.currency,
        )

    def _build_quote(self, request_type: RequestType, options: List[ShippingOption], metadata: QuoteMetadata) -> AggregatedQuote:
        ranked = rank_options(options)
        now = datetime.now(timezone.utc)
        return AggregatedQuote(
            quote_id=new_quote_id(now),
            quoted_at=now,
            expires_at=now + timedelta(seconds=self.config.cache_ttl_seconds),
            request_type=request_type,
            options=ranked,
            recommended_option=select_recommended(ranked, self.config.balanced_cost_scale),
            cheapest_option=select_cheapest(ranked),
            fastest_option=select_fastest(ranked),
            metadata=metadata,
        )

    # ==================== Multi-vendor ====================

    @staticmethod
    def _tag_vendor(options: Iterable[ShippingOption], vendor_request: ShippingQuoteRequest) -> List[ShippingOption]:
        vendor = vendor_request.vendor
        return [o.model_copy(update={"vendor_id": vendor.vendor_id, "vendor_name": vendor.name}) for o in options]

    def _combine_vendor_quotes(
        self,
        request: ShippingQuoteRequest,
        vendor_requests: List[ShippingQuoteRequest],
        vendor_quotes: List[AggregatedQuote],
    ) -> AggregatedQuote:
        options: List[ShippingOption] = []
        available: List[str] = []
        unavailable: List[str] = []
        provider_errors: List[ProviderError] = []
        methods = set()

        for vendor_request, quote in zip(vendor_requests, vendor_quotes):
            options.extend(self._tag_vendor(quote.options, vendor_request))
            meta = quote.metadata
            available.extend(p for p in meta.available_providers if p not in available)
            unavailable.extend(p for p in meta.unavailable_providers if p not in unavailable)
            provider_errors.extend(meta.provider_errors)
            methods.add(meta.calculation_method)

        destination = request.destination.country
        is_domestic = all(vr.origin.country == destination for vr in vendor_requests)
        packages = request.packages()
        metadata = QuoteMetadata(
            origin_country=MULTI_ORIGIN,
            destination_country=destination,
            is_domestic=is_domestic,
            requires_customs=not is_domestic,
            total_packages=sum(p.package_count for p in packages),
            total_weight=sum((p.weight for p in packages), Decimal("0")),
            total_declared_value=sum((p.declared_value for p in packages), Decimal("0")),
            base_currency=request.preferred_currency,
            available_providers=available,
            unavailable_providers=unavailable,
            provider_errors=provider_errors,
            calculation_method=methods.pop() if len(methods) == 1 else CalculationMethod.HYBRID,
        )
        quote = self._build_quote(RequestType.MULTI_VENDOR, options, metadata)
        logger.info(f"Multi-vendor quote {quote.quote_id}: {len(vendor_requests)} vendors, {len(quote.options)} options")
        return quote

    # ==================== Helpers ====================

    def _raise_if_invalid(self, request: ShippingQuoteRequest):
        result = self.validate_request(request)
        if not result.is_valid:
            raise QuoteValidationError("; ".join(result.errors), errors=result.errors)

    @staticmethod
    def _address_errors(label: str, address) -> List[str]:
        if address.country == "US" and address.postal_code and not US_POSTAL_CODE.match(address.postal_code.strip()):
            return [f"{label} postal code {address.postal_code!r} is not a valid US ZIP code"]
        return []

    def _find_provider(self, provider_name: str) -> ShippingProviderClient:
        for provider in self.providers:
            if provider.provider_name.lower() == provider_name.lower():
                return provider
        raise ProviderNotFoundError(f"Unknown shipping provider: {provider_name}", provider=provider_name)

    @staticmethod
    def _safe_check(provider: ShippingProviderClient, check) -> bool:
        try:
            return bool(check())
        except Exception as e:
            logger.warning(f"Provider {provider.provider_name} check failed: {e}")
            return False

    async def _cache_get(self, key: str) -> Optional[AggregatedQuote]:
        if self.cache is None:
            return None
        try:
            return await self.cache.get(key)
        except CacheError as e:
            logger.warning(f"Quote cache read failed, treating as miss: {e.message}")
        except Exception as e:
            logger.warning(f"Quote cache read failed, treating as miss: {e}")
        return None

    async def _cache_put(self, key: str, quote: AggregatedQuote):
        if self.cache is None:
            return
        try:
            await self.cache.put(key, quote, self.config.cache_ttl_seconds)
        except CacheError as e:
            logger.warning(f"Quote cache write failed for {quote.quote_id}: {e.message}")
        except Exception as e:
            logger.warning(f"Quote cache write failed for {quote.quote_id}: {e}")
