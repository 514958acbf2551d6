"""
Tests for the quote aggregator.
"""
import re
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from app.core.circuit_breaker import CircuitState
from app.core.exceptions import (
    AggregationExhaustedError,
    CacheError,
    ProviderCallError,
    ProviderNotFoundError,
    QuoteValidationError,
    ZoneNotFoundError,
)
from app.modules.shipping.catalog import InMemoryCatalog
from app.schemas.quote import CalculationMethod, RequestType
from app.services.quote_aggregator import (
    FALLBACK_NOTE,
    AggregatorConfig,
    QuoteAggregator,
    select_recommended,
)
from conftest import (
    BlockingProvider,
    FailingProvider,
    FakeProvider,
    SlowProvider,
    make_multi_vendor_request,
    make_option,
    make_request,
)


@pytest.fixture
def fast_options():
    return [
        make_option("FastShip", "Priority", "18.50", 2),
        make_option("FastShip", "Economy", "9.75", 6),
    ]


class TestInternalFallback:
    """Test quoting when no provider produces options."""

    @pytest.mark.asyncio
    async def test_no_providers_uses_internal_rates(self, make_aggregator):
        aggregator = make_aggregator()

        quote = await aggregator.calculate(make_request())

        assert quote.metadata.calculation_method == CalculationMethod.INTERNAL_CALCULATION
        assert [o.cost for o in quote.options] == [Decimal("23.10"), Decimal("44.00")]
        assert quote.cheapest_option.cost == Decimal("23.10")
        assert quote.fastest_option.estimated_days == 1
        assert quote.recommended_option.service == "UPS Next Day"
        assert quote.metadata.provider_errors == []

    @pytest.mark.asyncio
    async def test_all_providers_failing_marks_fallback(self, make_aggregator):
        failing = FailingProvider(name="BrokenShip")
        aggregator = make_aggregator([failing])

        quote = await aggregator.calculate(make_request())

        assert quote.metadata.calculation_method == CalculationMethod.INTERNAL_CALCULATION
        assert quote.metadata.unavailable_providers == ["BrokenShip"]
        error = quote.metadata.provider_errors[0]
        assert error.error_code == "PROVIDER_ERROR"
        assert error.fallback_used == FALLBACK_NOTE
        assert len(quote.options) == 2

    @pytest.mark.asyncio
    async def test_unroutable_destination_raises_zone_not_found(self, make_aggregator):
        aggregator = make_aggregator()

        with pytest.raises(ZoneNotFoundError):
            await aggregator.calculate(make_request(country="VN", state=None, postal_code=None))

    @pytest.mark.asyncio
    async def test_zone_without_methods_raises_exhausted(self, zones, aggregator_config):
        aggregator = QuoteAggregator(providers=[], catalog=InMemoryCatalog(zones, []), config=aggregator_config)

        with pytest.raises(AggregationExhaustedError):
            await aggregator.calculate(make_request())


class TestProviderFanOut:
    """Test concurrent provider calls and failure isolation."""

    @pytest.mark.asyncio
    async def test_failing_provider_does_not_fail_quote(self, make_aggregator, fast_options):
        good = FakeProvider(name="FastShip", options=fast_options)
        bad = FailingProvider(name="BrokenShip", code="503")
        aggregator = make_aggregator([good, bad])

        quote = await aggregator.calculate(make_request())

        assert quote.metadata.calculation_method == CalculationMethod.EXTERNAL_API
        assert quote.metadata.available_providers == ["FastShip"]
        assert quote.metadata.unavailable_providers == ["BrokenShip"]
        assert quote.metadata.provider_errors[0].fallback_used is None
        assert {o.provider for o in quote.options} == {"FastShip"}
        # one retry after the first failure
        assert bad.calls == 2

    @pytest.mark.asyncio
    async def test_options_sorted_by_cost_regardless_of_completion(self, make_aggregator):
        slow = SlowProvider(0.05, name="SlowShip", options=[make_option("SlowShip", "Ground", "5.00", 7)])
        fast = FakeProvider(name="FastShip", options=[
            make_option("FastShip", "Air", "30.00", 1),
            make_option("FastShip", "Ground", "12.00", 4),
        ])
        aggregator = make_aggregator([slow, fast])

        quote = await aggregator.calculate(make_request())

        costs = [o.cost for o in quote.options]
        assert costs == sorted(costs)
        assert quote.cheapest_option.cost == min(costs)
        assert quote.fastest_option.estimated_days == min(o.estimated_days for o in quote.options)

    @pytest.mark.asyncio
    async def test_equal_cost_ties_break_deterministically(self, make_aggregator):
        a = FakeProvider(name="Bravo", options=[make_option("Bravo", "Ground", "10.00", 3)])
        b = FakeProvider(name="Alpha", options=[make_option("Alpha", "Ground", "10.00", 3)])
        aggregator = make_aggregator([a, b])

        quote = await aggregator.calculate(make_request())

        assert [o.provider for o in quote.options] == ["Alpha", "Bravo"]

    @pytest.mark.asyncio
    async def test_provider_timeout_is_recorded(self, make_aggregator, fast_options, caplog):
        config = AggregatorConfig(
            provider_timeout_seconds=0.05,
            overall_timeout_seconds=5,
            retry_attempts=0,
            retry_base_delay_seconds=0,
        )
        slow = SlowProvider(1.0, name="SlowShip", options=fast_options)
        good = FakeProvider(name="FastShip", options=fast_options)
        aggregator = make_aggregator([slow, good], config=config)

        quote = await aggregator.calculate(make_request())

        errors = {e.provider: e.error_code for e in quote.metadata.provider_errors}
        assert errors == {"SlowShip": "PROVIDER_TIMEOUT"}
        assert quote.metadata.available_providers == ["FastShip"]
        assert "SlowShip attempt 1/1 timed out after 0.05s" in caplog.text

    @pytest.mark.asyncio
    async def test_overall_deadline_abandons_slow_provider(self, make_aggregator, fast_options):
        config = AggregatorConfig(
            provider_timeout_seconds=5,
            overall_timeout_seconds=0.1,
            retry_attempts=0,
        )
        slow = SlowProvider(2.0, name="SlowShip", options=fast_options)
        aggregator = make_aggregator([slow], config=config)

        quote = await aggregator.calculate(make_request())

        error = quote.metadata.provider_errors[0]
        assert error.provider == "SlowShip"
        assert error.error_code == "DEADLINE_EXCEEDED"
        assert error.fallback_used == FALLBACK_NOTE
        assert quote.metadata.calculation_method == CalculationMethod.INTERNAL_CALCULATION

    @pytest.mark.asyncio
    async def test_blocking_provider_runs_in_thread(self, make_aggregator, fast_options):
        provider = BlockingProvider(name="TariffPost", options=fast_options)
        aggregator = make_aggregator([provider])

        quote = await aggregator.calculate(make_request())

        assert provider.calls == 1
        assert quote.metadata.available_providers == ["TariffPost"]
        assert len(quote.options) == 2

    @pytest.mark.asyncio
    async def test_unavailable_and_off_route_providers_skipped(self, make_aggregator, fast_options):
        disabled = FakeProvider(name="Disabled", options=fast_options, available=False)
        off_route = FakeProvider(name="CanadaOnly", options=fast_options, countries=("CA",))
        aggregator = make_aggregator([disabled, off_route])

        quote = await aggregator.calculate(make_request())

        assert disabled.calls == 0
        assert off_route.calls == 0
        assert quote.metadata.calculation_method == CalculationMethod.INTERNAL_CALCULATION

    @pytest.mark.asyncio
    async def test_parallel_provider_cap(self, make_aggregator, fast_options):
        first = FakeProvider(name="First", options=fast_options)
        second = FakeProvider(name="Second", options=fast_options)
        config = AggregatorConfig(max_parallel_providers=1, retry_base_delay_seconds=0)
        aggregator = make_aggregator([first, second], config=config)

        await aggregator.calculate(make_request())

        assert first.calls == 1
        assert second.calls == 0


class TestRetryPolicy:
    """Test which provider failures are retried."""

    @pytest.fixture
    def retry_config(self):
        return AggregatorConfig(
            provider_timeout_seconds=0.5,
            overall_timeout_seconds=2.0,
            retry_attempts=2,
            retry_base_delay_seconds=0,
            retry_max_delay_seconds=0,
            circuit_failure_threshold=3,
        )

    @pytest.mark.asyncio
    async def test_rejection_is_not_retried(self, make_aggregator, retry_config):
        rejecting = FailingProvider(name="BrokenShip", code="422")
        aggregator = make_aggregator([rejecting], config=retry_config)

        quote = await aggregator.calculate(make_request())

        assert rejecting.calls == 1
        assert quote.metadata.provider_errors[0].error_code == "PROVIDER_ERROR"
        assert aggregator.breakers.get("BrokenShip").failure_count == 1

    @pytest.mark.asyncio
    async def test_network_error_is_retried(self, make_aggregator, retry_config):
        flaky = FailingProvider(name="FlakyShip", code="NETWORK_ERROR")
        aggregator = make_aggregator([flaky], config=retry_config)

        await aggregator.calculate(make_request())

        assert flaky.calls == 3
        # one failure per call, not per attempt
        assert aggregator.breakers.get("FlakyShip").failure_count == 1

    @pytest.mark.asyncio
    async def test_no_retry_past_deadline(self, make_aggregator, fast_options):
        config = AggregatorConfig(
            provider_timeout_seconds=0.1,
            overall_timeout_seconds=0.15,
            retry_attempts=2,
            retry_base_delay_seconds=0.1,
        )
        slow = SlowProvider(1.0, name="SlowShip", options=fast_options)
        aggregator = make_aggregator([slow], config=config)

        quote = await aggregator.calculate(make_request())

        assert slow.calls == 1
        assert quote.metadata.provider_errors[0].error_code == "PROVIDER_TIMEOUT"


class TestCircuitBreaking:
    """Test that repeatedly failing providers are skipped."""

    @pytest.mark.asyncio
    async def test_hanging_provider_opens_circuit(self, make_aggregator, fast_options):
        # retries outlast the overall deadline, as with the default timings
        config = AggregatorConfig(
            provider_timeout_seconds=0.1,
            overall_timeout_seconds=0.3,
            retry_attempts=2,
            retry_base_delay_seconds=0.005,
            circuit_failure_threshold=3,
            circuit_recovery_seconds=60,
        )
        hanging = SlowProvider(10.0, name="SlowShip", options=fast_options)
        aggregator = make_aggregator([hanging], config=config)

        codes = []
        for _ in range(3):
            quote = await aggregator.calculate(make_request(), use_cache=False)
            codes.append(quote.metadata.provider_errors[0].error_code)
        assert codes == ["DEADLINE_EXCEEDED"] * 3
        assert aggregator.breakers.get("SlowShip").state == CircuitState.OPEN
        calls_before = hanging.calls

        for _ in range(3):
            quote = await aggregator.calculate(make_request(), use_cache=False)
            assert quote.metadata.provider_errors[0].error_code == "CIRCUIT_OPEN"
        assert hanging.calls == calls_before

    @pytest.mark.asyncio
    async def test_open_circuit_skips_provider(self, make_aggregator):
        failing = FailingProvider(name="BrokenShip")
        aggregator = make_aggregator([failing])

        for _ in range(3):
            await aggregator.calculate(make_request(), use_cache=False)
        assert aggregator.breakers.get("BrokenShip").state == CircuitState.OPEN
        calls_before = failing.calls

        quote = await aggregator.calculate(make_request(), use_cache=False)

        assert failing.calls == calls_before
        assert quote.metadata.provider_errors[0].error_code == "CIRCUIT_OPEN"
        assert quote.options

    @pytest.mark.asyncio
    async def test_success_keeps_circuit_closed(self, make_aggregator, fast_options):
        aggregator = make_aggregator([FakeProvider(name="FastShip", options=fast_options)])

        await aggregator.calculate(make_request())

        breaker = aggregator.breakers.get("FastShip")
        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0


class TestQuoteCaching:
    """Test cache-first behaviour."""

    @pytest.mark.asyncio
    async def test_second_identical_request_served_from_cache(self, make_aggregator, fast_options):
        provider = FakeProvider(name="FastShip", options=fast_options)
        aggregator = make_aggregator([provider])

        first = await aggregator.calculate(make_request())
        second = await aggregator.calculate(make_request())

        assert second.quote_id == first.quote_id
        assert second == first
        assert provider.calls == 1

    @pytest.mark.asyncio
    async def test_bypassing_cache_calls_providers_again(self, make_aggregator, fast_options):
        provider = FakeProvider(name="FastShip", options=fast_options)
        aggregator = make_aggregator([provider])

        first = await aggregator.calculate(make_request())
        fresh = await aggregator.calculate(make_request(), use_cache=False)

        assert fresh.quote_id != first.quote_id
        assert provider.calls == 2
        # the fresh result replaces the cached one
        assert (await aggregator.get_cached_quotes(make_request())).quote_id == fresh.quote_id

    @pytest.mark.asyncio
    async def test_cache_failure_is_treated_as_miss(self, make_aggregator, fast_options):
        cache = AsyncMock()
        cache.get.side_effect = CacheError("redis down")
        cache.put.side_effect = CacheError("redis down")
        aggregator = make_aggregator([FakeProvider(name="FastShip", options=fast_options)], cache=cache)

        quote = await aggregator.calculate(make_request())

        assert len(quote.options) == 2
        cache.put.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_quote_id_and_expiry(self, make_aggregator):
        aggregator = make_aggregator()

        quote = await aggregator.calculate(make_request())

        assert re.fullmatch(r"SQ_\d+_[0-9a-f]{8}", quote.quote_id)
        assert (quote.expires_at - quote.quoted_at).total_seconds() == aggregator.config.cache_ttl_seconds


class TestMultiVendor:
    """Test multi-vendor aggregation."""

    @pytest.mark.asyncio
    async def test_options_tagged_per_vendor(self, make_aggregator, fast_options):
        aggregator = make_aggregator([FakeProvider(name="FastShip", options=fast_options)])
        request = make_multi_vendor_request(("V1", "US", "2", "40"), ("V2", "US", "3", "60"))

        quote = await aggregator.calculate(request)

        assert quote.request_type == RequestType.MULTI_VENDOR
        assert len(quote.options) == 4
        assert {o.vendor_id for o in quote.options} == {"V1", "V2"}
        assert quote.options[0].vendor_name in ("Vendor V1", "Vendor V2")
        meta = quote.metadata
        assert meta.origin_country == "MULTI"
        assert meta.is_domestic is True
        assert meta.total_weight == Decimal("5")
        assert meta.total_declared_value == Decimal("100")
        assert meta.total_packages == 2
        assert meta.calculation_method == CalculationMethod.EXTERNAL_API

    @pytest.mark.asyncio
    async def test_mixed_sources_reported_as_hybrid(self, make_aggregator, fast_options):
        # FastShip does not serve GB, so V2 falls back to internal rates
        aggregator = make_aggregator([FakeProvider(name="FastShip", options=fast_options)])
        request = make_multi_vendor_request(("V1", "US", "2", "40"), ("V2", "GB", "3", "60"))

        quote = await aggregator.calculate(request)

        assert quote.metadata.calculation_method == CalculationMethod.HYBRID
        assert quote.metadata.is_domestic is False
        assert quote.metadata.requires_customs is True

    @pytest.mark.asyncio
    async def test_multi_vendor_result_cached(self, make_aggregator, fast_options):
        provider = FakeProvider(name="FastShip", options=fast_options)
        aggregator = make_aggregator([provider])
        request = make_multi_vendor_request(("V1", "US", "2", "40"), ("V2", "US", "3", "60"))

        first = await aggregator.calculate(request)
        second = await aggregator.calculate(request)

        assert first.quote_id == second.quote_id
        assert provider.calls == 2

    @pytest.mark.asyncio
    async def test_duplicate_vendor_rejected(self, make_aggregator):
        aggregator = make_aggregator()
        request = make_multi_vendor_request(("V1", "US", "2", "40"), ("V1", "US", "3", "60"))

        with pytest.raises(QuoteValidationError):
            await aggregator.calculate(request)


class TestQuickEstimate:

    @pytest.mark.asyncio
    async def test_truncates_and_recomputes_selections(self, make_aggregator):
        options = [
            make_option("FastShip", "A", "5.00", 9),
            make_option("FastShip", "B", "7.00", 6),
            make_option("FastShip", "C", "9.00", 1),
        ]
        aggregator = make_aggregator([FakeProvider(name="FastShip", options=options)])

        estimate = await aggregator.quick_estimate(make_request(), max_options=2)

        assert [o.service for o in estimate.options] == ["A", "B"]
        assert estimate.fastest_option.service == "B"
        assert estimate.cheapest_option.service == "A"
        # cached full quote is untouched
        full = await aggregator.get_cached_quotes(make_request())
        assert len(full.options) == 3
        assert full.fastest_option.service == "C"

    @pytest.mark.asyncio
    async def test_rejects_non_positive_limit(self, make_aggregator):
        with pytest.raises(QuoteValidationError):
            await make_aggregator().quick_estimate(make_request(), max_options=0)


class TestValidation:
    """Test request validation."""

    @pytest.mark.asyncio
    async def test_invalid_request_never_reaches_providers(self, make_aggregator, fast_options):
        provider = FakeProvider(name="FastShip", options=fast_options)
        aggregator = make_aggregator([provider])

        with pytest.raises(QuoteValidationError) as exc_info:
            await aggregator.calculate(make_request(weight="0"))

        assert provider.calls == 0
        assert "weight" in exc_info.value.errors[0]

    def test_limits(self, make_aggregator):
        aggregator = make_aggregator()

        assert not aggregator.validate_request(make_request(weight="80")).is_valid
        assert not aggregator.validate_request(make_request(value="60000")).is_valid
        assert not aggregator.validate_request(make_request(value="-1")).is_valid

    def test_heavy_package_is_warning(self, make_aggregator):
        result = make_aggregator().validate_request(make_request(weight="55"))

        assert result.is_valid
        assert any("Heavy package" in w for w in result.warnings)

    def test_us_zip_format(self, make_aggregator):
        result = make_aggregator().validate_request(make_request(postal_code="ABCDE"))

        assert not result.is_valid
        assert "ZIP" in result.errors[0]
        assert make_aggregator().validate_request(make_request(postal_code="10001-1234")).is_valid

    def test_international_and_no_provider_warnings(self, make_aggregator):
        result = make_aggregator().validate_request(make_request(origin_country="CA"))

        assert result.is_valid
        assert any("customs" in w for w in result.warnings)
        assert any("internal rates" in w for w in result.warnings)

    def test_single_vendor_requires_package(self, make_aggregator):
        request = make_request().model_copy(update={"package_info": None})
        result = make_aggregator().validate_request(request)

        assert result.errors == ["Package information is required"]


class TestProviderOperations:
    """Test single-provider quoting and provider discovery."""

    @pytest.mark.asyncio
    async def test_quote_from_named_provider(self, make_aggregator, fast_options):
        aggregator = make_aggregator([FakeProvider(name="FastShip", options=fast_options)])

        options = await aggregator.get_quotes_from_provider(make_request(), "fastship")

        assert [o.cost for o in options] == [Decimal("9.75"), Decimal("18.50")]

    @pytest.mark.asyncio
    async def test_unknown_provider(self, make_aggregator):
        with pytest.raises(ProviderNotFoundError):
            await make_aggregator().get_quotes_from_provider(make_request(), "NoSuchShip")

    @pytest.mark.asyncio
    async def test_failing_named_provider_raises(self, make_aggregator):
        aggregator = make_aggregator([FailingProvider(name="BrokenShip")])

        with pytest.raises(ProviderCallError) as exc_info:
            await aggregator.get_quotes_from_provider(make_request(), "BrokenShip")
        assert exc_info.value.provider == "BrokenShip"

    def test_available_providers_by_route(self, make_aggregator):
        aggregator = make_aggregator([
            FakeProvider(name="FastShip"),
            FakeProvider(name="CanadaOnly", countries=("CA",)),
            FakeProvider(name="Disabled", available=False),
        ])

        assert aggregator.get_available_providers("us", "us") == ["FastShip"]
        assert aggregator.get_available_providers("CA", "CA") == ["FastShip", "CanadaOnly"]

    def test_provider_status_and_connectivity(self, make_aggregator):
        aggregator = make_aggregator([FakeProvider(name="FastShip"), FakeProvider(name="Disabled", available=False)])

        status = aggregator.get_provider_status()
        assert status["FastShip"]["available"] is True
        assert status["FastShip"]["circuit"]["state"] == "CLOSED"
        assert aggregator.test_provider_connectivity() == {"FastShip": True, "Disabled": False}

    @pytest.mark.asyncio
    async def test_lookup_zone_winner_first(self, make_aggregator):
        matches = await make_aggregator().lookup_zone("US", "NY", "10001")

        assert matches[0][0].code == "US_NYC"
        assert [score for _, score in matches] == [65, 15, 10]


class TestRanking:

    def test_recommended_balances_cost_and_days(self):
        cheap_slow = make_option("A", "Slow", "10.00", 8)
        pricey_fast = make_option("B", "Fast", "40.00", 2)

        assert select_recommended([cheap_slow, pricey_fast], 100000.0) is pricey_fast
        # with a small scale cost dominates
        assert select_recommended([cheap_slow, pricey_fast], 1.0) is cheap_slow
