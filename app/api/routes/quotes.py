"""
Shipping Quote API Routes

Provides endpoints for:
- Full quote calculation (single- and multi-vendor)
- Cart review (cache-first) and checkout (fresh by default) quotes
- Quick estimates (first N options)
- Provider discovery, status, connectivity and single-provider quotes
- Request validation without quoting

Errors are rendered by the handlers in app.core.error_handler.
"""
import logging
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Query

from app.api.deps import get_quote_aggregator
from app.schemas.quote import (
    AggregatedQuote,
    ProviderQuotesResponse,
    ProviderStatus,
    ShippingQuoteRequest,
    ValidationResult,
)
from app.services.quote_aggregator import QuoteAggregator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/quotes", tags=["Shipping Quotes"])


# ==================== Quote Endpoints ====================


@router.post("/calculate", response_model=AggregatedQuote)
async def calculate_shipping_quotes(
    request: ShippingQuoteRequest,
    aggregator: QuoteAggregator = Depends(get_quote_aggregator),
):
    """
    Calculate shipping quotes from all eligible providers.

    Falls back to internal rates when no provider returns options.
    """
    logger.info(f"Calculating {request.request_type.value} quote to {request.destination.country}")
    return await aggregator.calculate(request, use_cache=True)


@router.post("/cart/review", response_model=AggregatedQuote)
async def cart_review_quotes(
    request: ShippingQuoteRequest,
    allow_cached: bool = Query(True, alias="allowCached"),
    aggregator: QuoteAggregator = Depends(get_quote_aggregator),
):
    """Quotes for the cart page. Served from cache when allowed and present."""
    return await aggregator.calculate(request, use_cache=allow_cached)


@router.post("/checkout/calculate", response_model=AggregatedQuote)
async def checkout_quotes(
    request: ShippingQuoteRequest,
    force_fresh: bool = Query(True, alias="forceFresh"),
    aggregator: QuoteAggregator = Depends(get_quote_aggregator),
):
    """Quotes for checkout. Fresh by default; the new result replaces the cached one."""
    logger.info(f"Checkout quote (forceFresh={force_fresh})")
    return await aggregator.calculate(request, use_cache=not force_fresh)


@router.post("/quick-estimate", response_model=AggregatedQuote)
async def quick_estimate(
    request: ShippingQuoteRequest,
    max_providers: Optional[int] = Query(None, alias="maxProviders", ge=1, le=20),
    aggregator: QuoteAggregator = Depends(get_quote_aggregator),
):
    """Cheapest-first quote cut to maxProviders options (configured default when omitted)."""
    return await aggregator.quick_estimate(request, max_options=max_providers)


@router.post("/validate", response_model=ValidationResult)
async def validate_quote_request(
    request: ShippingQuoteRequest,
    aggregator: QuoteAggregator = Depends(get_quote_aggregator),
):
    return aggregator.validate_request(request)


# ==================== Provider Endpoints ====================


@router.get("/providers", response_model=List[str])
async def list_available_providers(
    origin_country: str = Query(..., alias="originCountry", min_length=2, max_length=2),
    destination_country: str = Query(..., alias="destinationCountry", min_length=2, max_length=2),
    aggregator: QuoteAggregator = Depends(get_quote_aggregator),
):
    """Names of available providers serving the route."""
    return aggregator.get_available_providers(origin_country, destination_country)


@router.get("/providers/status", response_model=Dict[str, ProviderStatus])
async def provider_status(aggregator: QuoteAggregator = Depends(get_quote_aggregator)):
    return aggregator.get_provider_status()


@router.post("/providers/test-connectivity", response_model=Dict[str, bool])
async def test_provider_connectivity(aggregator: QuoteAggregator = Depends(get_quote_aggregator)):
    results = aggregator.test_provider_connectivity()
    logger.info(f"Provider connectivity: {results}")
    return results


@router.post("/providers/{provider_name}", response_model=ProviderQuotesResponse)
async def quote_from_provider(
    provider_name: str,
    request: ShippingQuoteRequest,
    aggregator: QuoteAggregator = Depends(get_quote_aggregator),
):
    """
    Quote through one named provider, bypassing the cache and fallback.

    404 for an unknown provider, 502 when the provider cannot quote.
    """
    options = await aggregator.get_quotes_from_provider(request, provider_name)
    return ProviderQuotesResponse(provider=provider_name, options=options)
