"""
Internal Rate Routes

Prices a shipment against the shipping catalog only. No external providers
and no cache are involved.
"""
import logging

from fastapi import APIRouter, Depends

from app.api.deps import get_quote_aggregator
from app.modules.shipping.rate_engine import RateEngine, RateRequest
from app.schemas.quote import RateEstimateRequest, RateEstimateResponse, RateQuoteResponse
from app.services.quote_aggregator import QuoteAggregator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/rates", tags=["Shipping Rates"])


def _response(quote) -> RateQuoteResponse:
    return RateQuoteResponse.model_validate(quote)


@router.post("/estimate", response_model=RateEstimateResponse)
async def estimate_rates(
    estimate: RateEstimateRequest,
    aggregator: QuoteAggregator = Depends(get_quote_aggregator),
):
    """
    Internal rates for the destination zone.

    Returns every eligible method (unavailable ones last) plus the cheapest
    and fastest available quote. 400 when no zone covers the destination.
    """
    rate_request = RateRequest(
        from_address=estimate.from_address,
        to_address=estimate.to_address,
        total_weight=estimate.total_weight,
        total_value=estimate.total_value,
        package_count=estimate.package_count,
        requested_service_type=estimate.service_type,
        specific_carrier_id=estimate.carrier_id,
        currency=aggregator.rate_engine.currency,
    )
    zone, quotes = await aggregator.internal_rates(rate_request)

    cheapest = RateEngine.cheapest(quotes)
    fastest = RateEngine.fastest(quotes)
    logger.info(f"Rate estimate for zone {zone.code}: {len(quotes)} methods")
    return RateEstimateResponse(
        zone_code=zone.code,
        rates=[_response(q) for q in quotes],
        cheapest=_response(cheapest) if cheapest else None,
        fastest=_response(fastest) if fastest else None,
    )
