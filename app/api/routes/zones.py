"""
Zone lookup route
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query

from app.api.deps import get_quote_aggregator
from app.schemas.quote import ZoneLookupResponse, ZoneMatch
from app.services.quote_aggregator import QuoteAggregator

router = APIRouter(prefix="/zones", tags=["Shipping Zones"])


@router.get("/lookup", response_model=ZoneLookupResponse)
async def lookup_zone(
    country: str = Query(..., min_length=2, max_length=2),
    state: Optional[str] = Query(None),
    postal_code: Optional[str] = Query(None, alias="postalCode"),
    aggregator: QuoteAggregator = Depends(get_quote_aggregator),
):
    """Winning zone for an address plus every other zone that matched."""
    matches = await aggregator.lookup_zone(country, state, postal_code)
    candidates = [
        ZoneMatch(id=zone.id, name=zone.name, code=zone.code, score=score)
        for zone, score in matches
    ]
    return ZoneLookupResponse(zone=candidates[0], candidates=candidates)
