"""
API dependencies
"""
from fastapi import HTTPException, Request, status

from app.services.quote_aggregator import QuoteAggregator


def get_quote_aggregator(request: Request) -> QuoteAggregator:
    """Aggregator built during application startup."""
    aggregator = getattr(request.app.state, "quote_aggregator", None)
    if aggregator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Quote service is not initialized"
        )
    return aggregator
