"""
Shipping domain: zone resolution, internal rate calculation, catalog access
and external rate providers.
"""
from app.modules.shipping.rate_engine import RateEngine, RateQuote, RateRequest, ShippingMethodDef
from app.modules.shipping.zones import PostalPattern, ZoneDefinition, resolve_zone

__all__ = [
    "PostalPattern",
    "RateEngine",
    "RateQuote",
    "RateRequest",
    "ShippingMethodDef",
    "ZoneDefinition",
    "resolve_zone",
]
