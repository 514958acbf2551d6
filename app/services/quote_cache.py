"""
Quote Cache

Memoizes AggregatedQuote values per normalized request.

- Cache key: "shipping_quotes:" + SHA-256 of canonical JSON of the request's
  routing and package shape (contact fields excluded, strings normalized,
  vendor packages sorted) so equivalent requests share one slot
- TTL: 10 minutes by default
- Backends: InMemoryQuoteCache (LRU + TTL, per process) and RedisQuoteCache

Backends raise CacheError on store failures. The aggregator treats any cache
failure as a miss, so the cache can never block quoting.
"""
import hashlib
import json
import logging
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Tuple

from pydantic import ValidationError
from redis.exceptions import RedisError

from app.core.exceptions import CacheError
from app.schemas.quote import Address, AggregatedQuote, PackageInfo, ShippingQuoteRequest

logger = logging.getLogger(__name__)

CACHE_KEY_PREFIX = "shipping_quotes:"
DEFAULT_TTL_SECONDS = 600


def _text(value: Optional[str], upper: bool = False) -> Optional[str]:
    if value is None:
        return None
    value = " ".join(value.split())
    return value.upper() if upper else value.lower()


def _number(value: Optional[Decimal]) -> Optional[str]:
    if value is None:
        return None
    return format(Decimal(value).normalize(), "f")


def _address(address: Optional[Address]) -> Optional[Dict[str, Any]]:
    if address is None:
        return None
    return {
        "street": _text(address.street),
        "city": _text(address.city),
        "state": _text(address.state, upper=True),
        "postal_code": _text(address.postal_code, upper=True),
        "country": _text(address.country, upper=True),
    }


def _package(package: Optional[PackageInfo]) -> Optional[Dict[str, Any]]:
    if package is None:
        return None
    dimensions = None
    if package.dimensions:
        dimensions = {
            "length": _number(package.dimensions.length),
            "width": _number(package.dimensions.width),
            "height": _number(package.dimensions.height),
            "unit": _text(package.dimensions.unit),
        }
    return {
        "weight": _number(package.weight),
        "declared_value": _number(package.declared_value),
        "currency": _text(package.currency, upper=True),
        "package_type": _text(package.package_type, upper=True),
        "package_count": package.package_count,
        "dimensions": dimensions,
        "is_fragile": package.is_fragile,
        "requires_signature": package.requires_signature,
    }


def normalize_request(request: ShippingQuoteRequest) -> Dict[str, Any]:
    """Reduce a request to the fields that affect pricing, in canonical form."""
    vendor_packages = sorted(
        (
            {
                "vendor_id": vp.vendor.vendor_id,
                "origin": _address(vp.vendor.address),
                "package": _package(vp.package_info),
            }
            for vp in request.vendor_packages
        ),
        key=lambda entry: json.dumps(entry, sort_keys=True),
    )
    return {
        "request_type": request.request_type.value,
        "destination": _address(request.customer.address),
        "origin": _address(request.vendor.address) if request.vendor else None,
        "vendor_id": request.vendor.vendor_id if request.vendor else None,
        "package": _package(request.package_info),
        "vendor_packages": vendor_packages,
        "service_type": _text(request.service_type, upper=True),
        "carrier_id": request.carrier_id,
        "require_insurance": request.require_insurance,
        "preferred_currency": _text(request.preferred_currency, upper=True),
    }


def make_cache_key(request: ShippingQuoteRequest) -> str:
    canonical = json.dumps(normalize_request(request), sort_keys=True, separators=(",", ":"))
    return CACHE_KEY_PREFIX + hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class QuoteCache(ABC):
    """Key/value store of aggregated quotes with per-entry TTL."""

    @abstractmethod
    async def get(self, key: str) -> Optional[AggregatedQuote]:
        pass

    @abstractmethod
    async def put(self, key: str, value: AggregatedQuote, ttl_seconds: int = DEFAULT_TTL_SECONDS) -> None:
        pass

    def get_stats(self) -> Dict[str, Any]:
        return {"backend": self.__class__.__name__}


class InMemoryQuoteCache(QuoteCache):
    """
    LRU cache with per-entry expiry.

    Attributes:
        max_size: Maximum cache entries before LRU eviction
    """

    def __init__(self, max_size: int = 1000, clock: Callable[[], float] = time.time):
        self.max_size = max_size
        self._clock = clock
        self._cache: "OrderedDict[str, Tuple[float, AggregatedQuote]]" = OrderedDict()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    async def get(self, key: str) -> Optional[AggregatedQuote]:
        entry = self._cache.get(key)
        if entry is None:
            self._misses += 1
            return None

        expires_at, value = entry
        if self._clock() >= expires_at:
            del self._cache[key]
            self._misses += 1
            logger.debug(f"[QUOTE_CACHE] Expired: {key}")
            return None

        self._cache.move_to_end(key)
        self._hits += 1
        return value

    async def put(self, key: str, value: AggregatedQuote, ttl_seconds: int = DEFAULT_TTL_SECONDS) -> None:
        if key in self._cache:
            del self._cache[key]
        while len(self._cache) >= self.max_size:
            self._cache.popitem(last=False)
            self._evictions += 1
        self._cache[key] = (self._clock() + ttl_seconds, value)

    def clear(self) -> None:
        count = len(self._cache)
        self._cache.clear()
        logger.info(f"[QUOTE_CACHE] Cleared {count} entries")

    def get_stats(self) -> Dict[str, Any]:
        total = self._hits + self._misses
        return {
            "backend": "memory",
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": round(self._hits / total, 4) if total > 0 else 0.0,
            "size": len(self._cache),
            "max_size": self.max_size,
            "evictions": self._evictions,
        }


class RedisQuoteCache(QuoteCache):
    """Quotes stored as JSON with SETEX."""

    def __init__(self, client):
        self._client = client

    async def get(self, key: str) -> Optional[AggregatedQuote]:
        try:
            data = await self._client.get(key)
        except RedisError as e:
            raise CacheError(f"Redis read failed: {e}", details={"key": key})
        if not data:
            return None
        try:
            return AggregatedQuote.model_validate_json(data)
        except ValidationError as e:
            raise CacheError(f"Unreadable cached quote: {e}", details={"key": key})

    async def put(self, key: str, value: AggregatedQuote, ttl_seconds: int = DEFAULT_TTL_SECONDS) -> None:
        try:
            await self._client.setex(key, ttl_seconds, value.model_dump_json())
        except RedisError as e:
            raise CacheError(f"Redis write failed: {e}", details={"key": key})

    def get_stats(self) -> Dict[str, Any]:
        return {"backend": "redis"}
