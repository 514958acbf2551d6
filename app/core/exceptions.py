"""
Shipping Engine Exception Hierarchy

Structured exception classes for the quote and rate subsystems. All exceptions
carry code, message and details so they can be logged and rendered uniformly.

Exception Hierarchy:
    ShippingEngineError
    ├── QuoteValidationError
    ├── ZoneNotFoundError
    ├── ProviderError (base for provider faults)
    │   ├── ProviderCallError
    │   └── ProviderNotFoundError
    ├── CacheError
    └── AggregationExhaustedError

Provider and cache faults are recovered inside the aggregator; only
validation, zone and exhaustion errors reach HTTP callers from the quote
endpoints.
"""
import logging
from typing import Optional, Dict, Any, List

logger = logging.getLogger(__name__)


class ShippingEngineError(Exception):
    """
    Base exception for all shipping engine errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code for programmatic handling
        details: Additional context for debugging
        http_status: Status code used when rendered by the API
    """

    default_code: str = "SHIPPING_ERROR"
    http_status: int = 500

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"


class QuoteValidationError(ShippingEngineError):
    """Malformed or missing request fields."""
    default_code = "VALIDATION_ERROR"
    http_status = 400

    def __init__(self, message: str, errors: Optional[List[str]] = None, **kwargs):
        details = kwargs.pop("details", {})
        details["errors"] = errors or [message]
        super().__init__(message, details=details, **kwargs)
        self.errors = details["errors"]


class ZoneNotFoundError(ShippingEngineError):
    """No shipping zone covers the destination."""
    default_code = "ZONE_NOT_FOUND"
    http_status = 400

    def __init__(
        self,
        message: str,
        country: Optional[str] = None,
        state: Optional[str] = None,
        postal_code: Optional[str] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        details.update({
            "country": country,
            "state": state,
            "postal_code": postal_code,
        })
        super().__init__(message, details=details, **kwargs)


class ProviderError(ShippingEngineError):
    """Base exception for external rate provider faults."""
    default_code = "PROVIDER_ERROR"
    http_status = 502

    def __init__(self, message: str, provider: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        details["provider"] = provider
        super().__init__(message, details=details, **kwargs)
        self.provider = provider


class ProviderCallError(ProviderError):
    """A provider call failed (HTTP error, network error, bad payload)."""
    default_code = "PROVIDER_ERROR"

    def __init__(self, message: str, provider: Optional[str] = None, status_code: Optional[int] = None, **kwargs):
        details = kwargs.pop("details", {})
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(message, provider=provider, details=details, **kwargs)
        self.status_code = status_code

    @property
    def is_transient(self) -> bool:
        """Network failures and upstream 5xx responses; worth retrying."""
        if self.code == "NETWORK_ERROR":
            return True
        status_code = self.status_code
        if status_code is None and self.code.isdigit():
            status_code = int(self.code)
        return status_code is not None and status_code >= 500


class ProviderNotFoundError(ProviderError):
    """No registered provider has the requested name."""
    default_code = "PROVIDER_NOT_FOUND"
    http_status = 404


class CacheError(ShippingEngineError):
    """Quote cache store unreachable or returned unreadable data."""
    default_code = "CACHE_ERROR"


class AggregationExhaustedError(ShippingEngineError):
    """Neither providers nor the internal rate engine produced an option."""
    default_code = "AGGREGATION_EXHAUSTED"
    http_status = 400
