"""
Shipping Quote Schemas

Pydantic models for quote requests and the aggregated quote response.
Response values are frozen: an AggregatedQuote is built once per aggregation
and only ever copied (never mutated) afterwards, including when it is
round-tripped through the cache as JSON.

Weight and value bounds are deliberately not enforced here so that
/quotes/validate can report them; QuoteAggregator.validate_request rejects
bad values before any provider is called.
"""
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field, field_validator


class RequestType(str, Enum):
    SINGLE_VENDOR = "SINGLE_VENDOR"
    MULTI_VENDOR = "MULTI_VENDOR"


class CalculationMethod(str, Enum):
    EXTERNAL_API = "EXTERNAL_API"
    INTERNAL_CALCULATION = "INTERNAL_CALCULATION"
    HYBRID = "HYBRID"


# ==================== Request Schemas ====================


class Address(BaseModel):
    street: Optional[str] = Field(None, max_length=200)
    city: Optional[str] = Field(None, max_length=100)
    state: Optional[str] = Field(None, max_length=50)
    postal_code: Optional[str] = Field(None, max_length=20)
    country: str = Field(..., min_length=2, max_length=2)

    class Config:
        frozen = True

    @field_validator("country")
    @classmethod
    def validate_country(cls, v):
        return v.upper()


class Dimensions(BaseModel):
    length: Decimal = Field(..., gt=0)
    width: Decimal = Field(..., gt=0)
    height: Decimal = Field(..., gt=0)
    unit: str = "cm"


class PackageInfo(BaseModel):
    weight: Decimal = Field(..., description="Total weight in kg")
    declared_value: Decimal
    dimensions: Optional[Dimensions] = None
    package_type: str = "PACKAGE"
    currency: str = "USD"
    package_count: int = Field(1, ge=1)
    is_fragile: bool = False
    requires_signature: bool = False
    description: Optional[str] = None


class CustomerInfo(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    address: Address
    email: Optional[str] = None
    phone: Optional[str] = None


class VendorInfo(BaseModel):
    vendor_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1, max_length=100)
    address: Address
    email: Optional[str] = None
    phone: Optional[str] = None
    contact_person: Optional[str] = None


class VendorPackage(BaseModel):
    vendor: VendorInfo
    package_info: PackageInfo


class ShippingQuoteRequest(BaseModel):
    """
    Quote request.

    SINGLE_VENDOR requests carry vendor + package_info; MULTI_VENDOR requests
    carry vendor_packages, one entry per shipping vendor.
    """
    request_type: RequestType = RequestType.SINGLE_VENDOR
    customer: CustomerInfo
    vendor: Optional[VendorInfo] = None
    package_info: Optional[PackageInfo] = None
    vendor_packages: List[VendorPackage] = []
    service_type: Optional[str] = None
    carrier_id: Optional[int] = None
    require_insurance: bool = False
    preferred_currency: str = "USD"

    @property
    def origin(self) -> Optional[Address]:
        return self.vendor.address if self.vendor else None

    @property
    def destination(self) -> Address:
        return self.customer.address

    @property
    def is_multi_vendor(self) -> bool:
        return self.request_type == RequestType.MULTI_VENDOR

    def packages(self) -> List[PackageInfo]:
        if self.is_multi_vendor:
            return [vp.package_info for vp in self.vendor_packages]
        return [self.package_info] if self.package_info else []

    def split_by_vendor(self) -> List["ShippingQuoteRequest"]:
        """One single-vendor request per vendor package (vendor -> customer)."""
        return [
            ShippingQuoteRequest(
                request_type=RequestType.SINGLE_VENDOR,
                customer=self.customer,
                vendor=vp.vendor,
                package_info=vp.package_info,
                service_type=self.service_type,
                carrier_id=self.carrier_id,
                require_insurance=self.require_insurance,
                preferred_currency=self.preferred_currency,
            )
            for vp in self.vendor_packages
        ]


class RateEstimateRequest(BaseModel):
    """Internal rate engine request (no external providers)."""
    from_address: Address
    to_address: Address
    total_weight: Decimal = Field(..., gt=0)
    total_value: Decimal = Field(..., gt=0)
    package_count: int = Field(1, ge=1)
    service_type: Optional[str] = None
    carrier_id: Optional[int] = None


# ==================== Response Schemas ====================


class ProviderRating(BaseModel):
    overall_rating: float = Field(..., ge=0, le=5)
    reliability: Optional[float] = None
    speed: Optional[float] = None
    customer_service: Optional[float] = None
    review_count: Optional[int] = None

    class Config:
        frozen = True


class ShippingOption(BaseModel):
    provider: str
    service: str
    cost: Decimal
    currency: str = "USD"
    estimated_days: int
    estimated_delivery_date: Optional[date] = None
    service_code: Optional[str] = None
    tracking_supported: bool = True
    insurance_included: bool = False
    delivery_type: Optional[str] = None
    features: List[str] = []
    rating: Optional[ProviderRating] = None
    vendor_id: Optional[str] = None
    vendor_name: Optional[str] = None

    class Config:
        frozen = True


class ProviderError(BaseModel):
    provider: str
    error_code: str
    error_message: str
    fallback_used: Optional[str] = None

    class Config:
        frozen = True


class QuoteMetadata(BaseModel):
    origin_country: str
    destination_country: str
    is_domestic: bool
    requires_customs: bool
    total_packages: int
    total_weight: Decimal
    total_declared_value: Decimal
    base_currency: str = "USD"
    available_providers: List[str] = []
    unavailable_providers: List[str] = []
    provider_errors: List[ProviderError] = []
    calculation_method: CalculationMethod

    class Config:
        frozen = True


class AggregatedQuote(BaseModel):
    quote_id: str
    quoted_at: datetime
    expires_at: datetime
    request_type: RequestType
    options: List[ShippingOption]
    recommended_option: Optional[ShippingOption] = None
    cheapest_option: Optional[ShippingOption] = None
    fastest_option: Optional[ShippingOption] = None
    metadata: QuoteMetadata

    class Config:
        frozen = True


class ValidationResult(BaseModel):
    is_valid: bool
    errors: List[str] = []
    warnings: List[str] = []


class ProviderQuotesResponse(BaseModel):
    provider: str
    options: List[ShippingOption]


class RateQuoteResponse(BaseModel):
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
    unavailable_reason: Optional[str] = None

    class Config:
        from_attributes = True


class RateEstimateResponse(BaseModel):
    zone_code: str
    rates: List[RateQuoteResponse]
    cheapest: Optional[RateQuoteResponse] = None
    fastest: Optional[RateQuoteResponse] = None


class ZoneMatch(BaseModel):
    id: int
    name: str
    code: str
    score: int


class ZoneLookupResponse(BaseModel):
    zone: ZoneMatch
    candidates: List[ZoneMatch]


class ProviderStatus(BaseModel):
    available: bool
    configuration: Dict[str, Any]
    supported_countries: List[str]
    max_weight: Decimal
    max_value: Decimal
    circuit: Dict[str, Any]
