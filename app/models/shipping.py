"""
Shipping catalog models

Carriers, zones and the priced methods each carrier offers per zone. The
quote engine only reads these tables; they are maintained by catalog
management tooling.
"""
from datetime import datetime, timezone
from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime,
    Numeric, JSON, ForeignKey, Index
)
from sqlalchemy.orm import relationship

from app.core.database import Base


class ShippingCarrier(Base):
    """A carrier offering shipping methods (UPS, FedEx, regional couriers)."""
    __tablename__ = "shipping_carriers"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    code = Column(String(50), unique=True, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    methods = relationship("ShippingMethod", back_populates="carrier")

    def __repr__(self):
        return f"<ShippingCarrier(id={self.id}, code={self.code})>"


class ShippingZone(Base):
    """
    A destination region for rate purposes.

    countries, states_provinces and postal_patterns are JSON arrays of
    strings. Empty states/patterns mean "any". Postal patterns use the
    string forms "10001", "10000-19999" and "100*".
    """
    __tablename__ = "shipping_zones"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    code = Column(String(50), unique=True, nullable=False)
    countries = Column(JSON, nullable=False, default=list)
    states_provinces = Column(JSON, nullable=False, default=list)
    postal_patterns = Column(JSON, nullable=False, default=list)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    methods = relationship("ShippingMethod", back_populates="zone")

    def __repr__(self):
        return f"<ShippingZone(id={self.id}, code={self.code})>"


class ShippingMethod(Base):
    """A carrier's priced service within a zone."""
    __tablename__ = "shipping_methods"
    __table_args__ = (
        Index("ix_shipping_methods_zone_carrier", "zone_id", "carrier_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    carrier_id = Column(Integer, ForeignKey("shipping_carriers.id"), nullable=False)
    zone_id = Column(Integer, ForeignKey("shipping_zones.id"), nullable=False)
    name = Column(String(100), nullable=False)
    code = Column(String(50), nullable=True)
    service_type = Column(String(50), nullable=False)  # STANDARD, EXPRESS, OVERNIGHT, ...

    # Pricing
    base_rate = Column(Numeric(10, 2), nullable=False)
    per_kg_rate = Column(Numeric(10, 2), nullable=False, default=0)
    per_item_rate = Column(Numeric(10, 2), nullable=False, default=0)

    # Eligibility bounds (NULL = unbounded)
    min_weight = Column(Numeric(10, 3), nullable=True)
    max_weight = Column(Numeric(10, 3), nullable=True)
    min_order_value = Column(Numeric(12, 2), nullable=True)
    max_order_value = Column(Numeric(12, 2), nullable=True)

    estimated_days_min = Column(Integer, nullable=True)
    estimated_days_max = Column(Integer, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)

    carrier = relationship("ShippingCarrier", back_populates="methods")
    zone = relationship("ShippingZone", back_populates="methods")

    def __repr__(self):
        return f"<ShippingMethod(id={self.id}, name={self.name}, zone_id={self.zone_id})>"
