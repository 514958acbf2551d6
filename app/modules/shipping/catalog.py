"""
Shipping catalog lookups

Read-only access to active zones and methods for the rate engine.
- InMemoryCatalog: fixed lists, optionally loaded from a JSON seed file
- SQLAlchemyCatalog: reads the shipping_* tables
"""
import json
import logging
from abc import ABC, abstractmethod
from decimal import Decimal
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.core.database import session_scope
from app.models.shipping import ShippingCarrier, ShippingMethod, ShippingZone
from app.modules.shipping.rate_engine import ShippingMethodDef, to_decimal
from app.modules.shipping.zones import ZoneDefinition

logger = logging.getLogger(__name__)


class ShippingCatalog(ABC):
    """Source of active zones and the methods priced within them."""

    @abstractmethod
    async def list_active_zones(self) -> List[ZoneDefinition]:
        pass

    @abstractmethod
    async def find_methods(self, zone_id: int, carrier_id: Optional[int] = None) -> List[ShippingMethodDef]:
        """Active methods for a zone, optionally restricted to one carrier."""
        pass


class InMemoryCatalog(ShippingCatalog):

    def __init__(self, zones: Iterable[ZoneDefinition] = (), methods: Iterable[ShippingMethodDef] = ()):
        self._zones = list(zones)
        self._methods = list(methods)

    async def list_active_zones(self) -> List[ZoneDefinition]:
        return list(self._zones)

    async def find_methods(self, zone_id: int, carrier_id: Optional[int] = None) -> List[ShippingMethodDef]:
        return [
            m for m in self._methods
            if m.zone_id == zone_id
            and m.is_active
            and (carrier_id is None or m.carrier_id == carrier_id)
        ]

    @classmethod
    def from_dict(cls, data: Dict) -> "InMemoryCatalog":
        """
        Build from the seed format:
            {"carriers": [{"id", "name"}],
             "zones": [{"id", "name", "code", "countries", "states_provinces", "postal_patterns"}],
             "methods": [{"id", "carrier_id", "zone_id", "service_type", "base_rate", ...}]}
        """
        carrier_names = {c["id"]: c["name"] for c in data.get("carriers", [])}
        zones = [
            ZoneDefinition.from_strings(
                id=z["id"],
                name=z["name"],
                code=z["code"],
                countries=z["countries"],
                states_provinces=z.get("states_provinces", []),
                postal_patterns=z.get("postal_patterns", []),
            )
            for z in data.get("zones", [])
            if z.get("is_active", True)
        ]
        methods = []
        for m in data.get("methods", []):
            methods.append(ShippingMethodDef(
                id=m["id"],
                carrier_id=m["carrier_id"],
                zone_id=m["zone_id"],
                service_type=m["service_type"],
                base_rate=Decimal(str(m["base_rate"])),
                per_kg_rate=Decimal(str(m.get("per_kg_rate", 0))),
                per_item_rate=Decimal(str(m.get("per_item_rate", 0))),
                carrier_name=carrier_names.get(m["carrier_id"], ""),
                name=m.get("name", ""),
                code=m.get("code"),
                min_weight=to_decimal(m.get("min_weight")),
                max_weight=to_decimal(m.get("max_weight")),
                min_order_value=to_decimal(m.get("min_order_value")),
                max_order_value=to_decimal(m.get("max_order_value")),
                estimated_days_min=m.get("estimated_days_min"),
                estimated_days_max=m.get("estimated_days_max"),
                is_active=m.get("is_active", True),
            ))
        return cls(zones, methods)

    @classmethod
    def from_file(cls, path: str) -> "InMemoryCatalog":
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        catalog = cls.from_dict(data)
        logger.info(f"Loaded shipping catalog from {path}: {len(catalog._zones)} zones, {len(catalog._methods)} methods")
        return catalog


class SQLAlchemyCatalog(ShippingCatalog):
    """Catalog backed by the shipping_zones / shipping_methods tables."""

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    @staticmethod
    def _zone_from_row(row: ShippingZone) -> ZoneDefinition:
        return ZoneDefinition.from_strings(
            id=row.id,
            name=row.name,
            code=row.code,
            countries=row.countries or [],
            states_provinces=row.states_provinces or [],
            postal_patterns=row.postal_patterns or [],
        )

    @staticmethod
    def _method_from_row(row: ShippingMethod, carrier_name: str) -> ShippingMethodDef:
        return ShippingMethodDef(
            id=row.id,
            carrier_id=row.carrier_id,
            zone_id=row.zone_id,
            service_type=row.service_type,
            base_rate=to_decimal(row.base_rate),
            per_kg_rate=to_decimal(row.per_kg_rate) or Decimal("0"),
            per_item_rate=to_decimal(row.per_item_rate) or Decimal("0"),
            carrier_name=carrier_name,
            name=row.name,
            code=row.code,
            min_weight=to_decimal(row.min_weight),
            max_weight=to_decimal(row.max_weight),
            min_order_value=to_decimal(row.min_order_value),
            max_order_value=to_decimal(row.max_order_value),
            estimated_days_min=row.estimated_days_min,
            estimated_days_max=row.estimated_days_max,
            is_active=row.is_active,
        )

    async def list_active_zones(self) -> List[ZoneDefinition]:
        async with session_scope(self._session_factory) as db:
            result = await db.execute(
                select(ShippingZone).where(ShippingZone.is_active.is_(True)).order_by(ShippingZone.id)
            )
            zones = []
            for row in result.scalars().all():
                try:
                    zones.append(self._zone_from_row(row))
                except ValueError as e:
                    logger.warning(f"Skipping invalid zone {row.code}: {e}")
            return zones

    async def find_methods(self, zone_id: int, carrier_id: Optional[int] = None) -> List[ShippingMethodDef]:
        query = (
            select(ShippingMethod, ShippingCarrier.name)
            .join(ShippingCarrier, ShippingMethod.carrier_id == ShippingCarrier.id)
            .where(
                ShippingMethod.zone_id == zone_id,
                ShippingMethod.is_active.is_(True),
                ShippingCarrier.is_active.is_(True),
            )
            .order_by(ShippingMethod.id)
        )
        if carrier_id is not None:
            query = query.where(ShippingMethod.carrier_id == carrier_id)

        async with session_scope(self._session_factory) as db:
            result = await db.execute(query)
            methods = []
            for method, carrier_name in result.all():
                try:
                    methods.append(self._method_from_row(method, carrier_name))
                except ValueError as e:
                    logger.warning(f"Skipping invalid shipping method {method.id}: {e}")
            return methods
