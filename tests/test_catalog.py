"""
Tests for the shipping catalog backends.
"""
import json
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.core.database import Base
from app.models.shipping import ShippingCarrier, ShippingMethod, ShippingZone
from app.modules.shipping.catalog import InMemoryCatalog, SQLAlchemyCatalog
from app.modules.shipping.zones import PostalPatternKind


SEED = {
    "carriers": [{"id": 1, "name": "USPS"}, {"id": 2, "name": "UPS"}],
    "zones": [
        {"id": 1, "name": "United States", "code": "US_ALL", "countries": ["us"]},
        {"id": 2, "name": "NYC", "code": "US_NYC", "countries": ["US"], "states_provinces": ["NY"],
         "postal_patterns": ["100*", "10000-11999"]},
        {"id": 3, "name": "Retired", "code": "OLD", "countries": ["US"], "is_active": False},
    ],
    "methods": [
        {"id": 1, "carrier_id": 1, "zone_id": 2, "service_type": "STANDARD", "base_rate": "10", "per_kg_rate": 2,
         "per_item_rate": "1", "estimated_days_min": 3, "estimated_days_max": 5},
        {"id": 2, "carrier_id": 2, "zone_id": 2, "service_type": "EXPRESS", "base_rate": 25,
         "estimated_days_max": 1, "max_weight": "20"},
        {"id": 3, "carrier_id": 2, "zone_id": 2, "service_type": "EXPRESS", "base_rate": 30,
         "estimated_days_max": 1, "is_active": False},
    ],
}


class TestInMemoryCatalog:
    """Test the JSON seed format."""

    @pytest.mark.asyncio
    async def test_from_dict(self):
        catalog = InMemoryCatalog.from_dict(SEED)

        zones = await catalog.list_active_zones()
        assert [z.code for z in zones] == ["US_ALL", "US_NYC"]
        assert zones[0].countries == frozenset({"US"})
        assert [p.kind for p in zones[1].postal_patterns] == [PostalPatternKind.PREFIX, PostalPatternKind.RANGE]

        methods = await catalog.find_methods(2)
        assert [m.id for m in methods] == [1, 2]
        assert methods[0].carrier_name == "USPS"
        assert methods[0].per_kg_rate == Decimal("2")
        assert methods[1].max_weight == Decimal("20")

    @pytest.mark.asyncio
    async def test_carrier_filter(self):
        catalog = InMemoryCatalog.from_dict(SEED)
        assert [m.id for m in await catalog.find_methods(2, carrier_id=2)] == [2]

    @pytest.mark.asyncio
    async def test_from_file(self, tmp_path):
        path = tmp_path / "catalog.json"
        path.write_text(json.dumps(SEED), encoding="utf-8")

        catalog = InMemoryCatalog.from_file(str(path))

        assert len(await catalog.list_active_zones()) == 2


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'catalog.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as db:
        db.add_all([
            ShippingCarrier(id=1, name="USPS", code="USPS"),
            ShippingCarrier(id=2, name="OldPost", code="OLDPOST", is_active=False),
            ShippingZone(id=1, name="United States", code="US_ALL", countries=["US"]),
            ShippingZone(id=2, name="NYC", code="US_NYC", countries=["US"], states_provinces=["NY"],
                         postal_patterns=["10000-11999"]),
            ShippingZone(id=3, name="Retired", code="OLD", countries=["US"], is_active=False),
            ShippingZone(id=4, name="Broken", code="BROKEN", countries=[]),
        ])
        await db.flush()
        db.add_all([
            ShippingMethod(id=1, carrier_id=1, zone_id=2, name="Ground", code="GROUND", service_type="STANDARD",
                           base_rate=Decimal("10.00"), per_kg_rate=Decimal("2.00"), per_item_rate=Decimal("1.00"),
                           estimated_days_min=3, estimated_days_max=5),
            ShippingMethod(id=2, carrier_id=1, zone_id=2, name="Retired", service_type="STANDARD",
                           base_rate=Decimal("5.00"), estimated_days_max=5, is_active=False),
            ShippingMethod(id=3, carrier_id=2, zone_id=2, name="Old carrier", service_type="STANDARD",
                           base_rate=Decimal("5.00"), estimated_days_max=5),
            ShippingMethod(id=4, carrier_id=1, zone_id=2, name="Bad bounds", service_type="STANDARD",
                           base_rate=Decimal("5.00"), min_weight=Decimal("10"), max_weight=Decimal("1"),
                           estimated_days_max=5),
        ])
        await db.commit()

    yield factory
    await engine.dispose()


class TestSQLAlchemyCatalog:
    """Test the database-backed catalog."""

    @pytest.mark.asyncio
    async def test_active_valid_zones_only(self, session_factory):
        catalog = SQLAlchemyCatalog(session_factory)

        zones = await catalog.list_active_zones()

        assert [z.code for z in zones] == ["US_ALL", "US_NYC"]
        assert zones[1].states_provinces == frozenset({"NY"})

    @pytest.mark.asyncio
    async def test_methods_filtered_and_mapped(self, session_factory):
        catalog = SQLAlchemyCatalog(session_factory)

        methods = await catalog.find_methods(2)

        assert [m.id for m in methods] == [1]
        ground = methods[0]
        assert ground.carrier_name == "USPS"
        assert ground.base_rate == Decimal("10.00")
        assert ground.per_kg_rate == Decimal("2.00")
        assert ground.estimated_days_max == 5

    @pytest.mark.asyncio
    async def test_carrier_filter(self, session_factory):
        catalog = SQLAlchemyCatalog(session_factory)
        assert await catalog.find_methods(2, carrier_id=2) == []
