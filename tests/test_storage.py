import asyncio
from datetime import datetime, timedelta
from decimal import Decimal

from support import SESSION_ID, SHOP, InMemoryDatabase

from services.storage import StorageService

T0 = datetime(2025, 3, 1, 10, 0, 0)


async def _add(storage, variant_id="7001"):
    return await storage.create_ephemeral_variant(
        product_id="1001",
        variant_id=variant_id,
        width=100,
        height=50,
        material="Cotton",
        calculated_price=Decimal("42.00"),
        shop_domain=SHOP,
        session_id=SESSION_ID,
        created_at=T0,
        scheduled_deletion_at=T0 + timedelta(hours=2),
    )


def test_concurrent_order_callbacks_keep_every_order_id():
    async def scenario():
        async with InMemoryDatabase() as db:
            storage = StorageService(db.session_factory)
            await _add(storage)

            await asyncio.gather(*(storage.mark_ordered("7001", f"order-{i}") for i in range(5)))

            record = await storage.get_ephemeral_variant_by_variant_id("7001")
            assert sorted(record.order_ids) == [f"order-{i}" for i in range(5)]
            assert record.is_ordered is True

    asyncio.run(scenario())


def test_mark_ordered_unknown_variant_returns_none():
    async def scenario():
        async with InMemoryDatabase() as db:
            storage = StorageService(db.session_factory)
            assert await storage.mark_ordered("404", "order-1") is None

    asyncio.run(scenario())
