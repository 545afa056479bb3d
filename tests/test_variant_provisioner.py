import asyncio
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from support import SESSION_ID, SHOP, FakeCatalog, InMemoryDatabase, no_sleep

from services.deduplication import RequestDeduplicator
from services.errors import (
    CatalogTimeout,
    CreationFailed,
    DuplicateRequestError,
    ProductNotFound,
    SessionNotFound,
    ShopifyAPIError,
    ValidationError,
)
from services.session_store import SessionStore
from services.storage import StorageService
from services.variant_provisioner import VariantProvisioner, generate_custom_sku, variant_gid

NOW = datetime(2025, 3, 1, 12, 0, 0)


async def _setup(db, catalog, storage_cls=StorageService, **kwargs):
    storage = storage_cls(db.session_factory)
    sessions = SessionStore(db.session_factory)
    await sessions.store_session(SESSION_ID, SHOP, "shpat_test")
    kwargs.setdefault("sleep", no_sleep)
    provisioner = VariantProvisioner(
        storage,
        sessions,
        catalog.factory,
        clock=lambda: NOW,
        **kwargs,
    )
    return storage, provisioner


def test_create_path_records_variant_and_waits_for_price():
    async def scenario():
        catalog = FakeCatalog()
        catalog.stale_reads = 2
        async with InMemoryDatabase() as db:
            storage, provisioner = await _setup(db, catalog)
            result = await provisioner.provision(SESSION_ID, "2001", 120, 80, "Cotton", "59.999")

            assert result.used_existing is False
            assert result.price == "60.00"
            assert result.price_settled is True
            assert result.weight == 1440
            # Two stale reads, then the settled one
            assert catalog.count("get_variant") == 1 + 3
            assert catalog.count("update_variant_price") == 0

            record = await storage.get_ephemeral_variant(result.record_id)
            assert record.variant_id == result.variant_id
            assert record.computed_area == 120 * 80
            assert record.calculated_price == Decimal("60.00")
            assert record.scheduled_deletion_at == NOW + timedelta(hours=2)
            assert record.shop_domain == SHOP
            assert record.session_id == SESSION_ID

            counts = await storage.action_counts_since(NOW - timedelta(days=1))
            assert counts.get("variant_created") == 1

            payload = result.to_payload()
            assert payload["variant"]["gid"] == variant_gid(result.variant_id)
            assert payload["usedExisting"] is False
            assert payload["priceSettled"] is True

    asyncio.run(scenario())


def test_create_variant_payload_uses_options_and_weight():
    async def scenario():
        catalog = FakeCatalog()
        async with InMemoryDatabase() as db:
            _, provisioner = await _setup(db, catalog)
            await provisioner.provision(SESSION_ID, "2001", 10, 10, "silk", "12.50")

        _, product_id, payload = next(call for call in catalog.calls if call[0] == "create_variant")
        assert product_id == "1001"
        assert (payload["option1"], payload["option2"], payload["option3"]) == ("10", "10", "silk")
        assert payload["price"] == "12.50"
        assert payload["weight"] == 50
        assert payload["weight_unit"] == "g"
        assert payload["sku"].startswith("CUSTOM-")

    asyncio.run(scenario())


def test_unsettled_price_reissues_update_and_reports_unsettled():
    async def scenario():
        catalog = FakeCatalog()
        catalog.never_settles = True
        async with InMemoryDatabase() as db:
            storage, provisioner = await _setup(db, catalog, poll_attempts=3)
            result = await provisioner.provision(SESSION_ID, "2001", 100, 100, "linen", "80")

            assert result.price_settled is False
            # A blank catalog price is never handed to the storefront
            assert result.price == "80.00"
            assert catalog.count("update_variant_price") == 1
            assert result.record_id is not None

    asyncio.run(scenario())


def test_reuse_path_updates_price_without_creating():
    async def scenario():
        catalog = FakeCatalog()
        catalog.add_variant("3001", 120, 80, "Cotton", "40.00")
        async with InMemoryDatabase() as db:
            storage, provisioner = await _setup(db, catalog)
            result = await provisioner.provision(SESSION_ID, "2001", "120", "80", "Cotton", "55.00")

            assert result.used_existing is True
            assert result.variant_id == "3001"
            assert result.price == "55.00"
            assert result.price_settled is True
            assert catalog.count("create_variant") == 0
            assert catalog.count("update_variant_price") == 1
            # Reused variants are not scheduled for cleanup
            assert await storage.find_live_variants() == []

    asyncio.run(scenario())


def test_reuse_path_falls_back_to_existing_price_when_update_fails():
    async def scenario():
        catalog = FakeCatalog()
        catalog.add_variant("3001", 120, 80, "Cotton", "40.00")
        catalog.fail_update = True
        async with InMemoryDatabase() as db:
            _, provisioner = await _setup(db, catalog)
            result = await provisioner.provision(SESSION_ID, "2001", 120, 80, "Cotton", "55.00")

        assert result.used_existing is True
        assert result.price == "40.00"
        assert result.price_settled is False

    asyncio.run(scenario())


def test_material_match_is_exact():
    async def scenario():
        catalog = FakeCatalog()
        catalog.add_variant("3001", 120, 80, "cotton", "40.00")
        async with InMemoryDatabase() as db:
            _, provisioner = await _setup(db, catalog)
            result = await provisioner.provision(SESSION_ID, "2001", 120, 80, "Cotton", "55.00")

        assert result.used_existing is False
        assert catalog.count("create_variant") == 1

    asyncio.run(scenario())


def test_already_exists_error_reuses_variant_found_on_second_lookup():
    async def scenario():
        catalog = FakeCatalog()
        lookups = {"n": 0}
        original_list = catalog.list_variants

        async def racing_list(product_id):
            lookups["n"] += 1
            if lookups["n"] == 1:
                return []
            catalog.add_variant("3002", 60, 60, "Linen", "30.00")
            return await original_list(product_id)

        catalog.list_variants = racing_list
        catalog.create_error = ShopifyAPIError(
            422, "POST products/1001/variants", {"base": ["The variant '60 / 60 / Linen' already exists."]}
        )
        async with InMemoryDatabase() as db:
            _, provisioner = await _setup(db, catalog)
            result = await provisioner.provision(SESSION_ID, "2001", 60, 60, "Linen", "31.00")

        assert result.used_existing is True
        assert result.variant_id == "3002"
        assert result.price == "31.00"

    asyncio.run(scenario())


def test_other_create_errors_raise_creation_failed():
    async def scenario():
        catalog = FakeCatalog()
        catalog.create_error = ShopifyAPIError(422, "POST products/1001/variants", {"price": ["is invalid"]})
        async with InMemoryDatabase() as db:
            _, provisioner = await _setup(db, catalog)
            with pytest.raises(CreationFailed):
                await provisioner.provision(SESSION_ID, "2001", 60, 60, "Linen", "31.00")
            # The dedup key is released on failure
            assert len(provisioner.deduplicator) == 0

    asyncio.run(scenario())


def test_missing_base_variant_raises_product_not_found():
    async def scenario():
        catalog = FakeCatalog()
        async with InMemoryDatabase() as db:
            _, provisioner = await _setup(db, catalog)
            with pytest.raises(ProductNotFound):
                await provisioner.provision(SESSION_ID, "999", 60, 60, "Linen", "31.00")

    asyncio.run(scenario())


def test_catalog_timeout_surfaces_as_catalog_timeout():
    async def scenario():
        catalog = FakeCatalog()
        catalog.hang.add("get_variant")
        async with InMemoryDatabase() as db:
            _, provisioner = await _setup(db, catalog, api_timeout=0.05)
            with pytest.raises(CatalogTimeout) as exc_info:
                await provisioner.provision(SESSION_ID, "2001", 60, 60, "Linen", "31.00")
        assert exc_info.value.error_type == "timeout"
        assert exc_info.value.status_code == 504

    asyncio.run(scenario())


def test_unknown_session_raises_before_any_catalog_call():
    async def scenario():
        catalog = FakeCatalog()
        async with InMemoryDatabase() as db:
            _, provisioner = await _setup(db, catalog)
            with pytest.raises(SessionNotFound):
                await provisioner.provision("nope", "2001", 60, 60, "Linen", "31.00")
        assert catalog.calls == []

    asyncio.run(scenario())


@pytest.mark.parametrize("price", ["0", "1000000", "abc", None, "NaN"])
def test_invalid_prices_are_rejected_before_any_catalog_call(price):
    async def scenario():
        catalog = FakeCatalog()
        async with InMemoryDatabase() as db:
            _, provisioner = await _setup(db, catalog)
            with pytest.raises(ValidationError) as exc_info:
                await provisioner.provision(SESSION_ID, "2001", 60, 60, "Linen", price)
        assert exc_info.value.error_type == "invalid_price"
        assert catalog.calls == []

    asyncio.run(scenario())


def test_concurrent_duplicate_request_makes_one_catalog_mutation():
    async def scenario():
        catalog = FakeCatalog()
        parked = asyncio.Event()
        release = asyncio.Event()

        async def gated_sleep(_seconds):
            parked.set()
            await release.wait()

        async with InMemoryDatabase() as db:
            _, provisioner = await _setup(db, catalog, sleep=gated_sleep)
            first = asyncio.create_task(
                provisioner.provision(SESSION_ID, "2001", 90, 45, "Polyester", "25.00", request_id="a")
            )
            await parked.wait()

            with pytest.raises(DuplicateRequestError) as exc_info:
                await provisioner.provision(SESSION_ID, "2001", 90, 45, "Polyester", "25.00", request_id="b")
            assert exc_info.value.retry_after == 3

            release.set()
            result = await first

        assert result.request_id == "a"
        assert catalog.count("create_variant") == 1

    asyncio.run(scenario())


def test_persistence_failure_still_returns_variant():
    class BrokenStorage(StorageService):
        async def create_ephemeral_variant(self, **kwargs):
            raise RuntimeError("database unavailable")

    async def scenario():
        catalog = FakeCatalog()
        async with InMemoryDatabase() as db:
            storage, provisioner = await _setup(db, catalog, storage_cls=BrokenStorage)
            result = await provisioner.provision(SESSION_ID, "2001", 60, 60, "Linen", "31.00")

            assert result.used_existing is False
            assert result.record_id is None
            counts = await storage.action_counts_since(NOW - timedelta(days=1))
            assert "variant_created" not in counts

    asyncio.run(scenario())


def test_dedup_window_reopens_after_completion():
    async def scenario():
        catalog = FakeCatalog()
        async with InMemoryDatabase() as db:
            _, provisioner = await _setup(db, catalog, deduplicator=RequestDeduplicator())
            first = await provisioner.provision(SESSION_ID, "2001", 70, 70, "Silk", "20.00")
            second = await provisioner.provision(SESSION_ID, "2001", 70, 70, "Silk", "20.00")

        assert first.used_existing is False
        assert second.used_existing is True
        assert second.variant_id == first.variant_id

    asyncio.run(scenario())


def test_generate_custom_sku_format():
    sku = generate_custom_sku(1700000000000)
    prefix, millis, suffix = sku.split("-")
    assert prefix == "CUSTOM"
    assert millis == "1700000000000"
    assert len(suffix) == 6
