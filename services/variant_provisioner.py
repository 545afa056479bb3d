"""
Custom variant provisioning.

Given a base variant and a customer's (width, height, material, price), return
a Shopify variant usable at checkout right away: reuse a matching variant on
the product when one exists, otherwise create one, wait for its price to
settle and record it for later cleanup.
"""
from __future__ import annotations

import asyncio
import logging
import random
import string
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from database import utcnow
from settings import (
    CATALOG_API_TIMEOUT_SECONDS,
    PRICE_FALLBACK_SETTLE_SECONDS,
    PRICE_POLL_BASE_DELAY_SECONDS,
    PRICE_POLL_MAX_ATTEMPTS,
    PRICE_UPDATE_SETTLE_SECONDS,
    TEMPORARY_VARIANT_TTL_HOURS,
)
from services.deadlines import with_deadline
from services.deduplication import RequestDeduplicator
from services.errors import (
    CatalogTimeout,
    CreationFailed,
    PersistenceWarning,
    ProductNotFound,
    SessionNotFound,
    ShopifyAPIError,
    ValidationError,
)
from services.pricing import (
    VariantSpec,
    calculate_weight,
    is_blank_price,
    prices_match,
    validate_variant_spec,
)
from services.session_store import CredentialBundle, SessionStore
from services.shopify_client import ShopifyClient
from services.storage import StorageService

logger = logging.getLogger(__name__)

T = TypeVar("T")

CatalogClientFactory = Callable[[CredentialBundle], ShopifyClient]


def variant_gid(variant_id: str) -> str:
    return f"gid://shopify/ProductVariant/{variant_id}"


def generate_custom_sku(now_ms: int) -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=6))
    return f"CUSTOM-{now_ms}-{suffix}"


@dataclass
class ProvisionResult:
    product_id: str
    variant_id: str
    price: str
    used_existing: bool
    request_id: str
    price_settled: bool = True
    weight: Optional[int] = None
    record_id: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        variant: Dict[str, Any] = {
            "id": self.variant_id,
            "gid": variant_gid(self.variant_id),
            "price": self.price,
            "formatted_price": self.price,
        }
        if self.weight is not None:
            variant["weight"] = self.weight
        return {
            "success": True,
            "message": "Existing variant reused" if self.used_existing else "New variant created",
            "variant": variant,
            "product": {
                "id": self.product_id,
                "variant_id": self.variant_id,
                "price": self.price,
            },
            "usedExisting": self.used_existing,
            "priceSettled": self.price_settled,
            "requestId": self.request_id,
        }


class VariantProvisioner:
    """Reuse-or-create custom variants with duplicate suppression and price settlement."""

    def __init__(
        self,
        storage: StorageService,
        session_store: SessionStore,
        client_factory: CatalogClientFactory = ShopifyClient.from_credentials,
        deduplicator: Optional[RequestDeduplicator] = None,
        *,
        api_timeout: float = CATALOG_API_TIMEOUT_SECONDS,
        ttl_hours: float = TEMPORARY_VARIANT_TTL_HOURS,
        poll_attempts: int = PRICE_POLL_MAX_ATTEMPTS,
        poll_base_delay: float = PRICE_POLL_BASE_DELAY_SECONDS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._storage = storage
        self._session_store = session_store
        self._client_factory = client_factory
        self.deduplicator = deduplicator or RequestDeduplicator()
        self.api_timeout = api_timeout
        self.ttl = timedelta(hours=ttl_hours)
        self.poll_attempts = poll_attempts
        self.poll_base_delay = poll_base_delay
        self._sleep = sleep
        self._clock = clock

    async def provision(
        self,
        session_id: Optional[str],
        base_variant_id: Any,
        width: Any,
        height: Any,
        material: Any,
        price: Any,
        request_id: Optional[str] = None,
    ) -> ProvisionResult:
        if base_variant_id is None or not str(base_variant_id).strip():
            raise ValidationError("base_variant_id", "base_variant_id is required")
        spec = validate_variant_spec(width, height, material, price)

        credentials = await self._session_store.load_session(session_id)
        if credentials is None:
            raise SessionNotFound(session_id)

        request_id = request_id or f"{spec.dedup_key}-{int(time.time() * 1000)}"
        self.deduplicator.register(spec.dedup_key, request_id)
        logger.info(
            "🔵 Provision request | key=%s price=%s shop=%s rid=%s",
            spec.dedup_key,
            spec.price_string,
            credentials.shop,
            request_id,
        )
        try:
            async with self._client_factory(credentials) as catalog:
                return await self._provision(catalog, credentials, spec, str(base_variant_id).strip(), request_id)
        finally:
            self.deduplicator.release(spec.dedup_key, request_id)

    async def _call(self, awaitable: Awaitable[T], operation: str) -> T:
        return await with_deadline(awaitable, self.api_timeout, operation)

    async def _provision(
        self,
        catalog: ShopifyClient,
        credentials: CredentialBundle,
        spec: VariantSpec,
        base_variant_id: str,
        request_id: str,
    ) -> ProvisionResult:
        base_variant = await self._fetch_base_variant(catalog, base_variant_id)
        product_id = str(base_variant["product_id"])

        existing = await self.find_existing_variant(catalog, product_id, spec)
        if existing is not None:
            logger.info("✅ Existing variant found: %s", existing.get("id"))
            return await self._reuse_variant(catalog, product_id, existing, spec, request_id)

        return await self._create_variant(catalog, credentials, product_id, spec, request_id)

    async def _fetch_base_variant(self, catalog: ShopifyClient, base_variant_id: str) -> Dict[str, Any]:
        try:
            variant = await self._call(catalog.get_variant(base_variant_id), "get_base_variant")
        except CatalogTimeout:
            raise
        except Exception as exc:
            logger.error(f"Base variant fetch failed ({base_variant_id}): {exc}")
            raise ProductNotFound(details=str(exc)) from exc
        if not variant or variant.get("product_id") is None:
            raise ProductNotFound(details=f"Base variant {base_variant_id} not found")
        return variant

    async def find_existing_variant(
        self, catalog: ShopifyClient, product_id: str, spec: VariantSpec
    ) -> Optional[Dict[str, Any]]:
        """First variant whose three option slots match exactly; lookup errors mean no match."""
        try:
            variants = await self._call(catalog.list_variants(product_id), "list_variants")
        except Exception as exc:
            logger.error(f"Existing variant lookup failed for product {product_id}: {exc}")
            return None

        wanted = (str(spec.width), str(spec.height), spec.material)
        for variant in variants:
            options = (variant.get("option1"), variant.get("option2"), variant.get("option3"))
            if options == wanted:
                return variant
        return None

    async def _reuse_variant(
        self,
        catalog: ShopifyClient,
        product_id: str,
        existing: Dict[str, Any],
        spec: VariantSpec,
        request_id: str,
    ) -> ProvisionResult:
        variant_id = str(existing["id"])
        try:
            await self._call(catalog.update_variant_price(variant_id, spec.price_string), "update_variant_price")
            await self._sleep(PRICE_UPDATE_SETTLE_SECONDS)
            updated = await self._call(catalog.get_variant(variant_id), "get_variant") or existing
            logger.info("💰 Price updated on existing variant %s: %s", variant_id, updated.get("price"))
        except Exception as exc:
            # The customer still gets the variant; its old price is reported as unsettled.
            logger.warning(f"Price update failed for existing variant {variant_id}: {exc}")
            updated = existing

        price = updated.get("price") or spec.price_string
        return ProvisionResult(
            product_id=product_id,
            variant_id=str(updated.get("id") or variant_id),
            price=str(price),
            used_existing=True,
            request_id=request_id,
            price_settled=prices_match(price, spec.price),
        )

    async def _create_variant(
        self,
        catalog: ShopifyClient,
        credentials: CredentialBundle,
        product_id: str,
        spec: VariantSpec,
        request_id: str,
    ) -> ProvisionResult:
        weight = calculate_weight(spec.width, spec.height, spec.material)
        payload = {
            "product_id": product_id,
            "price": spec.price_string,
            "sku": generate_custom_sku(int(time.time() * 1000)),
            "inventory_management": "shopify",
            "inventory_policy": "continue",
            "inventory_quantity": 9999,
            "requires_shipping": True,
            "taxable": True,
            "option1": str(spec.width),
            "option2": str(spec.height),
            "option3": spec.material,
            "weight": weight,
            "weight_unit": "g",
            "compare_at_price": None,
        }
        logger.info("📦 Creating variant | product=%s price=%s weight=%sg", product_id, spec.price_string, weight)

        try:
            created = await self._call(catalog.create_variant(product_id, payload), "create_variant")
        except CatalogTimeout:
            raise
        except ShopifyAPIError as exc:
            if exc.already_exists:
                logger.info("🔄 Variant already exists, searching again")
                existing = await self.find_existing_variant(catalog, product_id, spec)
                if existing is not None:
                    return await self._reuse_variant(catalog, product_id, existing, spec, request_id)
            raise CreationFailed(details=str(exc)) from exc
        except Exception as exc:
            raise CreationFailed(details=str(exc)) from exc

        if not created or created.get("id") is None:
            raise CreationFailed(details="Shopify returned an empty variant")

        variant_id = str(created["id"])
        logger.info("🆕 Variant created %s (initial price=%r)", variant_id, created.get("price"))

        variant = await self.wait_for_price_settlement(catalog, variant_id, spec.price) or created
        settled = prices_match(variant.get("price"), spec.price)
        if not settled:
            variant = await self._force_price_update(catalog, variant_id, spec, variant)
            settled = prices_match(variant.get("price"), spec.price)
            if not settled:
                logger.error(
                    "❌ Price unresolved for variant %s: catalog=%r expected=%s",
                    variant_id,
                    variant.get("price"),
                    spec.price_string,
                )

        price = spec.price_string if is_blank_price(variant.get("price")) else str(variant.get("price"))
        record_id = await self._record_created_variant(credentials, product_id, variant_id, spec, weight, price)

        return ProvisionResult(
            product_id=product_id,
            variant_id=variant_id,
            price=price,
            used_existing=False,
            request_id=request_id,
            price_settled=settled,
            weight=weight,
            record_id=record_id,
        )

    async def wait_for_price_settlement(
        self, catalog: ShopifyClient, variant_id: str, expected: Decimal
    ) -> Optional[Dict[str, Any]]:
        """Poll with linearly growing delays until the catalog price matches.

        Returns the matching variant, or the last one read (possibly None)
        once the attempts run out.
        """
        latest: Optional[Dict[str, Any]] = None
        for attempt in range(1, self.poll_attempts + 1):
            await self._sleep(self.poll_base_delay * attempt)
            try:
                variant = await self._call(catalog.get_variant(variant_id), "get_variant")
            except Exception as exc:
                logger.warning(f"Variant check failed (attempt {attempt}): {exc}")
                continue
            if variant:
                latest = variant
                if prices_match(variant.get("price"), expected):
                    logger.info("✅ Variant price settled on attempt %d: %s", attempt, variant.get("price"))
                    return variant
                logger.info(
                    "⏳ Variant %s price %r != %s (attempt %d)",
                    variant_id,
                    variant.get("price"),
                    expected,
                    attempt,
                )
        return latest

    async def _force_price_update(
        self,
        catalog: ShopifyClient,
        variant_id: str,
        spec: VariantSpec,
        current: Dict[str, Any],
    ) -> Dict[str, Any]:
        logger.warning("⚠️ Price not settled for %s, re-issuing update", variant_id)
        try:
            await self._call(catalog.update_variant_price(variant_id, spec.price_string), "update_variant_price")
            await self._sleep(PRICE_FALLBACK_SETTLE_SECONDS)
            refreshed = await self._call(catalog.get_variant(variant_id), "get_variant")
        except Exception as exc:
            logger.error(f"Manual price update failed for {variant_id}: {exc}")
            return current
        return refreshed or current

    async def _record_created_variant(
        self,
        credentials: CredentialBundle,
        product_id: str,
        variant_id: str,
        spec: VariantSpec,
        weight: int,
        price: str,
    ) -> Optional[str]:
        now = self._clock()
        try:
            record = await self._storage.create_ephemeral_variant(
                product_id=product_id,
                variant_id=variant_id,
                width=spec.width,
                height=spec.height,
                material=spec.material,
                calculated_price=spec.price,
                shop_domain=credentials.shop,
                session_id=credentials.session_id,
                created_at=now,
                scheduled_deletion_at=now + self.ttl,
            )
        except Exception as exc:
            warning = PersistenceWarning(f"Temporary variant {variant_id} not recorded: {exc}")
            logger.warning("%s", warning)
            return None

        await self._storage.log_action(
            "variant_created",
            f"Temporary variant created: {spec.width}×{spec.height}cm, {spec.material}, {weight}g, {price}",
            product_id=product_id,
            variant_id=variant_id,
        )
        return record.id
