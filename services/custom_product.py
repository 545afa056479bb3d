"""
Standalone custom product flow: create a one-variant product for the
customer's configuration and a draft order the customer can pay through.
"""
from __future__ import annotations

import logging
import re
import time
from typing import Any, Dict, Optional

from settings import CATALOG_API_TIMEOUT_SECONDS
from services.deadlines import with_deadline
from services.errors import CatalogTimeout, CreationFailed, SessionNotFound
from services.pricing import validate_variant_spec
from services.session_store import SessionStore
from services.variant_provisioner import CatalogClientFactory, generate_custom_sku
from services.shopify_client import ShopifyClient

logger = logging.getLogger(__name__)


def build_product_handle(width: int, height: int, material: str, now_ms: int) -> str:
    slug = re.sub(r"\s+", "-", material.strip().lower())
    return f"custom-table-{width}x{height}-{slug}-{now_ms}"


async def create_custom_product(
    session_store: SessionStore,
    session_id: Optional[str],
    width: Any,
    height: Any,
    material: Any,
    price: Any,
    client_factory: CatalogClientFactory = ShopifyClient.from_credentials,
    api_timeout: float = CATALOG_API_TIMEOUT_SECONDS,
) -> Dict[str, Any]:
    spec = validate_variant_spec(width, height, material, price)
    credentials = await session_store.load_session(session_id)
    if credentials is None:
        raise SessionNotFound(session_id)

    now_ms = int(time.time() * 1000)
    title = f"Custom Table {spec.width}×{spec.height}cm - {spec.material}"
    handle = build_product_handle(spec.width, spec.height, spec.material, now_ms)
    product_payload = {
        "title": title,
        "handle": handle,
        "body_html": (
            "<h3>Custom Design Table</h3><ul>"
            f"<li><strong>Width:</strong> {spec.width} cm</li>"
            f"<li><strong>Height:</strong> {spec.height} cm</li>"
            f"<li><strong>Material:</strong> {spec.material}</li>"
            f"<li><strong>Area:</strong> {spec.area:,} cm²</li>"
            "</ul><p><em>This is a custom-made product.</em></p>"
        ),
        "product_type": "Custom Furniture",
        "vendor": "Custom Design",
        "status": "active",
        "tags": f"custom,table,{spec.material.lower()}",
        "published_scope": "global",
        "variants": [
            {
                "price": spec.price_string,
                "sku": generate_custom_sku(now_ms),
                "inventory_management": None,
                "inventory_policy": "continue",
                "requires_shipping": True,
                "taxable": True,
                "option1": "Default",
            }
        ],
    }

    try:
        async with client_factory(credentials) as catalog:
            product = await with_deadline(catalog.create_product(product_payload), api_timeout, "create_product")
            if not product or not product.get("variants"):
                raise CreationFailed(details="Shopify returned an empty product")
            variant = product["variants"][0]

            draft_order = await with_deadline(
                catalog.create_draft_order(
                    {
                        "line_items": [
                            {
                                "variant_id": variant["id"],
                                "quantity": 1,
                                "title": product.get("title", title),
                                "price": spec.price_string,
                            }
                        ],
                        "note": f"Custom table - width: {spec.width}cm, height: {spec.height}cm, material: {spec.material}",
                    }
                ),
                api_timeout,
                "create_draft_order",
            )
    except (CatalogTimeout, CreationFailed):
        raise
    except Exception as exc:
        logger.error(f"Custom product creation failed: {exc}")
        raise CreationFailed(details=str(exc)) from exc

    if not draft_order:
        raise CreationFailed(details="Shopify returned an empty draft order")

    logger.info("🆕 Custom product %s created with draft order %s", product.get("id"), draft_order.get("id"))
    product_handle = product.get("handle", handle)
    return {
        "success": True,
        "product": {
            "id": str(product.get("id")),
            "title": product.get("title", title),
            "handle": product_handle,
            "variant_id": str(variant["id"]),
            "price": variant.get("price", spec.price_string),
            "url": f"/products/{product_handle}",
        },
        "draft_order": {
            "id": str(draft_order.get("id")),
            "invoice_url": draft_order.get("invoice_url"),
        },
    }
