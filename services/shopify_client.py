"""
Shopify Admin REST client

Thin async wrapper over the variant, product and draft-order endpoints used by
custom variant provisioning and cleanup. Credentials come from the offline
session stored for the shop.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from settings import CATALOG_API_TIMEOUT_SECONDS, SHOPIFY_API_VERSION
from services.errors import CatalogTimeout, ShopifyAPIError
from services.session_store import CredentialBundle

logger = logging.getLogger(__name__)


class ShopifyClient:
    """Client for Shopify Admin REST API interactions."""

    def __init__(
        self,
        shop: str,
        access_token: str,
        api_version: str = SHOPIFY_API_VERSION,
        timeout: float = CATALOG_API_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.shop = shop
        self.timeout = timeout
        self.base_url = f"https://{shop}/admin/api/{api_version}"
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "X-Shopify-Access-Token": access_token,
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_credentials(cls, credentials: CredentialBundle, **kwargs: Any) -> "ShopifyClient":
        return cls(credentials.shop, credentials.access_token, **kwargs)

    async def __aenter__(self) -> "ShopifyClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        operation = f"{method} {path}"
        try:
            response = await self._client.request(method, f"/{path}.json", json=payload)
        except httpx.TimeoutException as exc:
            raise CatalogTimeout(operation, self.timeout) from exc

        body = self._decode(response)
        if response.status_code >= 400:
            errors = body.get("errors") if isinstance(body, dict) else body
            if errors is None and not isinstance(body, dict):
                errors = response.text or None
            logger.debug(
                "Shopify %s failed | shop=%s status=%s errors=%s",
                operation,
                self.shop,
                response.status_code,
                errors,
            )
            raise ShopifyAPIError(response.status_code, operation, errors)

        return body if isinstance(body, dict) else {}

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        """JSON body of any shape; None for an empty or non-JSON body."""
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return None

    # ---------- variants ----------

    async def get_variant(self, variant_id: str) -> Optional[Dict[str, Any]]:
        body = await self._request("GET", f"variants/{variant_id}")
        return body.get("variant")

    async def list_variants(self, product_id: str) -> List[Dict[str, Any]]:
        body = await self._request("GET", f"products/{product_id}/variants")
        return body.get("variants") or []

    async def create_variant(self, product_id: str, variant: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        body = await self._request("POST", f"products/{product_id}/variants", {"variant": variant})
        return body.get("variant")

    async def update_variant_price(self, variant_id: str, price: str) -> Optional[Dict[str, Any]]:
        body = await self._request(
            "PUT",
            f"variants/{variant_id}",
            {"variant": {"id": variant_id, "price": price}},
        )
        return body.get("variant")

    async def delete_variant(self, product_id: str, variant_id: str) -> None:
        await self._request("DELETE", f"products/{product_id}/variants/{variant_id}")

    # ---------- products / draft orders ----------

    async def create_product(self, product: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        body = await self._request("POST", "products", {"product": product})
        return body.get("product")

    async def create_draft_order(self, draft_order: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        body = await self._request("POST", "draft_orders", {"draft_order": draft_order})
        return body.get("draft_order")
