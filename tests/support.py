"""Shared test doubles: in-memory database and a scripted Shopify catalog."""
import asyncio
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from database import Base
from services.errors import ShopifyAPIError

SESSION_ID = "offline_demo.myshopify.com"
SHOP = "demo.myshopify.com"


class InMemoryDatabase:
    """Fresh SQLite database per test; create and dispose inside the same event loop."""

    def __init__(self):
        self.engine = create_async_engine(
            "sqlite+aiosqlite:///:memory:",
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
        self.session_factory = async_sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)

    async def __aenter__(self) -> "InMemoryDatabase":
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.engine.dispose()


async def no_sleep(_seconds: float) -> None:
    return None


class FakeCatalog:
    """Scripted stand-in for ShopifyClient.

    ``stale_reads`` makes that many ``get_variant`` calls on a new variant
    return a zero price before the real one shows up.
    """

    def __init__(self, product_id: str = "1001", base_variant_id: str = "2001"):
        self.product_id = product_id
        self.base_variant_id = base_variant_id
        self.variants: Dict[str, Dict[str, Any]] = {
            base_variant_id: {
                "id": int(base_variant_id),
                "product_id": int(product_id),
                "price": "49.00",
                "option1": "Default",
                "option2": None,
                "option3": None,
            }
        }
        self.calls: List[tuple] = []
        self.stale_reads = 0
        self.never_settles = False
        self.fail_update = False
        self.fail_delete: Optional[Exception] = None
        self.create_error: Optional[Exception] = None
        self.hang: set = set()
        self._next_id = 5000

    async def __aenter__(self) -> "FakeCatalog":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        return None

    def factory(self, _credentials) -> "FakeCatalog":
        return self

    def add_variant(self, variant_id: str, width: int, height: int, material: str, price: str) -> Dict[str, Any]:
        variant = {
            "id": int(variant_id),
            "product_id": int(self.product_id),
            "price": price,
            "option1": str(width),
            "option2": str(height),
            "option3": material,
        }
        self.variants[str(variant_id)] = variant
        return variant

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)

    async def _maybe_hang(self, name: str) -> None:
        if name in self.hang:
            await asyncio.sleep(3600)

    async def get_variant(self, variant_id: str) -> Optional[Dict[str, Any]]:
        self.calls.append(("get_variant", str(variant_id)))
        await self._maybe_hang("get_variant")
        variant = self.variants.get(str(variant_id))
        if variant is None:
            raise ShopifyAPIError(404, f"GET variants/{variant_id}", "Not Found")
        if variant.get("_pending_price") is not None:
            if self.stale_reads > 0:
                self.stale_reads -= 1
                return dict(variant, price="0.00")
            variant["price"] = variant.pop("_pending_price")
        return dict(variant)

    async def list_variants(self, product_id: str) -> List[Dict[str, Any]]:
        self.calls.append(("list_variants", str(product_id)))
        return [dict(v) for v in self.variants.values() if str(v["product_id"]) == str(product_id)]

    async def create_variant(self, product_id: str, variant: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        self.calls.append(("create_variant", str(product_id), dict(variant)))
        await self._maybe_hang("create_variant")
        if self.create_error is not None:
            raise self.create_error
        self._next_id += 1
        created = {
            "id": self._next_id,
            "product_id": int(product_id),
            "price": "0.00",
            "option1": variant["option1"],
            "option2": variant["option2"],
            "option3": variant["option3"],
            "weight": variant.get("weight"),
        }
        stored = dict(created)
        if not self.never_settles:
            stored["_pending_price"] = variant["price"]
        self.variants[str(self._next_id)] = stored
        return created

    async def update_variant_price(self, variant_id: str, price: str) -> Optional[Dict[str, Any]]:
        self.calls.append(("update_variant_price", str(variant_id), price))
        if self.fail_update:
            raise ShopifyAPIError(422, f"PUT variants/{variant_id}", {"price": ["is invalid"]})
        variant = self.variants[str(variant_id)]
        if not self.never_settles:
            variant.pop("_pending_price", None)
            variant["price"] = price
        return dict(variant)

    async def delete_variant(self, product_id: str, variant_id: str) -> None:
        self.calls.append(("delete_variant", str(product_id), str(variant_id)))
        if self.fail_delete is not None:
            raise self.fail_delete
        if self.variants.pop(str(variant_id), None) is None:
            raise ShopifyAPIError(404, f"DELETE products/{product_id}/variants/{variant_id}", "Not Found")

    async def create_product(self, product: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        self.calls.append(("create_product", dict(product)))
        self._next_id += 1
        variant = dict(product["variants"][0], id=self._next_id + 1, product_id=self._next_id)
        return {
            "id": self._next_id,
            "title": product["title"],
            "handle": product["handle"],
            "variants": [variant],
        }

    async def create_draft_order(self, draft_order: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        self.calls.append(("create_draft_order", dict(draft_order)))
        return {"id": 9001, "invoice_url": "https://demo.myshopify.com/invoices/abc"}
