"""
Custom Variants Router
Storefront endpoints for provisioning custom-size variants and products
"""
from __future__ import annotations

from fastapi import APIRouter, HTTPException, Request
from starlette.responses import JSONResponse
from pydantic import BaseModel
from typing import Any, Dict, Optional
import logging

from settings import IS_PRODUCTION
from services.custom_product import create_custom_product
from services.errors import CustomVariantError, DuplicateRequestError

logger = logging.getLogger(__name__)
router = APIRouter()


class ProvisionVariantRequest(BaseModel):
    baseVariantId: Any = None
    width: Any = None
    height: Any = None
    material: Any = None
    calculatedPrice: Any = None
    requestId: Optional[str] = None
    sessionId: Optional[str] = None
    shop: Optional[str] = None


class CustomProductRequest(BaseModel):
    width: Any = None
    height: Any = None
    material: Any = None
    calculatedPrice: Any = None
    sessionId: Optional[str] = None
    shop: Optional[str] = None


class MarkOrderedRequest(BaseModel):
    orderId: str


def error_response(exc: CustomVariantError) -> JSONResponse:
    headers: Dict[str, str] = {}
    if isinstance(exc, DuplicateRequestError):
        headers["Retry-After"] = str(exc.retry_after)
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_payload(include_details=not IS_PRODUCTION),
        headers=headers,
    )


def system_error_response(exc: Exception) -> JSONResponse:
    content: Dict[str, Any] = {
        "success": False,
        "error": "System error. Please try again later.",
        "errorType": "system_error",
    }
    if not IS_PRODUCTION:
        content["details"] = str(exc)
    return JSONResponse(status_code=500, content=content)


async def resolve_session_id(request: Request, session_id: Optional[str], shop: Optional[str]) -> Optional[str]:
    """Explicit session id wins; app-proxy calls only know the shop domain."""
    if session_id:
        return session_id
    shop = shop or request.query_params.get("shop")
    if not shop:
        return None
    credentials = await request.app.state.session_store.find_offline_session(shop)
    return credentials.session_id if credentials else None


@router.post("/custom-variants")
async def provision_custom_variant(payload: ProvisionVariantRequest, request: Request):
    """Reuse or create a variant for the customer's configuration"""
    logger.info(
        "🔵 Custom variant request | width=%s height=%s material=%s price=%s",
        payload.width,
        payload.height,
        payload.material,
        payload.calculatedPrice,
    )
    try:
        session_id = await resolve_session_id(request, payload.sessionId, payload.shop)
        result = await request.app.state.provisioner.provision(
            session_id=session_id,
            base_variant_id=payload.baseVariantId,
            width=payload.width,
            height=payload.height,
            material=payload.material,
            price=payload.calculatedPrice,
            request_id=payload.requestId,
        )
    except CustomVariantError as exc:
        logger.warning(f"Custom variant request failed ({exc.error_type}): {exc}")
        return error_response(exc)
    except Exception as exc:
        logger.exception("Custom variant provisioning crashed")
        return system_error_response(exc)

    return JSONResponse(content=result.to_payload(), headers={"Cache-Control": "no-cache"})


@router.post("/custom-products")
async def create_custom_product_with_draft_order(payload: CustomProductRequest, request: Request):
    """Create a standalone custom product plus a draft order for it"""
    try:
        session_id = await resolve_session_id(request, payload.sessionId, payload.shop)
        result = await create_custom_product(
            request.app.state.session_store,
            session_id,
            payload.width,
            payload.height,
            payload.material,
            payload.calculatedPrice,
            client_factory=request.app.state.client_factory,
        )
    except CustomVariantError as exc:
        logger.warning(f"Custom product request failed ({exc.error_type}): {exc}")
        return error_response(exc)
    except Exception as exc:
        logger.exception("Custom product creation crashed")
        return system_error_response(exc)
    return result


@router.post("/custom-variants/{variant_id}/orders")
async def mark_custom_variant_ordered(variant_id: str, payload: MarkOrderedRequest, request: Request):
    """Exclude a custom variant from cleanup once an order references it"""
    storage = request.app.state.storage
    record = await storage.mark_ordered(variant_id, payload.orderId)
    if record is None:
        raise HTTPException(status_code=404, detail="Custom variant not found")
    await storage.log_action(
        "ordered",
        f"Variant ordered in order {payload.orderId}",
        product_id=record.product_id,
        variant_id=record.variant_id,
    )
    return {
        "success": True,
        "variantId": record.variant_id,
        "isOrdered": record.is_ordered,
        "orderIds": list(record.order_ids or []),
    }
