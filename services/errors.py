"""
Error taxonomy for custom variant provisioning and cleanup.

Every provisioning failure carries an ``error_type`` the storefront can branch
on (retry vs. contact support) and a customer-safe ``user_message``.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class CustomVariantError(Exception):
    """Base class for all user-actionable provisioning failures."""

    error_type = "system_error"
    status_code = 500
    user_message = "System error. Please try again later."

    def __init__(self, message: Optional[str] = None, *, details: Optional[str] = None) -> None:
        super().__init__(message or self.user_message)
        self.details = details

    def to_payload(self, include_details: bool = False) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "success": False,
            "error": self.user_message,
            "errorType": self.error_type,
        }
        if include_details and self.details:
            payload["details"] = self.details
        return payload


class ValidationError(CustomVariantError):
    """Bad input; names the offending field."""

    error_type = "validation"
    status_code = 400

    def __init__(self, field: str, message: str) -> None:
        super().__init__(message)
        self.field = field
        self.user_message = message
        if field == "price":
            self.error_type = "invalid_price"

    def to_payload(self, include_details: bool = False) -> Dict[str, Any]:
        payload = super().to_payload(include_details)
        payload["field"] = self.field
        return payload


class DuplicateRequestError(CustomVariantError):
    """Same configuration already in flight (the Conflict kind)."""

    error_type = "duplicate"
    status_code = 429
    user_message = "Operation already running. Please retry shortly."

    def __init__(self, key: str, retry_after: int) -> None:
        super().__init__(f"Request for {key} already in flight")
        self.key = key
        self.retry_after = retry_after

    def to_payload(self, include_details: bool = False) -> Dict[str, Any]:
        payload = super().to_payload(include_details)
        payload["retryAfter"] = self.retry_after
        return payload


class SessionNotFound(CustomVariantError):
    """No credential bundle for the session id."""

    error_type = "session_not_found"
    status_code = 401
    user_message = "Session not found. Please refresh the page."

    def __init__(self, session_id: Optional[str]) -> None:
        super().__init__(f"Admin session not found: {session_id}")
        self.session_id = session_id


class CatalogTimeout(CustomVariantError):
    """A catalog call exceeded its deadline."""

    error_type = "timeout"
    status_code = 504
    user_message = "Request timed out. Please retry."

    def __init__(self, operation: str, seconds: float) -> None:
        super().__init__(f"Catalog call '{operation}' timed out after {seconds:g}s")
        self.operation = operation
        self.seconds = seconds


class ProductNotFound(CustomVariantError):
    """Base variant could not be read from the catalog."""

    error_type = "product_not_found"
    status_code = 400
    user_message = "Product information unavailable. Please refresh the page."


class CreationFailed(CustomVariantError):
    """Catalog rejected the mutation."""

    error_type = "creation_failed"
    status_code = 500
    user_message = "Could not create the product."


class PersistenceWarning(CustomVariantError):
    """Store write failed after the catalog mutation succeeded; logged only."""

    error_type = "persistence_warning"


class ShopifyAPIError(Exception):
    """Non-2xx response from the Shopify Admin REST API."""

    def __init__(self, status_code: int, message: str, errors: Any = None) -> None:
        super().__init__(f"Shopify API error {status_code}: {message}")
        self.status_code = status_code
        self.errors = errors

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404

    @property
    def already_exists(self) -> bool:
        """Variant combination already present on the product."""
        errors = self.errors
        if isinstance(errors, dict):
            base = errors.get("base") or []
            if isinstance(base, str):
                base = [base]
            return any("already exists" in str(item) for item in base)
        if isinstance(errors, (list, str)):
            return "already exists" in str(errors)
        return False
