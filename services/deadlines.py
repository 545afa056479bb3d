"""Deadline helper for outbound catalog calls."""

from __future__ import annotations

import asyncio
from typing import Awaitable, TypeVar

from services.errors import CatalogTimeout

T = TypeVar("T")


async def with_deadline(awaitable: Awaitable[T], seconds: float, operation: str = "catalog_call") -> T:
    """Await ``awaitable`` for at most ``seconds``.

    Raises ``CatalogTimeout`` (never ``asyncio.TimeoutError``) so callers can
    tell a slow catalog apart from a rejected mutation.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError as exc:
        raise CatalogTimeout(operation, seconds) from exc
