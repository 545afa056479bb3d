"""
Shop session storage: maps an opaque session id to the credential bundle used
for Admin API calls.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database import AsyncSessionLocal, ShopSession, utcnow
from settings import sanitize_shop_domain

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CredentialBundle:
    session_id: str
    shop: str
    access_token: str
    scope: Optional[str] = None


class SessionStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal):
        self._session_factory = session_factory

    async def load_session(self, session_id: Optional[str]) -> Optional[CredentialBundle]:
        """Return the credential bundle, or None when unknown or expired."""
        if not session_id:
            return None
        async with self._session_factory() as db:
            record = await db.get(ShopSession, session_id)
        if record is None or not record.access_token:
            return None
        if record.expires_at is not None and record.expires_at <= utcnow():
            logger.info("Session %s expired at %s", session_id, record.expires_at.isoformat())
            return None
        return CredentialBundle(
            session_id=record.id,
            shop=record.shop,
            access_token=record.access_token,
            scope=record.scope,
        )

    async def store_session(
        self,
        session_id: str,
        shop: str,
        access_token: str,
        scope: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> CredentialBundle:
        """Insert or replace the session row (called on app install / token refresh)."""
        normalized_shop = sanitize_shop_domain(shop)
        if not normalized_shop:
            raise ValueError("shop domain is required")
        async with self._session_factory() as db:
            record = await db.get(ShopSession, session_id)
            if record is None:
                record = ShopSession(id=session_id, shop=normalized_shop, access_token=access_token)
                db.add(record)
            record.shop = normalized_shop
            record.access_token = access_token
            record.scope = scope
            record.expires_at = expires_at
            await db.commit()
        return CredentialBundle(session_id=session_id, shop=normalized_shop, access_token=access_token, scope=scope)

    async def find_offline_session(self, shop: str) -> Optional[CredentialBundle]:
        """Latest session for ``shop``; app-proxy requests only carry the shop domain."""
        normalized_shop = sanitize_shop_domain(shop)
        if not normalized_shop:
            return None
        async with self._session_factory() as db:
            result = await db.execute(
                select(ShopSession.id)
                .where(ShopSession.shop == normalized_shop)
                .order_by(ShopSession.updated_at.desc())
                .limit(1)
            )
            session_id = result.scalar_one_or_none()
        if session_id is None:
            return None
        return await self.load_session(session_id)
