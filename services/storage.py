"""
Storage Service Layer
Database operations for ephemeral variants and the cleanup audit log
"""
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy import select, func, update
from typing import List, Optional, Dict, Any, Tuple
from datetime import datetime
from decimal import Decimal
import asyncio
import logging

from database import AUDIT_ACTIONS, AsyncSessionLocal, EphemeralVariant, AuditLogEntry, utcnow

logger = logging.getLogger(__name__)


class StorageService:
    """Storage service providing database operations"""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal):
        self._session_factory = session_factory
        # Serializes order_ids read-modify-write within this process
        self._order_lock = asyncio.Lock()

    def _live_filter(self):
        return (
            EphemeralVariant.deleted_at.is_(None),
            EphemeralVariant.is_ordered.is_(False),
            EphemeralVariant.dead_lettered_at.is_(None),
        )

    # ---------- ephemeral variants ----------

    async def create_ephemeral_variant(
        self,
        *,
        product_id: str,
        variant_id: str,
        width: int,
        height: int,
        material: str,
        calculated_price: Decimal,
        shop_domain: str,
        session_id: Optional[str],
        scheduled_deletion_at: datetime,
        created_at: Optional[datetime] = None,
    ) -> EphemeralVariant:
        record = EphemeralVariant(
            product_id=str(product_id),
            variant_id=str(variant_id),
            width=width,
            height=height,
            material=material,
            computed_area=width * height,
            calculated_price=calculated_price,
            shop_domain=shop_domain or "",
            session_id=session_id,
            created_at=created_at or utcnow(),
            scheduled_deletion_at=scheduled_deletion_at,
            order_ids=[],
        )
        async with self._session_factory() as db:
            db.add(record)
            await db.commit()
        return record

    async def get_ephemeral_variant(self, record_id: str) -> Optional[EphemeralVariant]:
        async with self._session_factory() as db:
            return await db.get(EphemeralVariant, record_id)

    async def get_ephemeral_variant_by_variant_id(self, variant_id: str) -> Optional[EphemeralVariant]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(EphemeralVariant)
                .where(EphemeralVariant.variant_id == str(variant_id))
                .order_by(EphemeralVariant.created_at.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def find_expired_variants(self, now: datetime) -> List[EphemeralVariant]:
        """Live, not ordered records past their scheduled deletion, oldest first."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(EphemeralVariant)
                .where(
                    *self._live_filter(),
                    EphemeralVariant.scheduled_deletion_at <= now,
                )
                .order_by(EphemeralVariant.scheduled_deletion_at.asc())
            )
            return list(result.scalars().all())

    async def find_live_variants(self) -> List[EphemeralVariant]:
        """Every live, not ordered record regardless of its scheduled deletion."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(EphemeralVariant)
                .where(*self._live_filter())
                .order_by(EphemeralVariant.created_at.asc())
            )
            return list(result.scalars().all())

    async def mark_deleted(self, record_id: str, deleted_at: Optional[datetime] = None) -> bool:
        """Set ``deleted_at`` once; returns False if it was already set."""
        async with self._session_factory() as db:
            result = await db.execute(
                update(EphemeralVariant)
                .where(EphemeralVariant.id == record_id, EphemeralVariant.deleted_at.is_(None))
                .values(deleted_at=deleted_at or utcnow())
            )
            await db.commit()
            return (result.rowcount or 0) > 0

    async def record_cleanup_failure(
        self,
        record_id: str,
        error: str,
        max_attempts: int = 0,
        now: Optional[datetime] = None,
    ) -> Tuple[int, bool]:
        """Increment ``cleanup_attempts`` and store the error.

        Returns ``(attempts, dead_lettered)``. With ``max_attempts > 0`` the
        record is dead-lettered once attempts reach the cap.
        """
        async with self._session_factory() as db:
            await db.execute(
                update(EphemeralVariant)
                .where(EphemeralVariant.id == record_id)
                .values(
                    cleanup_attempts=EphemeralVariant.cleanup_attempts + 1,
                    last_cleanup_error=error[:2000],
                )
            )
            result = await db.execute(
                select(EphemeralVariant.cleanup_attempts).where(EphemeralVariant.id == record_id)
            )
            attempts = result.scalar() or 0
            dead_lettered = False
            if max_attempts > 0 and attempts >= max_attempts:
                result = await db.execute(
                    update(EphemeralVariant)
                    .where(EphemeralVariant.id == record_id, EphemeralVariant.dead_lettered_at.is_(None))
                    .values(dead_lettered_at=now or utcnow())
                )
                dead_lettered = (result.rowcount or 0) > 0
            await db.commit()
        return attempts, dead_lettered

    async def mark_ordered(self, variant_id: str, order_id: str) -> Optional[EphemeralVariant]:
        """Flag the variant as ordered and append ``order_id`` (no duplicates).

        The row is locked FOR UPDATE (PostgreSQL) so concurrent order callbacks
        from other instances cannot drop each other's ids.
        """
        async with self._order_lock, self._session_factory() as db:
            result = await db.execute(
                select(EphemeralVariant)
                .where(EphemeralVariant.variant_id == str(variant_id))
                .order_by(EphemeralVariant.created_at.desc())
                .limit(1)
                .with_for_update()
            )
            record = result.scalar_one_or_none()
            if record is None:
                return None
            order_ids = list(record.order_ids or [])
            if str(order_id) not in order_ids:
                order_ids.append(str(order_id))
            # Reassign so the JSON column is flagged dirty
            record.order_ids = order_ids
            record.is_ordered = True
            await db.commit()
            return record

    async def count_pending_deletion(self, now: datetime) -> int:
        async with self._session_factory() as db:
            result = await db.execute(
                select(func.count(EphemeralVariant.id)).where(
                    *self._live_filter(),
                    EphemeralVariant.scheduled_deletion_at <= now,
                )
            )
            return result.scalar() or 0

    # ---------- audit log ----------

    async def log_action(
        self,
        action: str,
        message: str,
        product_id: Optional[str] = None,
        variant_id: Optional[str] = None,
        error_details: Optional[str] = None,
    ) -> bool:
        """Append an audit entry; failures are logged and reported as False."""
        if action not in AUDIT_ACTIONS:
            raise ValueError(f"Unknown audit action: {action}")
        try:
            async with self._session_factory() as db:
                db.add(
                    AuditLogEntry(
                        action=action,
                        product_id=str(product_id) if product_id is not None else None,
                        variant_id=str(variant_id) if variant_id is not None else None,
                        message=message,
                        error_details=error_details,
                        created_at=utcnow(),
                    )
                )
                await db.commit()
            return True
        except Exception as e:
            logger.error(f"Failed to write cleanup log ({action}): {e}")
            return False

    async def action_counts_since(self, since: datetime) -> Dict[str, int]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(AuditLogEntry.action, func.count(AuditLogEntry.id))
                .where(AuditLogEntry.created_at >= since)
                .group_by(AuditLogEntry.action)
            )
            return {action: count for action, count in result.all()}

    async def recent_entries(self, action: str, since: datetime, limit: int = 10) -> List[AuditLogEntry]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(AuditLogEntry)
                .where(AuditLogEntry.action == action, AuditLogEntry.created_at >= since)
                .order_by(AuditLogEntry.created_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    @staticmethod
    def serialize_entry(entry: AuditLogEntry) -> Dict[str, Any]:
        return {
            "id": entry.id,
            "createdAt": entry.created_at.isoformat() if entry.created_at is not None else None,
            "action": entry.action,
            "productId": entry.product_id,
            "variantId": entry.variant_id,
            "message": entry.message,
            "errorDetails": entry.error_details,
        }


storage = StorageService()
