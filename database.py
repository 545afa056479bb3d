# --- models: ephemeral variants, cleanup audit log, shop sessions ---

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy import (
    JSON, String, Text, Integer, Numeric, DateTime, Boolean,
    Index, CheckConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.pool import StaticPool
from sqlalchemy import text
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional
import logging, os, time, uuid

# Load environment variables early (before reading DATABASE_URL)
from dotenv import load_dotenv
load_dotenv()


def utcnow() -> datetime:
    """Naive UTC timestamp; all DateTime columns store UTC without tzinfo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# -------------------------------------------------------------------
# Engine / Session
# -------------------------------------------------------------------
DATABASE_URL = os.getenv("DATABASE_URL", "")

if DATABASE_URL:
    DATABASE_URL = DATABASE_URL.replace("postgresql://", "postgresql+asyncpg://")
    # asyncpg uses 'ssl', not 'sslmode'
    ssl_required = "sslmode=require" in DATABASE_URL or "sslmode=verify-full" in DATABASE_URL
    for mode in ("require", "verify-full"):
        DATABASE_URL = DATABASE_URL.replace(f"?sslmode={mode}", "").replace(f"&sslmode={mode}", "")

    connect_args: Dict[str, Any] = {
        "server_settings": {"application_name": "custom_variant_service"},
        "command_timeout": 60,
        "timeout": 30,
    }
    if ssl_required:
        connect_args["ssl"] = "require"

    engine = create_async_engine(
        DATABASE_URL,
        echo=os.getenv("NODE_ENV") == "development",
        pool_size=10,
        max_overflow=10,
        pool_pre_ping=True,  # Verify connections before use
        pool_recycle=1800,  # Recycle connections after 30 minutes
        pool_timeout=15,
        connect_args=connect_args,
    )
else:
    DATABASE_URL = "sqlite+aiosqlite:///:memory:"
    engine = create_async_engine(
        DATABASE_URL,
        echo=os.getenv("NODE_ENV") == "development",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

AsyncSessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

def _redact_db_url(url: str) -> str:
    try:
        if "@" in url and "://" in url:
            head, tail = url.split("://", 1)
            creds, hostpart = tail.split("@", 1)
            if ":" in creds:
                user, _pwd = creds.split(":", 1)
                return f"{head}://{user}:******@{hostpart}"
            return url
        if "://" in url:
            return url
    except Exception:
        pass
    return "******"

logger = logging.getLogger(__name__)
logger.info(f"Creating SQL engine for { _redact_db_url(DATABASE_URL) }")

async def probe_db_connection():
    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
        logger.info("DB connectivity probe: OK")
    except Exception as e:
        logger.exception(f"DB connectivity probe failed: {e}")

# -------------------------------------------------------------------
# Base
# -------------------------------------------------------------------
class Base(DeclarativeBase):
    pass

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite for local runs and tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")

AUDIT_ACTIONS = (
    "cleanup_run",
    "daily_scan",
    "deleted",
    "error",
    "variant_created",
    "alarm",
    "dead_letter",
    "ordered",
)

# -------------------------------------------------------------------
# MODELS
# -------------------------------------------------------------------

class EphemeralVariant(Base):
    """A catalog variant created for one customer's custom configuration."""

    __tablename__ = "temporary_products"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    product_id: Mapped[str] = mapped_column(String, nullable=False)
    variant_id: Mapped[str] = mapped_column(String, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    scheduled_deletion_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    # NULL means the variant is still live in the catalog
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    width: Mapped[int] = mapped_column(Integer, nullable=False)
    height: Mapped[int] = mapped_column(Integer, nullable=False)
    material: Mapped[str] = mapped_column(Text, nullable=False)
    computed_area: Mapped[int] = mapped_column(Integer, nullable=False)
    calculated_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)

    is_ordered: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    order_ids: Mapped[List[str]] = mapped_column(JSONType, nullable=False, default=list)

    cleanup_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_cleanup_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    dead_lettered_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    shop_domain: Mapped[str] = mapped_column(Text, nullable=False)
    session_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    __table_args__ = (
        CheckConstraint("width > 0 AND height > 0", name="ck_temporary_products_dimensions"),
        CheckConstraint("cleanup_attempts >= 0", name="ck_temporary_products_attempts"),
    )


class AuditLogEntry(Base):
    """Append-only audit trail for provisioning and cleanup activity."""

    __tablename__ = "cleanup_logs"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    action: Mapped[str] = mapped_column(String, nullable=False)
    product_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    variant_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    error_details: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class ShopSession(Base):
    """Offline Admin API session (credential bundle) keyed by session id."""

    __tablename__ = "shopify_sessions"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    shop: Mapped[str] = mapped_column(Text, nullable=False)
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    scope: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

# -------------------------------------------------------------------
# Indexes
# -------------------------------------------------------------------
Index('ix_temporary_products_sweep',
      EphemeralVariant.deleted_at, EphemeralVariant.is_ordered, EphemeralVariant.scheduled_deletion_at)
Index('ix_temporary_products_variant', EphemeralVariant.variant_id)
Index('ix_temporary_products_created_at', EphemeralVariant.created_at)
Index('ix_cleanup_logs_action_created', AuditLogEntry.action, AuditLogEntry.created_at)
Index('ix_shopify_sessions_shop', ShopSession.shop)

# -------------------------------------------------------------------
# Init / health helpers
# -------------------------------------------------------------------
async def init_db():
    """Ensure tables exist."""
    await probe_db_connection()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("DB init complete (tables ensured).")

async def check_db_health() -> Dict[str, Any]:
    start = time.time()
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return {"status": "healthy", "latency_ms": int((time.time() - start) * 1000)}
    except Exception as e:
        logger.warning(f"DB health check failed: {e}")
        return {"status": "unhealthy", "error": str(e)}

async def get_pool_status() -> Dict[str, Any]:
    pool = engine.pool
    status: Dict[str, Any] = {"class": type(pool).__name__}
    for attr in ("size", "checkedin", "checkedout", "overflow"):
        method = getattr(pool, attr, None)
        if callable(method):
            try:
                status[attr] = method()
            except Exception:
                status[attr] = None
    return status
