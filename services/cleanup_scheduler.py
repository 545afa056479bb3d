"""
Cleanup scheduler for temporary custom variants.

Two cooperating loops run inside the app's event loop:

* a frequent sweep that deletes every live, not ordered variant whose
  scheduled deletion time has passed (oldest first), and
* a daily full scan at a fixed wall-clock time that deletes anything older
  than the maximum age, catching records whose scheduled deletion was missed.

Per-item failures never stop a pass; they are counted on the record, logged to
the audit table and fed to the error tracker. Nothing here is safe to run from
more than one process at a time.
"""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from database import EphemeralVariant, utcnow
from settings import (
    CATALOG_API_TIMEOUT_SECONDS,
    CLEANUP_INTERVAL_MINUTES,
    CLEANUP_MAX_ATTEMPTS,
    CLEANUP_ON_STARTUP,
    DAILY_CLEANUP_HOUR,
    DAILY_CLEANUP_MINUTE,
    DAILY_SCAN_MAX_AGE_HOURS,
    STATS_RECENT_ERROR_LIMIT,
    STATS_WINDOW_HOURS,
)
from services.deadlines import with_deadline
from services.error_tracker import ErrorTracker
from services.errors import SessionNotFound, ShopifyAPIError
from services.session_store import SessionStore
from services.shopify_client import ShopifyClient
from services.storage import StorageService
from services.variant_provisioner import CatalogClientFactory

logger = logging.getLogger(__name__)

DAY_SECONDS = 24 * 60 * 60


@dataclass
class CleanupStats:
    checked: int = 0
    deleted: int = 0
    errors: int = 0
    skipped: int = 0
    dead_lettered: int = 0


def next_daily_run(now: datetime, hour: int, minute: int) -> datetime:
    """Next occurrence of ``hour:minute`` strictly after ``now`` (same clock as ``now``)."""
    scheduled = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if scheduled <= now:
        scheduled += timedelta(days=1)
    return scheduled


class CleanupScheduler:
    """Owns the sweep/daily-scan timers; construct once per process."""

    def __init__(
        self,
        storage: StorageService,
        session_store: SessionStore,
        client_factory: CatalogClientFactory = ShopifyClient.from_credentials,
        error_tracker: Optional[ErrorTracker] = None,
        *,
        interval_minutes: float = CLEANUP_INTERVAL_MINUTES,
        daily_hour: int = DAILY_CLEANUP_HOUR,
        daily_minute: int = DAILY_CLEANUP_MINUTE,
        daily_max_age_hours: float = DAILY_SCAN_MAX_AGE_HOURS,
        max_attempts: int = CLEANUP_MAX_ATTEMPTS,
        api_timeout: float = CATALOG_API_TIMEOUT_SECONDS,
        run_on_start: bool = CLEANUP_ON_STARTUP,
        clock: Callable[[], datetime] = utcnow,
        local_clock: Callable[[], datetime] = datetime.now,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._storage = storage
        self._session_store = session_store
        self._client_factory = client_factory
        self.error_tracker = error_tracker or ErrorTracker(storage)
        self.interval_seconds = interval_minutes * 60
        self.daily_hour = daily_hour
        self.daily_minute = daily_minute
        self.daily_max_age = timedelta(hours=daily_max_age_hours)
        self.max_attempts = max_attempts
        self.api_timeout = api_timeout
        self.run_on_start = run_on_start
        self._clock = clock
        self._local_clock = local_clock
        self._sleep = sleep
        self._tasks: Set[asyncio.Task] = set()
        # Sweep and daily scan never interleave on the same records
        self._pass_lock = asyncio.Lock()
        self.last_cleanup_run: Optional[datetime] = None
        self.last_daily_scan: Optional[datetime] = None
        self.next_daily_scan: Optional[datetime] = None

    # ---------- lifecycle ----------

    @property
    def is_running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def start(self) -> None:
        """Start both loops; the sweep runs once immediately when ``run_on_start``."""
        if self.is_running:
            logger.warning("Cleanup scheduler already running")
            return
        for name, factory in (("cleanup-sweep", self._sweep_loop), ("cleanup-daily-scan", self._daily_loop)):
            task = asyncio.create_task(factory(), name=name)
            self._tasks.add(task)
            task.add_done_callback(self._on_task_done)
        logger.info(
            "Cleanup scheduler started | interval=%.0fmin daily=%02d:%02d max_attempts=%s",
            self.interval_seconds / 60,
            self.daily_hour,
            self.daily_minute,
            self.max_attempts or "unlimited",
        )

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "❌ Cleanup loop %s stopped unexpectedly: %s",
                task.get_name(),
                exc,
                exc_info=(type(exc), exc, exc.__traceback__),
            )

    async def stop(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("Cleanup scheduler stopped")

    async def _sweep_loop(self) -> None:
        if self.run_on_start:
            await self.run_cleanup_pass()
        while True:
            await self._sleep(self.interval_seconds)
            await self.run_cleanup_pass()

    async def _daily_loop(self) -> None:
        now = self._local_clock()
        self.next_daily_scan = next_daily_run(now, self.daily_hour, self.daily_minute)
        delay = (self.next_daily_scan - now).total_seconds()
        logger.info("📅 Daily full scan scheduled for %s (in %.0fs)", self.next_daily_scan.isoformat(), delay)
        await self._sleep(delay)
        while True:
            await self.run_daily_full_scan()
            self.next_daily_scan = self._local_clock() + timedelta(seconds=DAY_SECONDS)
            await self._sleep(DAY_SECONDS)

    # ---------- passes ----------

    async def run_cleanup_pass(self) -> CleanupStats:
        """Delete every expired, live, not ordered variant, oldest first."""
        stats = CleanupStats()
        async with self._pass_lock:
            now = self._clock()
            logger.info("🧹 Cleanup pass started: %s", now.isoformat())
            try:
                to_delete = await self._storage.find_expired_variants(now)
                stats.checked = len(to_delete)

                if not to_delete:
                    logger.info("✅ No variants to delete")
                    await self._storage.log_action("cleanup_run", "No items to delete")
                    return stats

                logger.info("📋 %d variants to delete", len(to_delete))
                for item in to_delete:
                    try:
                        await self.delete_ephemeral_variant(item)
                    except Exception as exc:
                        stats.errors += 1
                        await self._handle_item_failure(item, exc, stats)
                        continue
                    stats.deleted += 1
                    await self._log_deleted(item)

                await self._storage.log_action(
                    "cleanup_run",
                    f"Cleanup pass completed: {stats.deleted} deleted, {stats.errors} errors",
                    error_details=json.dumps(asdict(stats)),
                )
            except Exception as exc:
                logger.exception("Cleanup pass failed")
                await self.error_tracker.track_error(exc, {"stage": "cleanup_pass"})
            finally:
                self.last_cleanup_run = now
        return stats

    async def run_daily_full_scan(self) -> CleanupStats:
        """Delete live, not ordered variants older than the max age, whatever their schedule."""
        stats = CleanupStats()
        async with self._pass_lock:
            now = self._clock()
            logger.info("🔎 Daily full scan started: %s", now.isoformat())
            try:
                records = await self._storage.find_live_variants()
                stats.checked = len(records)
                for item in records:
                    if now - item.created_at < self.daily_max_age:
                        stats.skipped += 1
                        continue
                    try:
                        await self.delete_ephemeral_variant(item)
                    except Exception as exc:
                        stats.errors += 1
                        logger.error(f"Daily scan error ({item.variant_id}): {exc}")
                        await self._handle_item_failure(item, exc, stats)
                        continue
                    stats.deleted += 1
                    await self._log_deleted(item)

                await self._storage.log_action(
                    "daily_scan",
                    f"Daily full scan completed: {stats.deleted} deleted, {stats.errors} errors "
                    f"from {stats.checked} total",
                    error_details=json.dumps(asdict(stats)),
                )
            except Exception as exc:
                logger.exception("Daily full scan failed")
                await self.error_tracker.track_error(exc, {"stage": "daily_scan"})
            finally:
                self.last_daily_scan = now
        return stats

    # ---------- deletion primitive ----------

    async def delete_ephemeral_variant(self, record: EphemeralVariant) -> None:
        """Read-then-delete the catalog variant and mark the record deleted.

        A 404 on either call means the variant is already gone and counts as
        success. Any other failure propagates to the caller, which owns the
        attempt bookkeeping.
        """
        credentials = await self._session_store.load_session(record.session_id)
        if credentials is None:
            raise SessionNotFound(record.session_id)

        async with self._client_factory(credentials) as catalog:
            try:
                await with_deadline(catalog.get_variant(record.variant_id), self.api_timeout, "get_variant")
                await with_deadline(
                    catalog.delete_variant(record.product_id, record.variant_id),
                    self.api_timeout,
                    "delete_variant",
                )
            except ShopifyAPIError as exc:
                if not exc.is_not_found:
                    raise
                logger.info("ℹ️ Variant already deleted: %s", record.variant_id)

        await self._storage.mark_deleted(record.id, self._clock())

    async def _log_deleted(self, item: EphemeralVariant) -> None:
        await self._storage.log_action(
            "deleted",
            f"Temporary variant deleted successfully ({item.width}×{item.height}cm, {item.material})",
            product_id=item.product_id,
            variant_id=item.variant_id,
        )

    async def _handle_item_failure(self, item: EphemeralVariant, exc: Exception, stats: CleanupStats) -> None:
        await self.error_tracker.track_error(exc, {"variantId": item.variant_id, "productId": item.product_id})

        attempts, dead_lettered = None, False
        try:
            attempts, dead_lettered = await self._storage.record_cleanup_failure(
                item.id, str(exc), self.max_attempts, now=self._clock()
            )
        except Exception:
            logger.exception("Could not record cleanup failure for %s", item.id)

        await self._storage.log_action(
            "error",
            "Cleanup failed",
            product_id=item.product_id,
            variant_id=item.variant_id,
            error_details=f"{type(exc).__name__}: {exc}",
        )

        if dead_lettered:
            stats.dead_lettered += 1
            logger.error("☠️ Variant %s dead-lettered after %s attempts", item.variant_id, attempts)
            await self._storage.log_action(
                "dead_letter",
                f"Cleanup abandoned after {attempts} attempts; manual intervention required",
                product_id=item.product_id,
                variant_id=item.variant_id,
                error_details=str(exc),
            )

    # ---------- reporting ----------

    async def get_cleanup_stats(self) -> Dict[str, Any]:
        now = self._clock()
        since = now - timedelta(hours=STATS_WINDOW_HOURS)
        counts = await self._storage.action_counts_since(since)
        recent_errors = await self._storage.recent_entries("error", since, STATS_RECENT_ERROR_LIMIT)
        pending = await self._storage.count_pending_deletion(now)
        return {
            "stats": [{"action": action, "count": count} for action, count in sorted(counts.items())],
            "recentErrors": [self._storage.serialize_entry(e) for e in recent_errors],
            "pendingDeletion": pending,
            "lastRun": now.isoformat(),
            "lastCleanupPassAt": self.last_cleanup_run.isoformat() if self.last_cleanup_run else None,
            "lastDailyScanAt": self.last_daily_scan.isoformat() if self.last_daily_scan else None,
            "nextDailyScanAt": self.next_daily_scan.isoformat() if self.next_daily_scan else None,
            "schedulerRunning": self.is_running,
        }
