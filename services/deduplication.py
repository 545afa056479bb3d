"""
Request Deduplication Service
Process-local guard that rejects repeat provisioning requests for the same
(width, height, material) while one is still in flight.

Best effort only: the map lives in this process, so two app instances can
still race each other.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, Optional
import logging
import math
import time

from settings import (
    DEDUP_WINDOW_SECONDS,
    REQUEST_CACHE_EVICT_FRACTION,
    REQUEST_CACHE_MAX_SIZE,
    REQUEST_CACHE_TTL_SECONDS,
)
from services.errors import DuplicateRequestError

logger = logging.getLogger(__name__)


@dataclass
class InFlightRequest:
    timestamp: float
    request_id: str


class RequestDeduplicator:
    """Service for suppressing duplicate in-flight provisioning requests"""

    def __init__(
        self,
        window_seconds: float = DEDUP_WINDOW_SECONDS,
        ttl_seconds: float = REQUEST_CACHE_TTL_SECONDS,
        max_entries: int = REQUEST_CACHE_MAX_SIZE,
        evict_fraction: float = REQUEST_CACHE_EVICT_FRACTION,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.window_seconds = window_seconds
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self.evict_fraction = evict_fraction
        self._clock = clock
        self._requests: Dict[str, InFlightRequest] = {}

    def __len__(self) -> int:
        return len(self._requests)

    def __contains__(self, key: str) -> bool:
        return key in self._requests

    def prune(self) -> None:
        """Drop expired entries, then evict the oldest slice if still over the cap."""
        now = self._clock()
        expired = [k for k, v in self._requests.items() if now - v.timestamp > self.ttl_seconds]
        for key in expired:
            del self._requests[key]

        if len(self._requests) > self.max_entries:
            to_evict = int(self.max_entries * self.evict_fraction)
            oldest = sorted(self._requests.items(), key=lambda item: item[1].timestamp)
            for key, _ in oldest[:to_evict]:
                del self._requests[key]
            logger.warning(
                "Request cache over capacity; evicted %d oldest entries (size=%d)",
                to_evict,
                len(self._requests),
            )

    def register(self, key: str, request_id: str) -> None:
        """Record ``key`` as in flight or raise ``DuplicateRequestError``.

        Check and insert happen without a suspension point in between, so on a
        single event loop no lock is needed. Callers driving this from OS
        threads must wrap it in a mutex.
        """
        self.prune()
        now = self._clock()
        existing = self._requests.get(key)
        if existing is not None:
            age = now - existing.timestamp
            if age < self.window_seconds:
                retry_after = max(1, math.ceil(self.window_seconds))
                logger.info(
                    "Duplicate request rejected | key=%s in_flight=%s age=%.2fs",
                    key,
                    existing.request_id,
                    age,
                )
                raise DuplicateRequestError(key, retry_after=retry_after)

        self._requests[key] = InFlightRequest(timestamp=now, request_id=request_id)

    def release(self, key: str, request_id: Optional[str] = None) -> None:
        """Forget ``key``; when ``request_id`` is given only that request's entry is removed."""
        existing = self._requests.get(key)
        if existing is None:
            return
        if request_id is not None and existing.request_id != request_id:
            return
        del self._requests[key]
