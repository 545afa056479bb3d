"""
Sliding-window error tracker for the cleanup subsystem.

Isolated per-item failures are expected; several inside a short window usually
mean the catalog, credentials or database are down, so the tracker escalates
to an alarm once the window holds ``threshold`` errors.
"""
from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional

from settings import ERROR_THRESHOLD, ERROR_WINDOW_SECONDS
from services.notifications import send_alarm

logger = logging.getLogger(__name__)


@dataclass
class TrackedError:
    timestamp: float
    error: str
    context: Dict[str, Any] = field(default_factory=dict)


class ErrorTracker:
    """Fires an alarm every time the pruned window reaches the threshold.

    Not debounced: while the window stays saturated each new error fires
    again. Treat it as a monitoring signal, not a rate limiter.
    """

    def __init__(
        self,
        storage,
        window_seconds: float = ERROR_WINDOW_SECONDS,
        threshold: int = ERROR_THRESHOLD,
        clock: Callable[[], float] = time.time,
    ):
        self._storage = storage
        self.window_seconds = window_seconds
        self.threshold = threshold
        self._clock = clock
        self._recent: List[TrackedError] = []

    @property
    def recent_errors(self) -> List[TrackedError]:
        return list(self._recent)

    def _prune(self, now: float) -> None:
        cutoff = now - self.window_seconds
        self._recent = [e for e in self._recent if e.timestamp > cutoff]

    async def track_error(self, error: BaseException | str, context: Optional[Dict[str, Any]] = None) -> bool:
        """Record ``error``; returns True when this call fired an alarm."""
        now = self._clock()
        entry = TrackedError(timestamp=now, error=str(error), context=dict(context or {}))
        self._recent.append(entry)
        self._prune(now)
        logger.error("Cleanup error tracked: %s context=%s", entry.error, entry.context)

        if len(self._recent) < self.threshold:
            return False

        await send_alarm(
            self._storage,
            f"Cleanup system reached {self.threshold} errors within {int(self.window_seconds)}s",
            [asdict(e) for e in self._recent],
        )
        return True
