"""In-memory duplicate suppression for webhook deliveries and review targets.

Two independent maps:

- **Processing entries** keyed by ``(repository, target)`` — a commit hash,
  or a pull-request revision key.  Each entry is *in-flight* (processing
  started) or *completed* (review posted).  Either state blocks a new start
  until the entry is removed or older than the retention window.
- **Delivery records** keyed by ``(delivery_id, event_type, repository,
  target)`` — rejects a physically re-sent webhook before it reaches the
  processing entries.

No method awaits anything, so on a single asyncio event loop every call is
atomic; ``try_start_processing`` is the critical check-and-insert.

Expired entries are purged by ``sweep_expired()``, which the process entry
point schedules periodically.  An in-flight entry abandoned by a crash stays
until it expires — the retention window bounds that staleness.
"""

from __future__ import annotations

import enum
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_SECONDS = 24 * 60 * 60


class ProcessingState(enum.Enum):
    IN_FLIGHT = "in_flight"
    COMPLETED = "completed"


@dataclass
class DedupEntry:
    state: ProcessingState
    timestamp: float


ProcessingKey = tuple[str, str]
DeliveryKey = tuple[str, str, str, str]


class DedupCache:
    """Tracks in-flight / completed targets and already-admitted deliveries."""

    def __init__(
        self,
        retention_seconds: float = DEFAULT_RETENTION_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.retention_seconds = retention_seconds
        self._clock = clock
        self._entries: dict[ProcessingKey, DedupEntry] = {}
        self._deliveries: dict[DeliveryKey, float] = {}

    def _expired(self, timestamp: float, now: float) -> bool:
        return now - timestamp > self.retention_seconds

    # ------------------------------------------------------------------
    #  Delivery-level dedup
    # ------------------------------------------------------------------

    def is_webhook_delivered(
        self, delivery_id: str | None, event_type: str, repo: str, target: str
    ) -> bool:
        """True if this exact delivery was already admitted for ``target``.

        A delivery without an id cannot be recognised and is never a duplicate.
        """
        if not delivery_id:
            return False
        key = (delivery_id, event_type, repo, target)
        timestamp = self._deliveries.get(key)
        if timestamp is None:
            return False
        if self._expired(timestamp, self._clock()):
            del self._deliveries[key]
            return False
        return True

    def mark_webhook_delivered(
        self, delivery_id: str | None, event_type: str, repo: str, target: str
    ) -> None:
        """Record a delivery as admitted.  Re-marking is a no-op."""
        if not delivery_id:
            return
        self._deliveries.setdefault((delivery_id, event_type, repo, target), self._clock())

    # ------------------------------------------------------------------
    #  Target-level dedup
    # ------------------------------------------------------------------

    def try_start_processing(self, repo: str, target: str) -> bool:
        """Atomically claim ``(repo, target)``.

        Returns:
            True if the caller may proceed (an in-flight entry now exists);
            False if the target is in flight or completed and unexpired.
        """
        key = (repo, target)
        now = self._clock()
        entry = self._entries.get(key)
        if entry is not None and not self._expired(entry.timestamp, now):
            logger.debug(
                "Processing claim rejected",
                extra={"repository": repo, "target": target, "state": entry.state.value},
            )
            return False
        self._entries[key] = DedupEntry(ProcessingState.IN_FLIGHT, now)
        return True

    def complete_processing(self, repo: str, target: str) -> None:
        """Mark ``(repo, target)`` completed; it stays blocked until expiry."""
        key = (repo, target)
        if key not in self._entries:
            logger.debug(
                "Completing target with no in-flight entry",
                extra={"repository": repo, "target": target},
            )
        self._entries[key] = DedupEntry(ProcessingState.COMPLETED, self._clock())

    def remove(self, repo: str, target: str) -> None:
        """Forget ``(repo, target)`` in any state so a later delivery can retry."""
        if self._entries.pop((repo, target), None) is not None:
            logger.debug("Removed from cache", extra={"repository": repo, "target": target})

    def state_of(self, repo: str, target: str) -> ProcessingState | None:
        entry = self._entries.get((repo, target))
        if entry is None or self._expired(entry.timestamp, self._clock()):
            return None
        return entry.state

    # ------------------------------------------------------------------
    #  Maintenance
    # ------------------------------------------------------------------

    def sweep_expired(self) -> int:
        """Delete every entry older than the retention window.  Returns the count."""
        now = self._clock()
        stale_entries = [k for k, e in self._entries.items() if self._expired(e.timestamp, now)]
        for key in stale_entries:
            del self._entries[key]
        stale_deliveries = [k for k, ts in self._deliveries.items() if self._expired(ts, now)]
        for key in stale_deliveries:
            del self._deliveries[key]

        removed = len(stale_entries) + len(stale_deliveries)
        if removed:
            logger.info("Cleaned up %d expired cache entries", removed)
        return removed

    def clear(self) -> None:
        self._entries.clear()
        self._deliveries.clear()
        logger.info("Dedup cache cleared")

    def stats(self) -> dict[str, Any]:
        """Snapshot for the admin endpoint."""
        now = self._clock()
        return {
            "retention_seconds": self.retention_seconds,
            "size": len(self._entries),
            "deliveries": len(self._deliveries),
            "entries": [
                {
                    "key": f"{repo}:{target}",
                    "state": entry.state.value,
                    "age_minutes": int((now - entry.timestamp) // 60),
                }
                for (repo, target), entry in self._entries.items()
            ],
        }
