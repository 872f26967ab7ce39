"""Sync health monitor.

Keeps a bounded, newest-first history of sync attempts and folds the records
inside the observation window into an operator-facing health signal:

- success rate (an empty window counts as healthy: 100)
- average duration in seconds
- timestamp of the last failure
- uptime *estimate*: every success credits at most 10 minutes for the gap
  since the previous success, plus at most 10 minutes from the last record to
  now when that record succeeded. It under-counts long gaps on purpose and is
  not an SLA measurement.
- health score = success_rate * 0.5 + duration_score * 0.2 + uptime * 0.3,
  clamped to [0, 100]
"""

from __future__ import annotations

import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional

from catalog_backend.core.metrics import SYNC_HEALTH_SCORE

logger = logging.getLogger(__name__)

UPTIME_CREDIT_CAP_SECONDS = 10 * 60
DURATION_TARGET_SECONDS = 30.0


def _iso(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


@dataclass(frozen=True)
class SyncRecord:
    """One sync attempt. ``timestamp`` is epoch seconds, ``duration`` seconds."""

    timestamp: float
    duration: float
    success: bool
    items_synced: int = 0
    error: Optional[str] = None
    stats: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": _iso(self.timestamp),
            "duration": self.duration,
            "success": self.success,
            "items_synced": self.items_synced,
            "error": self.error,
            "stats": dict(self.stats),
        }


@dataclass(frozen=True)
class SyncHealthMetrics:
    total_syncs: int
    successful_syncs: int
    failed_syncs: int
    success_rate: float
    avg_duration: float
    last_sync: Optional[float]
    last_failure: Optional[float]
    uptime_estimate_pct: float
    health_score: float
    window_hours: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_syncs": self.total_syncs,
            "successful_syncs": self.successful_syncs,
            "failed_syncs": self.failed_syncs,
            "success_rate": self.success_rate,
            "avg_duration": self.avg_duration,
            "last_sync": _iso(self.last_sync),
            "last_failure": _iso(self.last_failure),
            "uptime_estimate_pct": self.uptime_estimate_pct,
            "health_score": self.health_score,
            "window_hours": self.window_hours,
        }


def duration_score(avg_duration: float) -> float:
    if avg_duration <= DURATION_TARGET_SECONDS:
        return 100.0
    return max(0.0, 100.0 - (avg_duration - DURATION_TARGET_SECONDS))


def health_score(success_rate: float, avg_duration: float, uptime_pct: float) -> float:
    score = success_rate * 0.5 + duration_score(avg_duration) * 0.2 + uptime_pct * 0.3
    return round(min(100.0, max(0.0, score)), 2)


class SyncHealthMonitor:
    def __init__(
        self,
        *,
        history_size: int = 500,
        window_hours: float = 24.0,
        clock: Callable[[], float] = time.time,
    ):
        self._records: Deque[SyncRecord] = deque(maxlen=max(1, history_size))
        self.window_hours = window_hours
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Any) -> "SyncHealthMonitor":
        return cls(history_size=settings.sync_history_size, window_hours=settings.sync_health_window_hours)

    def record_sync(self, record: SyncRecord) -> None:
        self._records.appendleft(record)
        logger.info(
            "Sync recorded: success=%s items=%d duration=%.2fs",
            record.success,
            record.items_synced,
            record.duration,
            extra={"sync_id": record.id},
        )
        if not record.success:
            logger.error("Sync failed: %s", record.error or "unknown error", extra={"sync_id": record.id})

    def get_history(self, limit: int = 50) -> List[SyncRecord]:
        return list(self._records)[: max(0, limit)]

    def clear_history(self) -> None:
        self._records.clear()
        logger.warning("Sync history cleared")

    def get_health_metrics(self) -> SyncHealthMetrics:
        now = self._clock()
        window_seconds = self.window_hours * 3600
        cutoff = now - window_seconds
        recent = [record for record in self._records if record.timestamp >= cutoff]

        total = len(recent)
        successes = sum(1 for record in recent if record.success)
        success_rate = successes / total * 100 if total else 100.0
        avg_duration = sum(record.duration for record in recent) / total if total else 0.0
        last_failure = max((record.timestamp for record in recent if not record.success), default=None)
        uptime = self._estimate_uptime(recent, now, window_seconds) if total else 100.0
        score = health_score(success_rate, avg_duration, uptime)
        SYNC_HEALTH_SCORE.set(score)

        return SyncHealthMetrics(
            total_syncs=total,
            successful_syncs=successes,
            failed_syncs=total - successes,
            success_rate=round(success_rate, 2),
            avg_duration=round(avg_duration, 3),
            last_sync=max((record.timestamp for record in recent), default=None),
            last_failure=last_failure,
            uptime_estimate_pct=round(uptime, 2),
            health_score=score,
            window_hours=self.window_hours,
        )

    @staticmethod
    def _estimate_uptime(recent: List[SyncRecord], now: float, window_seconds: float) -> float:
        chronological = sorted(recent, key=lambda record: record.timestamp)
        credited = 0.0
        previous_success: Optional[float] = None
        for record in chronological:
            if not record.success:
                continue
            if previous_success is not None:
                credited += min(record.timestamp - previous_success, UPTIME_CREDIT_CAP_SECONDS)
            previous_success = record.timestamp

        if chronological and chronological[-1].success:
            credited += min(max(0.0, now - chronological[-1].timestamp), UPTIME_CREDIT_CAP_SECONDS)

        if window_seconds <= 0:
            return 100.0
        return min(100.0, credited / window_seconds * 100)


__all__ = ["SyncHealthMetrics", "SyncHealthMonitor", "SyncRecord", "duration_score", "health_score"]
