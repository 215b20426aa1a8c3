"""
Snapshot cache for warehouse query results.

Provides:
- One point-in-time snapshot per named dataset
- Refresh when a snapshot is older than the refresh interval
- Stale snapshot fallback when a refresh fails
- Optional single-flight refresh per dataset
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional, Set, Tuple

from adapter.dune import DuneAdapterError

# Import monitoring (lazy to avoid circular imports)
_monitor = None

def _get_monitor():
    global _monitor
    if _monitor is None:
        try:
            from monitoring import monitor
            _monitor = monitor
        except ImportError:
            _monitor = None
    return _monitor

logger = logging.getLogger(__name__)


EVENTS_DATASET = "events"
LEADERBOARD_DATASET = "leaderboard"

DEFAULT_REFRESH_INTERVAL = timedelta(minutes=5)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Snapshot:
    """Rows of one dataset as of ``fetched_at`` (None if never fetched)."""
    rows: Tuple[Dict[str, Any], ...] = ()
    fetched_at: Optional[datetime] = None

    @property
    def populated(self) -> bool:
        """True once a fetch has succeeded in this process."""
        return self.fetched_at is not None

    def age(self, now: datetime) -> Optional[timedelta]:
        if self.fetched_at is None:
            return None
        return now - self.fetched_at


class SnapshotCache:
    """
    Cache of warehouse results keyed by dataset name.

    Each dataset key maps to a saved query ID. ``get_snapshot`` refreshes the
    dataset from the data source when it has never been fetched or is older
    than ``refresh_interval``; otherwise the held snapshot is returned as-is.

    A failed refresh keeps whatever snapshot was held before (possibly the
    empty, never-populated one) and leaves ``fetched_at`` untouched, so the
    next call tries again.

    With ``single_flight`` enabled, concurrent callers of a stale dataset
    wait on one refresh instead of each calling the data source.
    """

    def __init__(
        self,
        data_source,
        datasets: Dict[str, int],
        refresh_interval: timedelta = DEFAULT_REFRESH_INTERVAL,
        clock: Optional[Callable[[], datetime]] = None,
        single_flight: bool = True,
    ):
        """
        Initialize the snapshot cache.

        Args:
            data_source: Object exposing ``async get_latest_rows_async(query_id)``
            datasets: Mapping of dataset key -> query ID
            refresh_interval: Maximum snapshot age before a refresh is attempted
            clock: Returns the current time (defaults to UTC now)
            single_flight: Coalesce concurrent refreshes of the same dataset
        """
        self._data_source = data_source
        self._datasets = dict(datasets)
        self._refresh_interval = refresh_interval
        self._clock = clock or _utcnow
        self._single_flight = single_flight

        self._snapshots: Dict[str, Snapshot] = {}
        self._invalidated: Set[str] = set()
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        # Bumped when a refresh attempt completes, successful or not
        self._generations: Dict[str, int] = defaultdict(int)

        # Metrics
        self._hits = 0
        self._refreshes = 0
        self._refresh_failures = 0

        logger.info(
            f"SnapshotCache initialized for {list(self._datasets)} "
            f"(refresh every {int(refresh_interval.total_seconds())}s, "
            f"single_flight={single_flight})"
        )

    @property
    def datasets(self) -> Dict[str, int]:
        return dict(self._datasets)

    def peek(self, dataset_key: str) -> Snapshot:
        """Return the held snapshot without refreshing."""
        self._check_key(dataset_key)
        return self._snapshots.get(dataset_key, Snapshot())

    def needs_refresh(self, dataset_key: str) -> bool:
        self._check_key(dataset_key)
        snapshot = self._snapshots.get(dataset_key)
        if snapshot is None or dataset_key in self._invalidated:
            return True
        return self._clock() - snapshot.fetched_at > self._refresh_interval

    async def get_snapshot(self, dataset_key: str) -> Snapshot:
        """
        Get the snapshot for a dataset, refreshing it first if stale.

        Args:
            dataset_key: Name of a configured dataset

        Returns:
            The current snapshot (empty if nothing was ever fetched)

        Raises:
            KeyError: If the dataset key is not configured
        """
        if not self.needs_refresh(dataset_key):
            self._record_hit(dataset_key)
            return self._snapshots[dataset_key]

        if not self._single_flight:
            await self._refresh(dataset_key)
            return self.peek(dataset_key)

        generation = self._generations[dataset_key]
        async with self._locks[dataset_key]:
            if self._generations[dataset_key] == generation:
                await self._refresh(dataset_key)
            else:
                # Another caller refreshed while we waited
                self._record_hit(dataset_key)
        return self.peek(dataset_key)

    def invalidate(self, dataset_key: str) -> None:
        """Force the next ``get_snapshot`` to refresh (held rows stay available)."""
        self._check_key(dataset_key)
        self._invalidated.add(dataset_key)
        logger.info(f"Invalidated snapshot '{dataset_key}'")

    def get_stats(self) -> Dict[str, Any]:
        """
        Get cache statistics.

        Returns:
            Dict with per-dataset metadata and counters
        """
        now = self._clock()
        datasets = {}
        for key, query_id in self._datasets.items():
            snapshot = self._snapshots.get(key, Snapshot())
            age = snapshot.age(now)
            datasets[key] = {
                "query_id": query_id,
                "populated": snapshot.populated,
                "row_count": len(snapshot.rows),
                "fetched_at": snapshot.fetched_at,
                "age_seconds": round(age.total_seconds(), 1) if age is not None else None,
                "stale": self.needs_refresh(key),
            }

        return {
            "datasets": datasets,
            "hits": self._hits,
            "refreshes": self._refreshes,
            "refresh_failures": self._refresh_failures,
            "refresh_interval_seconds": int(self._refresh_interval.total_seconds()),
            "single_flight": self._single_flight,
        }

    def _check_key(self, dataset_key: str) -> None:
        if dataset_key not in self._datasets:
            raise KeyError(f"Unknown dataset: {dataset_key}")

    def _record_hit(self, dataset_key: str) -> None:
        self._hits += 1
        logger.debug(f"Using cached '{dataset_key}' data")
        mon = _get_monitor()
        if mon:
            mon.metrics.record_cache_hit()

    async def _refresh(self, dataset_key: str) -> None:
        query_id = self._datasets[dataset_key]
        self._refreshes += 1
        logger.info(f"Fetching new '{dataset_key}' data from Dune (query {query_id})...")

        mon = _get_monitor()
        if mon:
            mon.metrics.record_cache_miss()

        try:
            rows = await self._data_source.get_latest_rows_async(query_id)
        except DuneAdapterError as e:
            self._record_failure(dataset_key, e)
            return
        except Exception as e:
            logger.exception(f"Unexpected failure refreshing '{dataset_key}'")
            self._record_failure(dataset_key, e)
            return

        self._snapshots[dataset_key] = Snapshot(rows=tuple(rows), fetched_at=self._clock())
        self._generations[dataset_key] += 1
        self._invalidated.discard(dataset_key)
        logger.info(f"Cached {len(rows)} rows for '{dataset_key}'")

        if mon:
            from monitoring import EventType
            mon.activity.add_event(EventType.DATA_REFRESH, subject=dataset_key, rows=len(rows))

    def _record_failure(self, dataset_key: str, error: Exception) -> None:
        self._generations[dataset_key] += 1
        self._refresh_failures += 1
        held = self._snapshots.get(dataset_key)
        logger.error(
            f"Error fetching '{dataset_key}' data: {error} "
            f"({'serving stale snapshot' if held else 'no snapshot available'})"
        )

        mon = _get_monitor()
        if mon:
            from monitoring import EventType
            mon.metrics.record_refresh_failure()
            mon.activity.add_event(
                EventType.DATA_REFRESH_FAILED,
                subject=dataset_key,
                error=str(error),
                stale_available=held is not None
            )
