"""
Identity cache for Farcaster profile records.

Successful lookups are memoized per FID with an LRU bound and an optional
TTL. Failed or empty lookups are never memoized, so a later call retries.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from adapter.airstack import AirstackAdapterError
from adapter.models import IdentityRecord

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


@dataclass
class CachedIdentity:
    """A memoized identity record with its insertion time."""
    record: IdentityRecord
    cached_at: datetime


class IdentityCache:
    """
    Bounded key-value cache of IdentityRecord by user ID.

    ``ttl_seconds`` of None (or 0) keeps records for the process lifetime;
    otherwise records older than the TTL are dropped on access. When more
    than ``max_entries`` records are held the least recently used is evicted.
    """

    def __init__(
        self,
        directory=None,
        max_entries: int = 10000,
        ttl_seconds: Optional[float] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Args:
            directory: Object exposing ``async lookup_socials_async(user_ids)``
            max_entries: Maximum number of records held
            ttl_seconds: Record lifetime (None/0 = never expires)
            clock: Returns the current time (defaults to UTC now)
        """
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")

        self._directory = directory
        self._max_entries = max_entries
        self._ttl = timedelta(seconds=ttl_seconds) if ttl_seconds else None
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._entries: "OrderedDict[str, CachedIdentity]" = OrderedDict()

        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def __len__(self) -> int:
        return len(self._entries)

    def lookup(self, user_id: str) -> Optional[IdentityRecord]:
        """Return the memoized record for ``user_id``, or None on a miss."""
        cached = self._entries.get(user_id)
        if cached is None:
            return None

        if self._ttl is not None and self._clock() - cached.cached_at >= self._ttl:
            del self._entries[user_id]
            logger.debug(f"Identity for FID {user_id} expired")
            return None

        self._entries.move_to_end(user_id)
        return cached.record

    def store(self, record: IdentityRecord) -> None:
        self._entries[record.user_id] = CachedIdentity(record=record, cached_at=self._clock())
        self._entries.move_to_end(record.user_id)

        while len(self._entries) > self._max_entries:
            evicted, _ = self._entries.popitem(last=False)
            self._evictions += 1
            logger.debug(f"Evicted identity for FID {evicted}")

    async def resolve(self, user_id: str) -> Optional[IdentityRecord]:
        """
        Resolve a FID to its profile, consulting the directory on a miss.

        Returns:
            The record, or None if the directory failed or does not know the FID
        """
        mon = _get_monitor()

        record = self.lookup(user_id)
        if record is not None:
            self._hits += 1
            logger.debug(f"Identity cache hit for FID {user_id}")
            if mon:
                mon.metrics.record_identity_hit()
            return record

        self._misses += 1
        if mon:
            mon.metrics.record_identity_miss()

        if self._directory is None:
            return None

        logger.info(f"Looking up Farcaster profile for FID {user_id}")
        try:
            records = await self._directory.lookup_socials_async([user_id])
        except AirstackAdapterError as e:
            self._record_failure(user_id, e)
            return None
        except Exception as e:
            logger.exception(f"Unexpected failure looking up FID {user_id}")
            self._record_failure(user_id, e)
            return None

        record = next((r for r in records if r.user_id == user_id), None)
        if record is None:
            logger.info(f"No Farcaster profile found for FID {user_id}")
            return None

        self.store(record)
        if mon:
            from monitoring import EventType
            mon.activity.add_event(EventType.IDENTITY_LOOKUP, subject=user_id)
        return record

    def clear(self) -> int:
        count = len(self._entries)
        self._entries.clear()
        return count

    def get_stats(self) -> Dict[str, Any]:
        return {
            "entries": len(self._entries),
            "max_entries": self._max_entries,
            "ttl_seconds": int(self._ttl.total_seconds()) if self._ttl else None,
            "hits": self._hits,
            "misses": self._misses,
            "evictions": self._evictions,
        }

    def _record_failure(self, user_id: str, error: Exception) -> None:
        logger.error(f"Error fetching Airstack data for FID {user_id}: {error}")
        mon = _get_monitor()
        if mon:
            from monitoring import EventType
            mon.activity.add_event(EventType.IDENTITY_LOOKUP_FAILED, subject=user_id, error=str(error))
