"""
Aggregator module for the Peanut frame.

Turns raw warehouse rows into user-facing numbers:
- Earnings: peanuts received in replies (rows whose parent is the user)
- Allowance: daily budget minus peanuts the user handed out (replies the user authored)
- Rank / all-time count: read from the separate leaderboard dataset

The events and leaderboard datasets are cached independently and are not
guaranteed to agree with each other at any instant.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field, ValidationError

from adapter.models import EventRow, LeaderboardRow
from services import IdentityCache, SnapshotCache, EVENTS_DATASET, LEADERBOARD_DATASET

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


MARKER = "🥜"
INITIAL_ALLOWANCE = 30
TOP_N = 9

# Reported when the events dataset has never been fetched in this process
DATA_ERROR = "API error"
PLACEHOLDER_NAME = "N/A"


class UserMetrics(BaseModel):
    """Everything the stats card shows for one user."""
    user_id: str = Field(description="FID the metrics were computed for")
    earning_count: int = Field(default=0, ge=0, description="Peanuts received")
    allowance: int = Field(default=INITIAL_ALLOWANCE, ge=0, le=INITIAL_ALLOWANCE, description="Peanuts left to give")
    all_time_count: int = Field(default=0, ge=0, description="All-time peanut count from the leaderboard")
    rank: int = Field(default=1, ge=1, description="1-based leaderboard position")
    display_name: str = Field(default=PLACEHOLDER_NAME, description="Profile name")
    avatar_url: Optional[str] = Field(default=None, description="Profile image URL")
    error: Optional[str] = Field(default=None, description="Set when no event data was ever fetched")


class LeaderboardEntry(BaseModel):
    """One row of the rendered leaderboard."""
    user_id: str = Field(description="FID")
    score: int = Field(ge=0, description="Peanut count")
    rank: int = Field(ge=1, description="1-based position after sorting by score")
    display_name: str = Field(default="", description="Profile name (empty if unresolved)")


# ============================================================================
# Row parsing
# ============================================================================

def normalize_id(value: Any) -> Optional[str]:
    """Render a warehouse ID as a string ("7", not "7.0"); None stays None."""
    if value is None:
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value)


def parse_event_rows(rows: Iterable[Any]) -> List[EventRow]:
    """Parse raw ``{text, fid, parent_fid, timestamp}`` rows, skipping malformed ones."""
    events = []
    for raw in rows:
        if not isinstance(raw, dict) or raw.get("fid") is None:
            continue
        try:
            timestamp = raw.get("timestamp")
            events.append(EventRow(
                text=raw.get("text") or "",
                author_id=normalize_id(raw["fid"]),
                parent_author_id=normalize_id(raw.get("parent_fid")),
                timestamp=str(timestamp) if timestamp is not None else None,
            ))
        except ValidationError as e:
            logger.debug(f"Skipping malformed event row {raw!r}: {e}")
    return events


def parse_leaderboard_rows(rows: Iterable[Any]) -> List[LeaderboardRow]:
    """Parse raw ``{fid, peanut_count}`` rows, skipping malformed ones."""
    parsed = []
    for raw in rows:
        if not isinstance(raw, dict) or raw.get("fid") is None:
            continue
        try:
            parsed.append(LeaderboardRow(
                user_id=normalize_id(raw["fid"]),
                score=int(raw.get("peanut_count") or 0),
            ))
        except (TypeError, ValueError, ValidationError) as e:
            logger.debug(f"Skipping malformed leaderboard row {raw!r}: {e}")
    return parsed


# ============================================================================
# Pure computations
# ============================================================================

def count_markers(text: Optional[str]) -> int:
    """Count peanut glyphs in a cast."""
    return text.count(MARKER) if text else 0


def earning_count_from(events: Iterable[EventRow], user_id: str) -> int:
    """Peanuts in casts replying to ``user_id``; top-level casts never count."""
    return sum(
        count_markers(event.text)
        for event in events
        if event.parent_author_id is not None and event.parent_author_id == user_id
    )


def used_count_from(events: Iterable[EventRow], user_id: str) -> int:
    """
    Peanuts ``user_id`` handed out: markers in replies they authored.

    Top-level casts the user wrote are not counted even when they carry
    markers, which narrows a plain "every authored cast" reading.
    """
    return sum(
        count_markers(event.text)
        for event in events
        if event.author_id == user_id and event.parent_author_id is not None
    )


def allowance_for(used_count: int) -> int:
    return max(0, INITIAL_ALLOWANCE - used_count)


def rank_rows(rows: Iterable[LeaderboardRow]) -> List[LeaderboardEntry]:
    """
    Sort leaderboard rows by score, highest first, and number them 1..N.

    The sort is stable, so tied scores keep their source order.
    """
    ordered = sorted(rows, key=lambda row: row.score, reverse=True)
    return [
        LeaderboardEntry(user_id=row.user_id, score=row.score, rank=position)
        for position, row in enumerate(ordered, start=1)
    ]


def find_entry(entries: Iterable[LeaderboardEntry], user_id: str) -> Optional[LeaderboardEntry]:
    return next((entry for entry in entries if entry.user_id == user_id), None)


# ============================================================================
# Services
# ============================================================================

class MetricsAggregator:
    """
    Computes per-user metrics from the cached datasets.

    Usage:
        aggregator = MetricsAggregator(snapshot_cache, identity_cache)
        metrics = await aggregator.compute_metrics("443855")
    """

    def __init__(self, snapshot_cache: SnapshotCache, identity_cache: Optional[IdentityCache] = None):
        self.snapshot_cache = snapshot_cache
        self.identity_cache = identity_cache

    async def _events(self) -> List[EventRow]:
        snapshot = await self.snapshot_cache.get_snapshot(EVENTS_DATASET)
        return parse_event_rows(snapshot.rows)

    async def earning_count(self, user_id: str) -> int:
        return earning_count_from(await self._events(), user_id)

    async def used_count(self, user_id: str) -> int:
        return used_count_from(await self._events(), user_id)

    async def allowance(self, user_id: str) -> int:
        return allowance_for(await self.used_count(user_id))

    async def ranked_leaderboard(self) -> List[LeaderboardEntry]:
        """Full leaderboard dataset, sorted and ranked."""
        snapshot = await self.snapshot_cache.get_snapshot(LEADERBOARD_DATASET)
        return rank_rows(parse_leaderboard_rows(snapshot.rows))

    async def rank(self, user_id: str) -> int:
        """Leaderboard position, or N+1 if the user is not on the leaderboard."""
        ranked = await self.ranked_leaderboard()
        entry = find_entry(ranked, user_id)
        return entry.rank if entry else len(ranked) + 1

    async def all_time_count(self, user_id: str) -> int:
        """Leaderboard score, falling back to today's earnings for unlisted users."""
        entry = find_entry(await self.ranked_leaderboard(), user_id)
        if entry is not None:
            return entry.score
        earning = await self.earning_count(user_id)
        logger.debug(f"FID {user_id} not on leaderboard, falling back to earnings: {earning}")
        return earning

    async def compute_metrics(self, user_id: str) -> UserMetrics:
        """
        Compute the full stats card for a user.

        Never raises for upstream failures: missing data yields zeros and
        placeholders, and ``error`` is set only if event data was never fetched.
        """
        events_snapshot = await self.snapshot_cache.get_snapshot(EVENTS_DATASET)
        events = parse_event_rows(events_snapshot.rows)

        earning = earning_count_from(events, user_id)
        allowance = allowance_for(used_count_from(events, user_id))
        logger.info(f"Earning count for FID {user_id}: {earning}")

        ranked = await self.ranked_leaderboard()
        entry = find_entry(ranked, user_id)
        if entry is not None:
            rank, all_time = entry.rank, entry.score
        else:
            rank, all_time = len(ranked) + 1, earning
        logger.debug(f"Rank for FID {user_id}: {rank} (all time: {all_time})")

        display_name, avatar_url = PLACEHOLDER_NAME, None
        if self.identity_cache is not None:
            identity = await self.identity_cache.resolve(user_id)
            if identity is not None:
                display_name, avatar_url = identity.display_name, identity.avatar_url

        return UserMetrics(
            user_id=user_id,
            earning_count=earning,
            allowance=allowance,
            all_time_count=all_time,
            rank=rank,
            display_name=display_name,
            avatar_url=avatar_url,
            error=None if events_snapshot.populated else DATA_ERROR,
        )


class LeaderboardBuilder:
    """
    Builds the leaderboard screen: top entries plus the requester's own row.

    The requester's row is always appended last, even when it is already in
    the top entries, so callers must not assume it is positioned by rank.
    """

    def __init__(self, aggregator: MetricsAggregator, directory=None, top_n: int = TOP_N):
        self.aggregator = aggregator
        self.directory = directory
        self.top_n = top_n

    async def build_leaderboard(self, requesting_user_id: str) -> List[LeaderboardEntry]:
        ranked = await self.aggregator.ranked_leaderboard()

        top = [entry.model_copy() for entry in ranked[:self.top_n]]

        own = find_entry(ranked, requesting_user_id)
        if own is not None:
            self_entry = own.model_copy()
        else:
            self_entry = LeaderboardEntry(
                user_id=requesting_user_id,
                score=await self.aggregator.earning_count(requesting_user_id),
                rank=len(ranked) + 1,
            )

        leaderboard = top + [self_entry]
        await self._resolve_names(leaderboard)

        mon = _get_monitor()
        if mon:
            from monitoring import EventType
            mon.activity.add_event(
                EventType.LEADERBOARD_BUILT,
                subject=requesting_user_id,
                entries=len(leaderboard),
                total_ranked=len(ranked)
            )

        return leaderboard

    async def _resolve_names(self, leaderboard: List[LeaderboardEntry]) -> None:
        """Fill display names with one batched directory call; failures leave names empty."""
        if self.directory is None:
            return

        user_ids = list(dict.fromkeys(entry.user_id for entry in leaderboard))
        try:
            records = await self.directory.lookup_socials_async(user_ids)
        except Exception as e:
            logger.error(f"Error fetching Airstack leaderboard data: {e}")
            mon = _get_monitor()
            if mon:
                from monitoring import EventType
                mon.activity.add_event(EventType.IDENTITY_LOOKUP_FAILED, subject="leaderboard", error=str(e))
            return

        names: Dict[str, str] = {record.user_id: record.display_name for record in records}
        for entry in leaderboard:
            if entry.user_id in names:
                entry.display_name = names[entry.user_id]


__all__ = [
    "MARKER",
    "INITIAL_ALLOWANCE",
    "TOP_N",
    "DATA_ERROR",
    "PLACEHOLDER_NAME",
    "UserMetrics",
    "LeaderboardEntry",
    "normalize_id",
    "parse_event_rows",
    "parse_leaderboard_rows",
    "count_markers",
    "earning_count_from",
    "used_count_from",
    "allowance_for",
    "rank_rows",
    "find_entry",
    "MetricsAggregator",
    "LeaderboardBuilder",
]
