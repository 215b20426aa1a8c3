"""
Core services for the Peanut frame backend.
- FrameService: resolves who a request is about and assembles both screens

Architecture:
- Snapshot/identity caches are owned by main and injected here
- Every screen is computed per request from the cached datasets
- Upstream failures degrade to placeholders; a screen is always produced
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional
from urllib.parse import quote, urlencode

from pydantic import BaseModel, Field

from aggregator import (
    LeaderboardBuilder,
    LeaderboardEntry,
    MetricsAggregator,
    UserMetrics,
    MARKER,
)

logger = logging.getLogger(__name__)


DEFAULT_FID = "443855"
SHARE_COMPOSE_URL = "https://warpcast.com/~/compose"


def format_count(value: Optional[int], missing: str = "0") -> str:
    """Format a count with thousands separators (1234 -> '1,234')."""
    if value is None:
        return missing
    return f"{value:,}"


def is_valid_user_id(value: Optional[str]) -> bool:
    """FIDs are positive integers written in ASCII digits."""
    return bool(value) and value.isascii() and value.isdigit() and int(value) > 0


def canonical_user_id(value: str) -> str:
    """Drop leading zeros so typed FIDs match warehouse IDs ("007" -> "7")."""
    return str(int(value))


class StatsScreen(BaseModel):
    """Data behind the stats card frame."""
    metrics: UserMetrics
    share_url: str = Field(description="Warpcast compose link sharing these stats")
    earnings: str = Field(description="Formatted earning count")
    allowance: str = Field(description="Formatted remaining allowance")
    rank: str = Field(description="Formatted rank")
    all_time: str = Field(description="Formatted all-time count")


class LeaderboardScreen(BaseModel):
    """Data behind the leaderboard frame."""
    user_id: str
    entries: List[LeaderboardEntry]


class FrameService:
    """
    Assembles frame screens from the aggregation pipeline.

    Usage:
        service = FrameService(aggregator, builder, public_url="https://frame.example")
        fid = service.resolve_user_id(explicit=input_text, caller=str(signer_fid))
        screen = await service.stats_screen(fid)
    """

    def __init__(
        self,
        aggregator: MetricsAggregator,
        leaderboard_builder: LeaderboardBuilder,
        default_user_id: str = DEFAULT_FID,
        public_url: str = "http://localhost:8000",
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.aggregator = aggregator
        self.leaderboard_builder = leaderboard_builder
        self.default_user_id = default_user_id
        self.public_url = public_url.rstrip("/")
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def resolve_user_id(self, explicit: Optional[str] = None, caller: Optional[str] = None) -> str:
        """
        Pick the FID a request is about.

        An explicitly supplied FID wins over the caller's own FID; if neither
        is a valid FID the configured default is used.
        """
        for candidate in (explicit, caller):
            if candidate is None:
                continue
            candidate = str(candidate).strip()
            if is_valid_user_id(candidate):
                return canonical_user_id(candidate)
            if candidate:
                logger.debug(f"Ignoring invalid FID input {candidate!r}")
        return self.default_user_id

    def build_share_url(self, metrics: UserMetrics) -> str:
        """
        Build a Warpcast compose link for sharing a user's stats.

        The embedded deep link points back at this frame with the user's
        FID, name and avatar as query parameters.
        """
        hash_id = f"hash-{metrics.user_id}-{int(self._clock().timestamp() * 1000)}"
        deep_link = f"{self.public_url}/?" + urlencode({
            "hashid": hash_id,
            "fid": metrics.user_id,
            "username": metrics.display_name,
            "pfpUrl": metrics.avatar_url or "",
        })
        text = (
            f"I earned {metrics.earning_count} {MARKER} today and have "
            f"{metrics.allowance} Allowance left!"
        )
        return f"{SHARE_COMPOSE_URL}?text={quote(text, safe='')}&embeds[]={quote(deep_link, safe='')}"

    async def stats_screen(self, user_id: str) -> StatsScreen:
        metrics = await self.aggregator.compute_metrics(user_id)
        return StatsScreen(
            metrics=metrics,
            share_url=self.build_share_url(metrics),
            earnings=format_count(metrics.earning_count),
            allowance=format_count(metrics.allowance),
            rank=format_count(metrics.rank, missing="N/A"),
            all_time=format_count(metrics.all_time_count),
        )

    async def leaderboard_screen(self, user_id: str) -> LeaderboardScreen:
        entries = await self.leaderboard_builder.build_leaderboard(user_id)
        return LeaderboardScreen(user_id=user_id, entries=entries)

    def frame_url(self, path: str = "/", **params: str) -> str:
        """Absolute URL on this server, with optional query parameters."""
        url = f"{self.public_url}{path}"
        query = {k: v for k, v in params.items() if v is not None}
        return f"{url}?{urlencode(query)}" if query else url


__all__ = [
    "DEFAULT_FID",
    "SHARE_COMPOSE_URL",
    "format_count",
    "is_valid_user_id",
    "canonical_user_id",
    "StatsScreen",
    "LeaderboardScreen",
    "FrameService",
]
