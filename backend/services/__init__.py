"""
Services module for the Peanut frame backend.
"""

from .identity_cache import IdentityCache, CachedIdentity
from .snapshot_cache import (
    SnapshotCache,
    Snapshot,
    EVENTS_DATASET,
    LEADERBOARD_DATASET,
    DEFAULT_REFRESH_INTERVAL,
)

__all__ = [
    "IdentityCache",
    "CachedIdentity",
    "SnapshotCache",
    "Snapshot",
    "EVENTS_DATASET",
    "LEADERBOARD_DATASET",
    "DEFAULT_REFRESH_INTERVAL",
]
