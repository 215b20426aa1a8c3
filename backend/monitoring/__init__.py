"""
Monitoring and observability module for the Peanut frame.

Provides real-time metrics and insights for:
- System health
- Snapshot cache behaviour (hits, refreshes, failures)
- External API calls (Dune, Airstack)
- Request latencies
- Activity feed
"""

from __future__ import annotations

import time
import logging
from datetime import datetime, timezone, timedelta
from typing import Dict, List, Any, Optional
from dataclasses import dataclass
from collections import deque
from enum import Enum

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Types of system events."""
    DATA_REFRESH = "data_refresh"
    DATA_REFRESH_FAILED = "data_refresh_failed"
    IDENTITY_LOOKUP = "identity_lookup"
    IDENTITY_LOOKUP_FAILED = "identity_lookup_failed"
    LEADERBOARD_BUILT = "leaderboard_built"
    ERROR = "error"


@dataclass
class SystemEvent:
    """A recorded system event."""
    timestamp: datetime
    event_type: EventType
    subject: Optional[str]
    details: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "subject": self.subject,
            "details": self.details,
            "age_seconds": (datetime.now(timezone.utc) - self.timestamp).total_seconds()
        }


class LatencySeries:
    """Call counter with a bounded latency window."""

    def __init__(self, max_samples: int = 1000):
        self.calls = 0
        self.errors = 0
        self._latencies: deque = deque(maxlen=max_samples)

    def record(self, latency_ms: float, error: bool = False) -> None:
        self.calls += 1
        self._latencies.append(latency_ms)
        if error:
            self.errors += 1

    def summary(self) -> Dict[str, Any]:
        error_rate = self.errors / self.calls if self.calls > 0 else 0
        return {
            "calls": self.calls,
            "errors": self.errors,
            "error_rate": f"{error_rate:.1%}",
            "latency_ms": _calculate_percentiles(list(self._latencies)),
        }


def _calculate_percentiles(values: List[float]) -> Dict[str, float]:
    """Calculate p50, p95, p99 percentiles."""
    if not values:
        return {"p50": 0, "p95": 0, "p99": 0, "avg": 0}

    sorted_values = sorted(values)
    n = len(sorted_values)

    return {
        "p50": sorted_values[int(n * 0.50)],
        "p95": sorted_values[int(n * 0.95)],
        "p99": sorted_values[int(n * 0.99)],
        "avg": sum(values) / n,
    }


class MetricsCollector:
    """
    Collects and aggregates system metrics.

    Tracks:
    - Request counts per endpoint
    - Latency distributions
    - Snapshot cache performance
    - Dune / Airstack call health
    """

    def __init__(self):
        self._start_time = time.time()
        self._requests: Dict[str, LatencySeries] = {}

        # Snapshot cache metrics
        self._cache_hits = 0
        self._cache_misses = 0
        self._refresh_failures = 0

        # Identity cache metrics
        self._identity_hits = 0
        self._identity_misses = 0

        self._dune = LatencySeries()
        self._directory = LatencySeries()

    def record_request(self, endpoint: str, latency_ms: float, error: bool = False) -> None:
        """Record an API request."""
        if endpoint not in self._requests:
            self._requests[endpoint] = LatencySeries()
        self._requests[endpoint].record(latency_ms, error=error)

    def record_cache_hit(self) -> None:
        """Record a snapshot served without a refresh."""
        self._cache_hits += 1

    def record_cache_miss(self) -> None:
        """Record a snapshot that had to be refreshed."""
        self._cache_misses += 1

    def record_refresh_failure(self) -> None:
        self._refresh_failures += 1

    def record_identity_hit(self) -> None:
        self._identity_hits += 1

    def record_identity_miss(self) -> None:
        self._identity_misses += 1

    def record_dune_call(self, latency_ms: float, error: bool = False) -> None:
        """Record a Dune API call."""
        self._dune.record(latency_ms, error=error)

    def record_directory_call(self, latency_ms: float, error: bool = False) -> None:
        """Record an Airstack API call."""
        self._directory.record(latency_ms, error=error)

    def get_metrics(self) -> Dict[str, Any]:
        """Get all collected metrics."""
        uptime = time.time() - self._start_time

        total_cache = self._cache_hits + self._cache_misses
        cache_hit_rate = self._cache_hits / total_cache if total_cache > 0 else 0
        total_identity = self._identity_hits + self._identity_misses
        identity_hit_rate = self._identity_hits / total_identity if total_identity > 0 else 0

        return {
            "uptime_seconds": int(uptime),
            "uptime_human": self._format_duration(uptime),

            "requests": {
                "total": sum(s.calls for s in self._requests.values()),
                "by_endpoint": {k: s.calls for k, s in self._requests.items()},
                "errors": {k: s.errors for k, s in self._requests.items() if s.errors},
            },

            "snapshot_cache": {
                "hits": self._cache_hits,
                "misses": self._cache_misses,
                "refresh_failures": self._refresh_failures,
                "hit_rate": f"{cache_hit_rate:.1%}",
            },

            "identity_cache": {
                "hits": self._identity_hits,
                "misses": self._identity_misses,
                "hit_rate": f"{identity_hit_rate:.1%}",
            },

            "dune_api": self._dune.summary(),
            "airstack_api": self._directory.summary(),
        }

    def _format_duration(self, seconds: float) -> str:
        """Format duration as human-readable string."""
        if seconds < 60:
            return f"{int(seconds)}s"
        elif seconds < 3600:
            return f"{int(seconds // 60)}m {int(seconds % 60)}s"
        else:
            hours = int(seconds // 3600)
            minutes = int((seconds % 3600) // 60)
            return f"{hours}h {minutes}m"


class ActivityFeed:
    """
    Real-time activity feed for system events.

    Stores recent events for live monitoring.
    """

    def __init__(self, max_events: int = 500):
        self.max_events = max_events
        self._events: deque = deque(maxlen=max_events)

    def add_event(
        self,
        event_type: EventType,
        subject: Optional[str] = None,
        **details
    ) -> None:
        """Add an event to the feed."""
        event = SystemEvent(
            timestamp=datetime.now(timezone.utc),
            event_type=event_type,
            subject=subject,
            details=details
        )
        self._events.append(event)

    def get_recent(self, limit: int = 50, event_type: Optional[EventType] = None) -> List[Dict]:
        """Get recent events, optionally filtered by type."""
        events = list(self._events)

        if event_type:
            events = [e for e in events if e.event_type == event_type]

        # Return most recent first
        events = sorted(events, key=lambda e: e.timestamp, reverse=True)
        return [e.to_dict() for e in events[:limit]]

    def get_event_counts(self, since_minutes: int = 5) -> Dict[str, int]:
        """Get event counts by type since N minutes ago."""
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=since_minutes)

        counts: Dict[str, int] = {}
        for event in self._events:
            if event.timestamp >= cutoff:
                key = event.event_type.value
                counts[key] = counts.get(key, 0) + 1

        return counts


class SystemMonitor:
    """
    Central monitoring hub for the frame server.

    Aggregates metrics from all components.
    """

    def __init__(self):
        self.metrics = MetricsCollector()
        self.activity = ActivityFeed()
        self._component_status: Dict[str, Dict[str, Any]] = {}

    def set_component_status(
        self,
        component: str,
        status: str,
        details: Optional[Dict[str, Any]] = None
    ) -> None:
        """Set status for a component."""
        self._component_status[component] = {
            "status": status,
            "last_updated": datetime.now(timezone.utc).isoformat(),
            "details": details or {}
        }

    def get_health_status(self) -> Dict[str, Any]:
        """Get overall system health status."""
        statuses = [c.get("status", "unknown") for c in self._component_status.values()]

        if statuses and all(s == "healthy" for s in statuses):
            overall = "healthy"
        elif any(s == "error" for s in statuses):
            overall = "degraded"
        elif any(s == "warning" for s in statuses):
            overall = "warning"
        else:
            overall = "unknown"

        return {
            "status": overall,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "components": self._component_status,
        }

    def get_dashboard_data(self) -> Dict[str, Any]:
        """Get all data needed for a monitoring dashboard."""
        return {
            "health": self.get_health_status(),
            "metrics": self.metrics.get_metrics(),
            "recent_activity": self.activity.get_recent(limit=20),
            "event_counts_5m": self.activity.get_event_counts(since_minutes=5),
        }


# Global monitor instance
monitor = SystemMonitor()


__all__ = [
    "SystemMonitor",
    "MetricsCollector",
    "ActivityFeed",
    "EventType",
    "SystemEvent",
    "monitor",
]
