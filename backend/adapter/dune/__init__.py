"""
Dune Analytics adapter for the Peanut frame.

Fetches the latest materialized result of a saved query. Both the events
query (casts containing peanuts) and the leaderboard query are read this way.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from typing import Any, Dict, List, Optional

import requests
from dotenv import load_dotenv

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

load_dotenv()

logger = logging.getLogger(__name__)


class DuneAdapterError(Exception):
    """Base exception for DuneAdapter errors."""
    pass


class DuneAuthenticationError(DuneAdapterError):
    """Raised when authentication fails."""
    pass


class DuneRateLimitError(DuneAdapterError):
    """Raised when rate limit is exceeded."""
    def __init__(self, message: str, retry_after: int = None):
        super().__init__(message)
        self.retry_after = retry_after  # Seconds suggested by the API


class DuneAPIError(DuneAdapterError):
    """Raised when API returns an error."""
    def __init__(self, message: str, status_code: int = None, response_text: str = None):
        super().__init__(message)
        self.status_code = status_code
        self.response_text = response_text


class DuneAdapter:
    """
    Adapter for the Dune Analytics API v1.

    Usage:
        adapter = DuneAdapter()  # Uses DUNE_API_KEY env var
        rows = adapter.get_latest_rows(4801893)
    """

    BASE_URL = "https://api.dune.com/api/v1"

    def __init__(self, api_key: Optional[str] = None, timeout: float = 15):
        """
        Initialize the Dune adapter.

        Args:
            api_key: Dune API key (or set DUNE_API_KEY env var)
            timeout: Per-request timeout in seconds
        """
        self.api_key = api_key or os.environ.get("DUNE_API_KEY")
        self.timeout = timeout

        if not self.api_key:
            logger.warning("No DUNE_API_KEY provided - adapter will fail on API calls")
            self._is_configured = False
        else:
            self._is_configured = True

        self.headers = {"X-Dune-API-Key": self.api_key or ""}

    @property
    def is_configured(self) -> bool:
        """Check if adapter is properly configured with credentials."""
        return self._is_configured

    def get_latest_result(self, query_id: int) -> Dict[str, Any]:
        """
        Fetch the latest stored execution result of a saved query.

        Args:
            query_id: Dune query ID

        Returns:
            Raw JSON payload (execution metadata plus ``result.rows``)

        Raises:
            DuneAuthenticationError: If not configured or the key is rejected
            DuneRateLimitError: If rate limit exceeded
            DuneAPIError: If API returns an error or cannot be reached
        """
        if not self._is_configured:
            raise DuneAuthenticationError("Dune adapter not configured - set DUNE_API_KEY")

        url = f"{self.BASE_URL}/query/{query_id}/results"

        try:
            start_time_ms = time.time() * 1000
            response = requests.get(url, headers=self.headers, timeout=self.timeout)
            latency_ms = (time.time() * 1000) - start_time_ms

            mon = _get_monitor()
            if mon:
                mon.metrics.record_dune_call(latency_ms, error=response.status_code >= 400)

            if response.status_code == 401:
                raise DuneAuthenticationError("Invalid Dune API key")
            elif response.status_code == 429:
                retry_after = response.headers.get("retry-after")
                raise DuneRateLimitError(
                    "Dune API rate limit exceeded",
                    retry_after=int(retry_after) if retry_after else None
                )
            elif response.status_code >= 400:
                raise DuneAPIError(
                    f"Dune API error: {response.status_code}",
                    status_code=response.status_code,
                    response_text=response.text
                )

            data = response.json()
            if not isinstance(data, dict):
                raise DuneAPIError("Unexpected Dune response payload")

            logger.info(
                f"Fetched query {query_id} result "
                f"(state={data.get('state', 'unknown')}, {latency_ms:.0f}ms)"
            )
            return data

        except requests.exceptions.Timeout:
            raise DuneAPIError("Dune API request timed out")
        except requests.exceptions.ConnectionError:
            raise DuneAPIError("Failed to connect to Dune API")
        except (DuneAuthenticationError, DuneRateLimitError, DuneAPIError):
            raise
        except Exception as e:
            raise DuneAPIError(f"Unexpected error: {e}")

    def get_latest_rows(self, query_id: int) -> List[Dict[str, Any]]:
        """
        Fetch only the result rows of a saved query.

        Non-object rows are dropped; an absent ``result`` yields an empty list.
        """
        data = self.get_latest_result(query_id)
        rows = (data.get("result") or {}).get("rows") or []
        return [row for row in rows if isinstance(row, dict)]

    async def get_latest_rows_async(self, query_id: int) -> List[Dict[str, Any]]:
        """
        Async version of get_latest_rows.
        Runs the blocking HTTP call in a thread pool to avoid blocking the event loop.
        """
        return await asyncio.to_thread(self.get_latest_rows, query_id)


__all__ = [
    "DuneAdapter",
    "DuneAdapterError",
    "DuneAuthenticationError",
    "DuneRateLimitError",
    "DuneAPIError",
]
