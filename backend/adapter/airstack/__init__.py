"""
Airstack adapter for resolving Farcaster profiles.

One batched GraphQL call maps a set of FIDs to profile name and image.
FIDs the directory does not know are simply absent from the result.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from typing import Iterable, List, Optional

import requests
from dotenv import load_dotenv

from ..models import IdentityRecord

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


SOCIALS_QUERY = """
query ProfileLookup($filter: SocialFilter = {}) {
  Socials(input: {filter: $filter, blockchain: ethereum}) {
    Social {
      profileName
      profileImage
      userId
    }
  }
}
"""

# Only the Farcaster social graph is queried
DAPP_NAME = "farcaster"


class AirstackAdapterError(Exception):
    """Base exception for AirstackAdapter errors."""
    pass


class AirstackAuthenticationError(AirstackAdapterError):
    """Raised when authentication fails."""
    pass


class AirstackRateLimitError(AirstackAdapterError):
    """Raised when rate limit is exceeded."""
    pass


class AirstackAPIError(AirstackAdapterError):
    """Raised when API returns an error."""
    def __init__(self, message: str, status_code: int = None, response_text: str = None):
        super().__init__(message)
        self.status_code = status_code
        self.response_text = response_text


class AirstackAdapter:
    """
    Adapter for the Airstack GraphQL API.

    Usage:
        adapter = AirstackAdapter()  # Uses AIRSTACK_API_KEY env var
        records = adapter.lookup_socials(["443855", "3"])
    """

    GRAPHQL_URL = "https://api.airstack.xyz/gql"

    def __init__(self, api_key: Optional[str] = None, timeout: float = 15):
        self.api_key = api_key or os.environ.get("AIRSTACK_API_KEY")
        self.timeout = timeout

        if not self.api_key:
            logger.warning("No AIRSTACK_API_KEY provided - adapter will fail on API calls")
            self._is_configured = False
        else:
            self._is_configured = True

        self.headers = {
            "Content-Type": "application/json",
            "Authorization": self.api_key or "",
        }

    @property
    def is_configured(self) -> bool:
        """Check if adapter is properly configured with credentials."""
        return self._is_configured

    def _build_variables(self, user_ids: List[str]) -> dict:
        return {
            "filter": {
                "dappName": {"_eq": DAPP_NAME},
                "userId": {"_in": user_ids},
            }
        }

    def _parse_social(self, social: dict) -> Optional[IdentityRecord]:
        """Convert one ``Social`` node to an IdentityRecord (None if it has no userId)."""
        user_id = social.get("userId")
        if user_id is None:
            return None
        return IdentityRecord(
            user_id=str(user_id),
            display_name=social.get("profileName") or "N/A",
            avatar_url=social.get("profileImage") or None,
        )

    def lookup_socials(self, user_ids: Iterable[str]) -> List[IdentityRecord]:
        """
        Resolve a batch of FIDs to profile records.

        Args:
            user_ids: FIDs to look up (duplicates are collapsed)

        Returns:
            One IdentityRecord per FID the directory knows about

        Raises:
            AirstackAuthenticationError: If not configured or the key is rejected
            AirstackRateLimitError: If rate limit exceeded
            AirstackAPIError: If API returns an error or cannot be reached
        """
        if not self._is_configured:
            raise AirstackAuthenticationError("Airstack adapter not configured - set AIRSTACK_API_KEY")

        ids = list(dict.fromkeys(str(uid) for uid in user_ids))
        if not ids:
            return []

        payload = {"query": SOCIALS_QUERY, "variables": self._build_variables(ids)}

        try:
            start_time_ms = time.time() * 1000
            response = requests.post(
                self.GRAPHQL_URL,
                headers=self.headers,
                json=payload,
                timeout=self.timeout
            )
            latency_ms = (time.time() * 1000) - start_time_ms

            mon = _get_monitor()
            if mon:
                mon.metrics.record_directory_call(latency_ms, error=response.status_code >= 400)

            if response.status_code in (401, 403):
                raise AirstackAuthenticationError("Invalid Airstack API key")
            elif response.status_code == 429:
                raise AirstackRateLimitError("Airstack API rate limit exceeded")
            elif response.status_code >= 400:
                raise AirstackAPIError(
                    f"Airstack API error: {response.status_code}",
                    status_code=response.status_code,
                    response_text=response.text
                )

            data = response.json()
            if data.get("errors"):
                message = data["errors"][0].get("message", "unknown error")
                raise AirstackAPIError(f"Airstack GraphQL error: {message}")

            socials = ((data.get("data") or {}).get("Socials") or {}).get("Social") or []

            records = []
            for social in socials:
                record = self._parse_social(social)
                if record is not None:
                    records.append(record)

            logger.info(f"Resolved {len(records)}/{len(ids)} Farcaster profiles")
            return records

        except requests.exceptions.Timeout:
            raise AirstackAPIError("Airstack API request timed out")
        except requests.exceptions.ConnectionError:
            raise AirstackAPIError("Failed to connect to Airstack API")
        except (AirstackAuthenticationError, AirstackRateLimitError, AirstackAPIError):
            raise
        except Exception as e:
            raise AirstackAPIError(f"Unexpected error: {e}")

    async def lookup_socials_async(self, user_ids: Iterable[str]) -> List[IdentityRecord]:
        """
        Async version of lookup_socials.
        Runs the blocking HTTP call in a thread pool to avoid blocking the event loop.
        """
        return await asyncio.to_thread(self.lookup_socials, list(user_ids))


__all__ = [
    "AirstackAdapter",
    "AirstackAdapterError",
    "AirstackAuthenticationError",
    "AirstackRateLimitError",
    "AirstackAPIError",
    "IdentityRecord",  # Re-export for convenience
]
