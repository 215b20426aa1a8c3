"""
End-to-end API tests with mock data.

Tests the full flow: API → FrameService → Aggregator → Caches → Adapters (mocked) → Response
"""

import pytest
from unittest.mock import Mock, AsyncMock
from urllib.parse import parse_qs, urlsplit
from fastapi.testclient import TestClient

from main import app
from adapter.dune import DuneAPIError
from adapter.models import IdentityRecord
from aggregator import DATA_ERROR, LeaderboardBuilder, MetricsAggregator
from core import FrameService
from services import EVENTS_DATASET, LEADERBOARD_DATASET, IdentityCache, SnapshotCache


PUBLIC_URL = "https://frame.example"
EVENTS_QUERY = 4801893
LEADERBOARD_QUERY = 4801919

EVENTS = [
    {"text": "🥜🥜", "fid": 5, "parent_fid": 7},
    {"text": "🥜", "fid": 5, "parent_fid": None},
]

LEADERBOARD = [
    {"fid": "1", "peanut_count": 10},
    {"fid": "2", "peanut_count": 30},
    {"fid": "3", "peanut_count": 20},
]

PROFILES = {
    "2": IdentityRecord(user_id="2", display_name="bob"),
    "7": IdentityRecord(user_id="7", display_name="carol", avatar_url="https://img.example/c.png"),
}


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def mock_dune_adapter():
    """Create a mock Dune adapter serving both saved queries."""
    adapter = Mock()
    adapter.is_configured = True

    async def fetch(query_id):
        return {EVENTS_QUERY: EVENTS, LEADERBOARD_QUERY: LEADERBOARD}[query_id]

    adapter.get_latest_rows_async = AsyncMock(side_effect=fetch)
    return adapter


@pytest.fixture
def mock_airstack_adapter():
    """Create a mock Airstack adapter that knows a few profiles."""
    adapter = Mock()
    adapter.is_configured = True

    async def lookup(user_ids):
        return [PROFILES[uid] for uid in user_ids if uid in PROFILES]

    adapter.lookup_socials_async = AsyncMock(side_effect=lookup)
    return adapter


def wire_app(dune_adapter, airstack_adapter):
    """Build the service graph over the given adapters and inject it."""
    from api import set_dependencies

    snapshot_cache = SnapshotCache(
        data_source=dune_adapter,
        datasets={EVENTS_DATASET: EVENTS_QUERY, LEADERBOARD_DATASET: LEADERBOARD_QUERY},
    )
    identity_cache = IdentityCache(directory=airstack_adapter)
    aggregator = MetricsAggregator(snapshot_cache, identity_cache)
    builder = LeaderboardBuilder(aggregator, directory=airstack_adapter)
    service = FrameService(aggregator, builder, public_url=PUBLIC_URL)

    set_dependencies(service, snapshot_cache, identity_cache)
    return snapshot_cache, identity_cache


@pytest.fixture
def client(mock_dune_adapter, mock_airstack_adapter):
    """Test client with mocked adapters injected."""
    wire_app(mock_dune_adapter, mock_airstack_adapter)
    return TestClient(app)


def meta(prop, content):
    return f'<meta property="{prop}" content="{content}" />'


# ============================================================================
# Frame pages
# ============================================================================

class TestStatsFrame:
    """Test the stats frame page."""

    def test_initial_frame_default_fid(self, client):
        """Test the first render falls back to the default FID."""
        response = client.get("/")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/html")
        html = response.text
        assert meta("fc:frame", "vNext") in html
        assert meta("fc:frame:image", f"{PUBLIC_URL}/image/stats?fid=443855") in html
        assert meta("fc:frame:post_url", f"{PUBLIC_URL}/") in html
        assert meta("fc:frame:input:text", "Enter Farcaster FID...") in html
        assert meta("fc:frame:button:1", "Check") in html
        assert meta("fc:frame:button:2", "Leaderboard") in html
        assert meta("fc:frame:button:3:action", "link") in html
        assert "fc:frame:button:4" not in html

    def test_initial_frame_with_fid(self, client):
        """Test a share deep link selects the FID."""
        response = client.get("/", params={"fid": "7"})

        assert meta("fc:frame:image", f"{PUBLIC_URL}/image/stats?fid=7") in response.text
        assert meta("fc:frame:button:2:target", f"{PUBLIC_URL}/leaderboard?fid=7") in response.text

    def test_post_input_text_wins(self, client):
        """Test typed FID takes precedence over the clicking user."""
        response = client.post("/", json={
            "untrustedData": {"fid": 5, "inputText": "7", "buttonIndex": 1}
        })

        assert response.status_code == 200
        assert meta("fc:frame:image", f"{PUBLIC_URL}/image/stats?fid=7") in response.text
        assert meta("fc:frame:button:4", "Reset") in response.text

    def test_post_invalid_input_uses_caller(self, client):
        response = client.post("/", json={
            "untrustedData": {"fid": 5, "inputText": "not a fid", "buttonIndex": 1}
        })

        assert meta("fc:frame:image", f"{PUBLIC_URL}/image/stats?fid=5") in response.text

    def test_post_unicode_digit_input_uses_caller(self, client):
        """Test a superscript digit in the input is ignored rather than failing."""
        response = client.post("/", json={
            "untrustedData": {"fid": 5, "inputText": "²", "buttonIndex": 1}
        })

        assert response.status_code == 200
        assert meta("fc:frame:image", f"{PUBLIC_URL}/image/stats?fid=5") in response.text

    def test_post_leading_zeros_canonicalized(self, client):
        response = client.post("/", json={
            "untrustedData": {"fid": 5, "inputText": "007", "buttonIndex": 1}
        })

        assert meta("fc:frame:image", f"{PUBLIC_URL}/image/stats?fid=7") in response.text

    def test_frame_page_does_not_fetch_data(self, client, mock_dune_adapter, mock_airstack_adapter):
        """Test the frame page only links to the card and share route."""
        response = client.get("/", params={"fid": "7"})

        assert meta("fc:frame:button:3:target", f"{PUBLIC_URL}/share?fid=7") in response.text
        assert mock_dune_adapter.get_latest_rows_async.await_count == 0
        assert mock_airstack_adapter.lookup_socials_async.await_count == 0

    def test_post_reset_ignores_input(self, client):
        """Test Reset returns to the clicking user's own stats."""
        response = client.post("/", json={
            "untrustedData": {"fid": 5, "inputText": "7", "buttonIndex": 4}
        })

        assert meta("fc:frame:image", f"{PUBLIC_URL}/image/stats?fid=5") in response.text

    def test_post_without_body(self, client):
        response = client.post("/")

        assert response.status_code == 200
        assert meta("fc:frame:image", f"{PUBLIC_URL}/image/stats?fid=443855") in response.text


class TestLeaderboardFrame:
    """Test the leaderboard frame page."""

    def test_leaderboard_frame(self, client):
        response = client.post("/leaderboard", params={"fid": "5"}, json={
            "untrustedData": {"fid": 9, "buttonIndex": 2}
        })

        assert response.status_code == 200
        html = response.text
        assert meta("fc:frame:image", f"{PUBLIC_URL}/image/leaderboard?fid=5") in html
        assert meta("fc:frame:button:1", "Back") in html
        assert "fc:frame:input:text" not in html

    def test_leaderboard_frame_get_default(self, client):
        response = client.get("/leaderboard")

        assert meta("fc:frame:image", f"{PUBLIC_URL}/image/leaderboard?fid=443855") in response.text


class TestShareRedirect:
    """Test the share button target."""

    def test_share_redirects_to_compose(self, client):
        """Test the redirect carries the user's current numbers."""
        response = client.get("/share", params={"fid": "7"}, follow_redirects=False)

        assert response.status_code == 302
        location = response.headers["location"]
        assert location.startswith("https://warpcast.com/~/compose?text=")
        text = parse_qs(urlsplit(location).query)["text"][0]
        assert text == "I earned 2 🥜 today and have 30 Allowance left!"

    def test_share_invalid_fid_uses_default(self, client):
        response = client.get("/share", params={"fid": "①"}, follow_redirects=False)

        assert response.status_code == 302
        embed = parse_qs(urlsplit(response.headers["location"]).query)["embeds[]"][0]
        assert parse_qs(urlsplit(embed).query)["fid"] == ["443855"]


class TestImages:
    """Test the SVG cards."""

    def test_stats_image(self, client):
        """Test the stats card for a recipient with a resolved profile."""
        response = client.get("/image/stats", params={"fid": "7"})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("image/svg+xml")
        assert "FID: 7" in response.text
        assert "carol" in response.text
        assert "https://img.example/c.png" in response.text

    def test_leaderboard_image(self, client):
        """Test top rows plus the requester's row."""
        response = client.get("/image/leaderboard", params={"fid": "5"})

        assert response.status_code == 200
        svg = response.text
        assert "1. bob" in svg
        assert "2. FID: 3" in svg
        assert "3. FID: 1" in svg
        assert "4. FID: 5" in svg


# ============================================================================
# JSON API
# ============================================================================

class TestMetricsEndpoints:
    """Test per-user JSON endpoints."""

    def test_metrics_for_giver(self, client):
        """Test the giver's allowance is reduced by replies they authored."""
        response = client.get("/api/v1/users/5/metrics")

        assert response.status_code == 200
        data = response.json()
        assert data["user_id"] == "5"
        assert data["earning_count"] == 0
        assert data["allowance"] == 28
        assert data["rank"] == 4
        assert data["all_time_count"] == 0
        assert data["display_name"] == "N/A"
        assert data["error"] is None

    def test_metrics_for_recipient(self, client):
        data = client.get("/api/v1/users/7/metrics").json()

        assert data["earning_count"] == 2
        assert data["allowance"] == 30
        assert data["all_time_count"] == 2
        assert data["display_name"] == "carol"

    def test_metrics_for_leader(self, client):
        data = client.get("/api/v1/users/2/metrics").json()

        assert data["rank"] == 1
        assert data["all_time_count"] == 30

    def test_stats(self, client):
        data = client.get("/api/v1/users/7/stats").json()

        assert data["earnings"] == "2"
        assert data["allowance"] == "30"
        assert data["share_url"].startswith("https://warpcast.com/~/compose?text=")

    def test_leaderboard(self, client):
        """Test the requester row is appended even when already listed."""
        data = client.get("/api/v1/users/2/leaderboard").json()

        assert [e["user_id"] for e in data] == ["2", "3", "1", "2"]
        assert data[-1]["rank"] == 1
        assert data[0]["display_name"] == "bob"

    def test_invalid_fid(self, client):
        response = client.get("/api/v1/users/abc/metrics")

        assert response.status_code == 400

    def test_unicode_digit_fid_rejected(self, client):
        """Test a superscript digit is a client error, not a server error."""
        assert client.get("/api/v1/users/²/metrics").status_code == 400
        assert client.get("/api/v1/users/①/leaderboard").status_code == 400

    def test_leading_zero_fid_canonicalized(self, client):
        data = client.get("/api/v1/users/007/metrics").json()

        assert data["user_id"] == "7"
        assert data["earning_count"] == 2

    def test_upstream_failure_sets_error(self, mock_airstack_adapter):
        """Test a warehouse outage still yields a stats card with the error set."""
        dune = Mock()
        dune.get_latest_rows_async = AsyncMock(side_effect=DuneAPIError("Dune API error: 500", status_code=500))
        wire_app(dune, mock_airstack_adapter)
        client = TestClient(app)

        data = client.get("/api/v1/users/5/metrics").json()

        assert data["error"] == DATA_ERROR
        assert data["earning_count"] == 0
        assert data["allowance"] == 30
        assert data["rank"] == 1

        image = client.get("/image/stats", params={"fid": "5"})
        assert image.status_code == 200
        assert DATA_ERROR in image.text


class TestCacheEndpoints:
    """Test health and cache administration."""

    def test_health_degraded_before_fetch(self, client):
        response = client.get("/api/v1/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "degraded"
        assert data["datasets"] == {EVENTS_DATASET: False, LEADERBOARD_DATASET: False}

    def test_health_after_fetch(self, client):
        client.get("/api/v1/users/5/metrics")

        data = client.get("/api/v1/health").json()

        assert data["status"] == "healthy"
        assert data["identity_cache_entries"] == 0

    def test_cache_stats(self, client):
        client.get("/api/v1/users/7/metrics")

        data = client.get("/api/v1/cache").json()

        assert data["snapshots"]["refreshes"] == 2
        assert data["identities"]["entries"] == 1

    def test_invalidate(self, client, mock_dune_adapter):
        """Test invalidation forces a fresh fetch on the next request."""
        client.get("/api/v1/users/5/metrics")
        assert mock_dune_adapter.get_latest_rows_async.await_count == 2

        response = client.post(f"/api/v1/cache/{EVENTS_DATASET}/invalidate")
        assert response.status_code == 200
        assert response.json() == {"dataset": EVENTS_DATASET, "invalidated": True}

        client.get("/api/v1/users/5/metrics")
        assert mock_dune_adapter.get_latest_rows_async.await_count == 3

    def test_invalidate_unknown_dataset(self, client):
        response = client.post("/api/v1/cache/unknown/invalidate")

        assert response.status_code == 404


class TestMonitoringEndpoints:
    """Test monitoring routes."""

    def test_dashboard(self, client):
        data = client.get("/api/v1/monitor/dashboard").json()

        assert "health" in data
        assert "metrics" in data
        assert "recent_activity" in data

    def test_metrics(self, client):
        client.get("/api/v1/users/5/metrics")

        data = client.get("/api/v1/monitor/metrics").json()

        assert data["requests"]["total"] >= 1
        assert "snapshot_cache" in data

    def test_activity_filter(self, client):
        client.get("/api/v1/users/5/leaderboard")

        data = client.get("/api/v1/monitor/activity", params={"event_type": "leaderboard_built"}).json()

        assert len(data["events"]) >= 1
        assert all(e["event_type"] == "leaderboard_built" for e in data["events"])

    def test_activity_invalid_type(self, client):
        response = client.get("/api/v1/monitor/activity", params={"event_type": "bogus"})

        assert response.status_code == 400


class TestNotInitialized:
    """Test routes before dependencies are injected."""

    def test_service_unavailable(self):
        from api import set_dependencies

        set_dependencies(None, None, None)
        client = TestClient(app)

        assert client.get("/").status_code == 503
        assert client.get("/api/v1/users/5/metrics").status_code == 503
        assert client.get("/api/v1/health").status_code == 503
