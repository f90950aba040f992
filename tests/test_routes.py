import pytest
from fastapi.testclient import TestClient

from conftest import FakeProvider, make_page, settle
from tourfeed.api import routes
from tourfeed.core.errors import NetworkError
from tourfeed.main import app
from tourfeed.services.feed_registry import FeedRegistry

KEYWORD_ANCHOR = {"anchor": {"kind": "keyword", "keyword": "palace"}}


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def client(fake_provider):
    with TestClient(app) as test_client:
        app.state.feeds = FeedRegistry(fake_provider, max_sessions=3)
        yield test_client


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert response.json()["sessions"] == 0


def test_presets(client):
    body = client.get("/api/presets").json()
    assert body["content_types"]["12"] == "Tourist spot"
    assert body["radius_options"]["5000"] == "5km"
    assert body["major_cities"][0]["name"] == "Seoul"


def test_create_feed_loads_first_page(client, fake_provider):
    fake_provider.queue(make_page(range(1, 11), page_no=1, total_count=25))

    response = client.post("/api/feeds", json=KEYWORD_ANCHOR)

    assert response.status_code == 201
    snapshot = response.json()["snapshot"]
    assert snapshot["state"] == "ready"
    assert len(snapshot["items"]) == 10
    assert snapshot["items"][0]["stable_key"].startswith("Site 1-")
    assert snapshot["can_load_more"] is True
    assert snapshot["anchor"] == {"kind": "keyword", "keyword": "palace", "category": None}


def test_create_feed_without_anchor_is_idle(client):
    response = client.post("/api/feeds", json={})
    assert response.status_code == 201
    assert response.json()["snapshot"]["state"] == "idle"


def test_paging_through_a_feed(client, fake_provider):
    fake_provider.queue(
        make_page(range(1, 11), page_no=1, total_count=15),
        make_page(range(9, 16), page_no=2, total_count=15),
    )
    feed_id = client.post("/api/feeds", json=KEYWORD_ANCHOR).json()["feed_id"]

    snapshot = client.post(f"/api/feeds/{feed_id}/more", json={"visible_index": 9}).json()["snapshot"]
    assert snapshot["current_page"] == 2
    assert len(snapshot["items"]) == 15
    assert snapshot["can_load_more"] is False

    # exhausted: no further provider call
    client.post(f"/api/feeds/{feed_id}/more", json={"visible_index": 14})
    assert len(fake_provider.calls) == 2

    assert client.get(f"/api/feeds/{feed_id}").json()["snapshot"]["current_page"] == 2


def test_failed_next_page_is_reported_and_retried(client, fake_provider):
    fake_provider.queue(
        make_page(range(1, 11), page_no=1, total_count=30),
        NetworkError("offline"),
        make_page(range(11, 21), page_no=2, total_count=30),
    )
    feed_id = client.post("/api/feeds", json=KEYWORD_ANCHOR).json()["feed_id"]

    response = client.post(f"/api/feeds/{feed_id}/more", json={"visible_index": 9})
    assert response.status_code == 200
    snapshot = response.json()["snapshot"]
    assert snapshot["state"] == "error"
    assert snapshot["last_error"]["kind"] == "network"
    assert snapshot["last_error"]["page"] == 2
    assert len(snapshot["items"]) == 10

    snapshot = client.post(f"/api/feeds/{feed_id}/retry").json()["snapshot"]
    assert snapshot["state"] == "ready"
    assert len(snapshot["items"]) == 20
    assert fake_provider.pages_requested() == [1, 2, 2]


def test_retry_after_first_page_failure_refreshes(client, fake_provider):
    fake_provider.queue(NetworkError("offline"), make_page(range(1, 4), page_no=1, total_count=3))
    feed_id = client.post("/api/feeds", json=KEYWORD_ANCHOR).json()["feed_id"]

    snapshot = client.post(f"/api/feeds/{feed_id}/retry").json()["snapshot"]

    assert snapshot["state"] == "ready"
    assert fake_provider.pages_requested() == [1, 1]


def test_set_anchor_switches_listing(client, fake_provider):
    fake_provider.queue(
        make_page(range(1, 11), page_no=1, total_count=25),
        make_page(range(1, 4), page_no=1, total_count=3, prefix="Nearby"),
    )
    feed_id = client.post("/api/feeds", json=KEYWORD_ANCHOR).json()["feed_id"]

    response = client.put(
        f"/api/feeds/{feed_id}/anchor",
        json={"anchor": {"kind": "location", "coordinate": {"latitude": 35.1796, "longitude": 129.0756}, "radius_m": 1000}},
    )

    snapshot = response.json()["snapshot"]
    assert snapshot["anchor"]["kind"] == "location"
    assert [item["title"] for item in snapshot["items"]] == ["Nearby 1", "Nearby 2", "Nearby 3"]


def test_invalid_anchor_is_rejected(client):
    feed_id = client.post("/api/feeds", json={}).json()["feed_id"]
    response = client.put(
        f"/api/feeds/{feed_id}/anchor",
        json={"anchor": {"kind": "location", "coordinate": {"latitude": 120, "longitude": 0}, "radius_m": 1000}},
    )
    assert response.status_code == 422


def test_pushed_location_anchors_the_feed(client, fake_provider):
    fake_provider.queue(make_page(range(1, 11), page_no=1, total_count=25))
    feed_id = client.post("/api/feeds", json={}).json()["feed_id"]

    response = client.post(
        f"/api/feeds/{feed_id}/location",
        json={"coordinate": {"latitude": 37.5665, "longitude": 126.978}},
    )

    snapshot = response.json()["snapshot"]
    assert snapshot["state"] == "ready"
    assert snapshot["anchor"]["kind"] == "location"
    assert fake_provider.calls[0][0] == "location"


def test_refresh_endpoint(client, fake_provider):
    fake_provider.queue(
        make_page(range(1, 11), page_no=1, total_count=25),
        make_page(range(1, 11), page_no=1, total_count=25),
    )
    feed_id = client.post("/api/feeds", json=KEYWORD_ANCHOR).json()["feed_id"]

    snapshot = client.post(f"/api/feeds/{feed_id}/refresh").json()["snapshot"]

    assert snapshot["state"] == "ready"
    assert len(fake_provider.calls) == 2


def test_unknown_feed_is_404(client):
    response = client.get("/api/feeds/does-not-exist")
    assert response.status_code == 404
    assert response.json()["detail"]["error"] == "FEED_NOT_FOUND"


def test_delete_feed(client):
    feed_id = client.post("/api/feeds", json={}).json()["feed_id"]

    assert client.delete(f"/api/feeds/{feed_id}").status_code == 204
    assert client.get(f"/api/feeds/{feed_id}").status_code == 404
    assert client.delete(f"/api/feeds/{feed_id}").status_code == 404


def test_session_limit(client):
    for _ in range(3):
        assert client.post("/api/feeds", json={}).status_code == 201

    response = client.post("/api/feeds", json={})
    assert response.status_code == 503
    assert response.json()["detail"]["error"] == "FEED_LIMIT_REACHED"


class RecordingLogger:
    def __init__(self):
        self.errors = []

    def error(self, event, **fields):
        self.errors.append((event, fields))


async def test_failed_background_operation_is_logged(monkeypatch):
    recorder = RecordingLogger()
    monkeypatch.setattr(routes, "logger", recorder)

    async def closed_feed():
        raise RuntimeError("feed controller is closed")

    await routes._drive(closed_feed(), wait=False)
    await settle()

    assert recorder.errors == [
        ("detached_operation_failed", {"error": "feed controller is closed", "error_type": "RuntimeError"})
    ]
    assert not routes._detached
