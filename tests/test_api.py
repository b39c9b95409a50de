"""Tests for the FastAPI API endpoints."""

import threading
import time
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from polis_stream.api.app import create_app
from polis_stream.clock import format_timestamp, utc_now
from polis_stream.discovery.client import TransportError
from polis_stream.models.event import StreamEvent, StreamQueryResponse
from polis_stream.models.sync import SyncConfig
from polis_stream.sync.driver import SyncDriver

RECENT = format_timestamp(utc_now() - timedelta(hours=1))
EARLIER = format_timestamp(utc_now() - timedelta(hours=2))


class StaticStreamClient:
    """Returns the same events for every query; the driver dedupes them."""

    def __init__(self, events, fail=False):
        self.events = events
        self.fail = fail

    def stream_query(self, since="", **filters):
        if self.fail:
            raise TransportError("unreachable")
        fresh = [e for e in self.events if int(e.id) > int(since or 0)]
        return StreamQueryResponse(events=fresh, cursor=str(len(self.events)))


def _make_events():
    return [
        StreamEvent(id=1, type="polis.follow.announced", actor="alice.com",
                    payload={"target_domain": "bob.com"}, timestamp=RECENT),
        StreamEvent(id=2, type="polis.post.published", actor="alice.com",
                    payload={"url": "https://alice.com/posts/one.md",
                             "metadata": {"title": "One", "published_at": EARLIER}},
                    timestamp=EARLIER),
        StreamEvent(id=3, type="polis.comment.published", actor="carol.com",
                    payload={"comment_url": "https://carol.com/comments/c1.md",
                             "source_url": "https://carol.com/comments/c1.md",
                             "in_reply_to": "https://bob.com/posts/hello.md",
                             "target_domain": "bob.com",
                             "metadata": {"published_at": RECENT}},
                    timestamp=RECENT),
    ]


def _make_config(tmp_path) -> SyncConfig:
    return SyncConfig(
        data_dir=str(tmp_path),
        base_url="https://bob.com",
        discovery_url="https://ds.polis.pub",
    )


@pytest.fixture
def client(tmp_path):
    """Create a test client over a fresh data directory."""
    config = _make_config(tmp_path)
    driver = SyncDriver(config, client=StaticStreamClient(_make_events()))
    return TestClient(create_app(config, driver=driver))


@pytest.fixture
def synced_client(client):
    client.post("/sync/trigger")
    return client


class TestSyncEndpoints:
    def test_status_before_sync(self, client):
        response = client.get("/sync/status")
        assert response.status_code == 200
        data = response.json()
        assert data["my_domain"] == "bob.com"
        assert data["discovery_domain"] == "ds.polis.pub"
        assert data["last_result"] is None
        assert data["status"] == "stopped"

    def test_trigger(self, client):
        response = client.post("/sync/trigger")
        assert response.status_code == 200
        data = response.json()
        assert data["synced"] is True
        assert data["events_processed"] == 3
        assert data["message"] == "synced 3 events"

        status = client.get("/sync/status").json()
        assert status["cursor"]["position"] == "3"
        assert status["last_result"]["new_feed_items"] == 2

    def test_trigger_with_unreachable_service(self, tmp_path):
        config = _make_config(tmp_path)
        driver = SyncDriver(config, client=StaticStreamClient([], fail=True))
        client = TestClient(create_app(config, driver=driver))

        data = client.post("/sync/trigger").json()
        assert data["synced"] is False
        assert data["message"] == "no new data synced"


class TestProjectionEndpoints:
    def test_followers(self, synced_client):
        data = synced_client.get("/followers").json()
        assert data == {"followers": ["alice.com"], "count": 1}

    def test_empty_blessings(self, client):
        data = client.get("/blessings").json()
        assert data["blessings"] == []


class TestFeedEndpoints:
    def test_list_feed(self, synced_client):
        data = synced_client.get("/feed").json()
        assert data["total"] == 2
        assert data["unread"] == 2
        assert data["stale"] is False
        # Newest first
        assert data["items"][0]["type"] == "comment"

    def test_filter_by_type(self, synced_client):
        data = synced_client.get("/feed", params={"type": "post"}).json()
        assert [i["title"] for i in data["items"]] == ["One"]

    def test_mark_read_and_counts(self, synced_client):
        item_id = synced_client.get("/feed").json()["items"][0]["id"]

        response = synced_client.post("/feed/read", json={"id": item_id})
        assert response.json()["success"] is True

        counts = synced_client.get("/feed/counts").json()
        assert counts == {"total": 2, "unread": 1, "stale": False}

        synced_client.post("/feed/read", json={"id": item_id, "unread": True})
        assert synced_client.get("/feed/counts").json()["unread"] == 2

    def test_mark_all_then_unread_from(self, synced_client):
        items = synced_client.get("/feed").json()["items"]
        assert synced_client.post("/feed/read", json={"all": True}).json()["marked"] == 2

        # Rewinding from the newest item leaves the older one read
        response = synced_client.post("/feed/read", json={"from_id": items[0]["id"]})
        assert response.json()["marked"] == 1
        read = synced_client.get("/feed", params={"status": "read"}).json()["items"]
        assert [i["id"] for i in read] == [items[1]["id"]]

    def test_unknown_item(self, synced_client):
        response = synced_client.post("/feed/read", json={"id": "ffffffffffffffff"})
        assert response.status_code == 404

    def test_missing_target(self, synced_client):
        assert synced_client.post("/feed/read", json={}).status_code == 400

    def test_read_state_write_waits_for_sync_lock(self, synced_client):
        lock = synced_client.app.state.lock
        assert lock is synced_client.app.state.driver.lock
        responses = []

        with lock:
            worker = threading.Thread(
                target=lambda: responses.append(synced_client.post("/feed/read", json={"all": True}))
            )
            worker.start()
            time.sleep(0.1)
            assert worker.is_alive()
            assert synced_client.get("/feed/counts").json()["unread"] == 2
        worker.join(timeout=5)

        assert responses[0].json()["marked"] == 2


class TestNotificationEndpoints:
    def test_list_and_count(self, synced_client):
        data = synced_client.get("/notifications").json()
        ids = {n["id"] for n in data["notifications"]}
        assert ids == {
            "new-follower:bob.com",
            "new-post:https://alice.com/posts/one.md",
            "new-comment:https://carol.com/comments/c1.md",
        }
        assert data["total"] == 3
        assert synced_client.get("/notifications/count").json() == {"unread": 3}

    def test_pagination(self, synced_client):
        data = synced_client.get("/notifications", params={"offset": 0, "limit": 2}).json()
        assert len(data["notifications"]) == 2
        assert data["total"] == 3

    def test_mark_read(self, synced_client):
        response = synced_client.post(
            "/notifications/read", json={"ids": ["new-follower:bob.com"]}
        )
        assert response.json()["marked"] == 1
        assert synced_client.get("/notifications/count").json() == {"unread": 2}

        everything = synced_client.get("/notifications", params={"include_read": True}).json()
        assert everything["total"] == 3

    def test_mark_all_read(self, synced_client):
        synced_client.post("/notifications/read", json={"all": True})
        assert synced_client.get("/notifications/count").json() == {"unread": 0}

    def test_mark_read_requires_target(self, client):
        assert client.post("/notifications/read", json={}).status_code == 400


class TestConfigEndpoints:
    def test_feed_config_defaults(self, client):
        assert client.get("/config/feed").json() == {
            "staleness_minutes": 15, "max_items": 500, "max_age_days": 90,
        }

    def test_update_feed_config(self, client):
        response = client.put("/config/feed", json={"staleness_minutes": 60})
        assert response.json()["staleness_minutes"] == 60
        assert response.json()["max_items"] == 500
        assert client.get("/config/feed").json()["staleness_minutes"] == 60

    def test_notification_rules(self, client):
        rules = client.get("/config/notifications").json()["rules"]
        assert len(rules) == 9

    def test_toggle_rule(self, client):
        response = client.put("/config/notifications/rules/updated-post", json={"enabled": True})
        assert response.status_code == 200
        assert response.json()["enabled"] is True

    def test_toggle_unknown_rule(self, client):
        response = client.put("/config/notifications/rules/nope", json={"enabled": True})
        assert response.status_code == 404

    def test_mute_domain(self, client):
        assert client.put("/config/notifications/muted/spam.com").json() == {
            "muted_domains": ["spam.com"],
        }
        assert client.delete("/config/notifications/muted/spam.com").json() == {
            "muted_domains": [],
        }
