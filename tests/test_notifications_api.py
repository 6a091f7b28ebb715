"""Notification API tests — list, mark read, read all.

Pattern: seed rows through NotificationStore, then drive the API. Read
events published by the API land in the fake bus, where the tests
inspect them.
"""

import uuid

import pytest

from ripple.events.types import NOTIFICATION_EVENTS
from ripple.services.notification_store import NotificationStore


@pytest.fixture
async def seeded(db_session):
    """Three notifications for u2 (oldest first), one for u3."""
    store = NotificationStore(db_session)
    rows = []
    for n, (recipient, type_) in enumerate([
        ("u2", "follow"), ("u2", "post_like"), ("u2", "new_post"), ("u3", "follow"),
    ]):
        row, _ = await store.create(
            recipient_id=recipient,
            sender_id="u1",
            type=type_,
            message=f"message {n}",
            ref_id="u1",
            ref_model="User",
            dedup_key=f"seed:{n}",
        )
        rows.append(row)
    await db_session.commit()
    return rows


@pytest.mark.asyncio
async def test_list_newest_first_with_counts(client, seeded):
    resp = await client.get("/api/v1/users/u2/notifications")
    assert resp.status_code == 200
    data = resp.json()
    assert data["unreadCount"] == 3
    assert data["total"] == 3
    assert (data["limit"], data["offset"]) == (20, 0)
    assert [n["message"] for n in data["notifications"]] == ["message 2", "message 1", "message 0"]

    first = data["notifications"][0]
    assert set(first) >= {
        "id", "recipient", "sender", "type", "message", "refId", "refModel",
        "isRead", "relevanceScore", "metadata", "createdAt",
    }
    assert first["recipient"] == "u2"


@pytest.mark.asyncio
async def test_list_filters_and_paging(client, seeded):
    resp = await client.get("/api/v1/users/u2/notifications", params={"type": "follow"})
    assert [n["type"] for n in resp.json()["notifications"]] == ["follow"]
    assert resp.json()["total"] == 1

    resp = await client.get("/api/v1/users/u2/notifications", params={"limit": 2, "offset": 2})
    data = resp.json()
    assert [n["message"] for n in data["notifications"]] == ["message 0"]
    assert data["total"] == 3


@pytest.mark.asyncio
async def test_list_rejects_bad_params(client):
    assert (await client.get("/api/v1/users/u2/notifications", params={"limit": 0})).status_code == 422
    assert (await client.get("/api/v1/users/u2/notifications", params={"type": "party"})).status_code == 422


@pytest.mark.asyncio
async def test_list_for_user_without_notifications(client):
    data = (await client.get("/api/v1/users/nobody/notifications")).json()
    assert data["notifications"] == []
    assert data["unreadCount"] == 0


@pytest.mark.asyncio
async def test_mark_read_publishes_event(client, seeded, fake_redis):
    target = seeded[0]
    resp = await client.post(f"/api/v1/notifications/{target.id}/read", params={"user_id": "u2"})
    assert resp.status_code == 200
    assert resp.json()["isRead"] is True

    events = fake_redis.envelopes(f"ripple:{NOTIFICATION_EVENTS}:")
    assert len(events) == 1
    assert events[0]["eventType"] == "notification.read"
    assert events[0]["targetId"] == str(target.id)
    assert events[0]["actorId"] == "u2"

    listing = (await client.get("/api/v1/users/u2/notifications", params={"is_read": "false"})).json()
    assert listing["unreadCount"] == 2
    assert listing["total"] == 2


@pytest.mark.asyncio
async def test_mark_read_twice_publishes_once(client, seeded, fake_redis):
    url = f"/api/v1/notifications/{seeded[0].id}/read"
    await client.post(url, params={"user_id": "u2"})
    resp = await client.post(url, params={"user_id": "u2"})
    assert resp.status_code == 200
    assert len(fake_redis.envelopes(f"ripple:{NOTIFICATION_EVENTS}:")) == 1


@pytest.mark.asyncio
async def test_mark_read_someone_elses_notification(client, seeded):
    resp = await client.post(f"/api/v1/notifications/{seeded[0].id}/read", params={"user_id": "u3"})
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_mark_read_unknown_notification(client):
    resp = await client.post(f"/api/v1/notifications/{uuid.uuid4()}/read", params={"user_id": "u2"})
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_mark_read_requires_valid_id_and_user(client):
    assert (await client.post("/api/v1/notifications/not-a-uuid/read", params={"user_id": "u2"})).status_code == 422
    assert (await client.post(f"/api/v1/notifications/{uuid.uuid4()}/read")).status_code == 422


@pytest.mark.asyncio
async def test_mark_all_read(client, seeded, fake_redis):
    resp = await client.post("/api/v1/users/u2/notifications/read-all")
    assert resp.status_code == 200
    assert resp.json() == {"updated": 3}

    events = fake_redis.envelopes(f"ripple:{NOTIFICATION_EVENTS}:")
    assert events[-1]["eventType"] == "notification.read_all"
    assert events[-1]["payload"] == {"count": 3}

    u2 = (await client.get("/api/v1/users/u2/notifications")).json()
    u3 = (await client.get("/api/v1/users/u3/notifications")).json()
    assert u2["unreadCount"] == 0
    assert u3["unreadCount"] == 1

    again = await client.post("/api/v1/users/u2/notifications/read-all")
    assert again.json() == {"updated": 0}


@pytest.mark.asyncio
async def test_mark_read_survives_bus_outage(client, seeded, dialer):
    dialer.failures = 5
    resp = await client.post(f"/api/v1/notifications/{seeded[1].id}/read", params={"user_id": "u2"})
    assert resp.status_code == 200
    assert resp.json()["isRead"] is True
