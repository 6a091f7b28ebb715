"""Delivery bridge tests — room registry and the relay rule."""

import pytest

from ripple.realtime.bridge import DeliveryBridge, RelayResult, room_for_user
from ripple.realtime.sink import LocalBridgeSink


@pytest.mark.asyncio
async def test_relay_reaches_every_member_of_the_room(bridge, client_conn):
    phone, laptop, other = client_conn("phone"), client_conn("laptop"), client_conn("other")
    for conn in (phone, laptop, other):
        bridge.attach_client(conn)
    bridge.join("phone", "user:42")
    bridge.join("laptop", "user:42")
    bridge.join("other", "user:7")

    result = await bridge.publish_to_room("user:42", {"message": "hi"})

    assert result == RelayResult(success=True, room="user:42", delivered=2)
    assert phone.sent == [{"type": "notification", "data": {"message": "hi"}}]
    assert laptop.sent == phone.sent
    assert other.sent == []


@pytest.mark.asyncio
async def test_empty_room_is_success_with_nothing_delivered(bridge):
    result = await bridge.publish_to_room("user:nobody", {"message": "hi"})
    assert result.success is True
    assert result.delivered == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("room", [None, "", 42])
async def test_invalid_room_is_reported(bridge, room):
    result = await bridge.publish_to_room(room, {"message": "hi"})
    assert result.success is False
    assert result.ack("ref-1") == {
        "type": "notificationError",
        "error": "room is required",
        "id": "ref-1",
    }


@pytest.mark.asyncio
async def test_failing_member_is_detached(bridge, client_conn):
    good, gone = client_conn("good"), client_conn("gone", fail=True)
    for conn in (good, gone):
        bridge.attach_client(conn)
        bridge.join(conn.id, "user:1")

    result = await bridge.publish_to_room("user:1", {"n": 1})

    assert result.delivered == 1
    assert bridge.clients.room_size("user:1") == 1
    assert bridge.clients.connection_count == 1


def test_detach_leaves_all_rooms(bridge, client_conn):
    conn = client_conn("c1")
    bridge.attach_client(conn)
    bridge.join("c1", "user:1")
    bridge.join("c1", "team:9")
    assert bridge.clients.rooms_of("c1") == {"user:1", "team:9"}

    bridge.detach_client("c1")

    assert bridge.clients.room_size("user:1") == 0
    assert bridge.clients.room_size("team:9") == 0
    assert bridge.clients.rooms_of("c1") == set()


def test_leave_one_room(bridge, client_conn):
    bridge.attach_client(client_conn("c1"))
    bridge.join("c1", "user:1")
    bridge.join("c1", "team:9")
    bridge.leave("c1", "team:9")
    assert bridge.clients.rooms_of("c1") == {"user:1"}


def test_join_requires_attached_connection(bridge):
    with pytest.raises(KeyError):
        bridge.join("ghost", "user:1")


def test_ack_frame_on_success():
    ack = RelayResult(success=True, room="user:42", delivered=3).ack("ref-9")
    assert ack == {
        "type": "notificationReceived",
        "success": True,
        "roomDelivered": "user:42",
        "delivered": 3,
        "id": "ref-9",
    }


def test_room_for_user():
    assert room_for_user(42) == "user:42"
    assert room_for_user("u2") == "user:u2"


@pytest.mark.asyncio
async def test_local_sink_goes_through_the_relay(client_conn):
    bridge = DeliveryBridge()
    conn = client_conn("c1")
    bridge.attach_client(conn)
    bridge.join("c1", "user:u2")

    result = await LocalBridgeSink(bridge).push("user:u2", {"message": "hi"})

    assert result.success and result.delivered == 1
    assert conn.sent[0]["data"] == {"message": "hi"}
