import pytest

from conftest import call


@pytest.mark.asyncio
async def test_scenario_a_host_admits_guest_and_they_negotiate(relay, connect):
    host, guest = connect(), connect()

    await call(relay, host, "join-room", roomId="r", isHost=True, name="Hana")
    [info] = host.ws.payloads("meeting-info")
    assert host.ws.payloads("all-users") == [[]]

    await call(relay, guest, "join-room", roomId="r", isHost=False, name="Gil")
    assert guest.ws.payloads("waiting-for-permission") == [{"meetingId": info["meetingId"]}]
    assert host.ws.payloads("permission-requested") == [{"peerId": guest.id, "name": "Gil"}]
    assert guest.ws.messages("all-users") == []

    await call(relay, host, "give-permission", peerId=guest.id, roomId="r", approved=True)
    assert guest.ws.types()[-2:] == ["permission-granted", "all-users"]
    assert guest.ws.payloads("all-users") == [[{"id": host.id, "name": "Hana"}]]
    assert host.ws.payloads("user-joined") == [{"id": guest.id, "name": "Gil"}]

    await call(relay, guest, "offer", target=host.id, signal={"type": "offer", "sdp": "o"})
    assert host.ws.payloads("offer") == [{"callerID": guest.id, "signal": {"type": "offer", "sdp": "o"}}]
    await call(relay, host, "answer", target=guest.id, id=host.id, signal={"type": "answer", "sdp": "a"})
    assert guest.ws.payloads("answer") == [{"id": host.id, "signal": {"type": "answer", "sdp": "a"}}]


@pytest.mark.asyncio
async def test_scenario_b_denied_guest_never_listed(relay, connect):
    host, denied, later = connect(), connect(), connect()
    await call(relay, host, "join-room", roomId="r", isHost=True, name="Hana")
    await call(relay, denied, "join-room", roomId="r", name="Dan")
    await call(relay, host, "give-permission", peerId=denied.id, roomId="r", approved=False)

    assert denied.ws.types()[-1] == "permission-denied"
    assert denied.ws.messages("all-users") == []

    await call(relay, later, "join-room", roomId="r", name="Lea")
    await call(relay, host, "give-permission", peerId=later.id, roomId="r", approved=True)

    for conn in (host, later):
        for users in conn.ws.payloads("all-users"):
            assert denied.id not in [u["id"] for u in users]
    assert host.ws.payloads("user-joined") == [{"id": later.id, "name": "Lea"}]


@pytest.mark.asyncio
async def test_scenario_c_host_disconnect_keeps_room(relay, connect):
    host, guest = connect(), connect()
    await call(relay, host, "join-room", roomId="r", isHost=True, name="Hana")
    await call(relay, guest, "join-room", roomId="r", name="Gil")
    await call(relay, host, "give-permission", peerId=guest.id, roomId="r", approved=True)

    await relay.cleanup.handle_disconnect(host.id)

    assert guest.ws.payloads("user-left") == [{"id": host.id, "name": "Hana"}]
    room = relay.registry.get("r")
    assert room is not None
    assert room.host_id is None
    assert room.members == {guest.id}


@pytest.mark.asyncio
async def test_host_flag_never_pending(relay, connect):
    host = connect()
    await call(relay, host, "join-room", roomId="r", isHost=True, name="Hana")
    room = relay.registry.get("r")
    assert host.id in room.members
    assert host.id not in room.pending
    assert host.ws.messages("waiting-for-permission") == []


@pytest.mark.asyncio
async def test_guest_without_host_waits_and_late_host_is_told(relay, connect):
    guest, host = connect(), connect()
    await call(relay, guest, "join-room", roomId="r", name="Gil")
    assert guest.ws.types() == ["waiting-for-permission"]

    await call(relay, host, "join-room", roomId="r", isHost=True, name="Hana")
    assert host.ws.payloads("permission-requested") == [{"peerId": guest.id, "name": "Gil"}]


@pytest.mark.asyncio
async def test_give_permission_from_non_host_is_ignored(relay, connect):
    host, guest, other = connect(), connect(), connect()
    await call(relay, host, "join-room", roomId="r", isHost=True, name="Hana")
    await call(relay, guest, "join-room", roomId="r", name="Gil")
    await call(relay, other, "join-room", roomId="r", name="Oz")

    await call(relay, other, "give-permission", peerId=guest.id, roomId="r", approved=True)

    [error] = other.ws.messages("give-permission")
    assert error["success"] is False
    assert error["error_code"] == "NOT_HOST"
    assert guest.id in relay.registry.get("r").pending
    assert guest.ws.messages("permission-granted") == []


@pytest.mark.asyncio
async def test_join_requires_room_id(relay, connect):
    conn = connect()
    await call(relay, conn, "join-room", isHost=True, name="x")
    [error] = conn.ws.messages("join-room")
    assert error["error_code"] == "MISSING_FIELDS"
    assert len(relay.registry) == 0


@pytest.mark.asyncio
async def test_blank_name_defaults(relay, connect):
    host = connect()
    await call(relay, host, "join-room", roomId="r", isHost=True, name="   ")
    assert relay.registry.get("r").names[host.id] == "Guest"


@pytest.mark.asyncio
async def test_end_meeting_reaches_everyone_but_host(relay, connect):
    host, member, waiting = connect(), connect(), connect()
    await call(relay, host, "join-room", roomId="r", isHost=True, name="Hana")
    await call(relay, member, "join-room", roomId="r", name="Gil")
    await call(relay, host, "give-permission", peerId=member.id, roomId="r", approved=True)
    await call(relay, waiting, "join-room", roomId="r", name="Wes")

    await call(relay, host, "end-meeting", roomId="r")

    assert member.ws.payloads("meeting-ended") == [{"roomId": "r"}]
    assert waiting.ws.payloads("meeting-ended") == [{"roomId": "r"}]
    assert host.ws.messages("meeting-ended") == []


@pytest.mark.asyncio
async def test_end_meeting_by_guest_is_refused(relay, connect):
    host, member = connect(), connect()
    await call(relay, host, "join-room", roomId="r", isHost=True, name="Hana")
    await call(relay, member, "join-room", roomId="r", name="Gil")
    await call(relay, host, "give-permission", peerId=member.id, roomId="r", approved=True)

    await call(relay, member, "end-meeting", roomId="r")

    assert member.ws.messages("end-meeting")[0]["error_code"] == "NOT_HOST"
    assert host.ws.messages("meeting-ended") == []


@pytest.mark.asyncio
async def test_denied_guest_rejoining_as_host_is_refused(relay, connect):
    host, denied, later = connect(), connect(), connect()
    await call(relay, host, "join-room", roomId="r", isHost=True, name="Hana")
    await call(relay, denied, "join-room", roomId="r", name="Dan")
    await call(relay, host, "give-permission", peerId=denied.id, roomId="r", approved=False)

    await call(relay, denied, "join-room", roomId="r", isHost=True, name="Dan")

    assert denied.ws.types()[-2:] == ["permission-denied", "permission-denied"]
    assert denied.ws.messages("meeting-info") == []
    assert host.ws.payloads("permission-requested") == [{"peerId": denied.id, "name": "Dan"}]
    assert relay.registry.get("r").host_id == host.id

    await call(relay, later, "join-room", roomId="r", name="Lea")
    await call(relay, host, "give-permission", peerId=later.id, roomId="r", approved=True)
    [users] = later.ws.payloads("all-users")
    assert [u["id"] for u in users] == [host.id]


@pytest.mark.asyncio
@pytest.mark.parametrize("room_id", [["r"], {"id": "r"}, 7])
async def test_join_rejects_non_string_room_id(relay, connect, room_id):
    conn = connect()

    await call(relay, conn, "join-room", roomId=room_id, isHost=True, name="Hana")

    [error] = conn.ws.messages("join-room")
    assert error["error_code"] == "INVALID_FIELDS"
    assert len(relay.registry) == 0


@pytest.mark.asyncio
async def test_give_permission_rejects_non_string_peer_id(relay, connect):
    host, guest = connect(), connect()
    await call(relay, host, "join-room", roomId="r", isHost=True, name="Hana")
    await call(relay, guest, "join-room", roomId="r", name="Gil")

    await call(relay, host, "give-permission", peerId=[guest.id], roomId="r", approved=True)

    [error] = host.ws.messages("give-permission")
    assert error["error_code"] == "INVALID_FIELDS"
    assert relay.registry.get("r").pending == {guest.id}
