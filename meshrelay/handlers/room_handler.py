# handlers/room_handler.py
import logging

from meshrelay.constants import DEFAULT_PEER_NAME, MAX_NAME_LENGTH, MAX_ROOM_ID_LENGTH
from meshrelay.services.messaging import fan_out, send_error_message, send_message, send_to, string_field
from meshrelay.services.registry import AdmissionError

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def _clean_name(raw) -> str:
    name = str(raw).strip() if raw is not None else ""
    return name[:MAX_NAME_LENGTH] or DEFAULT_PEER_NAME


async def _room_id_from(conn, payload, msg_type):
    """
    Extract and validate the roomId field of a request.

    Returns:
        str or None: The room id; None after an error was sent to the caller.
    """
    room_id = await string_field(conn.ws, msg_type, payload, "roomId")
    if room_id is None:
        return None
    if len(room_id) > MAX_ROOM_ID_LENGTH:
        await send_error_message(conn.ws, msg_type, "ROOM_ID_TOO_LONG",
                                 f"roomId must be at most {MAX_ROOM_ID_LENGTH} characters.")
        return None
    return room_id


# -----------------------------------------------------------------------------
# Admission Handlers
# -----------------------------------------------------------------------------


class RoomHandler:
    """
    Handles room entry, host approval and meeting termination.
    """

    def __init__(self, registry, connections):
        self.registry = registry
        self.connections = connections

    async def handle_join_room(self, conn, data):
        """
        Enter a room directly as host, or queue for the host's approval.

        A host (or an admitted member re-joining) receives `meeting-info` and the
        `all-users` snapshot and initiates negotiation toward every listed peer;
        existing members are told about the newcomer with `user-joined`. A guest
        receives `waiting-for-permission` and the host gets `permission-requested`.
        A connection the host already rejected gets `permission-denied` again.

        Args:
            conn (Connection): The requesting connection.
            data (dict): Parsed message with payload {roomId, isHost, name}.

        Returns:
            None
        """
        payload = data.get("payload", {})
        room_id = await _room_id_from(conn, payload, "join-room")
        if room_id is None:
            return
        name = _clean_name(payload.get("name"))
        conn.name = name

        try:
            result = await self.registry.join(room_id, conn.id, bool(payload.get("isHost")), name)
        except AdmissionError as e:
            # Only PERMISSION_DENIED is raised on join
            logger.info(f"Repeated denial for {conn.id}: {e.code}")
            await send_message(conn.ws, "permission-denied", payload={"roomId": room_id})
            return

        if not result.admitted:
            await send_message(conn.ws, "waiting-for-permission",
                               payload={"meetingId": result.display_code})
            if result.host_id:
                await send_to(self.connections, result.host_id, "permission-requested",
                              {"peerId": conn.id, "name": name})
            else:
                logger.info(f"No host present in room {result.display_code}; {conn.id} keeps waiting")
            return

        await send_message(conn.ws, "meeting-info", payload={"meetingId": result.display_code})
        await send_message(conn.ws, "all-users", payload=result.peers)
        await fan_out(self.connections, result.notify, "user-joined", {"id": conn.id, "name": name})
        for peer_id, peer_name in result.waiting:
            await send_message(conn.ws, "permission-requested",
                               payload={"peerId": peer_id, "name": peer_name})

    async def handle_give_permission(self, conn, data):
        """
        Apply the host's approve/deny decision for a waiting peer.

        On approval the target receives `permission-granted` and the `all-users`
        snapshot, and every existing member receives `user-joined`. On denial
        only the target is told, with `permission-denied`.

        Args:
            conn (Connection): The host's connection.
            data (dict): Parsed message with payload {peerId, roomId, approved}.

        Returns:
            None
        """
        payload = data.get("payload", {})
        room_id = await _room_id_from(conn, payload, "give-permission")
        if room_id is None:
            return
        target_id = await string_field(conn.ws, "give-permission", payload, "peerId")
        if target_id is None:
            return

        try:
            result = await self.registry.decide(conn.id, target_id, room_id, bool(payload.get("approved")))
        except AdmissionError as e:
            logger.warning(f"Ignored give-permission from {conn.id} room_key={room_id!r}: {e}")
            await send_error_message(conn.ws, "give-permission", e.code, str(e))
            return

        if not result.approved:
            await send_to(self.connections, target_id, "permission-denied", {"roomId": room_id})
            return

        await send_to(self.connections, target_id, "permission-granted", {"roomId": room_id})
        await send_to(self.connections, target_id, "all-users", result.peers)
        await fan_out(self.connections, result.notify, "user-joined", {"id": target_id, "name": result.name})

    async def handle_end_meeting(self, conn, data):
        """
        Tell everyone in the room that the host ended the meeting.

        Args:
            conn (Connection): The host's connection.
            data (dict): Parsed message with payload {roomId}.

        Returns:
            None
        """
        payload = data.get("payload", {})
        room_id = await _room_id_from(conn, payload, "end-meeting")
        if room_id is None:
            return
        try:
            recipients = await self.registry.end(room_id, conn.id)
        except AdmissionError as e:
            logger.warning(f"Ignored end-meeting from {conn.id} room_key={room_id!r}: {e}")
            await send_error_message(conn.ws, "end-meeting", e.code, str(e))
            return
        await fan_out(self.connections, recipients, "meeting-ended", {"roomId": room_id})
