# handlers/status_handler.py
import logging

from meshrelay.services.messaging import fan_out, send_error_message, string_field

logger = logging.getLogger(__name__)

#: Status field only the host may set for the whole room.
RECORDING_FIELD = "recording"


class StatusHandler:
    """
    Fans ephemeral per-peer state (mic, camera, hand, speaking, screen share,
    recording) out to the rest of the room.
    """

    def __init__(self, registry, connections):
        self.registry = registry
        self.connections = connections

    async def handle_broadcast_status(self, conn, data):
        """
        Deliver a status payload to every other member of the room.

        Recipients get `peer-status {from, payload, fromHost}`. A `recording`
        field is only forwarded when the sender is the current host; receivers
        treat a host-originated value as the room's recording state.

        Args:
            conn (Connection): Sending connection.
            data (dict): Parsed message with payload {roomId, payload}.

        Returns:
            int: Number of members the status was delivered to.
        """
        body = data.get("payload", {})
        room_id = await string_field(conn.ws, "broadcast-status", body, "roomId")
        if room_id is None:
            return 0
        status = body.get("payload")
        if not isinstance(status, dict):
            await send_error_message(conn.ws, "broadcast-status", "MISSING_FIELDS",
                                     "An object payload is required.")
            return 0

        room = self.registry.get(room_id)
        if room is None or conn.id not in room.members:
            await send_error_message(conn.ws, "broadcast-status", "NOT_IN_ROOM",
                                     "Only admitted members can broadcast status.")
            return 0

        from_host = room.host_id == conn.id
        if RECORDING_FIELD in status and not from_host:
            logger.warning(f"Dropped recording flag from non-host {conn.id} in room {room.display_code}")
            status = {k: v for k, v in status.items() if k != RECORDING_FIELD}
            if not status:
                return 0

        recipients = [member for member in room.members if member != conn.id]
        return await fan_out(self.connections, recipients, "peer-status",
                             {"from": conn.id, "payload": status, "fromHost": from_host})
