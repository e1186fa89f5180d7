# handlers/signaling_handler.py
import logging

from meshrelay.services.messaging import send_error_message, send_to, string_field


logger = logging.getLogger(__name__)


class SignalingHandler:
    """
    Relays offer / answer / ICE candidate messages between two admitted peers.

    The relay never looks inside the negotiation payload and keeps no
    negotiation state; it only stamps the sender's connection id and forwards
    the message to its target.
    """

    def __init__(self, registry, connections):
        self.registry = registry
        self.connections = connections

    async def _route(self, conn, data, msg_type, body_key, outbound):
        """
        Validate the target of a negotiation message and forward it.

        Args:
            conn (Connection): Sending connection.
            data (dict): Parsed message containing 'payload' with 'target'.
            msg_type (str): Event name, used for delivery and error context.
            body_key (str): Field holding the opaque negotiation body.
            outbound (callable): Builds the delivered payload from (sender_id, body).

        Returns:
            bool: True if the message was handed to the target's socket.
        """
        payload = data.get("payload", {})
        target = await string_field(conn.ws, msg_type, payload, "target")
        if target is None:
            return False
        body = payload.get(body_key)
        if body is None:
            await send_error_message(conn.ws, msg_type, "MISSING_FIELDS",
                                     f"{body_key} is required.")
            return False

        logger.debug(f"{msg_type} from {conn.id} to {target}")

        if target not in self.connections:
            return await self._reject(conn, msg_type, "TARGET_NOT_CONNECTED", "Target not connected.")

        # Pending peers must not negotiate before the host admits them
        if not self.registry.share_room(conn.id, target):
            return await self._reject(conn, msg_type, "NOT_IN_ROOM",
                                      "Sender and target are not admitted to a common room.")

        return await send_to(self.connections, target, msg_type, outbound(conn.id, body))

    async def _reject(self, conn, msg_type, code, message):
        logger.info(f"Refused {msg_type} from {conn.id}: {code}")
        await send_error_message(conn.ws, msg_type, code, message)
        return False

    async def handle_offer(self, conn, data):
        """
        Relay an SDP offer to its target as {callerID, signal}.

        Args:
            conn (Connection): Sending connection.
            data (dict): Parsed message with payload {target, callerID, signal}.
        """
        return await self._route(conn, data, "offer", "signal",
                                 lambda sender, signal: {"callerID": sender, "signal": signal})

    async def handle_answer(self, conn, data):
        """
        Relay an SDP answer to its target as {id, signal}.

        Args:
            conn (Connection): Sending connection.
            data (dict): Parsed message with payload {target, id, signal}.
        """
        return await self._route(conn, data, "answer", "signal",
                                 lambda sender, signal: {"id": sender, "signal": signal})

    async def handle_ice_candidate(self, conn, data):
        """
        Relay an ICE candidate to its target as {from, candidate}.

        Args:
            conn (Connection): Sending connection.
            data (dict): Parsed message with payload {target, candidate}.
        """
        return await self._route(conn, data, "ice-candidate", "candidate",
                                 lambda sender, candidate: {"from": sender, "candidate": candidate})
