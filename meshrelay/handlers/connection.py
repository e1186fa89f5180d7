# handlers/connection.py

import json
import logging

import websockets

# Local handlers
from meshrelay.handlers.room_handler import RoomHandler
from meshrelay.handlers.signaling_handler import SignalingHandler
from meshrelay.handlers.status_handler import StatusHandler

from meshrelay.constants import CLOSE_RATE_LIMITED
from meshrelay.services.cleanup import CleanupSupervisor
from meshrelay.services.messaging import send_error_message, send_message
from meshrelay.services.rate_limiter import RateLimiter
from meshrelay.services.registry import RoomRegistry
from meshrelay.services.state import ConnectionTable

# -----------------------------------------------------------------------------
# Configuration
# -----------------------------------------------------------------------------
logger = logging.getLogger(__name__)


class Relay:
    """
    Wires the registry, the live connection table and the message handlers.

    One instance serves every socket; each accepted socket is driven by its
    own ConnectionHandler.
    """

    def __init__(self, registry=None, connections=None, rate_limiter=None):
        self.registry = registry or RoomRegistry()
        self.connections = connections or ConnectionTable()
        self.rate_limiter = rate_limiter or RateLimiter()
        self.cleanup = CleanupSupervisor(self.registry, self.connections, self.rate_limiter)

        room_handler = RoomHandler(self.registry, self.connections)
        signaling_handler = SignalingHandler(self.registry, self.connections)
        status_handler = StatusHandler(self.registry, self.connections)

        # Mapping of message types to handler functions
        self.handlers = {
            "join-room":        room_handler.handle_join_room,
            "give-permission":  room_handler.handle_give_permission,
            "end-meeting":      room_handler.handle_end_meeting,
            "offer":            signaling_handler.handle_offer,
            "answer":           signaling_handler.handle_answer,
            "ice-candidate":    signaling_handler.handle_ice_candidate,
            "broadcast-status": status_handler.handle_broadcast_status,
        }

    async def handle_connection(self, ws):
        """Entry point handed to websockets.serve."""
        await ConnectionHandler(self).handle_connection(ws)

    def health(self) -> dict:
        """
        Liveness report: room count, connection count and membership by display code.
        """
        snapshot = self.registry.snapshot()
        return {
            "status": "ok",
            "rooms": snapshot["rooms"],
            "connections": len(self.connections),
            "membership": snapshot["membership"],
        }


class ConnectionHandler:
    """
    Manages a single WebSocket connection: registration, rate limiting,
    parse/dispatch loop and cleanup on disconnect.
    """

    def __init__(self, relay: Relay):
        self.relay = relay
        self.conn = None

    async def handle_connection(self, ws):
        """
        Main entry point for handling a new WebSocket connection.

        Parameters:
            ws (websockets.asyncio.server.ServerConnection): The accepted socket.

        Returns:
            None
        """
        self.conn = self.relay.connections.register(ws)
        ip = self.conn.ip
        logger.info(f"New connection {self.conn.id} from {ip}")

        try:
            async for raw in ws:
                try:
                    data = self._parse(raw)
                except ValueError as e:
                    data, error = None, e

                msg_type = data.get("msg_type") if data else None
                if ip is not None and not self.relay.rate_limiter.allow(ip, msg_type):
                    logger.warning(f"Rate limit exceeded by {ip} on {msg_type or 'invalid'} frames, "
                                   f"closing {self.conn.id}")
                    await ws.close(code=CLOSE_RATE_LIMITED, reason="Rate limit exceeded")
                    break

                if data is None:
                    logger.warning(f"Unparseable frame from {self.conn.id}: {error}")
                    await send_error_message(ws, "error", "INVALID_MESSAGE", "Invalid message format")
                    continue

                await self._dispatch(data)
        except websockets.exceptions.ConnectionClosedError:
            logger.info(f"Connection {self.conn.id} closed abruptly")
        except Exception as e:
            logger.error(f"Connection loop error for {self.conn.id}", exc_info=e)
        finally:
            await self.relay.cleanup.handle_disconnect(self.conn.id)
            logger.info(f"Connection {self.conn.id} cleaned up")

    @staticmethod
    def _parse(raw_message) -> dict:
        """
        Parse a raw frame into a message dict.

        Parameters:
            raw_message (str | bytes): The frame received over the websocket.

        Returns:
            dict: Parsed message with at least a string 'msg_type'.

        Raises:
            ValueError: If the frame is not a JSON object with a msg_type.
        """
        data = json.loads(raw_message)
        if not isinstance(data, dict) or not isinstance(data.get("msg_type"), str):
            raise ValueError("message must be a JSON object with a msg_type")
        if not isinstance(data.get("payload", {}), dict):
            raise ValueError("payload must be a JSON object")
        return data

    async def _dispatch(self, data):
        """
        Dispatch a parsed message to the handler registered for its type.

        Parameters:
            data (dict): The parsed message.

        Returns:
            result: The return value of the handler coroutine, if any.
        """
        msg_type = data.get("msg_type")
        if msg_type == "ping":
            return await send_message(self.conn.ws, "pong")

        handler = self.relay.handlers.get(msg_type)
        if handler:
            return await handler(self.conn, data)

        logger.warning(f"Unknown msg_type: {msg_type}")
        await send_error_message(self.conn.ws, msg_type, "UNKNOWN_MESSAGE_TYPE", "Unknown message type")
