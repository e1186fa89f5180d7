import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Iterable, Optional

from websockets.exceptions import ConnectionClosed


logger = logging.getLogger(__name__)


def build_message(
    msg_type,
    success=True,
    payload=None,
    error_code=None,
    error_message=None,
):
    """
    Build the structured envelope every relay message travels in.

    Args:
        msg_type (str): Event name, e.g. "all-users" or "peer-status".
        success (bool, optional): Operation status. Defaults to True.
        payload (dict, optional): Event data. Defaults to {}.
        error_code (str, optional): Error code on failure.
        error_message (str, optional): Error description on failure.

    The envelope contains:
      - message_id: A new unique identifier for each message.
      - timestamp: The UTC timestamp when the message was created.
      - msg_type: The event name.
      - success: Boolean indicator of operation status.
      - error_code and error_message: Only populated if the request failed.
      - payload: Event-specific data.

    Returns:
        dict: The envelope, ready to be serialized.
    """
    message = {
        "message_id": str(uuid.uuid4()),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "msg_type": msg_type,
        "success": success,
        "payload": payload if payload is not None else {}
    }
    if not success:
        message["error_code"] = error_code if error_code else "UNKNOWN_ERROR"
        message["error_message"] = error_message if error_message else "An unknown error occurred."
    return message


async def send_message(websocket, msg_type, success=True, payload=None,
                       error_code=None, error_message=None) -> bool:
    """
    Serialize and send one envelope over a websocket.

    Delivery is fire-and-forget with respect to the sender: a closed or broken
    socket is logged and reported through the return value, never raised.

    Args:
        websocket: WebSocket connection of the recipient.
        msg_type (str): Event name.
        success (bool, optional): Operation status. Defaults to True.
        payload (dict, optional): Event data.
        error_code (str, optional): Error code on failure.
        error_message (str, optional): Error description on failure.

    Returns:
        bool: True if the frame was handed to the socket.
    """
    message = build_message(msg_type, success, payload, error_code, error_message)
    try:
        await websocket.send(json.dumps(message))
        return True
    except ConnectionClosed:
        logger.info(f"Dropped {msg_type}: recipient connection already closed")
    except Exception as e:
        logger.error(f"Failed to send {msg_type}: {e}")
    return False


async def send_error_message(websocket, msg_type, error_code, error_message) -> bool:
    """
    Send a structured error message over a websocket.

    Args:
        websocket: WebSocket connection.
        msg_type (str): Original message type the error relates to.
        error_code (str): Error code identifier.
        error_message (str): Human-readable error message.

    Returns:
        bool: True if the frame was handed to the socket.
    """
    return await send_message(
        websocket,
        msg_type=msg_type,
        success=False,
        payload=None,
        error_code=error_code,
        error_message=error_message
    )


async def send_to(connections, connection_id: str, msg_type: str, payload: Optional[dict] = None) -> bool:
    """
    Deliver an event to a connection id if it is still live.

    Args:
        connections (ConnectionTable): Live connection table.
        connection_id (str): Recipient connection id.
        msg_type (str): Event name.
        payload (dict, optional): Event data.

    Returns:
        bool: False when the recipient is gone or the send failed.
    """
    conn = connections.get(connection_id)
    if conn is None:
        logger.debug(f"Skipping {msg_type} for {connection_id}: not connected")
        return False
    return await send_message(conn.ws, msg_type, payload=payload)


async def fan_out(connections, recipients: Iterable[str], msg_type: str, payload: Optional[dict] = None) -> int:
    """
    Deliver the same event to several connection ids.

    Returns:
        int: Number of recipients the event was handed to.
    """
    delivered = 0
    for connection_id in recipients:
        if await send_to(connections, connection_id, msg_type, payload):
            delivered += 1
    return delivered


async def string_field(websocket, msg_type: str, payload: dict, field: str) -> Optional[str]:
    """
    Read a required string field from an inbound payload.

    Identifiers arrive from untrusted clients and end up as dict keys and set
    members, so anything but a non-empty string is refused here.

    Args:
        websocket: Sender's socket, which receives the error envelope.
        msg_type (str): Event name the error relates to.
        payload (dict): Inbound payload.
        field (str): Name of the field to read.

    Returns:
        str or None: The value; None after MISSING_FIELDS or INVALID_FIELDS was sent.
    """
    value = payload.get(field)
    if value is None or value == "":
        await send_error_message(websocket, msg_type, "MISSING_FIELDS", f"{field} is required.")
        return None
    if not isinstance(value, str):
        await send_error_message(websocket, msg_type, "INVALID_FIELDS", f"{field} must be a string.")
        return None
    return value
