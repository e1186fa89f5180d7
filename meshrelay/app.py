# meshrelay/app.py
# fmt: off
# logging config must precede the other imports so their loggers inherit it
import logging

from meshrelay.services.logging_utils import setup_logging
setup_logging()
logger = logging.getLogger(__name__)

import asyncio
import json
import ssl
from http import HTTPStatus

from websockets import serve

from meshrelay.constants import (
    HEALTH_PATH, HEARTBEAT_INTERVAL, HEARTBEAT_TIMEOUT,
    RELAY_HOST, RELAY_PORT, SSL_CERT_FILE, SSL_KEY_FILE,
)
from meshrelay.handlers.connection import Relay
# fmt: on


def build_ssl_context():
    """
    Build the TLS context for the relay when a certificate is configured.

    Returns:
        ssl.SSLContext or None: None when SSL_CERT_FILE / SSL_KEY_FILE are unset.
    """
    if not (SSL_CERT_FILE and SSL_KEY_FILE):
        logger.warning("SSL_CERT_FILE / SSL_KEY_FILE not set, serving plain ws://")
        return None
    ssl_ctx = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
    ssl_ctx.load_cert_chain(certfile=SSL_CERT_FILE, keyfile=SSL_KEY_FILE)
    return ssl_ctx


def make_health_check(relay: Relay):
    """
    Create a process_request hook answering HTTP liveness checks.

    Requests for HEALTH_PATH get a JSON report instead of a websocket upgrade;
    every other path proceeds with the handshake.

    Parameters:
        relay (Relay): The relay whose state is reported.

    Returns:
        callable: Hook suitable for websockets.serve(process_request=...).
    """
    def process_request(connection, request):
        if request.path.split("?", 1)[0] != HEALTH_PATH:
            return None
        return connection.respond(HTTPStatus.OK, json.dumps(relay.health()) + "\n")

    return process_request


async def start_server(host, port, ssl_ctx=None, relay=None):
    """
    Asynchronously run the relay until cancelled.

    Parameters:
        host (str): The host IP address or hostname to bind the server.
        port (int): The port number to listen on.
        ssl_ctx (ssl.SSLContext, optional): TLS context; plain websockets when None.
        relay (Relay, optional): Relay instance; a fresh one is created when None.

    Returns:
        None
    """
    relay = relay or Relay()
    async with serve(
            relay.handle_connection,
            host=host,
            port=port,
            ssl=ssl_ctx,
            process_request=make_health_check(relay),
            ping_interval=HEARTBEAT_INTERVAL,
            ping_timeout=HEARTBEAT_TIMEOUT,
    ):
        scheme = "wss" if ssl_ctx else "ws"
        logger.info(f"Signaling relay started on {scheme}://{host}:{port}")
        await asyncio.Future()  # Run forever


def main():
    """
    Entry point for starting the relay, configured from the environment.
    """
    logger.info("Starting signaling relay...")
    try:
        asyncio.run(start_server(RELAY_HOST, RELAY_PORT, build_ssl_context()))
    except KeyboardInterrupt:
        logger.info("Signaling relay stopped")


if __name__ == "__main__":
    main()
