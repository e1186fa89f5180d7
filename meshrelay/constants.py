"""
Application-wide constants for the relay server, admission, and the mesh client.

Values that operators tune per deployment are read from the environment (a local
.env file is honoured); timing constants for the client lifecycle are fixed and
documented with the race each one resolves.
"""
import os

from dotenv import load_dotenv

load_dotenv()

# --- Relay Server ---
#: Interface the websocket relay binds to.
RELAY_HOST: str = os.getenv("RELAY_HOST", "0.0.0.0")
#: Port the websocket relay (and its /health endpoint) listens on.
RELAY_PORT: int = int(os.getenv("RELAY_PORT", "8765"))
#: HTTP path answering liveness checks instead of upgrading to a websocket.
HEALTH_PATH: str = "/health"

# --- SSL Certificate Paths ---
#: Path to the server's SSL certificate file (PEM format). TLS is off when unset.
SSL_CERT_FILE: str = os.getenv("SSL_CERT_FILE", "")
#: Path to the server's SSL private key file (PEM format).
SSL_KEY_FILE: str = os.getenv("SSL_KEY_FILE", "")

# --- WebSocket Heartbeat Configuration ---
#: Interval (in seconds) between protocol-level pings to clients.
HEARTBEAT_INTERVAL: int = int(os.getenv("HEARTBEAT_INTERVAL", "10"))
#: Timeout (in seconds) to wait for a pong before the connection is dropped.
HEARTBEAT_TIMEOUT: int = int(os.getenv("HEARTBEAT_TIMEOUT", "15"))

# --- Room / Peer Constraints ---
#: Maximum length accepted for a room id (the shared session key).
MAX_ROOM_ID_LENGTH: int = 128
#: Maximum length of a display name; longer names are truncated.
MAX_NAME_LENGTH: int = 64
#: Name used when a joiner does not provide one.
DEFAULT_PEER_NAME: str = "Guest"
#: Group lengths of the human-shareable display code, e.g. "abc-defg-hij".
DISPLAY_CODE_GROUPS: tuple = (3, 4, 3)
#: Alphabet the display code is drawn from.
DISPLAY_CODE_ALPHABET: str = "abcdefghijklmnopqrstuvwxyz0123456789"

# --- Websocket Close Codes ---
#: Close code used when a client exceeds the message rate limit.
CLOSE_RATE_LIMITED: int = 4008

# --- Client Peer Lifecycle ---
#: Seconds a peer may exist without an inbound stream before the sweep evicts it.
#: Covers an offer that was never answered and a join that raced a disconnect.
GHOST_GRACE_PERIOD: float = 12.0
#: Seconds between ghost sweeps. Independent of any signaling event.
GHOST_SWEEP_INTERVAL: float = 5.0
#: Rebuild-and-reoffer attempts after a connection reaches "failed" before the
#: peer is dropped. Covers transient NAT rebinding on one side.
MAX_ICE_RESTARTS: int = 2
#: Consecutive relay reconnects before the client gives up with TransportDrop.
MAX_RECONNECT_ATTEMPTS: int = 5
#: Seconds to wait between relay reconnect attempts; lets the relay notice the
#: old socket is gone so the new join does not collide with stale membership.
RECONNECT_DELAY: float = 2.0

# --- Speaking Indicator ---
#: Average level (0-255 scale) above which the local microphone counts as speaking.
SPEAKING_THRESHOLD: float = 15.0
#: Seconds between microphone level samples.
SPEAKING_POLL_INTERVAL: float = 0.3
