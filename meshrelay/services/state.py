# services/state.py
import uuid
from dataclasses import dataclass, field
from typing import Dict, Iterator, Optional, Tuple

# ----------------------------------------------------------------------------
# Live connection state
# ----------------------------------------------------------------------------


@dataclass
class Connection:
    """
    One live websocket connection.

    Attributes:
        id (str): Fresh id for this socket; a reconnect always gets a new one.
        ws: The websocket connection object.
        remote_address (Optional[Tuple]): Peer address as reported by the socket.
        name (str): Last display name the client announced.
    """
    ws: object
    remote_address: Optional[Tuple] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    name: str = ""

    @property
    def ip(self) -> Optional[str]:
        return self.remote_address[0] if self.remote_address else None


class ConnectionTable:
    """
    Mapping of connection ids to live connections.
    """

    def __init__(self) -> None:
        self._connections: Dict[str, Connection] = {}

    def register(self, ws) -> Connection:
        """
        Allocate a connection id for a freshly accepted websocket.

        Args:
            ws: The websocket connection.

        Returns:
            Connection: The registered connection.
        """
        conn = Connection(ws=ws, remote_address=getattr(ws, "remote_address", None))
        self._connections[conn.id] = conn
        return conn

    def unregister(self, connection_id: str) -> Optional[Connection]:
        return self._connections.pop(connection_id, None)

    def get(self, connection_id: str) -> Optional[Connection]:
        return self._connections.get(connection_id)

    def __contains__(self, connection_id: str) -> bool:
        return connection_id in self._connections

    def __len__(self) -> int:
        return len(self._connections)

    def __iter__(self) -> Iterator[Connection]:
        return iter(list(self._connections.values()))
