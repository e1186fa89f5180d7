# client/peer_state.py
"""
Per-remote-peer connection state, independent of any network I/O.

Every remote peer the client talks to owns one PeerSession inside a PeerTable
indexed by the peer's connection id. A session walks the states

    IDLE -> NEGOTIATING -> CONNECTED -> (REPLACING_TRACK -> CONNECTED)* -> CLOSING -> CLOSED

and any other move raises InvalidTransition. Replacing a session (a new offer,
an ICE restart) tears the previous connection object down exactly once; events
the old object raises afterwards are recognised as stale through is_current().
"""
import enum
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from meshrelay.client.errors import InvalidTransition
from meshrelay.constants import GHOST_GRACE_PERIOD

logger = logging.getLogger(__name__)


class PeerState(enum.Enum):
    IDLE = "idle"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    REPLACING_TRACK = "replacing-track"
    CLOSING = "closing"
    CLOSED = "closed"


#: Allowed moves out of each state.
TRANSITIONS = {
    PeerState.IDLE: frozenset({PeerState.NEGOTIATING, PeerState.CLOSING}),
    PeerState.NEGOTIATING: frozenset({PeerState.CONNECTED, PeerState.CLOSING}),
    PeerState.CONNECTED: frozenset({PeerState.REPLACING_TRACK, PeerState.CLOSING}),
    PeerState.REPLACING_TRACK: frozenset({PeerState.CONNECTED, PeerState.CLOSING}),
    PeerState.CLOSING: frozenset({PeerState.CLOSED}),
    PeerState.CLOSED: frozenset(),
}


@dataclass(eq=False)
class PeerSession:
    """
    Connection state toward one remote peer.

    Attributes:
        peer_id (str): Relay connection id of the remote peer.
        pc: The peer connection object; None for a slot still waiting for an offer.
        name (str): Display name announced by the relay.
        initiator (bool): Whether this side sends the offer.
        added_at (float): Monotonic time the session was created.
        stream_at (Optional[float]): When the first inbound track arrived.
        ice_restarts (int): Rebuilds already spent on this peer.
        remote_description_set (bool): Whether the remote SDP has been applied.
    """
    peer_id: str
    pc: object = None
    name: str = ""
    initiator: bool = False
    added_at: float = 0.0
    state: PeerState = PeerState.IDLE
    stream_at: Optional[float] = None
    ice_restarts: int = 0
    remote_description_set: bool = False
    history: List[PeerState] = field(default_factory=list)

    def transition(self, new_state: PeerState) -> None:
        """
        Move to `new_state`.

        Raises:
            InvalidTransition: If TRANSITIONS forbids the move.
        """
        if new_state not in TRANSITIONS[self.state]:
            raise InvalidTransition(
                f"peer {self.peer_id}: {self.state.value} -> {new_state.value} is not allowed")
        logger.debug(f"peer {self.peer_id}: {self.state.value} -> {new_state.value}")
        self.history.append(self.state)
        self.state = new_state

    @property
    def has_stream(self) -> bool:
        return self.stream_at is not None

    @property
    def live(self) -> bool:
        return self.state not in (PeerState.CLOSING, PeerState.CLOSED)

    def mark_stream(self, now: float) -> None:
        if self.stream_at is None:
            self.stream_at = now

    def is_ghost(self, now: float, grace: float) -> bool:
        """A session with no inbound stream older than the grace window."""
        return not self.has_stream and now - self.added_at > grace


class PeerTable:
    """
    Owned collection of peer sessions, indexed by remote connection id.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic, grace: float = GHOST_GRACE_PERIOD):
        self._sessions: Dict[str, PeerSession] = {}
        self._clock = clock
        self.grace = grace

    def __contains__(self, peer_id: str) -> bool:
        return peer_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def __iter__(self):
        return iter(list(self._sessions.values()))

    def get(self, peer_id: str) -> Optional[PeerSession]:
        return self._sessions.get(peer_id)

    def ids(self) -> List[str]:
        return sorted(self._sessions)

    def is_current(self, session: PeerSession) -> bool:
        """Whether `session` is still the live entry for its peer id."""
        return self._sessions.get(session.peer_id) is session

    def add(self, peer_id: str, pc=None, name: str = "", initiator: bool = False) -> PeerSession:
        """
        Create a session for a peer that has none.

        Raises:
            KeyError: If the peer already has a session; use replace() instead.
        """
        if peer_id in self._sessions:
            raise KeyError(f"peer {peer_id} already has a session")
        session = PeerSession(peer_id=peer_id, pc=pc, name=name,
                              initiator=initiator, added_at=self._clock())
        self._sessions[peer_id] = session
        return session

    async def replace(self, peer_id: str, pc, name: Optional[str] = None,
                      initiator: bool = False, ice_restarts: int = 0) -> PeerSession:
        """
        Install a fresh session for `peer_id`, tearing down any previous one.

        Args:
            peer_id (str): Remote connection id.
            pc: The new peer connection object.
            name (str, optional): Display name; inherited from the old session when None.
            initiator (bool): Whether this side sends the offer.
            ice_restarts (int): Rebuilds already spent, carried across ICE restarts.

        Returns:
            PeerSession: The new session, in state IDLE.
        """
        old = self._sessions.pop(peer_id, None)
        if old is not None:
            if name is None:
                name = old.name
            await self._teardown(old)
        session = self.add(peer_id, pc, name or "", initiator)
        session.ice_restarts = ice_restarts
        return session

    async def close(self, peer_id: str) -> bool:
        """
        Remove and tear down the session for `peer_id`.

        Returns:
            bool: False if there was nothing to close. A peer is torn down at
            most once no matter how many callers race to close it.
        """
        session = self._sessions.pop(peer_id, None)
        if session is None:
            return False
        await self._teardown(session)
        return True

    async def close_all(self) -> int:
        """Tear down every session. Returns how many were closed."""
        closed = 0
        for peer_id in list(self._sessions):
            if await self.close(peer_id):
                closed += 1
        return closed

    async def _teardown(self, session: PeerSession) -> None:
        if session.live:
            session.transition(PeerState.CLOSING)
        if session.pc is not None:
            try:
                await session.pc.close()
            except Exception as e:
                logger.warning(f"Error closing connection to {session.peer_id}: {e}")
        if session.state is PeerState.CLOSING:
            session.transition(PeerState.CLOSED)

    def ghosts(self, now: Optional[float] = None) -> List[PeerSession]:
        """Sessions that never produced an inbound stream within the grace window."""
        now = self._clock() if now is None else now
        return [s for s in self._sessions.values() if s.is_ghost(now, self.grace)]

    async def sweep(self) -> List[str]:
        """
        Evict ghost sessions.

        Returns:
            List[str]: Peer ids that were removed by this sweep.
        """
        removed = []
        for session in self.ghosts():
            # A concurrent replace() may have superseded the session meanwhile
            if not self.is_current(session):
                continue
            if await self.close(session.peer_id):
                logger.debug(f"Swept ghost peer {session.peer_id}")
                removed.append(session.peer_id)
        return removed

    def replace_video_track(self, track_for: Callable[[PeerSession], object]) -> int:
        """
        Swap the outgoing video of every live connection in place.

        The existing video sender gets the new track; the offer/answer pair is
        left untouched.

        Args:
            track_for (callable): Returns the track to send to a given session.

        Returns:
            int: Number of senders that were switched.
        """
        switched = 0
        for session in list(self._sessions.values()):
            if session.pc is None or not session.live:
                continue
            connected = session.state is PeerState.CONNECTED
            if connected:
                session.transition(PeerState.REPLACING_TRACK)
            try:
                for sender in session.pc.getSenders():
                    if getattr(sender, "kind", None) == "video":
                        sender.replaceTrack(track_for(session))
                        switched += 1
            finally:
                if connected:
                    session.transition(PeerState.CONNECTED)
        return switched
