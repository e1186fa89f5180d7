# services/registry.py
"""
Room registry and admission controller.

Tracks every active room, its admitted members, the connections waiting for
host approval, the host connection and the human-shareable display code.

Each room is guarded by its own asyncio.Lock so that join, decide and
disconnect for one room never interleave, while unrelated rooms proceed
independently. The registry only mutates state and reports what changed;
callers deliver the resulting notifications after the lock is released.

Room ids are the participants' shared session key. They are used as lookup
keys only: log lines and diagnostics name a room by its display code.
"""
import asyncio
import logging
import secrets
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

from meshrelay.constants import DISPLAY_CODE_ALPHABET, DISPLAY_CODE_GROUPS

logger = logging.getLogger(__name__)


@dataclass
class Room:
    """
    State of a single meeting room.

    Attributes:
        room_id (str): Opaque session key shared by every participant.
        display_code (str): Human-shareable code, fixed for the room's lifetime.
        host_id (Optional[str]): Connection id of the current host, if any.
        members (Set[str]): Admitted connection ids.
        pending (Set[str]): Connection ids waiting for host approval.
        names (Dict[str, str]): Display name per connection id.
        denied (Set[str]): Connection ids the host rejected; they cannot re-enter.
    """
    room_id: str
    display_code: str
    host_id: Optional[str] = None
    members: Set[str] = field(default_factory=set)
    pending: Set[str] = field(default_factory=set)
    names: Dict[str, str] = field(default_factory=dict)
    denied: Set[str] = field(default_factory=set)

    def is_empty(self) -> bool:
        return not self.members and not self.pending

    def peer_list(self, exclude: Optional[str] = None) -> List[dict]:
        """
        Build the `all-users` list of admitted members.

        Args:
            exclude (str, optional): Connection id to leave out (usually the recipient).

        Returns:
            List[dict]: One {"id", "name"} entry per member, sorted by id.
        """
        return [
            {"id": member, "name": self.names.get(member, "")}
            for member in sorted(self.members)
            if member != exclude
        ]


@dataclass
class JoinResult:
    """Outcome of a join attempt."""
    room_id: str
    display_code: str
    admitted: bool
    host_id: Optional[str]
    peers: List[dict]
    # Other members to notify with `user-joined` (empty for a pending joiner).
    notify: List[str]
    # Connections still waiting, re-announced to a freshly joined host.
    waiting: List[Tuple[str, str]]
    created: bool = False


@dataclass
class DecisionResult:
    """Outcome of a host's admission decision."""
    room_id: str
    target_id: str
    approved: bool
    name: str
    peers: List[dict]
    notify: List[str]


@dataclass
class LeaveResult:
    """Outcome of removing a connection from one room."""
    room_id: str
    connection_id: str
    name: str
    was_host: bool
    was_pending: bool
    remaining: List[str]
    dissolved: bool


class AdmissionError(Exception):
    """
    Raised when a registry request is refused.

    Attributes:
        code (str): Machine-readable error code sent back to the caller.
    """

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code


class _RoomLock:
    """
    Reference-counted lock for one room id.

    The count covers holders and waiters, so the lock is only discarded when no
    task can still be relying on it.
    """
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0


def generate_display_code() -> str:
    """
    Generate a random display code such as "k3d-9qfa-x0p".

    Returns:
        str: Dash-separated groups of lowercase alphanumerics.
    """
    return "-".join(
        "".join(secrets.choice(DISPLAY_CODE_ALPHABET) for _ in range(size))
        for size in DISPLAY_CODE_GROUPS
    )


class RoomRegistry:
    """
    Owns every room and the per-room locks guarding them.
    """

    def __init__(self, code_factory=generate_display_code) -> None:
        """
        Args:
            code_factory (callable, optional): Produces candidate display codes.
                Replaced in tests to force collisions.
        """
        self._rooms: Dict[str, Room] = {}
        self._codes: Dict[str, str] = {}
        self._locks: Dict[str, _RoomLock] = {}
        self._code_factory = code_factory

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _room_lock(self, room_id: str):
        entry = self._locks.get(room_id)
        if entry is None:
            entry = self._locks[room_id] = _RoomLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[room_id]

    # ------------------------------------------------------------------
    # Lookups (safe without the lock: they never await)
    # ------------------------------------------------------------------

    def get(self, room_id: str) -> Optional[Room]:
        return self._rooms.get(room_id)

    def rooms(self) -> List[Room]:
        return list(self._rooms.values())

    def resolve_code(self, display_code: str) -> Optional[str]:
        """Return the room id an active display code belongs to, if any."""
        return self._codes.get(display_code)

    def rooms_of(self, connection_id: str) -> List[str]:
        """Room ids where `connection_id` is a member, pending or denied."""
        return [
            room_id for room_id, room in self._rooms.items()
            if connection_id in room.members or connection_id in room.pending
            or connection_id in room.denied
        ]

    def share_room(self, first: str, second: str) -> bool:
        """Whether both connections are admitted members of a common room."""
        return any(
            first in room.members and second in room.members
            for room in self._rooms.values()
        )

    def snapshot(self) -> dict:
        """
        Summarise registry state for diagnostics.

        Rooms are listed under their display code; room ids are session keys
        and never leave the registry.

        Returns:
            dict: Room count and, per display code, member/pending counts and host presence.
        """
        return {
            "rooms": len(self._rooms),
            "membership": {
                room.display_code: {
                    "members": len(room.members),
                    "pending": len(room.pending),
                    "host": room.host_id is not None,
                }
                for room in self._rooms.values()
            },
        }

    def __len__(self) -> int:
        return len(self._rooms)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def _new_code(self) -> str:
        code = self._code_factory()
        while code in self._codes:
            logger.debug(f"Display code {code} already active, drawing again")
            code = self._code_factory()
        return code

    def _create(self, room_id: str) -> Room:
        code = self._new_code()
        room = Room(room_id=room_id, display_code=code)
        self._rooms[room_id] = room
        self._codes[code] = room_id
        logger.info(f"Created room {code}")
        return room

    def _dissolve(self, room: Room) -> None:
        self._rooms.pop(room.room_id, None)
        self._codes.pop(room.display_code, None)
        logger.info(f"Dissolved room {room.display_code}")

    async def join(self, room_id: str, connection_id: str, is_host: bool, name: str) -> JoinResult:
        """
        Admit a connection directly (host) or queue it for approval (guest).

        Args:
            room_id (str): Room to join; created when unknown.
            connection_id (str): The joining connection.
            is_host (bool): Whether the joiner claims the host role.
            name (str): Display name of the joiner.

        Returns:
            JoinResult: Whether the joiner was admitted and who must be told.

        Raises:
            AdmissionError: PERMISSION_DENIED if the host already rejected this
                connection; the room is left untouched.
        """
        async with self._room_lock(room_id):
            room = self._rooms.get(room_id)
            if room is not None and connection_id in room.denied:
                logger.info(f"Refused re-join of denied {connection_id} to room {room.display_code}")
                raise AdmissionError("PERMISSION_DENIED", "The host rejected this connection.")
            created = room is None
            if created:
                room = self._create(room_id)
            room.names[connection_id] = name

            if is_host or room.host_id == connection_id:
                room.pending.discard(connection_id)
                newly_admitted = connection_id not in room.members
                room.members.add(connection_id)
                room.host_id = connection_id
                logger.info(f"Host {connection_id} entered room {room.display_code}")
                notify = [m for m in room.members if m != connection_id] if newly_admitted else []
                waiting = [(p, room.names.get(p, "")) for p in sorted(room.pending)]
                return JoinResult(room_id, room.display_code, True, room.host_id,
                                  room.peer_list(exclude=connection_id), notify, waiting, created)

            if connection_id in room.members:
                logger.info(f"Member {connection_id} re-joined room {room.display_code}")
                return JoinResult(room_id, room.display_code, True, room.host_id,
                                  room.peer_list(exclude=connection_id), [], [], created)

            room.pending.add(connection_id)
            logger.info(f"Guest {connection_id} waiting for admission to room {room.display_code}")
            return JoinResult(room_id, room.display_code, False, room.host_id, [], [], [], created)

    async def decide(self, host_id: str, target_id: str, room_id: str, approved: bool) -> DecisionResult:
        """
        Apply the host's admission decision for a pending connection.

        A rejected connection is remembered for the room's lifetime, so a later
        join-room from it is refused instead of queued again.

        Args:
            host_id (str): Connection id of the caller; must be the room's host.
            target_id (str): Pending connection being decided on.
            room_id (str): Room the decision applies to.
            approved (bool): True to admit, False to reject.

        Returns:
            DecisionResult: The target's fate and who must be notified.

        Raises:
            AdmissionError: If the room is unknown, the caller is not the host,
                or the target is not pending.
        """
        async with self._room_lock(room_id):
            room = self._rooms.get(room_id)
            if room is None:
                raise AdmissionError("ROOM_NOT_FOUND", "Room does not exist.")
            if room.host_id is None or room.host_id != host_id:
                raise AdmissionError("NOT_HOST", "Only the host can admit participants.")
            if target_id not in room.pending:
                raise AdmissionError("NOT_PENDING", f"{target_id} is not waiting for admission.")

            room.pending.discard(target_id)
            name = room.names.get(target_id, "")
            if not approved:
                room.names.pop(target_id, None)
                room.denied.add(target_id)
                logger.info(f"Host {host_id} denied {target_id} in room {room.display_code}")
                return DecisionResult(room_id, target_id, False, name, [], [])

            notify = sorted(room.members)
            room.members.add(target_id)
            logger.info(f"Host {host_id} admitted {target_id} to room {room.display_code}")
            return DecisionResult(room_id, target_id, True, name,
                                  room.peer_list(exclude=target_id), notify)

    async def end(self, room_id: str, connection_id: str) -> List[str]:
        """
        Validate a host's request to end the meeting.

        Returns:
            List[str]: Every other member and pending connection to notify.

        Raises:
            AdmissionError: If the room is unknown or the caller is not the host.
        """
        async with self._room_lock(room_id):
            room = self._rooms.get(room_id)
            if room is None:
                raise AdmissionError("ROOM_NOT_FOUND", "Room does not exist.")
            if room.host_id != connection_id:
                raise AdmissionError("NOT_HOST", "Only the host can end the meeting.")
            logger.info(f"Host {connection_id} ended meeting in room {room.display_code}")
            return sorted((room.members | room.pending) - {connection_id})

    async def leave(self, connection_id: str) -> List[LeaveResult]:
        """
        Remove a connection from every room that holds it.

        The host slot is vacated without electing a successor. Rooms left with
        neither members nor pending connections are dissolved together with
        their display code. A denial is dropped silently: connection ids are
        never reused, so it can no longer matter.

        Args:
            connection_id (str): The connection that went away.

        Returns:
            List[LeaveResult]: One entry per room the connection was part of.
        """
        results = []
        for room_id in self.rooms_of(connection_id):
            async with self._room_lock(room_id):
                room = self._rooms.get(room_id)
                if room is None:
                    continue
                room.denied.discard(connection_id)
                was_pending = connection_id in room.pending
                if not was_pending and connection_id not in room.members:
                    continue
                room.members.discard(connection_id)
                room.pending.discard(connection_id)
                name = room.names.pop(connection_id, "")
                was_host = room.host_id == connection_id
                if was_host:
                    room.host_id = None
                    logger.info(f"Host {connection_id} left room {room.display_code}; host slot vacant")
                dissolved = room.is_empty()
                if dissolved:
                    self._dissolve(room)
                results.append(LeaveResult(room_id, connection_id, name, was_host,
                                           was_pending, sorted(room.members), dissolved))
        return results
