# client/mesh_client.py
"""
Headless mesh participant.

Connects to the relay, runs the join / admission handshake, and keeps one
aiortc RTCPeerConnection per remote peer. The newcomer that receives
`all-users` offers to every listed peer; peers announced through `user-joined`
wait for that offer. Losing the relay discards every peer connection and
re-runs the handshake from scratch, a bounded number of times.
"""
import asyncio
import inspect
import json
import logging
import time
from typing import Callable, Dict, List, Optional, Set

import websockets
from aiortc import RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp

from meshrelay.client.errors import AdmissionDenied, MediaUnavailable, StaleNegotiation, TransportDrop
from meshrelay.client.peer_state import PeerState, PeerTable
from meshrelay.client.speaking import SpeakingDetector
from meshrelay.client import status as fields
from meshrelay.client.status import StatusBoard
from meshrelay.constants import (
    GHOST_SWEEP_INTERVAL, MAX_ICE_RESTARTS, MAX_RECONNECT_ATTEMPTS, RECONNECT_DELAY,
)

logger = logging.getLogger(__name__)


async def _maybe_await(result):
    if inspect.isawaitable(result):
        return await result
    return result


def _description(pc) -> dict:
    return {"type": pc.localDescription.type, "sdp": pc.localDescription.sdp}


def parse_candidate(candidate: dict):
    """
    Convert a browser ICE candidate dict into an aiortc RTCIceCandidate.

    Args:
        candidate (dict): {"candidate": "candidate:...", "sdpMid", "sdpMLineIndex"}.

    Returns:
        RTCIceCandidate or None: None for the end-of-candidates marker.
    """
    line = candidate.get("candidate") or ""
    if not line:
        return None
    if line.startswith("candidate:"):
        line = line[len("candidate:"):]
    ice = candidate_from_sdp(line)
    ice.sdpMid = candidate.get("sdpMid")
    ice.sdpMLineIndex = candidate.get("sdpMLineIndex")
    return ice


class MeshClient:
    """
    One participant of a meeting room.

    Parameters:
        url (str): Relay websocket URL.
        room_id (str): Shared session key of the room.
        name (str): Display name shown to other participants.
        is_host (bool): Join as host (admitted directly, decides on guests).
        media: Local media provider (see LocalMedia); None joins receive-only.
        pc_factory (callable): Builds a peer connection object.
        on_permission_request (callable): Host hook (peer_id, name) -> bool or None.
        on_track (callable): Hook (peer_id, track) for inbound media.
        connect (callable): websockets.connect compatible opener.
        sleep (callable): asyncio.sleep compatible delay, used between reconnects.
        clock (callable): Monotonic time source for the ghost sweep.
    """

    def __init__(self, url: str, room_id: str, name: str, is_host: bool = False,
                 media=None,
                 pc_factory: Callable[[], object] = RTCPeerConnection,
                 on_permission_request: Optional[Callable] = None,
                 on_track: Optional[Callable] = None,
                 connect=websockets.connect,
                 sleep=asyncio.sleep,
                 clock: Callable[[], float] = time.monotonic):
        self.url = url
        self.room_id = room_id
        self.name = name
        self.is_host = is_host
        self.media = media
        self.on_permission_request = on_permission_request
        self.on_track = on_track
        self._pc_factory = pc_factory
        self._connect = connect
        self._sleep = sleep
        self._clock = clock

        self.peers = PeerTable(clock=clock)
        self.status = StatusBoard()
        self.remote_tracks: Dict[str, List[object]] = {}
        self.meeting_id: Optional[str] = None
        self.admitted = False
        self.waiting = False
        self.ws = None
        self.reconnect_attempts = 0
        self._closed = False
        # Background work owned by the current relay session
        self._tasks: Set[asyncio.Task] = set()

        self._handlers = {
            "meeting-info":           self._on_meeting_info,
            "waiting-for-permission": self._on_waiting,
            "permission-requested":   self._on_permission_requested,
            "permission-granted":     self._on_permission_granted,
            "permission-denied":      self._on_permission_denied,
            "all-users":              self._on_all_users,
            "user-joined":            self._on_user_joined,
            "user-left":              self._on_user_left,
            "offer":                  self._on_offer,
            "answer":                 self._on_answer,
            "ice-candidate":          self._on_ice_candidate,
            "peer-status":            self._on_peer_status,
            "meeting-ended":          self._on_meeting_ended,
            "pong":                   None,
        }

    # ------------------------------------------------------------------
    # Session loop
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """
        Stay in the room until the meeting ends or leave() is called.

        Raises:
            AdmissionDenied: The host rejected this client.
            TransportDrop: The relay could not be reached again after
                MAX_RECONNECT_ATTEMPTS consecutive attempts.
        """
        while not self._closed:
            try:
                async with self._connect(self.url) as ws:
                    await self._session(ws)
            except AdmissionDenied:
                self._closed = True
                raise
            except (OSError, websockets.exceptions.WebSocketException) as e:
                logger.warning(f"Relay connection lost: {e}")
            finally:
                await self._discard_state()

            if self._closed:
                return
            self.reconnect_attempts += 1
            if self.reconnect_attempts > MAX_RECONNECT_ATTEMPTS:
                raise TransportDrop(
                    f"relay {self.url} unreachable after {MAX_RECONNECT_ATTEMPTS} reconnect attempts")
            logger.info(f"Rejoining room (attempt {self.reconnect_attempts}/{MAX_RECONNECT_ATTEMPTS})")
            await self._sleep(RECONNECT_DELAY)

    async def _session(self, ws) -> None:
        """Run one relay connection: join, then dispatch until it closes."""
        self.ws = ws
        await self._send("join-room", {"roomId": self.room_id, "isHost": self.is_host, "name": self.name})
        self._spawn(self._sweep_loop())
        detector_track = self.media.audio_for_detector() if self.media is not None else None
        if detector_track is not None:
            detector = SpeakingDetector(on_change=lambda speaking: self.set_status(**{fields.SPEAKING: speaking}))
            self._spawn(detector.run(detector_track))
        try:
            async for raw in ws:
                await self.dispatch(raw)
        finally:
            tasks = list(self._tasks)
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            if detector_track is not None:
                # Unregisters the MediaRelay subscription
                detector_track.stop()

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _discard_state(self) -> None:
        """Forget everything tied to the lost relay connection."""
        self.ws = None
        self.admitted = False
        self.waiting = False
        closed = await self.peers.close_all()
        self.remote_tracks.clear()
        self.status.clear()
        if closed:
            logger.info(f"Discarded {closed} peer connection(s)")

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(GHOST_SWEEP_INTERVAL)
            await self.sweep_ghosts()

    async def sweep_ghosts(self) -> List[str]:
        """Evict peers that never delivered a stream; see PeerTable.sweep()."""
        removed = await self.peers.sweep()
        for peer_id in removed:
            self.remote_tracks.pop(peer_id, None)
            self.status.forget(peer_id)
        return removed

    async def leave(self) -> None:
        """Leave the room; run() returns once the socket is closed."""
        self._closed = True
        if self.ws is not None:
            await self.ws.close()

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def _send(self, msg_type: str, payload: dict) -> bool:
        if self.ws is None:
            logger.warning(f"Not connected, dropping {msg_type}")
            return False
        try:
            await self.ws.send(json.dumps({"msg_type": msg_type, "payload": payload}))
            return True
        except websockets.exceptions.ConnectionClosed:
            logger.info(f"Relay closed while sending {msg_type}")
            return False

    async def decide(self, peer_id: str, approved: bool) -> bool:
        """Host only: admit or reject a waiting peer."""
        return await self._send("give-permission",
                                {"peerId": peer_id, "roomId": self.room_id, "approved": approved})

    async def approve(self, peer_id: str) -> bool:
        return await self.decide(peer_id, True)

    async def deny(self, peer_id: str) -> bool:
        return await self.decide(peer_id, False)

    async def end_meeting(self) -> bool:
        return await self._send("end-meeting", {"roomId": self.room_id})

    async def set_status(self, **changes) -> bool:
        """
        Record local status changes and broadcast the ones that differ.

        Returns:
            bool: True if anything was broadcast.
        """
        if fields.RECORDING in changes and not self.is_host:
            logger.warning("Only the host can change the recording state")
            changes.pop(fields.RECORDING)
        changed = self.status.update_local(changes)
        if fields.RECORDING in changed:
            self.status.recording = bool(changed[fields.RECORDING])
        if not changed or not self.admitted:
            return False
        return await self._send("broadcast-status", {"roomId": self.room_id, "payload": changed})

    async def raise_hand(self, raised: bool = True) -> bool:
        return await self.set_status(**{fields.HAND_RAISED: raised})

    async def set_recording(self, recording: bool) -> bool:
        return await self.set_status(**{fields.RECORDING: recording})

    async def share_screen(self, track) -> int:
        """
        Send `track` instead of the camera to every peer, without renegotiating.

        Returns:
            int: Number of senders switched.

        Raises:
            MediaUnavailable: If the client was started without local media.
        """
        if self.media is None:
            raise MediaUnavailable("receive-only client has no video to replace")
        self.media.use_screen(track)
        switched = self.peers.replace_video_track(self.media.video_for_peer)
        await self.set_status(**{fields.SCREEN_SHARING: True})
        return switched

    async def stop_screen_share(self) -> int:
        if self.media is None:
            raise MediaUnavailable("receive-only client has no video to replace")
        self.media.use_camera()
        switched = self.peers.replace_video_track(self.media.video_for_peer)
        await self.set_status(**{fields.SCREEN_SHARING: False})
        return switched

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def dispatch(self, raw) -> None:
        """
        Route one relay frame to its handler.

        StaleNegotiation is expected during reconnect races and only logged.
        """
        message = json.loads(raw)
        msg_type = message.get("msg_type")
        payload = message.get("payload")
        if message.get("success") is False:
            logger.warning(f"Relay refused {msg_type}: {message.get('error_code')} "
                           f"{message.get('error_message')}")
            return
        if msg_type not in self._handlers:
            logger.warning(f"Unknown relay message: {msg_type}")
            return
        handler = self._handlers[msg_type]
        if handler is None:
            return
        try:
            await handler(payload)
        except StaleNegotiation as e:
            logger.debug(f"Discarded stale {msg_type}: {e}")

    async def _on_meeting_info(self, payload):
        self.meeting_id = payload.get("meetingId")
        self.admitted = True
        self.waiting = False
        self.reconnect_attempts = 0
        logger.info(f"Entered meeting {self.meeting_id} as host")

    async def _on_waiting(self, payload):
        self.meeting_id = payload.get("meetingId")
        self.waiting = True
        self.reconnect_attempts = 0
        logger.info(f"Waiting for the host to admit us to {self.meeting_id}")

    async def _on_permission_requested(self, payload):
        peer_id, name = payload.get("peerId"), payload.get("name", "")
        logger.info(f"{name} ({peer_id}) asks to join")
        if self.on_permission_request is None:
            return
        # The hook may block on a human decision
        self._spawn(self._ask_host(peer_id, name))

    async def _ask_host(self, peer_id, name):
        try:
            decision = await _maybe_await(self.on_permission_request(peer_id, name))
        except Exception as e:
            logger.error(f"Permission hook failed for {peer_id}; leaving it undecided", exc_info=e)
            return
        if decision is not None:
            await self.decide(peer_id, bool(decision))

    async def _on_permission_granted(self, payload):
        self.admitted = True
        self.waiting = False
        logger.info("Admitted by the host")

    async def _on_permission_denied(self, payload):
        self.waiting = False
        raise AdmissionDenied(f"host of meeting {self.meeting_id} rejected the request to join")

    async def _on_all_users(self, payload):
        self.admitted = True
        for user in payload or []:
            await self.call(user["id"], user.get("name", ""))
        await self._announce_status()

    async def _on_user_joined(self, payload):
        peer_id = payload["id"]
        session = self.peers.get(peer_id)
        if session is None:
            # Slot waits for the newcomer's offer; the sweep evicts it otherwise
            self.peers.add(peer_id, None, payload.get("name", ""), initiator=False)
        else:
            session.name = payload.get("name", session.name)
        await self._announce_status()

    async def _on_user_left(self, payload):
        peer_id = payload["id"]
        await self.peers.close(peer_id)
        self.remote_tracks.pop(peer_id, None)
        self.status.forget(peer_id)
        logger.info(f"{payload.get('name') or peer_id} left")

    async def _on_offer(self, payload):
        await self.answer(payload["callerID"], payload["signal"])

    async def _on_answer(self, payload):
        peer_id = payload["id"]
        session = self.peers.get(peer_id)
        if (session is None or session.pc is None or not session.initiator
                or session.state is not PeerState.NEGOTIATING or session.remote_description_set):
            raise StaleNegotiation(f"no pending offer toward {peer_id}")
        signal = payload["signal"]
        session.remote_description_set = True
        await session.pc.setRemoteDescription(RTCSessionDescription(sdp=signal["sdp"], type=signal["type"]))

    async def _on_ice_candidate(self, payload):
        peer_id = payload["from"]
        session = self.peers.get(peer_id)
        if session is None or session.pc is None:
            raise StaleNegotiation(f"candidate for unknown peer {peer_id}")
        candidate = parse_candidate(payload.get("candidate") or {})
        if candidate is not None:
            await session.pc.addIceCandidate(candidate)

    async def _on_peer_status(self, payload):
        self.status.apply(payload["from"], payload.get("payload") or {}, bool(payload.get("fromHost")))

    async def _on_meeting_ended(self, payload):
        logger.info("The host ended the meeting")
        await self.leave()

    async def _announce_status(self):
        """Send the full local status so newcomers learn it."""
        if self.status.local and self.admitted:
            await self._send("broadcast-status", {"roomId": self.room_id, "payload": dict(self.status.local)})

    # ------------------------------------------------------------------
    # Negotiation
    # ------------------------------------------------------------------

    async def _new_session(self, peer_id, name, initiator, ice_restarts=0):
        pc = self._pc_factory()
        session = await self.peers.replace(peer_id, pc, name=name, initiator=initiator,
                                           ice_restarts=ice_restarts)
        self.remote_tracks.pop(peer_id, None)
        pc.on("track", lambda track: self._on_remote_track(session, track))
        pc.on("connectionstatechange", lambda: self._on_connection_state(session))
        if self.media is not None:
            for track in self.media.outgoing_tracks():
                pc.addTrack(track)
        return session

    def _ensure_current(self, session):
        if not self.peers.is_current(session):
            raise StaleNegotiation(f"connection to {session.peer_id} was superseded")

    async def call(self, peer_id: str, name: Optional[str] = None, ice_restarts: int = 0):
        """
        Initiate toward `peer_id`: new connection, local offer, send it.

        Returns:
            PeerSession: The negotiating session.
        """
        session = await self._new_session(peer_id, name, initiator=True, ice_restarts=ice_restarts)
        session.transition(PeerState.NEGOTIATING)
        offer = await session.pc.createOffer()
        await session.pc.setLocalDescription(offer)
        self._ensure_current(session)
        await self._send("offer", {"target": peer_id, "signal": _description(session.pc)})
        return session

    async def answer(self, peer_id: str, signal: dict):
        """
        Answer an offer from `peer_id`, replacing whatever connection it had.

        Returns:
            PeerSession: The negotiating session.
        """
        session = await self._new_session(peer_id, None, initiator=False)
        session.transition(PeerState.NEGOTIATING)
        await session.pc.setRemoteDescription(RTCSessionDescription(sdp=signal["sdp"], type=signal["type"]))
        session.remote_description_set = True
        answer = await session.pc.createAnswer()
        await session.pc.setLocalDescription(answer)
        self._ensure_current(session)
        await self._send("answer", {"target": peer_id, "signal": _description(session.pc)})
        return session

    def _on_remote_track(self, session, track):
        if not self.peers.is_current(session):
            logger.debug(f"Ignored {track.kind} track from superseded connection to {session.peer_id}")
            return
        session.mark_stream(self._clock())
        self.remote_tracks.setdefault(session.peer_id, []).append(track)
        logger.info(f"Receiving {track.kind} from {session.name or session.peer_id}")
        if self.on_track is not None:
            self.on_track(session.peer_id, track)

    async def _on_connection_state(self, session):
        if not self.peers.is_current(session):
            return
        state = session.pc.connectionState
        logger.info(f"Connection to {session.peer_id}: {state}")
        if state == "connected" and session.state is PeerState.NEGOTIATING:
            session.transition(PeerState.CONNECTED)
        elif state == "failed":
            # aiortc has no restartIce(); the initiator rebuilds and re-offers
            if session.initiator and session.ice_restarts < MAX_ICE_RESTARTS:
                logger.info(f"ICE failed toward {session.peer_id}, restart "
                            f"{session.ice_restarts + 1}/{MAX_ICE_RESTARTS}")
                await self.call(session.peer_id, session.name, ice_restarts=session.ice_restarts + 1)
            else:
                logger.warning(f"Connection to {session.peer_id} failed, removing peer")
                await self._drop_peer(session.peer_id)
        elif state == "closed":
            await self._drop_peer(session.peer_id)

    async def _drop_peer(self, peer_id):
        await self.peers.close(peer_id)
        self.remote_tracks.pop(peer_id, None)
        self.status.forget(peer_id)
