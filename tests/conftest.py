import asyncio
import inspect
import itertools
import json
import os
import sys
from contextlib import asynccontextmanager

import pytest

# ──────────────────────────────────────────────────────────────────────────────
# Make sure the repository root (the parent of tests/) is on sys.path so that
# `import meshrelay` works without installing the package.
# ──────────────────────────────────────────────────────────────────────────────
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

# fmt: off
from aiortc import RTCSessionDescription
from websockets.exceptions import ConnectionClosedOK

from meshrelay.handlers.connection import Relay
from meshrelay.services.messaging import build_message
# fmt: on

_ports = itertools.count(40000)


# ──────────────────────────────────────────────────────────────────────────────
# Relay-side fakes
# ──────────────────────────────────────────────────────────────────────────────
class FakeWebSocket:
    """Records every frame sent to it and replays queued inbound frames."""

    def __init__(self, frames=(), remote_address=None):
        self.sent = []
        self._frames = list(frames)
        self.remote_address = remote_address or ("127.0.0.1", next(_ports))
        self.closed = False
        self.close_code = None

    async def send(self, data):
        if self.closed:
            raise ConnectionClosedOK(None, None)
        self.sent.append(json.loads(data))

    def __aiter__(self):
        return self._replay()

    async def _replay(self):
        for frame in self._frames:
            if self.closed:
                return
            yield frame

    async def close(self, code=1000, reason=""):
        self.closed = True
        self.close_code = code

    def messages(self, msg_type=None):
        return [m for m in self.sent if msg_type is None or m["msg_type"] == msg_type]

    def payloads(self, msg_type):
        return [m["payload"] for m in self.messages(msg_type)]

    def types(self):
        return [m["msg_type"] for m in self.sent]


class MemorySocket:
    """One end of an in-memory duplex websocket."""

    def __init__(self, remote_address=None):
        self.inbox = asyncio.Queue()
        self.peer = None
        self.closed = False
        self.remote_address = remote_address or ("127.0.0.1", next(_ports))

    async def send(self, data):
        if self.closed or self.peer.closed:
            raise ConnectionClosedOK(None, None)
        await self.peer.inbox.put(data)

    def __aiter__(self):
        return self

    async def __anext__(self):
        data = await self.inbox.get()
        if data is None:
            raise StopAsyncIteration
        return data

    async def close(self, code=1000, reason=""):
        if self.closed:
            return
        self.closed = True
        await self.inbox.put(None)
        if not self.peer.closed:
            self.peer.closed = True
            await self.peer.inbox.put(None)


def memory_pair():
    client_end, server_end = MemorySocket(), MemorySocket()
    client_end.peer, server_end.peer = server_end, client_end
    return client_end, server_end


def memory_connector(relay):
    """A websockets.connect replacement that plugs clients straight into `relay`."""

    @asynccontextmanager
    async def connect(url):
        client_end, server_end = memory_pair()
        server = asyncio.create_task(relay.handle_connection(server_end))
        try:
            yield client_end
        finally:
            await client_end.close()
            await server

    return connect


def envelope(msg_type, payload=None, success=True, error_code=None):
    return json.dumps(build_message(msg_type, success=success, payload=payload, error_code=error_code))


async def call(relay, conn, msg_type, **payload):
    """Invoke the relay handler for `msg_type` as if `conn` had sent it."""
    return await relay.handlers[msg_type](conn, {"msg_type": msg_type, "payload": payload})


async def eventually(predicate, timeout=2.0):
    """Poll `predicate` until it holds or fail after `timeout` seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


# ──────────────────────────────────────────────────────────────────────────────
# Client-side fakes
# ──────────────────────────────────────────────────────────────────────────────
class FakeTrack:
    def __init__(self, kind, label=""):
        self.kind = kind
        self.label = label
        self.stopped = False

    def stop(self):
        self.stopped = True


class FakeSender:
    def __init__(self, track):
        self.kind = track.kind
        self.track = track
        self.replaced = []

    def replaceTrack(self, track):
        self.replaced.append(track)
        self.track = track


class FakePeerConnection:
    """Stands in for RTCPeerConnection: records calls, emits events on demand."""

    def __init__(self):
        self.handlers = {}
        self.senders = []
        self.candidates = []
        self.connectionState = "new"
        self.localDescription = None
        self.remoteDescription = None
        self.close_calls = 0

    def on(self, event, fn):
        self.handlers.setdefault(event, []).append(fn)

    async def fire(self, event, *args):
        for fn in self.handlers.get(event, []):
            result = fn(*args)
            if inspect.isawaitable(result):
                await result

    async def set_state(self, state):
        self.connectionState = state
        await self.fire("connectionstatechange")

    def addTrack(self, track):
        sender = FakeSender(track)
        self.senders.append(sender)
        return sender

    def getSenders(self):
        return list(self.senders)

    async def createOffer(self):
        return RTCSessionDescription(sdp="v=0 offer", type="offer")

    async def createAnswer(self):
        return RTCSessionDescription(sdp="v=0 answer", type="answer")

    async def setLocalDescription(self, description):
        self.localDescription = description

    async def setRemoteDescription(self, description):
        self.remoteDescription = description

    async def addIceCandidate(self, candidate):
        self.candidates.append(candidate)

    async def close(self):
        self.close_calls += 1
        self.connectionState = "closed"
        await self.fire("connectionstatechange")


class PeerConnectionFactory:
    """Callable pc factory remembering every connection it built."""

    def __init__(self):
        self.built = []

    def __call__(self):
        pc = FakePeerConnection()
        self.built.append(pc)
        return pc


class FakeMedia:
    def __init__(self):
        self.audio = FakeTrack("audio", "mic")
        self.camera = FakeTrack("video", "camera")
        self.screen = None

    @property
    def video(self):
        return self.screen or self.camera

    def outgoing_tracks(self):
        return [self.audio, self.video]

    def video_for_peer(self, session=None):
        return self.video

    def audio_for_detector(self):
        return None

    def use_screen(self, track):
        self.screen = track

    def use_camera(self):
        self.screen = None


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


# ──────────────────────────────────────────────────────────────────────────────
# Fixtures
# ──────────────────────────────────────────────────────────────────────────────
@pytest.fixture
def relay():
    return Relay()


@pytest.fixture
def connect(relay):
    """Register a fake socket with the relay and return its Connection."""
    def _connect():
        return relay.connections.register(FakeWebSocket())
    return _connect


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def pc_factory():
    return PeerConnectionFactory()
