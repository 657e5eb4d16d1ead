"""
Pytest will auto-discover / import this file called 'conftest.py'.
It provides an in-memory stand-in for aiortc's RTCPeerConnection so that two
peers can negotiate and exchange data-channel messages inside one event loop.
"""

from __future__ import annotations

import asyncio
import uuid
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional

import pytest
from aiortc import RTCSessionDescription
from aiortc.exceptions import InvalidStateError

TOKEN_PREFIX = "a=fake-token:"


class FakeEmitter:
    def __init__(self) -> None:
        self._listeners: Dict[str, List[Callable[..., Any]]] = defaultdict(list)

    def on(self, event: str, handler: Callable[..., Any]) -> Callable[..., Any]:
        self._listeners[event].append(handler)
        return handler

    def emit(self, event: str, *args: Any) -> None:
        for handler in list(self._listeners[event]):
            handler(*args)


class FakeDataChannel(FakeEmitter):
    """Ordered, reliable channel: sends are delivered on the loop in FIFO order."""

    def __init__(self, label: str) -> None:
        super().__init__()
        self.label = label
        self.readyState = "connecting"
        self.peer: Optional["FakeDataChannel"] = None
        self.sent: List[str] = []

    def send(self, data: str) -> None:
        if self.readyState != "open":
            raise InvalidStateError("channel is not open")
        self.sent.append(data)
        if self.peer is not None:
            asyncio.get_running_loop().call_soon(self.peer.deliver, data)

    def deliver(self, data: str) -> None:
        if self.readyState == "open":
            self.emit("message", data)

    def open(self) -> None:
        self.readyState = "open"
        self.emit("open")

    def close(self) -> None:
        if self.readyState == "closed":
            return
        self.readyState = "closed"
        self.emit("close")
        if self.peer is not None:
            asyncio.get_running_loop().call_soon(self.peer.close)


class FakePeerConnection(FakeEmitter):
    def __init__(self, network: "FakeNetwork", configuration: Any = None) -> None:
        super().__init__()
        self.network = network
        self.configuration = configuration
        self.token = uuid.uuid4().hex
        self.iceGatheringState = "new"
        self.iceConnectionState = "new"
        self.localDescription: Optional[RTCSessionDescription] = None
        self.remoteDescription: Optional[RTCSessionDescription] = None
        self.channel: Optional[FakeDataChannel] = None
        self.closed = False

    def createDataChannel(self, label: str, ordered: bool = True) -> FakeDataChannel:
        self.channel = FakeDataChannel(label)
        return self.channel

    async def createOffer(self) -> RTCSessionDescription:
        return RTCSessionDescription(sdp=self._sdp(), type="offer")

    async def createAnswer(self) -> RTCSessionDescription:
        if self.remoteDescription is None:
            raise InvalidStateError("no remote description")
        return RTCSessionDescription(sdp=self._sdp(), type="answer")

    async def setLocalDescription(self, description: RTCSessionDescription) -> None:
        # Unlike aiortc, gathering can be left pending here to exercise the
        # channel's own gathering timeout.
        self.localDescription = description
        if self.network.stall_gathering:
            self.iceGatheringState = "gathering"
            return
        self.iceGatheringState = "complete"
        self.emit("icegatheringstatechange")

    async def setRemoteDescription(self, description: RTCSessionDescription) -> None:
        peer = self.network.lookup(_token_of(description.sdp))
        if peer is None:
            raise ValueError("Remote description does not match any known peer")
        self.remoteDescription = description
        if description.type == "answer":
            asyncio.get_running_loop().call_soon(self.network.connect, self, peer)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self.channel is not None:
            self.channel.close()
        self.set_ice_state("closed")

    def set_ice_state(self, state: str) -> None:
        self.iceConnectionState = state
        self.emit("iceconnectionstatechange")

    def _sdp(self) -> str:
        return (
            "v=0\r\n"
            f"o=- {self.token} 0 IN IP4 127.0.0.1\r\n"
            "s=-\r\n"
            f"{TOKEN_PREFIX}{self.token}\r\n"
        )


def _token_of(sdp: str) -> Optional[str]:
    for line in sdp.splitlines():
        if line.startswith(TOKEN_PREFIX):
            return line[len(TOKEN_PREFIX):]
    return None


class FakeNetwork:
    """Registry that pairs fake peer connections by the token in their SDP."""

    def __init__(self) -> None:
        self.connections: List[FakePeerConnection] = []
        self.stall_gathering = False
        self.fail_ice = False

    def factory(self, configuration: Any = None) -> FakePeerConnection:
        pc = FakePeerConnection(self, configuration)
        self.connections.append(pc)
        return pc

    def lookup(self, token: Optional[str]) -> Optional[FakePeerConnection]:
        return next((pc for pc in self.connections if pc.token == token), None)

    def connect(self, host: FakePeerConnection, guest: FakePeerConnection) -> None:
        if host.closed or guest.closed or host.channel is None:
            return
        if self.fail_ice:
            host.set_ice_state("failed")
            guest.set_ice_state("failed")
            return
        host.set_ice_state("completed")
        guest.set_ice_state("completed")

        guest_channel = FakeDataChannel(host.channel.label)
        host.channel.peer = guest_channel
        guest_channel.peer = host.channel
        guest.channel = guest_channel
        # aiortc announces incoming channels already open.
        guest_channel.readyState = "open"
        guest.emit("datachannel", guest_channel)
        host.channel.open()


@pytest.fixture
def network() -> FakeNetwork:
    return FakeNetwork()


@pytest.fixture
def settle() -> Callable[..., Any]:
    """Let queued loop callbacks (deliveries, connects, closes) run."""

    async def _settle(rounds: int = 25) -> None:
        for _ in range(rounds):
            await asyncio.sleep(0)

    return _settle
