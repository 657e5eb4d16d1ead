"""aiortc peer connection wrapper owning one ordered data channel to one peer."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Callable, Optional, Sequence, Union

from aiortc import (
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.exceptions import InvalidAccessError, InvalidStateError

from .config import DEFAULT_ICE_GATHERING_TIMEOUT, DEFAULT_STUN_URLS
from .errors import ChannelClosedError, ChannelStateError, NegotiationError
from .protocol import (
    GameMessage,
    create_disconnect_message,
    deserialize_message,
    serialize_message,
)

logger = logging.getLogger(__name__)

DATA_CHANNEL_LABEL = "game"

HOST = "host"
GUEST = "guest"

# Errors aiortc raises while applying or producing descriptions.
_NEGOTIATION_ERRORS = (InvalidAccessError, InvalidStateError, ValueError, ConnectionError)


class ChannelState(StrEnum):
    NEW = "new"
    GATHERING = "gathering"
    OFFER_READY = "offer-ready"
    NEGOTIATING = "negotiating"
    OPEN = "open"
    CLOSED = "closed"
    FAILED = "failed"


TERMINAL_STATES = frozenset({ChannelState.CLOSED, ChannelState.FAILED})


def _ignore(*_args: Any) -> None:
    return None


@dataclass
class PeerHandlers:
    """Callbacks fired by a PeerChannel; all run on the event loop thread."""

    on_open: Callable[[], None] = _ignore
    on_message: Callable[[GameMessage], None] = _ignore
    on_invalid_message: Callable[[str], None] = _ignore
    on_close: Callable[[str], None] = _ignore
    on_error: Callable[[Exception], None] = _ignore
    on_state_change: Callable[[str], None] = _ignore


def build_configuration(stun_urls: Sequence[str]) -> RTCConfiguration:
    servers = [RTCIceServer(urls=list(stun_urls))] if stun_urls else []
    return RTCConfiguration(iceServers=servers)


class PeerChannel:
    """One peer connection plus one reliable, ordered data channel.

    The host creates the data channel and the offer; the guest answers and
    receives the channel. ``closed`` and ``failed`` are terminal: retrying
    means building a new PeerChannel.
    """

    def __init__(
        self,
        role: str,
        handlers: Optional[PeerHandlers] = None,
        *,
        stun_urls: Sequence[str] = DEFAULT_STUN_URLS,
        gathering_timeout: float = DEFAULT_ICE_GATHERING_TIMEOUT,
        connection_factory: Optional[Callable[..., Any]] = None,
    ) -> None:
        if role not in (HOST, GUEST):
            raise ValueError(f"Unknown peer role {role!r}")
        self.role = role
        self.handlers = handlers or PeerHandlers()
        self._gathering_timeout = gathering_timeout
        self._state = ChannelState.NEW
        self._released = False
        self._channel: Any = None
        self._gathering_done: Optional[asyncio.Event] = None

        factory = connection_factory or RTCPeerConnection
        self._pc = factory(configuration=build_configuration(stun_urls))
        self._pc.on("iceconnectionstatechange", self._handle_ice_state)
        self._pc.on("icegatheringstatechange", self._handle_gathering_state)

        if role == HOST:
            self._attach(self._pc.createDataChannel(DATA_CHANNEL_LABEL, ordered=True))
        else:
            self._pc.on("datachannel", self._attach)

    # ---- public surface ----

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state is ChannelState.OPEN

    @property
    def released(self) -> bool:
        return self._released

    async def create_offer(self) -> RTCSessionDescription:
        """Host: build the offer and wait (bounded) for candidate gathering."""
        self._require(HOST, ChannelState.NEW, "create an offer")
        self._set_state(ChannelState.GATHERING)
        try:
            offer = await self._pc.createOffer()
            self._ensure_live()
            await self._pc.setLocalDescription(offer)
            self._ensure_live()
            await self._wait_for_ice_gathering()
            self._ensure_live()
        except _NEGOTIATION_ERRORS as exc:
            self._fail()
            raise NegotiationError(f"Could not create offer: {exc}") from exc

        self._set_state(ChannelState.OFFER_READY)
        return self._pc.localDescription

    async def accept_answer(self, answer: RTCSessionDescription) -> None:
        """Host: apply the guest's answer; the channel opens once ICE connects."""
        self._require(HOST, ChannelState.OFFER_READY, "accept an answer")
        if answer.type != "answer":
            raise ValueError(f"Expected an answer description, got {answer.type!r}")
        self._set_state(ChannelState.NEGOTIATING)
        try:
            await self._pc.setRemoteDescription(answer)
            self._ensure_live()
        except _NEGOTIATION_ERRORS as exc:
            self._fail()
            raise NegotiationError(f"Could not accept answer: {exc}") from exc

    async def accept_offer(self, offer: RTCSessionDescription) -> RTCSessionDescription:
        """Guest: apply the host's offer and return the local answer."""
        self._require(GUEST, ChannelState.NEW, "accept an offer")
        if offer.type != "offer":
            raise ValueError(f"Expected an offer description, got {offer.type!r}")
        self._set_state(ChannelState.NEGOTIATING)
        try:
            await self._pc.setRemoteDescription(offer)
            self._ensure_live()
            answer = await self._pc.createAnswer()
            self._ensure_live()
            await self._pc.setLocalDescription(answer)
            self._ensure_live()
            await self._wait_for_ice_gathering()
            self._ensure_live()
        except _NEGOTIATION_ERRORS as exc:
            self._fail()
            raise NegotiationError(f"Could not accept offer: {exc}") from exc

        return self._pc.localDescription

    def send(self, message: GameMessage) -> None:
        # No queueing before open: ordering relies on it.
        if (
            self._state is not ChannelState.OPEN
            or self._channel is None
            or self._channel.readyState != "open"
        ):
            raise ChannelStateError(f"Cannot send while the channel is {self._state}")
        self._channel.send(serialize_message(message))

    async def close(self, reason: str = "left", notify: bool = True) -> None:
        """Send a best-effort disconnect notice, then release everything. Idempotent."""
        if self._released:
            return
        self._released = True

        if notify and self.is_open and self._channel.readyState == "open":
            try:
                self._channel.send(serialize_message(create_disconnect_message(reason)))
            except (InvalidStateError, ConnectionError) as exc:
                logger.debug("Disconnect notice not delivered: %s", exc)

        if self._state is not ChannelState.FAILED:
            self._set_state(ChannelState.CLOSED)
        if self._gathering_done is not None:
            self._gathering_done.set()
        if self._channel is not None:
            self._channel.close()
        await self._pc.close()

    # ---- internals ----

    def _require(self, role: str, state: ChannelState, action: str) -> None:
        if self.role != role:
            raise ChannelStateError(f"A {self.role} channel cannot {action}")
        if self._released or self._state is not state:
            raise ChannelStateError(f"Cannot {action} while the channel is {self._state}")

    def _ensure_live(self) -> None:
        if self._released or self._state in TERMINAL_STATES:
            raise ChannelClosedError("Channel closed during negotiation")

    def _set_state(self, state: ChannelState) -> None:
        if state is self._state:
            return
        logger.info("Peer channel (%s): %s -> %s", self.role, self._state, state)
        self._state = state

    def _fail(self) -> None:
        if self._state not in TERMINAL_STATES:
            self._set_state(ChannelState.FAILED)

    def _finish(self, state: ChannelState, reason: str) -> None:
        if self._released or self._state in TERMINAL_STATES:
            return
        self._set_state(state)
        if self._gathering_done is not None:
            self._gathering_done.set()
        self.handlers.on_close(reason)

    async def _wait_for_ice_gathering(self) -> None:
        """Wait for candidate gathering, bounded by the configured timeout.

        aiortc already gathers inside ``setLocalDescription`` and aioice caps
        that step at a few seconds, so against a real connection this usually
        returns at once. The timeout here is a backstop for connection objects
        that report gathering after the description is set.
        """
        if self._pc.iceGatheringState == "complete":
            return
        self._gathering_done = asyncio.Event()
        try:
            await asyncio.wait_for(self._gathering_done.wait(), self._gathering_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "ICE gathering incomplete after %.0fs; continuing with partial candidates",
                self._gathering_timeout,
            )
        finally:
            self._gathering_done = None

    def _attach(self, channel: Any) -> None:
        if self._channel is not None or self._released:
            logger.warning("Ignoring unexpected data channel %r", channel.label)
            return
        self._channel = channel
        channel.on("open", self._handle_open)
        channel.on("message", self._handle_message)
        channel.on("close", self._handle_channel_close)
        channel.on("error", self._handle_channel_error)
        # Channels announced to the guest may already be open.
        if channel.readyState == "open":
            self._handle_open()

    def _handle_open(self) -> None:
        if self._released or self._state in TERMINAL_STATES or self.is_open:
            return
        self._set_state(ChannelState.OPEN)
        self.handlers.on_open()

    def _handle_message(self, data: Union[str, bytes]) -> None:
        if not self.is_open:
            return
        message = deserialize_message(data)
        if message is None:
            text = data if isinstance(data, str) else repr(data)
            logger.warning("Received malformed message: %.120s", text)
            self.handlers.on_invalid_message(text)
            return
        self.handlers.on_message(message)

    def _handle_channel_close(self) -> None:
        self._finish(ChannelState.CLOSED, "Connection closed")

    def _handle_channel_error(self, error: Exception) -> None:
        if self._released or self._state in TERMINAL_STATES:
            return
        logger.warning("Data channel error: %s", error)
        self.handlers.on_error(error)

    def _handle_gathering_state(self) -> None:
        if self._pc.iceGatheringState == "complete" and self._gathering_done is not None:
            self._gathering_done.set()

    def _handle_ice_state(self) -> None:
        if self._released:
            return
        state = self._pc.iceConnectionState
        logger.debug("ICE connection state (%s): %s", self.role, state)
        self.handlers.on_state_change(state)
        if state == "failed":
            self._finish(ChannelState.FAILED, "Connection failed")
        elif state in ("disconnected", "closed"):
            self._finish(ChannelState.CLOSED, "Connection lost")
