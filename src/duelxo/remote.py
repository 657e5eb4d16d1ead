"""Remote two-player sessions over a direct peer connection.

A RemoteSession owns one PeerChannel and keeps the local copy of the game in
step with the peer's copy. Neither side trusts the other: every inbound move
is re-validated against the local board before it is applied, and any
disagreement ends the session.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Callable, Deque, List, Optional, Protocol, Sequence

from aiortc import RTCSessionDescription

from .config import DEFAULT_ICE_GATHERING_TIMEOUT, DEFAULT_STUN_URLS
from .errors import (
    ChannelClosedError,
    ChannelStateError,
    InvalidSessionCodeError,
    NegotiationError,
    ProtocolViolationError,
)
from .game import PLAYING, Player, other_player
from .peer import GUEST, HOST, PeerChannel, PeerHandlers
from .protocol import (
    PROTOCOL_VERSION,
    DisconnectMessage,
    GameMessage,
    HandshakeMessage,
    MoveMessage,
    RematchRequestMessage,
    RematchResponseMessage,
    create_handshake_message,
    create_move_message,
    create_rematch_request_message,
    create_rematch_response_message,
    validate_move,
)
from .signaling import (
    SessionCode,
    decode_session_code,
    encode_session_code,
    generate_session_id,
)

logger = logging.getLogger(__name__)

MALFORMED_MESSAGE_ERROR = "Received a malformed message from the opponent"


class ConnectionStatus(StrEnum):
    IDLE = "idle"
    CREATING = "creating"
    WAITING = "waiting"
    JOINING = "joining"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class GameRules(Protocol):
    """The slice of the rules engine a session reads and drives."""

    cells: List[str]
    current_player: Player
    starting_player: Player

    @property
    def status(self) -> str: ...

    def is_cell_empty(self, idx: int) -> bool: ...

    def play_move(self, idx: int) -> None: ...

    def reset(self, starting_player: Player = "X") -> None: ...


def _ignore(*_args: Any) -> None:
    return None


@dataclass
class RemoteSessionCallbacks:
    on_remote_move: Callable[[int], None] = _ignore
    on_rematch_requested: Callable[[], None] = _ignore
    on_rematch_response: Callable[[bool], None] = _ignore
    on_connected: Callable[[str], None] = _ignore
    on_disconnected: Callable[[str], None] = _ignore
    on_error: Callable[[str], None] = _ignore


@dataclass
class PlayerInfo:
    name: str
    symbol: Player


@dataclass
class SessionState:
    local_player: PlayerInfo
    is_host: bool
    session_id: str = ""
    connection_status: ConnectionStatus = ConnectionStatus.IDLE
    remote_player: Optional[PlayerInfo] = None
    move_count: int = 0
    pending_rematch_from_remote: bool = False
    error: Optional[str] = None
    session_code: Optional[str] = None
    last_starting_player: Player = "X"


@dataclass(frozen=True)
class HostedSession:
    session_id: str
    session_code: str
    session: "RemoteSession"


@dataclass(frozen=True)
class JoinedSession:
    answer_code: str
    session: "RemoteSession"


class RemoteSession:
    """Handshake, move synchronisation and rematch handling for one pairing.

    The host always plays X and the guest O. Use :func:`create_session` or
    :func:`join_session` to build one; the game object stays owned by the
    caller and is only changed through ``play_move`` and ``reset``.
    """

    def __init__(
        self,
        game: GameRules,
        local_name: str,
        *,
        is_host: bool,
        callbacks: Optional[RemoteSessionCallbacks] = None,
        stun_urls: Sequence[str] = DEFAULT_STUN_URLS,
        gathering_timeout: float = DEFAULT_ICE_GATHERING_TIMEOUT,
        connection_factory: Optional[Callable[..., Any]] = None,
    ) -> None:
        self.game = game
        self.callbacks = callbacks or RemoteSessionCallbacks()
        self.state = SessionState(
            local_player=PlayerInfo(name=local_name, symbol="X" if is_host else "O"),
            is_host=is_host,
            last_starting_player=game.starting_player,
        )
        self._channel = PeerChannel(
            HOST if is_host else GUEST,
            PeerHandlers(
                on_open=self._on_channel_open,
                on_message=self.handle_message,
                on_invalid_message=self._on_invalid_message,
                on_close=self._on_channel_closed,
                on_error=self._on_channel_error,
                on_state_change=self._on_ice_state,
            ),
            stun_urls=stun_urls,
            gathering_timeout=gathering_timeout,
            connection_factory=connection_factory,
        )
        self._handshake_received = False
        # Messages that beat the peer's handshake, replayed in receipt order.
        self._inbox: Deque[GameMessage] = deque()
        self._rematch_requested_locally = False
        self._torn_down = False
        self._closing: Optional[asyncio.Future] = None

    # ---- read-only views ----

    @property
    def channel(self) -> PeerChannel:
        return self._channel

    @property
    def move_count(self) -> int:
        return self.state.move_count

    @property
    def local_symbol(self) -> Player:
        return self.state.local_player.symbol

    @property
    def is_connected(self) -> bool:
        return self.state.connection_status is ConnectionStatus.CONNECTED

    @property
    def rematch_pending(self) -> bool:
        return self._rematch_requested_locally

    def is_local_turn(self) -> bool:
        return (
            self.is_connected
            and self.game.status == PLAYING
            and self.game.current_player == self.local_symbol
        )

    # ---- connection setup ----

    async def _start_hosting(self) -> str:
        self.state.session_id = generate_session_id()
        self._set_status(ConnectionStatus.CREATING)
        try:
            offer = await self._channel.create_offer()
        except ChannelClosedError:
            raise
        except NegotiationError as exc:
            self._record_setup_failure(exc)
            raise

        code = encode_session_code(self.state.session_id, offer.sdp, offer.type)
        self.state.session_code = code
        self._set_status(ConnectionStatus.WAITING)
        return code

    async def complete_host_connection(self, answer_code: str) -> None:
        """Host: finish negotiation with the code the guest sent back."""
        if not self.state.is_host:
            raise ChannelStateError("Only the host can complete a connection")
        if self.state.connection_status is not ConnectionStatus.WAITING:
            raise ChannelStateError(
                f"Cannot accept an answer while {self.state.connection_status}"
            )

        decoded = decode_session_code(answer_code)
        if decoded is None or decoded.role != "answer":
            self.state.error = "Invalid answer code"
            raise InvalidSessionCodeError("Invalid answer code")
        if decoded.id != self.state.session_id:
            self.state.error = "Answer code belongs to a different session"
            raise InvalidSessionCodeError(
                f"Answer code is for session {decoded.id}, expected {self.state.session_id}"
            )

        self.state.error = None
        self._set_status(ConnectionStatus.CONNECTING)
        try:
            await self._channel.accept_answer(
                RTCSessionDescription(sdp=decoded.sdp, type="answer")
            )
        except ChannelClosedError:
            raise
        except NegotiationError as exc:
            self._record_setup_failure(exc)
            raise

    async def _accept_offer(self, decoded: SessionCode) -> str:
        self.state.session_id = decoded.id
        self._set_status(ConnectionStatus.JOINING)
        try:
            answer = await self._channel.accept_offer(
                RTCSessionDescription(sdp=decoded.sdp, type="offer")
            )
        except ChannelClosedError:
            raise
        except NegotiationError as exc:
            self._record_setup_failure(exc)
            raise

        code = encode_session_code(decoded.id, answer.sdp, answer.type)
        self.state.session_code = code
        # The channel may already be up by the time the answer is ready.
        if self.state.connection_status is ConnectionStatus.JOINING:
            self._set_status(ConnectionStatus.CONNECTING)
        return code

    # ---- outgoing actions ----

    def send_move(self, cell_index: int) -> bool:
        """Play and transmit a local move. Returns False when it is not allowed."""
        if not self.is_local_turn() or not self.game.is_cell_empty(cell_index):
            logger.debug("Ignoring local move %s: not playable now", cell_index)
            return False

        move_number = self.state.move_count
        self._channel.send(create_move_message(cell_index, self.local_symbol, move_number))
        self.game.play_move(cell_index)
        self.state.move_count += 1
        return True

    def request_rematch(self) -> bool:
        if not self.is_connected or self.game.status == PLAYING:
            return False
        if self._rematch_requested_locally:
            return False
        if self.state.pending_rematch_from_remote:
            # Asking back is the same as saying yes.
            return self.respond_to_rematch(True)
        self._rematch_requested_locally = True
        self._channel.send(create_rematch_request_message())
        return True

    def respond_to_rematch(self, accept: bool) -> bool:
        if not self.is_connected or not self.state.pending_rematch_from_remote:
            return False
        self.state.pending_rematch_from_remote = False
        if not accept:
            self._channel.send(create_rematch_response_message(False))
            return True

        starter = other_player(self.state.last_starting_player)
        self._channel.send(create_rematch_response_message(True, starter))
        self._start_rematch(starter)
        return True

    async def leave(self) -> None:
        """Notify the peer (best effort) and release the channel. Idempotent."""
        if not self._torn_down:
            logger.info("Leaving session %s", self.state.session_id or "<unassigned>")
            self._shutdown(reason="left", notify=True)
        if self._closing is not None:
            await self._closing

    # ---- inbound events ----

    def handle_message(self, message: GameMessage) -> None:
        """Entry point for every decoded message from the peer."""
        if self._torn_down:
            return
        if not self._handshake_received and isinstance(
            message, (MoveMessage, RematchRequestMessage, RematchResponseMessage)
        ):
            self._inbox.append(message)
            return
        self._dispatch(message)

    def _dispatch(self, message: GameMessage) -> None:
        try:
            if isinstance(message, HandshakeMessage):
                self._handle_handshake(message)
            elif isinstance(message, MoveMessage):
                self._handle_move(message)
            elif isinstance(message, RematchRequestMessage):
                self._handle_rematch_request()
            elif isinstance(message, RematchResponseMessage):
                self._handle_rematch_response(message)
            elif isinstance(message, DisconnectMessage):
                self._handle_disconnect(message)
            else:
                raise ProtocolViolationError(f"Unexpected message {message!r}")
        except ProtocolViolationError as exc:
            self._violation(exc)

    def _handle_handshake(self, message: HandshakeMessage) -> None:
        if self._handshake_received:
            raise ProtocolViolationError("Opponent sent a second handshake")
        if message.protocol_version != PROTOCOL_VERSION:
            raise ProtocolViolationError(
                f"Protocol version mismatch (ours {PROTOCOL_VERSION}, "
                f"theirs {message.protocol_version})"
            )

        self._handshake_received = True
        self.state.remote_player = PlayerInfo(
            name=message.player_name, symbol=other_player(self.local_symbol)
        )
        self.state.error = None
        self._set_status(ConnectionStatus.CONNECTED)
        logger.info(
            "Session %s connected with %r", self.state.session_id, message.player_name
        )
        self.callbacks.on_connected(message.player_name)

        while self._inbox and not self._torn_down:
            self._dispatch(self._inbox.popleft())

    def _handle_move(self, message: MoveMessage) -> None:
        remote_symbol = other_player(self.local_symbol)
        if message.player != remote_symbol:
            raise ProtocolViolationError(f"Opponent tried to move as {message.player}")
        if self.game.status != PLAYING:
            raise ProtocolViolationError("Opponent moved after the game ended")
        if not validate_move(
            message, self.game.cells, self.game.current_player, self.state.move_count
        ):
            raise ProtocolViolationError(
                f"Invalid move from opponent: cell {message.cell_index}, "
                f"move #{message.move_number} (expected #{self.state.move_count})"
            )

        self.game.play_move(message.cell_index)
        self.state.move_count += 1
        self.callbacks.on_remote_move(message.cell_index)

    def _handle_rematch_request(self) -> None:
        if self.game.status == PLAYING:
            raise ProtocolViolationError("Opponent asked for a rematch mid-game")

        if self._rematch_requested_locally:
            # Both asked at once: the host's request wins.
            if self.state.is_host:
                logger.info("Simultaneous rematch requests; keeping the host's")
                return
            self._rematch_requested_locally = False
            self.state.pending_rematch_from_remote = True
            self.respond_to_rematch(True)
            # Our own request has been granted as well.
            self.callbacks.on_rematch_response(True)
            return

        self.state.pending_rematch_from_remote = True
        self.callbacks.on_rematch_requested()

    def _handle_rematch_response(self, message: RematchResponseMessage) -> None:
        if not self._rematch_requested_locally:
            raise ProtocolViolationError("Unsolicited rematch response")
        self._rematch_requested_locally = False
        if message.accepted:
            starter = message.starting_player or other_player(
                self.state.last_starting_player
            )
            self._start_rematch(starter)
        self.callbacks.on_rematch_response(message.accepted)

    def _handle_disconnect(self, message: DisconnectMessage) -> None:
        reason = (
            "Opponent left the game"
            if message.reason == "left"
            else "Opponent reported an error"
        )
        logger.info("Peer disconnected: %s", reason)
        self._shutdown(reason="left", notify=False)
        self.callbacks.on_disconnected(reason)

    def _on_channel_open(self) -> None:
        if self._torn_down:
            return
        self._channel.send(create_handshake_message(self.state.local_player.name))

    def _on_invalid_message(self, raw: str) -> None:
        if self._torn_down:
            return
        self.state.error = MALFORMED_MESSAGE_ERROR
        self.callbacks.on_error(MALFORMED_MESSAGE_ERROR)

    def _on_channel_closed(self, reason: str) -> None:
        if self._torn_down:
            return
        logger.info("Session %s transport closed: %s", self.state.session_id, reason)
        self._shutdown(reason="error", notify=False)
        self.callbacks.on_disconnected(reason)

    def _on_channel_error(self, error: Exception) -> None:
        self._on_channel_closed(f"Connection error: {error}")

    def _on_ice_state(self, ice_state: str) -> None:
        logger.debug("Session %s ICE state: %s", self.state.session_id, ice_state)

    # ---- helpers ----

    def _set_status(self, status: ConnectionStatus) -> None:
        self.state.connection_status = status

    def _start_rematch(self, starter: Player) -> None:
        self.game.reset(starter)
        self.state.move_count = 0
        self.state.last_starting_player = starter
        self.state.pending_rematch_from_remote = False
        self._rematch_requested_locally = False
        logger.info("Rematch started; %s opens", starter)

    def _violation(self, exc: ProtocolViolationError) -> None:
        logger.warning("Protocol violation in session %s: %s", self.state.session_id, exc)
        self.state.error = exc.message
        self._shutdown(reason="error", notify=True)
        self.callbacks.on_error(exc.message)

    def _record_setup_failure(self, exc: NegotiationError) -> None:
        logger.warning("Session %s negotiation failed: %s", self.state.session_id, exc)
        self.state.error = exc.message
        self._shutdown(reason="error", notify=False)

    def _shutdown(self, reason: str, notify: bool) -> None:
        if self._torn_down:
            return
        self._torn_down = True
        self._inbox.clear()
        self._set_status(ConnectionStatus.DISCONNECTED)
        self._closing = asyncio.ensure_future(
            self._channel.close(reason=reason, notify=notify)
        )
        self._closing.add_done_callback(self._log_close_failure)

    def _log_close_failure(self, future: "asyncio.Future[None]") -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.error(
                "Session %s failed to release its channel: %s",
                self.state.session_id,
                exc,
                exc_info=exc,
            )


async def create_session(
    local_name: str,
    game: GameRules,
    callbacks: Optional[RemoteSessionCallbacks] = None,
    **options: Any,
) -> HostedSession:
    """Host a new session: allocate an id and produce the offer code to share."""
    session = RemoteSession(game, local_name, is_host=True, callbacks=callbacks, **options)
    code = await session._start_hosting()
    return HostedSession(session_id=session.state.session_id, session_code=code, session=session)


async def join_session(
    session_code: str,
    local_name: str,
    game: GameRules,
    callbacks: Optional[RemoteSessionCallbacks] = None,
    **options: Any,
) -> JoinedSession:
    """Join a hosted session and produce the answer code to send back."""
    decoded = decode_session_code(session_code)
    if decoded is None or decoded.role != "offer":
        raise InvalidSessionCodeError("Invalid session code")
    session = RemoteSession(game, local_name, is_host=False, callbacks=callbacks, **options)
    answer_code = await session._accept_offer(decoded)
    return JoinedSession(answer_code=answer_code, session=session)
