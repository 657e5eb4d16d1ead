"""Tests for RemoteSession: handshake, move sync, rematch and teardown."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import List, Tuple

import pytest

from duelxo import remote
from duelxo.errors import InvalidSessionCodeError
from duelxo.game import EMPTY, TicTacToeGame
from duelxo.peer import ChannelState
from duelxo.protocol import (
    HandshakeMessage,
    create_handshake_message,
    create_move_message,
    create_rematch_request_message,
)
from duelxo.remote import (
    MALFORMED_MESSAGE_ERROR,
    ConnectionStatus,
    RemoteSession,
    RemoteSessionCallbacks,
    create_session,
    join_session,
)
from duelxo.signaling import decode_session_code, encode_session_code


class Recorder:
    def __init__(self) -> None:
        self.events: List[Tuple[str, object]] = []

    def callbacks(self) -> RemoteSessionCallbacks:
        return RemoteSessionCallbacks(
            on_remote_move=lambda cell: self.events.append(("remote_move", cell)),
            on_rematch_requested=lambda: self.events.append(("rematch_requested", None)),
            on_rematch_response=lambda ok: self.events.append(("rematch_response", ok)),
            on_connected=lambda name: self.events.append(("connected", name)),
            on_disconnected=lambda why: self.events.append(("disconnected", why)),
            on_error=lambda msg: self.events.append(("error", msg)),
        )

    def kinds(self) -> List[str]:
        return [kind for kind, _ in self.events]


@dataclass
class Pair:
    host: RemoteSession
    guest: RemoteSession
    host_game: TicTacToeGame
    guest_game: TicTacToeGame
    host_events: Recorder
    guest_events: Recorder


async def connect_pair(network, settle) -> Pair:
    host_game, guest_game = TicTacToeGame(), TicTacToeGame()
    host_events, guest_events = Recorder(), Recorder()
    hosted = await create_session(
        "Alice", host_game, host_events.callbacks(), connection_factory=network.factory
    )
    joined = await join_session(
        hosted.session_code,
        "Bob",
        guest_game,
        guest_events.callbacks(),
        connection_factory=network.factory,
    )
    await hosted.session.complete_host_connection(joined.answer_code)
    await settle()
    return Pair(
        hosted.session, joined.session, host_game, guest_game, host_events, guest_events
    )


async def play(pair: Pair, settle, moves) -> None:
    for cell in moves:
        mover = pair.host if pair.host.is_local_turn() else pair.guest
        assert mover.send_move(cell)
        await settle()


def sent_messages(network, index: int) -> List[dict]:
    return [json.loads(raw) for raw in network.connections[index].channel.sent]


@pytest.mark.asyncio
async def test_host_and_guest_connect_with_names(network, settle, monkeypatch):
    monkeypatch.setattr(remote, "generate_session_id", lambda: "A3K9PW")
    host_events, guest_events = Recorder(), Recorder()

    hosted = await create_session(
        "Alice", TicTacToeGame(), host_events.callbacks(), connection_factory=network.factory
    )
    assert hosted.session_id == "A3K9PW"
    assert hosted.session.state.connection_status is ConnectionStatus.WAITING
    offer = decode_session_code(hosted.session_code)
    assert offer is not None and offer.id == "A3K9PW" and offer.role == "offer"

    joined = await join_session(
        hosted.session_code,
        "Bob",
        TicTacToeGame(),
        guest_events.callbacks(),
        connection_factory=network.factory,
    )
    guest = joined.session
    assert guest.state.connection_status is ConnectionStatus.CONNECTING
    answer = decode_session_code(joined.answer_code)
    assert answer is not None and answer.id == "A3K9PW" and answer.role == "answer"

    await hosted.session.complete_host_connection(joined.answer_code)
    await settle()

    host = hosted.session
    assert host.state.connection_status is ConnectionStatus.CONNECTED
    assert guest.state.connection_status is ConnectionStatus.CONNECTED
    assert host.state.remote_player.name == "Bob"
    assert host.state.remote_player.symbol == "O"
    assert guest.state.remote_player.name == "Alice"
    assert guest.state.remote_player.symbol == "X"
    assert host_events.events == [("connected", "Bob")]
    assert guest_events.events == [("connected", "Alice")]


@pytest.mark.asyncio
async def test_remote_move_is_validated_and_applied(network, settle):
    pair = await connect_pair(network, settle)

    assert pair.host.send_move(4)
    await settle()

    assert {"type": "move", "cellIndex": 4, "player": "X", "moveNumber": 0} in sent_messages(
        network, 0
    )
    assert pair.guest_game.cells[4] == "X"
    assert pair.guest.move_count == 1
    assert pair.host.move_count == 1
    assert pair.guest_events.events[-1] == ("remote_move", 4)
    assert pair.guest.is_local_turn()
    assert not pair.host.is_local_turn()


@pytest.mark.asyncio
async def test_replayed_move_is_a_protocol_violation(network, settle):
    pair = await connect_pair(network, settle)
    assert pair.host.send_move(4)
    await settle()

    pair.guest.handle_message(create_move_message(4, "X", 0))
    await settle()

    assert pair.guest.state.connection_status is ConnectionStatus.DISCONNECTED
    assert pair.guest.state.error
    assert pair.guest_events.kinds().count("error") == 1
    assert "disconnected" not in pair.guest_events.kinds()
    assert pair.guest.channel.state is ChannelState.CLOSED
    assert pair.host_events.events[-1] == ("disconnected", "Opponent reported an error")
    assert pair.host.state.connection_status is ConnectionStatus.DISCONNECTED


@pytest.mark.asyncio
async def test_move_as_the_wrong_symbol_is_rejected(network, settle):
    pair = await connect_pair(network, settle)

    # X to move, but a move claiming to be X arriving at the host is forged.
    pair.host.handle_message(create_move_message(0, "X", 0))
    await settle()

    assert pair.host.state.connection_status is ConnectionStatus.DISCONNECTED
    assert pair.host_game.cells[0] == EMPTY
    assert pair.host_events.kinds()[-1] == "error"


@pytest.mark.asyncio
async def test_moves_queued_before_handshake_apply_in_order(network):
    # X holds 0 and 1, O holds 3 and 4; X's move at 2 ends the game.
    cells = ["X", "X", EMPTY, "O", "O", EMPTY, EMPTY, EMPTY, EMPTY]
    game = TicTacToeGame(cells=cells, current_player="X")
    events = Recorder()
    guest = RemoteSession(
        game, "Bob", is_host=False, callbacks=events.callbacks(),
        connection_factory=network.factory,
    )
    guest.state.move_count = 4

    guest.handle_message(create_move_message(2, "X", 4))
    # Only valid once the move above has ended the game.
    guest.handle_message(create_rematch_request_message())
    assert game.cells[2] == EMPTY
    assert events.events == []

    guest.handle_message(create_handshake_message("Alice"))

    assert events.events == [
        ("connected", "Alice"),
        ("remote_move", 2),
        ("rematch_requested", None),
    ]
    assert game.winner == "X"
    assert guest.state.pending_rematch_from_remote
    assert guest.state.connection_status is ConnectionStatus.CONNECTED


@pytest.mark.asyncio
async def test_protocol_version_mismatch_is_fatal(network, settle):
    events = Recorder()
    guest = RemoteSession(
        TicTacToeGame(), "Bob", is_host=False, callbacks=events.callbacks(),
        connection_factory=network.factory,
    )
    guest.handle_message(HandshakeMessage(player_name="Eve", protocol_version=99))
    await settle()

    assert events.kinds() == ["error"]
    assert guest.state.connection_status is ConnectionStatus.DISCONNECTED
    assert guest.state.remote_player is None


@pytest.mark.asyncio
async def test_leave_twice_sends_one_notice(network, settle):
    pair = await connect_pair(network, settle)

    await pair.host.leave()
    await pair.host.leave()
    await settle()

    notices = [m for m in sent_messages(network, 0) if m["type"] == "disconnect"]
    assert notices == [{"type": "disconnect", "reason": "left"}]
    assert pair.host.state.connection_status is ConnectionStatus.DISCONNECTED
    assert "disconnected" not in pair.host_events.kinds()
    assert pair.guest_events.kinds().count("disconnected") == 1
    assert pair.guest_events.events[-1] == ("disconnected", "Opponent left the game")
    assert network.connections[0].closed


@pytest.mark.asyncio
async def test_guest_leaving_mid_negotiation_releases_everything(network, settle):
    host_events, guest_events = Recorder(), Recorder()
    hosted = await create_session(
        "Alice", TicTacToeGame(), host_events.callbacks(), connection_factory=network.factory
    )
    joined = await join_session(
        hosted.session_code, "Bob", TicTacToeGame(), guest_events.callbacks(),
        connection_factory=network.factory,
    )

    await joined.session.leave()
    await hosted.session.complete_host_connection(joined.answer_code)
    await settle()

    assert joined.session.channel.state is ChannelState.CLOSED
    assert network.connections[1].closed
    assert guest_events.events == []
    assert host_events.events == []
    assert hosted.session.channel.state is ChannelState.NEGOTIATING

    await hosted.session.leave()
    assert hosted.session.channel.state is ChannelState.CLOSED


@pytest.mark.asyncio
async def test_send_move_is_a_noop_when_not_allowed(network, settle):
    host_events = Recorder()
    hosted = await create_session(
        "Alice", TicTacToeGame(), host_events.callbacks(), connection_factory=network.factory
    )
    assert not hosted.session.send_move(0)

    pair = await connect_pair(network, settle)
    assert not pair.guest.send_move(0)  # X opens
    assert pair.host.send_move(0)
    await settle()
    assert not pair.guest.send_move(0)  # occupied
    assert pair.guest.move_count == 1


@pytest.mark.asyncio
async def test_full_game_then_accepted_rematch(network, settle):
    pair = await connect_pair(network, settle)
    await play(pair, settle, [0, 3, 1, 4, 2])

    assert pair.host_game.winner == "X"
    assert pair.guest_game.cells == pair.host_game.cells
    assert not pair.host.send_move(5)

    assert pair.guest.request_rematch()
    await settle()
    assert pair.host_events.events[-1] == ("rematch_requested", None)
    assert pair.host.state.pending_rematch_from_remote

    assert pair.host.respond_to_rematch(True)
    await settle()

    for game in (pair.host_game, pair.guest_game):
        assert game.cells == [EMPTY] * 9
        assert game.current_player == "O"
    assert pair.host.move_count == pair.guest.move_count == 0
    assert pair.guest_events.events[-1] == ("rematch_response", True)
    assert pair.guest.send_move(4)
    await settle()
    assert pair.host_game.cells[4] == "O"


@pytest.mark.asyncio
async def test_declined_rematch_keeps_the_finished_board(network, settle):
    pair = await connect_pair(network, settle)
    await play(pair, settle, [0, 3, 1, 4, 2])

    assert pair.host.request_rematch()
    await settle()
    assert pair.guest.respond_to_rematch(False)
    await settle()

    assert pair.host_events.events[-1] == ("rematch_response", False)
    assert pair.host_game.winner == "X"
    assert not pair.host.respond_to_rematch(True)


@pytest.mark.asyncio
async def test_simultaneous_rematch_requests_resolve_to_one_reset(network, settle):
    pair = await connect_pair(network, settle)
    await play(pair, settle, [0, 3, 1, 4, 2])

    assert pair.host.request_rematch()
    assert pair.guest.request_rematch()
    await settle()

    for game in (pair.host_game, pair.guest_game):
        assert game.cells == [EMPTY] * 9
        assert game.current_player == "O"
    assert "rematch_requested" not in pair.host_events.kinds()
    assert pair.host_events.events[-1] == ("rematch_response", True)
    assert "rematch_requested" not in pair.guest_events.kinds()
    assert pair.guest_events.events[-1] == ("rematch_response", True)
    assert pair.guest_events.kinds().count("rematch_response") == 1
    assert not pair.host.rematch_pending and not pair.guest.rematch_pending
    assert pair.host.is_connected and pair.guest.is_connected


@pytest.mark.asyncio
async def test_rematch_request_mid_game_is_a_violation(network, settle):
    pair = await connect_pair(network, settle)
    pair.host.handle_message(create_rematch_request_message())
    await settle()
    assert pair.host.state.connection_status is ConnectionStatus.DISCONNECTED
    assert pair.host_events.kinds()[-1] == "error"


@pytest.mark.asyncio
async def test_malformed_message_is_not_fatal(network, settle):
    pair = await connect_pair(network, settle)
    network.connections[1].channel.send("not json at all")
    await settle()

    assert pair.host_events.events[-1] == ("error", MALFORMED_MESSAGE_ERROR)
    assert pair.host.is_connected
    assert pair.host.send_move(0)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "ice_state, reason",
    [("failed", "Connection failed"), ("disconnected", "Connection lost")],
)
async def test_transport_loss_reports_disconnect_once(network, settle, ice_state, reason):
    pair = await connect_pair(network, settle)
    network.connections[0].set_ice_state(ice_state)
    await settle()

    assert pair.host_events.kinds().count("disconnected") == 1
    assert ("disconnected", reason) in pair.host_events.events
    assert "error" not in pair.host_events.kinds()
    assert pair.host.state.connection_status is ConnectionStatus.DISCONNECTED
    assert network.connections[0].closed


@pytest.mark.asyncio
async def test_bad_answer_codes_are_recoverable(network, settle):
    hosted = await create_session(
        "Alice", TicTacToeGame(), connection_factory=network.factory
    )
    host = hosted.session

    with pytest.raises(InvalidSessionCodeError):
        await host.complete_host_connection("not a code")
    assert host.state.error == "Invalid answer code"
    assert host.state.connection_status is ConnectionStatus.WAITING

    # An offer is not an answer.
    with pytest.raises(InvalidSessionCodeError):
        await host.complete_host_connection(hosted.session_code)

    other_id = "ZZZZZZ" if hosted.session_id != "ZZZZZZ" else "YYYYYY"
    foreign = encode_session_code(other_id, "v=0", "answer")
    with pytest.raises(InvalidSessionCodeError):
        await host.complete_host_connection(foreign)
    assert host.state.connection_status is ConnectionStatus.WAITING
    await host.leave()


@pytest.mark.asyncio
async def test_join_rejects_invalid_codes(network):
    with pytest.raises(InvalidSessionCodeError):
        await join_session("garbage", "Bob", TicTacToeGame(), connection_factory=network.factory)

    answer = encode_session_code("A3K9PW", "v=0", "answer")
    with pytest.raises(InvalidSessionCodeError):
        await join_session(answer, "Bob", TicTacToeGame(), connection_factory=network.factory)
    assert network.connections == []


@pytest.mark.asyncio
async def test_failed_release_after_a_violation_is_logged(network, settle, caplog):
    pair = await connect_pair(network, settle)

    async def broken_close() -> None:
        raise RuntimeError("socket already gone")

    network.connections[0].close = broken_close
    with caplog.at_level(logging.ERROR, logger="duelxo.remote"):
        pair.host.handle_message(create_rematch_request_message())
        await settle()

    assert pair.host_events.kinds()[-1] == "error"
    assert "failed to release its channel" in caplog.text
    assert "socket already gone" in caplog.text
