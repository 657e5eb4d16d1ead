"""FastAPI application exposing local games and direct peer-to-peer sessions."""

from __future__ import annotations

import asyncio
import logging
import random
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Literal, Optional

from fastapi import (
    BackgroundTasks,
    FastAPI,
    HTTPException,
    Request,
    WebSocket,
    WebSocketDisconnect,
)
from pydantic import BaseModel, ConfigDict, Field

from .computer import COMPUTER_THINK_DELAY, RandomAI
from .config import load_settings
from .errors import ChannelStateError, InvalidSessionCodeError, NegotiationError
from .game import EMPTY, Player, TicTacToeGame, other_player
from .remote import (
    ConnectionStatus,
    RemoteSession,
    RemoteSessionCallbacks,
    create_session,
    join_session,
)
from .signaling import build_join_url, get_session_from_url

logger = logging.getLogger(__name__)

SETTINGS = load_settings()

GameMode = Literal["human", "computer", "demo"]

DEFAULT_PLAYER_NAMES: Dict[Player, str] = {"X": "Player X", "O": "Player O"}
DEFAULT_COMPUTER_NAME = "Computer"

AI_THINK_DELAY = (COMPUTER_THINK_DELAY, COMPUTER_THINK_DELAY)
REMOTE_SESSION_TTL_SECONDS = 60 * 30  # 30 minutes
# Oldest events are dropped once this many are waiting for a reader.
REMOTE_EVENT_BACKLOG = 64
# Replaced in tests with an in-memory peer connection.
CONNECTION_FACTORY: Optional[Callable[..., Any]] = None


@dataclass
class GameSession:
    """Container for a local game and whichever sides the computer plays."""

    game: TicTacToeGame
    mode: str
    computer: Dict[Player, RandomAI] = field(default_factory=dict)
    player_names: Dict[Player, str] = field(default_factory=lambda: dict(DEFAULT_PLAYER_NAMES))
    move_log: List[Dict[str, int | str]] = field(default_factory=list)
    ai_pending: bool = False
    next_starting_player: Player = "O"
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)


@dataclass
class RemoteHandle:
    """A remote session driven from this server, plus its event stream."""

    session: RemoteSession
    game: TicTacToeGame
    events: "asyncio.Queue[Dict[str, Any]]"
    created_at: float = field(default_factory=lambda: time.time())


SESSIONS: Dict[str, GameSession] = {}
REMOTE_SESSIONS: Dict[str, RemoteHandle] = {}
app = FastAPI(title="DuelXO", description="Tic-tac-toe, locally or peer to peer")


class PlayerNames(BaseModel):
    """Display names for either side; omitted sides keep their current name."""

    model_config = ConfigDict(populate_by_name=True)

    x: Optional[str] = Field(default=None, alias="X", min_length=1, max_length=32)
    o: Optional[str] = Field(default=None, alias="O", min_length=1, max_length=32)

    def as_dict(self) -> Dict[Player, str]:
        names: Dict[Player, str] = {}
        if self.x is not None:
            names["X"] = self.x
        if self.o is not None:
            names["O"] = self.o
        return names


class NewGameRequest(BaseModel):
    """Request payload for starting a new local game."""

    model_config = ConfigDict(populate_by_name=True)

    mode: GameMode = "human"
    player_names: Optional[PlayerNames] = Field(default=None, alias="playerNames")


class MoveRequest(BaseModel):
    """Request payload for submitting a move."""

    model_config = ConfigDict(populate_by_name=True)

    cell_index: int = Field(alias="cellIndex", ge=0, le=8)


class HostRequest(BaseModel):
    name: str = Field(min_length=1, max_length=32)


class JoinRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(min_length=1, max_length=32)
    session_code: Optional[str] = Field(default=None, alias="sessionCode")
    join_url: Optional[str] = Field(default=None, alias="joinUrl")


class AnswerRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    answer_code: str = Field(alias="answerCode", min_length=1)


class RematchReply(BaseModel):
    accept: bool


# ---------- Local games ----------


def _create_session(
    mode: str, names: Optional[PlayerNames] = None
) -> tuple[str, GameSession]:
    """Create a new local game and register it for later access."""

    computer: Dict[Player, RandomAI] = {}
    if mode in ("computer", "demo"):
        computer["O"] = RandomAI(player="O")
    if mode == "demo":
        computer["X"] = RandomAI(player="X")
    session = GameSession(game=TicTacToeGame(), mode=mode, computer=computer)
    for player in computer:
        session.player_names[player] = DEFAULT_COMPUTER_NAME
    if names is not None:
        session.player_names.update(names.as_dict())
    game_id = uuid.uuid4().hex
    SESSIONS[game_id] = session
    return game_id, session


def _get_session(game_id: str) -> GameSession:
    try:
        return SESSIONS[game_id]
    except KeyError as exc:
        raise HTTPException(status_code=404, detail="Game not found") from exc


def _computer_to_move(session: GameSession) -> bool:
    game = session.game
    return not game.is_over and game.current_player in session.computer


def _run_ai_turn(game_id: str) -> None:
    # Demo games keep going until the board is decided.
    while True:
        session = SESSIONS.get(game_id)
        if not session:
            return

        time.sleep(max(0.0, random.uniform(*AI_THINK_DELAY)))

        with session.lock:
            if not _computer_to_move(session):
                session.ai_pending = False
                return
            game = session.game
            player = game.current_player
            cell_index = session.computer[player].choose(game)
            game.play_move(cell_index)
            session.move_log.append({"player": player, "cellIndex": cell_index})
            if not _computer_to_move(session):
                session.ai_pending = False
                return


def _schedule_ai(
    game_id: str, session: GameSession, background_tasks: BackgroundTasks
) -> None:
    with session.lock:
        if session.ai_pending or not _computer_to_move(session):
            return
        session.ai_pending = True
    background_tasks.add_task(_run_ai_turn, game_id)


def _board_for_client(game: TicTacToeGame) -> List[str]:
    return [c if c != EMPTY else "" for c in game.cells]


def _serialize_session(game_id: str, session: GameSession) -> Dict[str, object]:
    with session.lock:
        game = session.game
        state: Dict[str, object] = {
            "id": game_id,
            "mode": session.mode,
            "currentPlayer": game.current_player,
            "status": game.status,
            "winner": game.winner,
            "drawn": game.drawn,
            "board": _board_for_client(game),
            "availableMoves": game.available_moves(),
            "moveLog": list(session.move_log),
            "aiPending": session.ai_pending,
            "players": dict(session.player_names),
        }
        if session.move_log:
            state["lastMove"] = session.move_log[-1]
        return state


def _apply_player_move(session: GameSession, cell_index: int) -> None:
    with session.lock:
        game = session.game
        if game.is_over:
            raise HTTPException(status_code=400, detail="Game already finished")

        if session.ai_pending or game.current_player in session.computer:
            raise HTTPException(status_code=400, detail="Computer is completing its move")

        player = game.current_player
        try:
            game.play_move(cell_index)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

        session.move_log.append({"player": player, "cellIndex": cell_index})


@app.post("/api/game")
def create_game(
    request: NewGameRequest, background_tasks: BackgroundTasks
) -> Dict[str, object]:
    game_id, session = _create_session(request.mode, request.player_names)
    _schedule_ai(game_id, session, background_tasks)
    return _serialize_session(game_id, session)


@app.get("/api/game/{game_id}")
def get_game(game_id: str) -> Dict[str, object]:
    session = _get_session(game_id)
    return _serialize_session(game_id, session)


@app.post("/api/game/{game_id}/move")
def make_move(
    game_id: str, request: MoveRequest, background_tasks: BackgroundTasks
) -> Dict[str, object]:
    session = _get_session(game_id)
    _apply_player_move(session, request.cell_index)
    _schedule_ai(game_id, session, background_tasks)
    return _serialize_session(game_id, session)


@app.post("/api/game/{game_id}/reset")
def reset_game(game_id: str, background_tasks: BackgroundTasks) -> Dict[str, object]:
    """Start a fresh board, alternating who opens."""

    session = _get_session(game_id)
    with session.lock:
        if session.ai_pending:
            raise HTTPException(status_code=400, detail="Computer is completing its move")
        starter = session.next_starting_player
        session.next_starting_player = other_player(starter)
        session.game.reset(starter)
        session.move_log.clear()
    _schedule_ai(game_id, session, background_tasks)
    return _serialize_session(game_id, session)


@app.put("/api/game/{game_id}/players")
def rename_players(game_id: str, request: PlayerNames) -> Dict[str, object]:
    """Change display names without touching the board."""

    session = _get_session(game_id)
    with session.lock:
        session.player_names.update(request.as_dict())
    return _serialize_session(game_id, session)


# ---------- Remote sessions ----------


def _resolve_join_base_url(request: Request) -> str:
    """Determine the best base URL for shareable join links."""

    origin = request.headers.get("origin")
    if origin:
        return origin.rstrip("/")

    forwarded_host = request.headers.get("x-forwarded-host")
    if forwarded_host:
        scheme = request.headers.get("x-forwarded-proto") or request.url.scheme
        return f"{scheme}://{forwarded_host}".rstrip("/")

    host = request.headers.get("host")
    if host:
        return f"{request.url.scheme}://{host}".rstrip("/")

    return str(request.base_url).rstrip("/")


def _session_options() -> Dict[str, Any]:
    return {
        "stun_urls": SETTINGS.stun_urls,
        "gathering_timeout": SETTINGS.ice_gathering_timeout,
        "connection_factory": CONNECTION_FACTORY,
    }


def _push_event(events: "asyncio.Queue[Dict[str, Any]]", event: Dict[str, Any]) -> None:
    if events.full():
        dropped = events.get_nowait()
        logger.debug("Event backlog full; dropping %s", dropped["event"])
    events.put_nowait(event)


def _event_callbacks(events: "asyncio.Queue[Dict[str, Any]]") -> RemoteSessionCallbacks:
    def push(kind: str, **payload: Any) -> None:
        _push_event(events, {"event": kind, **payload})

    return RemoteSessionCallbacks(
        on_remote_move=lambda cell: push("remoteMove", cellIndex=cell),
        on_rematch_requested=lambda: push("rematchRequested"),
        on_rematch_response=lambda accepted: push("rematchResponse", accepted=accepted),
        on_connected=lambda name: push("connected", remoteName=name),
        on_disconnected=lambda reason: push("disconnected", reason=reason),
        on_error=lambda message: push("error", message=message),
    )


async def _cleanup_remote_sessions() -> None:
    """Release and forget remote sessions once they are old enough, whatever their state."""

    now = time.time()
    expired = [
        handle_id
        for handle_id, handle in list(REMOTE_SESSIONS.items())
        if now - handle.created_at >= REMOTE_SESSION_TTL_SECONDS
    ]
    for handle_id in expired:
        handle = REMOTE_SESSIONS.pop(handle_id, None)
        if handle is None:
            continue
        if handle.session.state.connection_status is not ConnectionStatus.DISCONNECTED:
            logger.info("Expiring idle remote session %s", handle.session.state.session_id)
        # Also waits for any close already under way.
        await handle.session.leave()
        _push_event(handle.events, {"event": "disconnected", "reason": "Session expired"})


def _get_remote(handle_id: str) -> RemoteHandle:
    try:
        return REMOTE_SESSIONS[handle_id]
    except KeyError as exc:
        raise HTTPException(status_code=404, detail="Remote session not found") from exc


def _serialize_remote(handle_id: str, handle: RemoteHandle) -> Dict[str, object]:
    session = handle.session
    state = session.state
    game = handle.game
    remote = state.remote_player
    return {
        "handle": handle_id,
        "sessionId": state.session_id,
        "isHost": state.is_host,
        "connectionStatus": str(state.connection_status),
        "localPlayer": {"name": state.local_player.name, "symbol": state.local_player.symbol},
        "remotePlayer": {"name": remote.name, "symbol": remote.symbol} if remote else None,
        "moveCount": state.move_count,
        "pendingRematchFromRemote": state.pending_rematch_from_remote,
        "rematchRequested": session.rematch_pending,
        "error": state.error,
        "isLocalTurn": session.is_local_turn(),
        "currentPlayer": game.current_player,
        "status": game.status,
        "board": _board_for_client(game),
    }


@app.post("/api/remote/host")
async def host_remote(request: HostRequest, http_request: Request) -> Dict[str, object]:
    await _cleanup_remote_sessions()
    game = TicTacToeGame()
    events: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue(maxsize=REMOTE_EVENT_BACKLOG)
    try:
        hosted = await create_session(
            request.name, game, _event_callbacks(events), **_session_options()
        )
    except NegotiationError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc

    handle_id = uuid.uuid4().hex
    REMOTE_SESSIONS[handle_id] = RemoteHandle(session=hosted.session, game=game, events=events)
    join_url = build_join_url(_resolve_join_base_url(http_request), hosted.session_code)
    return {
        "handle": handle_id,
        "sessionId": hosted.session_id,
        "sessionCode": hosted.session_code,
        "joinUrl": join_url,
        "state": _serialize_remote(handle_id, REMOTE_SESSIONS[handle_id]),
    }


@app.post("/api/remote/join")
async def join_remote(request: JoinRequest) -> Dict[str, object]:
    await _cleanup_remote_sessions()
    code = request.session_code
    if not code and request.join_url:
        code = get_session_from_url(request.join_url)
    if not code:
        raise HTTPException(status_code=400, detail="Provide a session code or join link")

    game = TicTacToeGame()
    events: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue(maxsize=REMOTE_EVENT_BACKLOG)
    try:
        joined = await join_session(
            code, request.name, game, _event_callbacks(events), **_session_options()
        )
    except InvalidSessionCodeError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except NegotiationError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc

    handle_id = uuid.uuid4().hex
    REMOTE_SESSIONS[handle_id] = RemoteHandle(session=joined.session, game=game, events=events)
    return {
        "handle": handle_id,
        "answerCode": joined.answer_code,
        "state": _serialize_remote(handle_id, REMOTE_SESSIONS[handle_id]),
    }


@app.post("/api/remote/{handle_id}/answer")
async def complete_remote(handle_id: str, request: AnswerRequest) -> Dict[str, object]:
    handle = _get_remote(handle_id)
    try:
        await handle.session.complete_host_connection(request.answer_code)
    except InvalidSessionCodeError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ChannelStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except NegotiationError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return _serialize_remote(handle_id, handle)


@app.get("/api/remote/{handle_id}")
async def get_remote(handle_id: str) -> Dict[str, object]:
    return _serialize_remote(handle_id, _get_remote(handle_id))


@app.post("/api/remote/{handle_id}/move")
async def remote_move(handle_id: str, request: MoveRequest) -> Dict[str, object]:
    handle = _get_remote(handle_id)
    if not handle.session.send_move(request.cell_index):
        raise HTTPException(status_code=400, detail="Move is not allowed on this turn")
    return _serialize_remote(handle_id, handle)


@app.post("/api/remote/{handle_id}/rematch")
async def remote_rematch(handle_id: str) -> Dict[str, object]:
    handle = _get_remote(handle_id)
    if not handle.session.request_rematch():
        raise HTTPException(status_code=400, detail="A rematch cannot be requested now")
    return _serialize_remote(handle_id, handle)


@app.post("/api/remote/{handle_id}/rematch/respond")
async def remote_rematch_reply(handle_id: str, request: RematchReply) -> Dict[str, object]:
    handle = _get_remote(handle_id)
    if not handle.session.respond_to_rematch(request.accept):
        raise HTTPException(status_code=400, detail="No rematch request to answer")
    return _serialize_remote(handle_id, handle)


@app.delete("/api/remote/{handle_id}")
async def leave_remote(handle_id: str) -> Dict[str, object]:
    handle = _get_remote(handle_id)
    await handle.session.leave()
    REMOTE_SESSIONS.pop(handle_id, None)
    # Lets an open event stream on this handle finish.
    _push_event(handle.events, {"event": "disconnected", "reason": "You left the game"})
    return {"handle": handle_id, "left": True}


@app.websocket("/ws/remote/{handle_id}")
async def remote_events(websocket: WebSocket, handle_id: str) -> None:
    await websocket.accept()
    handle = REMOTE_SESSIONS.get(handle_id)
    if handle is None:
        await websocket.send_json({"event": "error", "message": "Remote session not found"})
        await websocket.close()
        return

    try:
        # Drain what is queued; a finished session has nothing more to say.
        while not (
            handle.session.state.connection_status is ConnectionStatus.DISCONNECTED
            and handle.events.empty()
        ):
            event = await handle.events.get()
            await websocket.send_json(event)
    except (WebSocketDisconnect, RuntimeError):
        logger.debug("Event stream for %s closed by client", handle_id)
        return
    await websocket.close()
