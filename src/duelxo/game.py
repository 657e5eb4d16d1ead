"""Core rules for classic 3x3 tic-tac-toe."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

Player = str  # "X" or "O"
EMPTY = " "
PLAYERS: Tuple[Player, Player] = ("X", "O")

PLAYING = "playing"
X_WINS = "x-wins"
O_WINS = "o-wins"
DRAW = "draw"

WINNING_LINES: Tuple[Tuple[int, int, int], ...] = (
    (0, 1, 2),
    (3, 4, 5),
    (6, 7, 8),
    (0, 3, 6),
    (1, 4, 7),
    (2, 5, 8),
    (0, 4, 8),
    (2, 4, 6),
)


def other_player(player: Player) -> Player:
    return "O" if player == "X" else "X"


def check_win(cells: Sequence[str], player: Player) -> bool:
    return any(
        cells[a] == player and cells[b] == player and cells[c] == player
        for a, b, c in WINNING_LINES
    )


def _has_live_line(cells: Sequence[str], player: Player) -> bool:
    # A line is live while it holds no opponent mark.
    opponent = other_player(player)
    return any(
        opponent not in (cells[a], cells[b], cells[c]) for a, b, c in WINNING_LINES
    )


def _can_still_win(cells: Sequence[str], player: Player, next_player: Player) -> bool:
    empty = [i for i, c in enumerate(cells) if c == EMPTY]
    if len(empty) != 1:
        # More than one open cell: assume the game can still go either way.
        return True
    last = empty[0]
    for line in WINNING_LINES:
        if last not in line:
            continue
        marks = [cells[i] for i in line]
        if other_player(player) in marks:
            continue
        if marks.count(player) == 2:
            return next_player == player
    return False


def is_early_draw(cells: Sequence[str], last_player: Optional[Player] = None) -> bool:
    """Return True when neither side can complete a line any more.

    With ``last_player`` given, the check also accounts for whose turn it is
    when exactly one cell remains open.
    """
    x_live = _has_live_line(cells, "X")
    o_live = _has_live_line(cells, "O")
    if not x_live and not o_live:
        return True

    if last_player is not None:
        nxt = other_player(last_player)
        x_can = x_live and _can_still_win(cells, "X", nxt)
        o_can = o_live and _can_still_win(cells, "O", nxt)
        if not x_can and not o_can:
            return True
    return False


@dataclass
class TicTacToeGame:
    # 'X', 'O', or ' ' (space) for empty
    cells: List[str] = field(default_factory=lambda: [EMPTY] * 9)
    current_player: Player = "X"
    winner: Optional[Player] = None
    drawn: bool = False
    starting_player: Player = "X"

    # ---- API used by the session layer & UI ----

    @property
    def status(self) -> str:
        if self.winner == "X":
            return X_WINS
        if self.winner == "O":
            return O_WINS
        if self.drawn:
            return DRAW
        return PLAYING

    @property
    def is_over(self) -> bool:
        return self.status != PLAYING

    def is_full(self) -> bool:
        return all(c != EMPTY for c in self.cells)

    def is_cell_empty(self, idx: int) -> bool:
        return 0 <= idx < len(self.cells) and self.cells[idx] == EMPTY

    def available_moves(self) -> List[int]:
        if self.is_over:
            return []
        return [i for i, c in enumerate(self.cells) if c == EMPTY]

    def play_move(self, idx: int) -> None:
        """Mark ``idx`` for the current player, then update status and turn."""
        if self.is_over:
            raise ValueError("Game already finished")
        if not 0 <= idx <= 8:
            raise ValueError(f"Cell index {idx} is out of range")
        if self.cells[idx] != EMPTY:
            raise ValueError("Cell already occupied")

        player = self.current_player
        self.cells[idx] = player
        self._update_state(player)
        self.current_player = other_player(player)

    def reset(self, starting_player: Player = "X") -> None:
        if starting_player not in PLAYERS:
            raise ValueError(f"Unknown player {starting_player!r}")
        self.cells = [EMPTY] * 9
        self.current_player = starting_player
        self.starting_player = starting_player
        self.winner = None
        self.drawn = False

    def clone(self) -> "TicTacToeGame":
        return TicTacToeGame(
            cells=self.cells.copy(),
            current_player=self.current_player,
            winner=self.winner,
            drawn=self.drawn,
            starting_player=self.starting_player,
        )

    # ---- helpers ----

    def _update_state(self, last_player: Player) -> None:
        if check_win(self.cells, last_player):
            self.winner = last_player
            self.drawn = False
            return
        if is_early_draw(self.cells, last_player) or self.is_full():
            self.winner = None
            self.drawn = True
