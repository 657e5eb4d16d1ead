"""Uniform-random computer opponent used by the computer and demo modes."""

from __future__ import annotations

import random
from dataclasses import dataclass, field

from .game import Player, TicTacToeGame

# Seconds the opponent "thinks" before moving.
COMPUTER_THINK_DELAY = 2.0


@dataclass
class RandomAI:
    """Picks any open cell with equal probability.

    Surface kept small so ui.py can swap opponents freely:
      - RandomAI(player="O")
      - choose(game) -> cell_index
    """

    player: Player
    rng: random.Random = field(default_factory=random.Random, repr=False)

    def choose(self, game: TicTacToeGame) -> int:
        if game.current_player != self.player:
            raise ValueError("It is not this AI player's turn")
        moves = game.available_moves()
        if not moves:
            raise RuntimeError("No valid moves available")
        return self.rng.choice(moves)
