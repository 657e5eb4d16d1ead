"""DuelXO package exposing game rules, the peer-to-peer session layer, and the web application."""

from .computer import RandomAI
from .game import TicTacToeGame
from .remote import RemoteSession, RemoteSessionCallbacks, create_session, join_session
from .ui import app

__all__ = [
    "RandomAI",
    "RemoteSession",
    "RemoteSessionCallbacks",
    "TicTacToeGame",
    "app",
    "create_session",
    "join_session",
]
