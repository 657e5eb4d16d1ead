"""Exception hierarchy shared by the remote-play modules."""

from __future__ import annotations

from typing import Optional

__all__ = [
    "ChannelClosedError",
    "ChannelStateError",
    "DuelXOError",
    "InvalidSessionCodeError",
    "NegotiationError",
    "ProtocolViolationError",
]


class DuelXOError(Exception):
    """Base exception for DuelXO errors.

    Attributes:
        code: Machine-readable error code
        message: Human-readable description, safe to show to the player
    """

    code: str = "DUELXO_ERROR"

    def __init__(self, message: str, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def __str__(self) -> str:
        return self.message


class InvalidSessionCodeError(DuelXOError, ValueError):
    """A pasted session code could not be decoded or has the wrong role."""

    code = "INVALID_SESSION_CODE"


class ProtocolViolationError(DuelXOError):
    """The peer sent a well-formed message that breaks the game protocol."""

    code = "PROTOCOL_VIOLATION"


class ChannelStateError(DuelXOError):
    """An operation was attempted in a channel state that does not allow it."""

    code = "CHANNEL_STATE"


class NegotiationError(DuelXOError):
    """The offer/answer exchange could not be completed."""

    code = "NEGOTIATION_FAILED"


class ChannelClosedError(NegotiationError):
    """The channel was closed while an operation was still pending."""

    code = "CHANNEL_CLOSED"
