"""Wire messages exchanged between two peers, with (de)serialization and move checks.

Every message is one JSON object carrying a ``type`` tag. Decoding goes through
a pydantic discriminated union, so an unknown tag or a malformed payload comes
back as ``None`` instead of a half-filled message.
"""

from __future__ import annotations

from typing import Annotated, Literal, Optional, Sequence, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictInt,
    StrictStr,
    TypeAdapter,
    ValidationError,
)

from .game import EMPTY, Player

# Increment on breaking changes to the message schema.
PROTOCOL_VERSION = 1

PlayerSymbol = Literal["X", "O"]
DisconnectReason = Literal["left", "error"]


class _Message(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)


class HandshakeMessage(_Message):
    """Sent once by each side as soon as the data channel opens."""

    type: Literal["handshake"] = "handshake"
    player_name: StrictStr = Field(alias="playerName")
    protocol_version: StrictInt = Field(alias="protocolVersion")


class MoveMessage(_Message):
    """One applied move; ``move_number`` is zero-based within a game."""

    type: Literal["move"] = "move"
    cell_index: StrictInt = Field(alias="cellIndex", ge=0, le=8)
    player: PlayerSymbol
    move_number: StrictInt = Field(alias="moveNumber", ge=0)


class RematchRequestMessage(_Message):
    type: Literal["rematch-request"] = "rematch-request"


class RematchResponseMessage(_Message):
    """Reply to a rematch request; an acceptance names who opens the next game."""

    type: Literal["rematch-response"] = "rematch-response"
    accepted: StrictBool
    starting_player: Optional[PlayerSymbol] = Field(
        default=None, alias="startingPlayer"
    )


class DisconnectMessage(_Message):
    type: Literal["disconnect"] = "disconnect"
    reason: DisconnectReason


GameMessage = Annotated[
    Union[
        HandshakeMessage,
        MoveMessage,
        RematchRequestMessage,
        RematchResponseMessage,
        DisconnectMessage,
    ],
    Field(discriminator="type"),
]

_MESSAGE_ADAPTER = TypeAdapter(GameMessage)


def serialize_message(message: GameMessage) -> str:
    return message.model_dump_json(by_alias=True, exclude_none=True)


def deserialize_message(raw: Union[str, bytes]) -> Optional[GameMessage]:
    """Parse one wire message, returning ``None`` if it is not a valid message."""
    try:
        return _MESSAGE_ADAPTER.validate_json(raw)
    except ValidationError:
        return None


def validate_move(
    message: MoveMessage,
    board: Sequence[str],
    expected_player: Player,
    expected_move_number: int,
) -> bool:
    """Check an inbound move against the local position. Pure, no I/O."""
    if message.player != expected_player:
        return False
    if message.move_number != expected_move_number:
        return False
    if not 0 <= message.cell_index <= 8:
        return False
    return board[message.cell_index] == EMPTY


def create_handshake_message(player_name: str) -> HandshakeMessage:
    return HandshakeMessage(player_name=player_name, protocol_version=PROTOCOL_VERSION)


def create_move_message(cell_index: int, player: Player, move_number: int) -> MoveMessage:
    return MoveMessage(cell_index=cell_index, player=player, move_number=move_number)


def create_rematch_request_message() -> RematchRequestMessage:
    return RematchRequestMessage()


def create_rematch_response_message(
    accepted: bool, starting_player: Optional[Player] = None
) -> RematchResponseMessage:
    # The starter only matters when the rematch actually happens.
    return RematchResponseMessage(
        accepted=accepted, starting_player=starting_player if accepted else None
    )


def create_disconnect_message(reason: str) -> DisconnectMessage:
    return DisconnectMessage(reason=reason)
