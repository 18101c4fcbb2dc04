"""Requests and Response models"""

from datetime import datetime
from typing import Any, Optional

import chess
from pydantic import BaseModel, ValidationInfo, field_validator

from src.core.config import MAX_DIFFICULTY
from src.core.exceptions import InvalidRequestError, InvalidSquareError
from src.core.shared_types import Color, MoveSource, Outcome, RoundPhase, TickResult
from src.game.square import Square

MoveKey = str


def _validate_instance_id(value: str) -> str:
    value = value.strip()
    if not value:
        raise InvalidRequestError("instance_id cannot be empty.")
    return value


def _validate_square(value: str) -> str:
    try:
        return Square.from_algebraic(value.strip().lower()).to_algebraic()
    except InvalidSquareError as exc:
        raise InvalidRequestError(
            f"Cannot interpret {value!r} as a valid square name."
        ) from exc


# --- REQUEST MODELS ---
class CreatePostRequest(BaseModel):
    instance_id: str
    starting_fen: Optional[str] = None
    difficulty: Optional[int] = None

    @field_validator("instance_id")
    @classmethod
    def validate_instance_id(cls, value: str) -> str:
        return _validate_instance_id(value)

    @field_validator("starting_fen")
    @classmethod
    def validate_starting_fen(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value

        parts = value.strip().split(" ")
        if len(parts) != 6:
            raise InvalidRequestError(
                "FEN string must contain 6 space-separated parts."
            )
        try:
            chess.Board(value.strip())
        except ValueError as exc:
            raise InvalidRequestError(f"Invalid FEN string: {exc}") from exc
        return value.strip()

    @field_validator("difficulty")
    @classmethod
    def validate_difficulty(cls, value: Optional[int]) -> Optional[int]:
        if value is not None and not 0 <= value <= MAX_DIFFICULTY:
            raise InvalidRequestError(
                f"Difficulty must be between 0 and {MAX_DIFFICULTY}, got {value}."
            )
        return value


class VoteRequest(BaseModel):
    instance_id: str
    from_square: str
    to_square: str

    @field_validator("instance_id")
    @classmethod
    def validate_instance_id(cls, value: str) -> str:
        return _validate_instance_id(value)

    @field_validator(*["from_square", "to_square"])
    @classmethod
    def validate_square(cls, value: str) -> str:
        return _validate_square(value)

    @field_validator("to_square")
    @classmethod
    def validate_distinct_squares(cls, value: str, info: ValidationInfo) -> str:
        if value == info.data.get("from_square"):
            raise InvalidRequestError(
                f"A move needs two different squares, got {value} twice."
            )
        return value


class LegalDestinationsRequest(BaseModel):
    instance_id: str
    origin: str

    @field_validator("instance_id")
    @classmethod
    def validate_instance_id(cls, value: str) -> str:
        return _validate_instance_id(value)

    @field_validator("origin")
    @classmethod
    def validate_origin(cls, value: str) -> str:
        return _validate_square(value)


class GetRoundRequest(BaseModel):
    instance_id: str

    @field_validator("instance_id")
    @classmethod
    def validate_instance_id(cls, value: str) -> str:
        return _validate_instance_id(value)


class JobPayload(BaseModel):
    """Data attached to a scheduled job run."""

    instance_id: str

    @field_validator("instance_id")
    @classmethod
    def validate_instance_id(cls, value: str) -> str:
        return _validate_instance_id(value)

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump()


# --- RESPONSE MODELS ---
class VoteCount(BaseModel):
    move_key: MoveKey
    votes: int


class RoundResponse(BaseModel):
    instance_id: str
    fen_state: str
    starting_state: str
    move_history: list[MoveKey]
    san_history: list[str]
    board: list[list[Optional[str]]]
    color_to_move: Color
    phase: RoundPhase
    outcome: Outcome
    winner: Optional[Color]
    result_text: str
    round_number: int
    round_started_at: datetime
    last_resolved_at: Optional[datetime]
    seconds_remaining: int
    time_left: str
    top_moves: list[VoteCount]
    total_votes: int


class VoteResponse(BaseModel):
    instance_id: str
    round_number: int
    move_key: MoveKey
    votes: int


class LegalDestinationsResponse(BaseModel):
    instance_id: str
    origin: str
    destinations: list[str]


class ResolutionResponse(BaseModel):
    instance_id: str
    result: TickResult
    round_number: int
    phase: RoundPhase
    community_move: Optional[MoveKey] = None
    community_source: MoveSource = MoveSource.NONE
    opponent_move: Optional[MoveKey] = None
    opponent_source: MoveSource = MoveSource.NONE
    outcome: Outcome = Outcome.ONGOING
    winner: Optional[Color] = None
