"""
Move-Key codec
----

A Move-Key is the canonical string for a move from one square to another: "<origin>-<destination>", e.g. "e2-e4".
It is the field name under which votes are tallied, so it must be deterministic and injective:
decode(encode(origin, destination)) gives back exactly the same squares.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

import chess

from src.core.exceptions import InvalidSquareError, MalformedKeyError
from src.game.square import Square

MoveKey = str
SEPARATOR = "-"
MOVE_KEY_PATTERN = re.compile(r"([a-h][1-8])-([a-h][1-8])")


@dataclass(frozen=True)
class Move:
    """Origin/destination pair as picked by a voter (two clicks on the board)."""

    origin: Square
    destination: Square

    def __post_init__(self) -> None:
        if self.origin == self.destination:
            raise InvalidSquareError(
                f"A move needs two different squares, got {self.origin.to_algebraic()} twice."
            )

    @classmethod
    def from_chess(cls, move: chess.Move) -> Move:
        """Drop the promotion piece: a Move-Key does not carry it."""
        return cls(Square.from_index(move.from_square), Square.from_index(move.to_square))

    def to_key(self) -> MoveKey:
        return encode(self.origin, self.destination)


def encode(origin: Square, destination: Square) -> MoveKey:
    return f"{origin.to_algebraic()}{SEPARATOR}{destination.to_algebraic()}"


def decode(key: MoveKey) -> Move:
    match = MOVE_KEY_PATTERN.fullmatch(key)
    if match is None:
        raise MalformedKeyError(f"Not a move key: {key!r}")
    origin, destination = match.groups()
    try:
        return Move(Square.from_algebraic(origin), Square.from_algebraic(destination))
    except InvalidSquareError as exc:
        raise MalformedKeyError(f"Not a move key: {key!r} ({exc})") from exc


def is_move_key(key: str) -> bool:
    try:
        decode(key)
    except MalformedKeyError:
        return False
    return True
