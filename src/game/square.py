"""
A square on the board

(placed in its own module as the codec, the position model and the API models all need it)
"""

from __future__ import annotations

from dataclasses import dataclass

import chess

from src.core.exceptions import InvalidSquareError

# Files a-h and ranks 1-8.
BOARD_DIMENSIONS = (8, 8)
FILES = "abcdefgh"
DIGITS = "0123456789"


@dataclass(frozen=True, order=True)
class Square:
    file: int
    rank: int

    def __post_init__(self) -> None:
        if not self.is_within_bounds():
            raise InvalidSquareError(
                f"Square (file={self.file}, rank={self.rank}) is not on the board."
            )

    @classmethod
    def from_algebraic(cls, sq: str) -> Square:
        """Algebraic notation: 'a1' - 'h8' get converted to (1,1) - (8,8)"""
        if len(sq) != 2 or sq[0] not in FILES or sq[1] not in DIGITS:
            raise InvalidSquareError(f"Cannot interpret {sq!r} as a square name.")
        file = ord(sq[0]) - ord("a") + 1
        rank = int(sq[1])
        return cls(file, rank)

    @classmethod
    def from_index(cls, index: chess.Square) -> Square:
        """python-chess numbers the squares 0 (a1) - 63 (h8)"""
        return cls(chess.square_file(index) + 1, chess.square_rank(index) + 1)

    def to_algebraic(self) -> str:
        return f"{chr(self.file + ord('a') - 1)}{self.rank}"

    def to_index(self) -> chess.Square:
        return chess.square(self.file - 1, self.rank - 1)

    def is_within_bounds(self) -> bool:
        return (1 <= self.file <= BOARD_DIMENSIONS[0]) and (
            1 <= self.rank <= BOARD_DIMENSIONS[1]
        )
