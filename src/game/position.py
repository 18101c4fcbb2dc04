"""
The Position is the authoritative game state: the board plus the full move history.

The chess rules themselves (legal moves, applying a move, game over detection) are delegated to python-chess.
A Position is treated as a value: applying a move returns a new Position and leaves the original untouched.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import chess
import chess.pgn

from src.core.exceptions import IllegalMoveError, InvalidPositionError
from src.core.shared_types import Color, Outcome
from src.game.notation import Move, MoveKey
from src.game.square import BOARD_DIMENSIONS, Square

PIECE_NAMES: dict[chess.PieceType, str] = {
    chess.PAWN: "pawn",
    chess.KNIGHT: "knight",
    chess.BISHOP: "bishop",
    chess.ROOK: "rook",
    chess.QUEEN: "queen",
    chess.KING: "king",
}

DRAW_REASONS: dict[chess.Termination, str] = {
    chess.Termination.INSUFFICIENT_MATERIAL: "insufficient material",
    chess.Termination.SEVENTYFIVE_MOVES: "seventy-five moves",
    chess.Termination.FIVEFOLD_REPETITION: "fivefold repetition",
    chess.Termination.FIFTY_MOVES: "fifty moves",
    chess.Termination.THREEFOLD_REPETITION: "threefold repetition",
}


@dataclass(frozen=True)
class TerminalStatus:
    outcome: Outcome
    winner: Optional[Color] = None
    reason: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.outcome != Outcome.ONGOING

    def describe(self) -> str:
        """Result text shown once the game is over."""
        match self.outcome:
            case Outcome.ONGOING:
                return "Game in progress"
            case Outcome.CHECKMATE:
                return f"Checkmate, {self.winner} wins"
            case Outcome.STALEMATE:
                return "Stalemate"
            case _:
                return f"Draw by {self.reason}" if self.reason else "Draw"


ONGOING = TerminalStatus(Outcome.ONGOING)


class Position:
    def __init__(self, board: chess.Board) -> None:
        self._board = board

    # --- CONSTRUCTION / SERIALISATION ---
    @classmethod
    def starting_position(cls) -> Position:
        return cls(chess.Board())

    @classmethod
    def from_fen(cls, fen: str) -> Position:
        try:
            board = chess.Board(fen)
        except ValueError as exc:
            raise InvalidPositionError(f"Invalid FEN {fen!r}: {exc}") from exc
        if not board.is_valid():
            raise InvalidPositionError(f"FEN {fen!r} does not describe a legal position.")
        return cls(board)

    @classmethod
    def from_history(cls, starting_fen: str, moves_uci: list[str]) -> Position:
        """Replay the recorded moves so the restored position keeps its history (repetitions, navigation)."""
        board = cls.from_fen(starting_fen)._board
        for ply, uci in enumerate(moves_uci, start=1):
            try:
                move = chess.Move.from_uci(uci)
            except ValueError as exc:
                raise InvalidPositionError(f"Ply {ply}: cannot parse {uci!r}") from exc
            if move not in board.legal_moves:
                raise InvalidPositionError(f"Ply {ply}: {uci!r} is not a legal move")
            board.push(move)
        return cls(board)

    @property
    def starting_fen(self) -> str:
        return self._board.root().fen()

    @property
    def fen(self) -> str:
        return self._board.fen()

    @property
    def moves_uci(self) -> list[str]:
        return [move.uci() for move in self._board.move_stack]

    @property
    def ply(self) -> int:
        return len(self._board.move_stack)

    @property
    def color_to_move(self) -> Color:
        return Color.WHITE if self._board.turn == chess.WHITE else Color.BLACK

    def board_copy(self) -> chess.Board:
        """For collaborators (opponent engines) that need a board they are free to push/pop on."""
        return self._board.copy()

    # --- LEGAL MOVES ---
    def legal_destinations(self, origin: Square) -> list[Square]:
        """Squares the piece on origin may move to. Empty if it is not the side to move's piece or the game is over."""
        if self.status().is_terminal:
            return []
        from_index = origin.to_index()
        destinations = {
            Square.from_index(move.to_square)
            for move in self._board.legal_moves
            if move.from_square == from_index
        }
        return sorted(destinations)

    def legal_move_keys(self) -> set[MoveKey]:
        if self.status().is_terminal:
            return set()
        return {Move.from_chess(move).to_key() for move in self._board.legal_moves}

    def validate(self, uci: Optional[str]) -> Optional[chess.Move]:
        """
        Check a move suggested in UCI notation.
        ---
        Returns the move if it can be played, None otherwise. Never raises: the caller decides what to do about a bad move.
        """
        if not uci or self.status().is_terminal:
            return None
        try:
            move = chess.Move.from_uci(uci.strip().lower())
        except ValueError:
            return None
        if move not in self._board.legal_moves:
            return None
        return move

    # --- APPLYING MOVES ---
    def apply(self, move: Move) -> Position:
        """Play an origin/destination move. A pawn reaching the last rank is promoted to a queen."""
        if self.status().is_terminal:
            raise IllegalMoveError(f"Game is over, cannot play {move.to_key()}")
        from_index, to_index = move.origin.to_index(), move.destination.to_index()
        promotion = chess.QUEEN if self._is_promotion(from_index, to_index) else None
        chess_move = chess.Move(from_index, to_index, promotion=promotion)
        if chess_move not in self._board.legal_moves:
            raise IllegalMoveError(f"Move not allowed: {move.to_key()}")
        return self.push(chess_move)

    def push(self, move: chess.Move) -> Position:
        if move not in self._board.legal_moves:
            raise IllegalMoveError(f"Move not allowed: {move.uci()}")
        board = self._board.copy()
        board.push(move)
        return Position(board)

    def _is_promotion(self, from_index: chess.Square, to_index: chess.Square) -> bool:
        piece = self._board.piece_at(from_index)
        if piece is None or piece.piece_type != chess.PAWN:
            return False
        last_rank = 7 if piece.color == chess.WHITE else 0
        return chess.square_rank(to_index) == last_rank

    # --- GAME OVER ---
    def status(self) -> TerminalStatus:
        outcome = self._board.outcome()
        if outcome is None:
            # Draws that could be claimed end the game as well, but only once they actually happened.
            if self._board.is_repetition(3):
                return _draw(chess.Termination.THREEFOLD_REPETITION)
            if self._board.is_fifty_moves():
                return _draw(chess.Termination.FIFTY_MOVES)
            return ONGOING
        if outcome.termination == chess.Termination.CHECKMATE:
            winner = Color.WHITE if outcome.winner == chess.WHITE else Color.BLACK
            return TerminalStatus(Outcome.CHECKMATE, winner=winner)
        if outcome.termination == chess.Termination.STALEMATE:
            return TerminalStatus(Outcome.STALEMATE)
        return _draw(outcome.termination)

    # --- VIEWS FOR THE RENDERING LAYER ---
    def grid(self) -> list[list[Optional[str]]]:
        """8x8 view: row 0 is rank 1, column 0 is the a-file. Pieces are written as 'w-pawn', 'b-king', etc."""
        num_files, num_ranks = BOARD_DIMENSIONS
        rows: list[list[Optional[str]]] = []
        for rank in range(num_ranks):
            row: list[Optional[str]] = []
            for file in range(num_files):
                piece = self._board.piece_at(chess.square(file, rank))
                row.append(_piece_code(piece) if piece else None)
            rows.append(row)
        return rows

    def last_move_key(self) -> Optional[MoveKey]:
        if not self._board.move_stack:
            return None
        return Move.from_chess(self._board.peek()).to_key()

    def history_keys(self) -> list[MoveKey]:
        return [Move.from_chess(move).to_key() for move in self._board.move_stack]

    def san_history(self) -> list[str]:
        replay = self._board.root()
        san: list[str] = []
        for move in self._board.move_stack:
            san.append(replay.san(move))
            replay.push(move)
        return san

    def at_ply(self, ply: int) -> Position:
        """The position after the first `ply` half-moves (move-by-move navigation)."""
        if not 0 <= ply <= self.ply:
            raise IndexError(f"Ply {ply} outside of 0..{self.ply}")
        board = self._board.root()
        for move in self._board.move_stack[:ply]:
            board.push(move)
        return Position(board)

    def to_pgn(self) -> str:
        game = chess.pgn.Game.from_board(self._board)
        game.headers["Event"] = "Kasparov vs Redditors"
        return str(game)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Position):
            return NotImplemented
        return self.starting_fen == other.starting_fen and self.moves_uci == other.moves_uci

    def __repr__(self) -> str:
        return f"Position({self.fen!r}, ply={self.ply})"


def _draw(termination: chess.Termination) -> TerminalStatus:
    reason = DRAW_REASONS.get(termination, termination.name.lower().replace("_", " "))
    return TerminalStatus(Outcome.DRAW, reason=reason)


def _piece_code(piece: chess.Piece) -> str:
    color = "w" if piece.color == chess.WHITE else "b"
    return f"{color}-{PIECE_NAMES[piece.piece_type]}"
