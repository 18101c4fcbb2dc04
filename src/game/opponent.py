"""
The scripted opponent ("Kasparov")
----

Any object with a `suggest_move(position, difficulty)` method can play the opponent. Two are provided:

* MaterialOpponent: small built-in negamax search (alpha-beta pruning, material only). Always available.
* UciOpponent: hands the position to an external UCI engine (e.g. Stockfish) through python-chess.

The suggestion is only a suggestion: the TurnExecutor re-validates it and falls back to a random legal move.
"""

import logging
import random
from typing import Optional, Protocol

import chess
import chess.engine

from src.core.config import MAX_DIFFICULTY, Settings
from src.core.exceptions import OpponentMoveUnavailableError
from src.game.position import Position

_log = logging.getLogger(__name__)

UCI = str

# Centipawns. The king is never captured, so it carries no material value.
PIECE_VALUES: dict[chess.PieceType, int] = {
    chess.PAWN: 100,
    chess.KNIGHT: 320,
    chess.BISHOP: 330,
    chess.ROOK: 500,
    chess.QUEEN: 900,
    chess.KING: 0,
}
CHECKMATE_SCORE = 100_000
MAX_SEARCH_DEPTH = 3


class OpponentEngine(Protocol):
    """Opponent move generation. May raise OpponentMoveUnavailableError when the backend fails."""

    def suggest_move(self, position: Position, difficulty: int) -> Optional[UCI]: ...

    def close(self) -> None:
        """Release whatever the backend holds (processes, connections)."""
        ...


def search_depth(difficulty: int) -> int:
    """Difficulty 0 plays random moves, 1 - 4 search 1 - 3 plies deep."""
    difficulty = max(0, min(difficulty, MAX_DIFFICULTY))
    return min(difficulty, MAX_SEARCH_DEPTH)


# --- BUILT-IN ENGINE ---
def evaluate(board: chess.Board) -> int:
    """Material balance from the perspective of the side to move."""
    score = 0
    for piece_type, value in PIECE_VALUES.items():
        score += value * len(board.pieces(piece_type, chess.WHITE))
        score -= value * len(board.pieces(piece_type, chess.BLACK))
    return score if board.turn == chess.WHITE else -score


def _order_moves(board: chess.Board) -> list[chess.Move]:
    """Captures first (most valuable victim), then a stable UCI order so searches are reproducible."""

    def _capture_value(move: chess.Move) -> int:
        if not board.is_capture(move):
            return 0
        victim = board.piece_at(move.to_square)
        # en passant: the captured pawn is not on the target square
        return PIECE_VALUES[victim.piece_type] if victim else PIECE_VALUES[chess.PAWN]

    moves = sorted(board.legal_moves, key=lambda move: move.uci())
    return sorted(moves, key=_capture_value, reverse=True)


def negamax(board: chess.Board, depth: int, alpha: int, beta: int, ply: int) -> int:
    if board.is_checkmate():
        # Mates closer to the root score higher
        return -CHECKMATE_SCORE + ply
    if board.is_stalemate() or board.is_insufficient_material():
        return 0
    if depth == 0:
        return evaluate(board)

    for move in _order_moves(board):
        board.push(move)
        score = -negamax(board, depth - 1, -beta, -alpha, ply + 1)
        board.pop()
        if score >= beta:
            return beta
        if score > alpha:
            alpha = score
    return alpha


class MaterialOpponent:
    def __init__(self, rng: Optional[random.Random] = None) -> None:
        self.rng = rng or random.Random()

    def suggest_move(self, position: Position, difficulty: int) -> Optional[UCI]:
        board = position.board_copy()
        moves = _order_moves(board)
        if not moves:
            return None

        depth = search_depth(difficulty)
        if depth == 0:
            return self.rng.choice(moves).uci()

        best_move = moves[0]
        alpha, beta = -CHECKMATE_SCORE - 1, CHECKMATE_SCORE + 1
        for move in moves:
            board.push(move)
            score = -negamax(board, depth - 1, -beta, -alpha, 1)
            board.pop()
            if score > alpha:
                alpha = score
                best_move = move
        _log.debug("Built-in engine picked %s (score %d, depth %d)", best_move, alpha, depth)
        return best_move.uci()

    def close(self) -> None:
        pass


# --- EXTERNAL UCI ENGINE ---
class UciOpponent:
    """
    Wraps a UCI engine binary.

    The engine process is started lazily and kept alive between suggestions; call close() (or use as a context manager)
    to shut it down.
    """

    def __init__(self, engine_path: str, time_limit: float = 0.5) -> None:
        self.engine_path = engine_path
        self.time_limit = time_limit
        self._engine: Optional[chess.engine.SimpleEngine] = None

    def suggest_move(self, position: Position, difficulty: int) -> Optional[UCI]:
        if position.status().is_terminal:
            return None
        board = position.board_copy()
        limit = chess.engine.Limit(
            time=self.time_limit, depth=max(1, search_depth(difficulty) * 4)
        )
        try:
            engine = self._open()
            # Stockfish understands "Skill Level" 0 - 20
            if "Skill Level" in engine.options:
                engine.configure({"Skill Level": difficulty * 5})
            result = engine.play(board, limit)
        except (chess.engine.EngineError, chess.engine.EngineTerminatedError, OSError) as exc:
            self.close()
            raise OpponentMoveUnavailableError(
                f"UCI engine {self.engine_path!r} failed: {exc}"
            ) from exc
        return result.move.uci() if result.move else None

    def _open(self) -> chess.engine.SimpleEngine:
        if self._engine is None:
            self._engine = chess.engine.SimpleEngine.popen_uci(self.engine_path)
        return self._engine

    def close(self) -> None:
        if self._engine is not None:
            try:
                self._engine.quit()
            except (chess.engine.EngineError, chess.engine.EngineTerminatedError):
                _log.warning("UCI engine %r did not shut down cleanly", self.engine_path)
            self._engine = None

    def __enter__(self) -> "UciOpponent":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def build_opponent(
    settings: Settings, rng: Optional[random.Random] = None
) -> OpponentEngine:
    if settings.engine_path:
        _log.info("Using UCI engine at %s", settings.engine_path)
        return UciOpponent(settings.engine_path, settings.engine_time_limit)
    return MaterialOpponent(rng)
