"""
The TurnExecutor plays one full turn on the authoritative position: the community's move, then the opponent's reply.
"""

import logging
import random
from dataclasses import dataclass
from typing import Optional

from src.core.exceptions import (
    IllegalMoveError,
    MalformedKeyError,
    OpponentMoveUnavailableError,
)
from src.core.shared_types import MoveSource
from src.game.notation import MoveKey, decode
from src.game.opponent import OpponentEngine
from src.game.position import Position, TerminalStatus
from src.game.resolver import fallback_select

_log = logging.getLogger(__name__)


@dataclass(frozen=True)
class OpponentReply:
    position: Position
    source: MoveSource

    @property
    def move_key(self) -> Optional[MoveKey]:
        return None if self.source == MoveSource.NONE else self.position.last_move_key()


class TurnExecutor:
    def __init__(
        self, opponent: OpponentEngine, rng: Optional[random.Random] = None
    ) -> None:
        self.opponent = opponent
        self.rng = rng or random.Random()

    def apply_community_move(self, position: Position, move_key: MoveKey) -> Position:
        """Raises IllegalMoveError if the key does not name a move that is legal right now."""
        try:
            move = decode(move_key)
        except MalformedKeyError as exc:
            raise IllegalMoveError(f"Cannot play {move_key!r}: {exc}") from exc
        return position.apply(move)

    def apply_opponent_move(self, position: Position, difficulty: int) -> Position:
        return self.play_opponent_turn(position, difficulty).position

    def play_opponent_turn(self, position: Position, difficulty: int) -> OpponentReply:
        """
        Let the opponent reply.
        ----

        1. Game already over? Nothing to play.
        2. Ask the opponent engine for a suggestion and validate it against the legal moves.
        3. No (valid) suggestion: play any legal move instead.
        4. No legal move at all: the position is terminal, return it unchanged.
        """
        if self.is_terminal(position).is_terminal:
            return OpponentReply(position, MoveSource.NONE)

        suggestion = self._request_suggestion(position, difficulty)
        validated = position.validate(suggestion)
        if validated is not None:
            return OpponentReply(position.push(validated), MoveSource.ENGINE)

        _log.warning(
            "Opponent suggestion %r is not playable in %s, falling back to a random legal move",
            suggestion,
            position.fen,
        )
        fallback = fallback_select(position.legal_move_keys(), self.rng)
        if fallback is None:
            return OpponentReply(position, MoveSource.NONE)
        return OpponentReply(position.apply(decode(fallback)), MoveSource.FALLBACK)

    @staticmethod
    def is_terminal(position: Position) -> TerminalStatus:
        return position.status()

    def _request_suggestion(self, position: Position, difficulty: int) -> Optional[str]:
        """The only place where an opponent failure is caught: from here on it is just a missing suggestion."""
        try:
            return self.opponent.suggest_move(position, difficulty)
        except OpponentMoveUnavailableError as exc:
            _log.warning("Opponent engine unavailable: %s", exc)
            return None
