"""
Boundary layer data model(s).

The RoundRecord is what the store keeps per game instance. Both the service layer (reads/writes it)
and the db layer (persists its JSON encoding) use it, which decouples the storage format from the domain objects.
"""

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Self

from src.core.exceptions import RepositoryError

# Type aliases to make RoundRecord easier to read
FEN = str
UCI = str


@dataclass
class RoundRecord:
    """Transport-safe representation of a voting game, including the round that is currently open."""

    starting_fen: FEN
    moves_uci: list[UCI]
    current_fen: FEN
    round_number: int
    round_started_at: datetime
    last_resolved_at: Optional[datetime]
    phase: str
    outcome: str
    winner: Optional[str]
    difficulty: int

    def to_json(self) -> str:
        """Deterministic encoding: the exact string doubles as the round token for compare-and-set."""
        data: dict[str, Any] = {
            "starting_fen": self.starting_fen,
            "moves_uci": list(self.moves_uci),
            "current_fen": self.current_fen,
            "round_number": self.round_number,
            "round_started_at": self.round_started_at.isoformat(),
            "last_resolved_at": (
                self.last_resolved_at.isoformat() if self.last_resolved_at else None
            ),
            "phase": self.phase,
            "outcome": self.outcome,
            "winner": self.winner,
            "difficulty": self.difficulty,
        }
        return json.dumps(data, sort_keys=True, separators=(",", ":"))

    @classmethod
    def from_json(cls, raw: str) -> Self:
        try:
            data = json.loads(raw)
            last_resolved = data["last_resolved_at"]
            return cls(
                starting_fen=data["starting_fen"],
                moves_uci=list(data["moves_uci"]),
                current_fen=data["current_fen"],
                round_number=int(data["round_number"]),
                round_started_at=datetime.fromisoformat(data["round_started_at"]),
                last_resolved_at=(
                    datetime.fromisoformat(last_resolved) if last_resolved else None
                ),
                phase=data["phase"],
                outcome=data["outcome"],
                winner=data["winner"],
                difficulty=int(data["difficulty"]),
            )
        except (ValueError, KeyError, TypeError) as exc:
            raise RepositoryError(f"Stored round record is corrupt: {exc}") from exc
