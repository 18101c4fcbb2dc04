"""
Type definitions used across layers
"""

from enum import StrEnum


class Color(StrEnum):
    WHITE = "white"
    BLACK = "black"


class RoundPhase(StrEnum):
    """OPEN -> RESOLVING -> OPEN (next round) or CLOSED (game over, permanent)"""

    OPEN = "open"
    RESOLVING = "resolving"
    CLOSED = "closed"


class Outcome(StrEnum):
    ONGOING = "ongoing"
    CHECKMATE = "checkmate"
    STALEMATE = "stalemate"
    DRAW = "draw"


class MoveSource(StrEnum):
    """Where the move played during a resolution came from."""

    VOTE = "vote"
    ENGINE = "engine"
    FALLBACK = "fallback"
    SKIPPED = "skipped"
    NONE = "none"


class TickResult(StrEnum):
    RESOLVED = "resolved"
    NOT_DUE = "not due"
    ALREADY_RESOLVED = "already resolved"
    CLOSED = "closed"
