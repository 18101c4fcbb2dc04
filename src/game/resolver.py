"""
Round resolution: which move did the community pick?

Rules:
1. Only votes for moves that are legal right now count (votes may have been cast against a stale board).
2. Highest count wins.
3. Ties go to the lexicographically smallest Move-Key, so the outcome never depends on the order votes came in.
4. No surviving vote -> None, the caller plays a fallback move instead.
"""

import logging
import random
from typing import Collection, Mapping, Optional

from src.game.notation import MoveKey, is_move_key

_log = logging.getLogger(__name__)


def _ranking_order(entry: tuple[MoveKey, int]) -> tuple[int, MoveKey]:
    key, count = entry
    return (-count, key)


def resolve(
    tally: Mapping[MoveKey, int], legal_moves: Collection[MoveKey]
) -> Optional[MoveKey]:
    candidates: list[tuple[MoveKey, int]] = []
    for key, count in tally.items():
        if not is_move_key(key):
            _log.warning("Ignoring malformed tally entry %r", key)
            continue
        if key not in legal_moves or count <= 0:
            continue
        candidates.append((key, count))

    if not candidates:
        return None
    winner, _ = min(candidates, key=_ranking_order)
    return winner


def rank_votes(
    tally: Mapping[MoveKey, int], limit: Optional[int] = None
) -> list[tuple[MoveKey, int]]:
    """Votes sorted for display ("top voted moves"), using the same order as resolve()."""
    ranked = sorted(tally.items(), key=_ranking_order)
    return ranked if limit is None else ranked[:limit]


def fallback_select(
    legal_moves: Collection[MoveKey], rng: random.Random
) -> Optional[MoveKey]:
    """Any legal move, picked uniformly. Sorting first makes the pick reproducible for a seeded rng."""
    if not legal_moves:
        return None
    return rng.choice(sorted(legal_moves))
