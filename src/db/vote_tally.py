"""
Vote tally per game instance and round, kept in the store as a hash of Move-Key -> count.

Legality is NOT checked here: the board can change between casting a vote and resolving the round,
so the resolver filters on the legal moves at resolution time instead.
"""

import logging

from src.db.keys import tally_key
from src.db.store import KeyValueStore
from src.game.notation import MoveKey

_log = logging.getLogger(__name__)


class VoteTally:
    def __init__(self, store: KeyValueStore) -> None:
        self.store = store

    def record_vote(self, instance_id: str, round_number: int, move_key: MoveKey) -> int:
        """Atomic +1 in the store (never read-modify-write), returns the new count for move_key."""
        votes = self.store.increment(tally_key(instance_id, round_number), move_key, 1)
        _log.debug("Vote for %s in %s round %d (now %d)", move_key, instance_id, round_number, votes)
        return votes

    def read_all(self, instance_id: str, round_number: int) -> dict[MoveKey, int]:
        return dict(self.store.read_hash(tally_key(instance_id, round_number)))

    def reset(self, instance_id: str, round_number: int) -> None:
        """Drop the whole tally in a single delete: readers see either all votes or none."""
        self.store.delete(tally_key(instance_id, round_number))
