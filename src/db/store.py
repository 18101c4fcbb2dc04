"""Protocol for the key-value store (implemented with SQLAlchemy, could be implemented on top of Redis etc.)"""

from typing import Optional, Protocol


class KeyValueStore(Protocol):
    """Point reads/writes on string values, plus hashes of integer counters."""

    def get(self, key: str) -> Optional[str]:
        """Value stored under key, if any."""
        ...

    def set(self, key: str, value: str) -> None:
        """Store (or overwrite) a value."""
        ...

    def compare_and_set(self, key: str, expected: Optional[str], value: str) -> bool:
        """Store value only if the current value equals expected (None: key must not exist yet). True if stored."""
        ...

    def delete(self, key: str) -> None:
        """Remove the value and all hash fields under key, in one step."""
        ...

    def increment(self, key: str, field: str, delta: int = 1) -> int:
        """Atomically add delta to a hash field (created at 0 if absent) and return the new count."""
        ...

    def read_hash(self, key: str) -> dict[str, int]:
        """Snapshot of all fields of a hash. Empty if the hash does not exist."""
        ...
