"""Implementation of the KeyValueStore using SQLAlchemy"""

from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import delete, insert, select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from src.core.exceptions import RepositoryError, StoreUnavailableError
from src.db.schema import DBEntry, DBHashField


class SQLKeyValueStore:
    """
    Data stored using SQL / methods implemented using SQLAlchemy
    ----

    Every method runs in its own transaction (committed before returning), so concurrent sessions on the same
    database only ever see complete writes.
    """

    def __init__(self, db_session: Session) -> None:
        self.db = db_session

    def get(self, key: str) -> Optional[str]:
        with self._transaction():
            return self.db.scalar(select(DBEntry.value).where(DBEntry.key == key))

    def set(self, key: str, value: str) -> None:
        with self._transaction():
            self.db.merge(DBEntry(key=key, value=value))

    def compare_and_set(self, key: str, expected: Optional[str], value: str) -> bool:
        if expected is None:
            return self._insert_if_absent(key, value)
        with self._transaction():
            result = self.db.execute(
                update(DBEntry)
                .where(DBEntry.key == key, DBEntry.value == expected)
                .values(value=value)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def delete(self, key: str) -> None:
        with self._transaction():
            self.db.execute(delete(DBEntry).where(DBEntry.key == key))
            self.db.execute(delete(DBHashField).where(DBHashField.key == key))

    def increment(self, key: str, field: str, delta: int = 1) -> int:
        try:
            return self._increment(key, field, delta)
        except IntegrityError:
            # Another session created the field in the meantime: it exists now, so the UPDATE path applies.
            return self._increment(key, field, delta)

    def read_hash(self, key: str) -> dict[str, int]:
        with self._transaction():
            rows = self.db.execute(
                select(DBHashField.field, DBHashField.value).where(DBHashField.key == key)
            ).all()
            return {field: value for field, value in rows}

    # -- Internal helpers --
    def _increment(self, key: str, field: str, delta: int) -> int:
        with self._transaction():
            if not self._add_to_field(key, field, delta):
                self.db.execute(insert(DBHashField).values(key=key, field=field, value=delta))
            count = self.db.scalar(
                select(DBHashField.value).where(
                    DBHashField.key == key, DBHashField.field == field
                )
            )
            if count is None:
                raise RepositoryError(f"Counter {key!r}/{field!r} vanished while incrementing it.")
            return count

    def _add_to_field(self, key: str, field: str, delta: int) -> bool:
        """Single UPDATE ... SET value = value + delta, so no increment can get lost. False if the field does not exist."""
        result = self.db.execute(
            update(DBHashField)
            .where(DBHashField.key == key, DBHashField.field == field)
            .values(value=DBHashField.value + delta)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _insert_if_absent(self, key: str, value: str) -> bool:
        try:
            with self._transaction():
                self.db.execute(insert(DBEntry).values(key=key, value=value))
        except IntegrityError:
            return False
        return True

    @contextmanager
    def _transaction(self) -> Iterator[None]:
        """Commit on success, roll back on any failure. Losing the database is reported as StoreUnavailableError."""
        try:
            yield
            self.db.commit()
        except OperationalError as exc:
            self.db.rollback()
            raise StoreUnavailableError(f"Store unavailable: {exc}") from exc
        except Exception:
            self.db.rollback()
            raise
