"""
Shared fixtures (auto-discovered by pytest).

Store tests run against an in-memory SQLite database. StaticPool hands every session the same connection, so the
"shared" session sees exactly what the first one committed, like two workers on one real database would.
"""

from typing import Generator

import pytest
from sqlalchemy import StaticPool, create_engine
from sqlalchemy.orm import Session, sessionmaker

from src.db.schema import Base
from src.db.sql_store import SQLKeyValueStore

test_engine = create_engine(
    "sqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSession = sessionmaker(bind=test_engine, autoflush=False)


@pytest.fixture
def db_session_repo() -> Generator[Session, None, None]:
    """Fresh tables for every test, dropped again at teardown."""
    Base.metadata.create_all(bind=test_engine)
    session = TestSession()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture
def db_session_shared(db_session_repo: Session) -> Generator[Session, None, None]:
    """A second session on the same tables (e.g. a voter and the scheduler)."""
    session = TestSession()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def sql_store(db_session_repo: Session) -> SQLKeyValueStore:
    return SQLKeyValueStore(db_session_repo)
