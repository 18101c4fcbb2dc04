"""Generate database session"""

from typing import Generator

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker

from src.core.config import Settings
from src.db.schema import Base


def build_engine(settings: Settings) -> Engine:
    engine = create_engine(settings.database_url, echo=settings.echo_sql)
    # Ensure all tables are created
    Base.metadata.create_all(bind=engine)
    return engine


def build_session_factory(settings: Settings) -> sessionmaker[Session]:
    return sessionmaker(bind=build_engine(settings), autoflush=False)


def get_db(session_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    db = session_factory()
    try:
        yield db
    finally:
        db.close()
