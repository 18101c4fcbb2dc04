"""Logging setup. Modules only ever call logging.getLogger(__name__); the process entrypoint calls configure_logging once."""

import logging

from src.core.config import Settings

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)
    # SQL echo is controlled by Settings.echo_sql on the engine itself
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
