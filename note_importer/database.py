from typing import Optional
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine
from note_importer.config import settings
from note_importer.core.logging_config import get_logger

logger = get_logger(__name__)


def create_db_engine(database_url: Optional[str] = None, echo: Optional[bool] = None) -> Engine:
    """Create an engine for the queue database (SQLite file by default)."""
    url = database_url or settings.database_url
    connect_args = {}
    if url.startswith("sqlite"):
        # The worker and API share the engine across asyncio tasks
        connect_args["check_same_thread"] = False

    db_engine = create_engine(
        url,
        echo=settings.log_level == "DEBUG" if echo is None else echo,
        connect_args=connect_args
    )

    if url.startswith("sqlite") and ":memory:" not in url:
        @event.listens_for(db_engine, "connect")
        def _set_sqlite_pragmas(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.close()

    return db_engine


def create_db_and_tables(db_engine: Engine) -> None:
    # Register table metadata before create_all
    from note_importer.models import queue_item  # noqa: F401

    SQLModel.metadata.create_all(db_engine)
    logger.info("Database tables created")
