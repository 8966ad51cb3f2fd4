from __future__ import annotations

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import create_engine


def _set_sqlite_pragmas(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()


def create_db_engine(db_url: str) -> Engine:
    """Engine for the database holding the tables to backfill."""
    is_sqlite = db_url.startswith("sqlite")
    engine = create_engine(
        db_url,
        echo=False,
        connect_args={"check_same_thread": False} if is_sqlite else {},
    )
    if is_sqlite:
        # Backfills run next to live application writers
        event.listen(engine, "connect", _set_sqlite_pragmas)
    return engine
