from __future__ import annotations

from collections.abc import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from dochub.config import get_settings

settings = get_settings()
is_sqlite = settings.database_url.startswith("sqlite")
# bulk workers write from several threads; SQLite waits up to `timeout` seconds for the write lock
connect_args = {"check_same_thread": False, "timeout": 30} if is_sqlite else {}
engine = create_engine(settings.database_url, connect_args=connect_args, future=True)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)

if is_sqlite and ":memory:" not in settings.database_url:

    @event.listens_for(engine, "connect")
    def _sqlite_wal(dbapi_connection, _record) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()


def get_db_session() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
