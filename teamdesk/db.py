from __future__ import annotations

from sqlalchemy import create_engine, event
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from .config import get_settings


class Base(DeclarativeBase):
    pass


def _database_url(db_path: str) -> str:
    # Full SQLAlchemy URLs pass through; bare paths are treated as sqlite files.
    if "://" in db_path or db_path.startswith("sqlite:"):
        return db_path
    return f"sqlite:///{db_path}"


settings = get_settings()
_url = _database_url(settings.database.path)
_is_sqlite = _url.startswith("sqlite")

engine = create_engine(
    _url,
    connect_args={"check_same_thread": False} if _is_sqlite else {},
)


if _is_sqlite:

    @event.listens_for(engine, "connect")
    def _set_sqlite_pragma(dbapi_connection, connection_record):
        # Enforce foreign key constraints for ON DELETE CASCADE / SET NULL.
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_factory():
    """Factory for streams that open their own short-lived sessions."""
    return SessionLocal
