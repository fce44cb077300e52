import logging
from pathlib import Path

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session, DeclarativeBase

from .settings import settings

logger = logging.getLogger(__name__)

class Base(DeclarativeBase):
    pass

_engine: Engine | None = None
_SessionLocal: sessionmaker | None = None

def _sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    # rows are deleted child to parent, so enforcing FKs catches a wrong order
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()

def get_engine() -> Engine:
    global _engine, _SessionLocal
    if _engine is None:
        url = settings.TICKETDESK_DB_URL
        is_sqlite = url.startswith("sqlite")
        _engine = create_engine(
            url,
            future=True,
            connect_args={"check_same_thread": False} if is_sqlite else {},
        )
        if is_sqlite:
            event.listen(_engine, "connect", _sqlite_foreign_keys)
        _SessionLocal = sessionmaker(bind=_engine, autoflush=False, autocommit=False, future=True)
    return _engine

def init_db() -> None:
    """Create tables and the public upload directory."""
    engine = get_engine()
    from . import models  # noqa
    Base.metadata.create_all(bind=engine)
    uploads = Path(settings.TICKETDESK_PUBLIC_DIR) / "uploads"
    uploads.mkdir(parents=True, exist_ok=True)
    logger.info("Database ready at %s, uploads in %s", engine.url, uploads)

def get_session() -> Session:
    if _SessionLocal is None:
        init_db()
    session = _SessionLocal()
    try:
        yield session
    finally:
        session.close()
