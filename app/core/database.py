from contextlib import contextmanager
from typing import Callable, Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session

from app.core.config import get_settings

settings = get_settings()

_connect_args = (
    {"check_same_thread": False}
    if settings.database_url.startswith("sqlite")
    else {}
)

engine = create_engine(
    str(settings.database_url),
    future=True,
    pool_pre_ping=True,
    connect_args=_connect_args,
)

# Session factory
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
    future=True,
)


def get_db() -> Generator[Session, None, None]:
    """
    FastAPI dependency that yields a DB session for the lifetime of a request.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_factory() -> Callable[[], Session]:
    """
    FastAPI dependency returning the session factory itself.

    Used by work that outlives the request (e.g. persisting a streamed
    assistant reply after the response body has been handed to the client),
    where the request-scoped session from get_db() is already closed.
    """
    return SessionLocal


@contextmanager
def session_scope(
    session_factory: Callable[[], Session] = SessionLocal,
) -> Generator[Session, None, None]:
    """
    Transactional scope for code running outside of a request.

    Usage:
        with session_scope(factory) as db:
            db.add(...)
    """
    db = session_factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
