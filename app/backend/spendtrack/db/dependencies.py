"""Request-scoped database session for FastAPI endpoints."""

from collections.abc import Generator

from sqlalchemy.orm import Session

from spendtrack.db.session import SessionLocal


def get_db_session() -> Generator[Session, None, None]:
    """Yield a session; anything left uncommitted by a failing request is rolled back."""

    session = SessionLocal()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
