"""FastAPI dependencies for database access and the clock."""

from typing import Generator

from sqlalchemy.orm import Session

from retention_engine.core.clock import Clock, system_clock
from retention_engine.db.session import SessionLocal


def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency.

    Yields a database session and ensures it's closed after the request.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_clock() -> Clock:
    return system_clock
