"""Engine and session factory built from settings."""

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from spendtrack.core.config import get_settings

settings = get_settings()

engine = create_engine(settings.database_url, echo=settings.sql_echo, pool_pre_ping=True, future=True)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
