from __future__ import annotations

import os
from collections.abc import Generator
from datetime import date, datetime, timezone
from decimal import Decimal

os.environ.setdefault("SPENDTRACK_DATABASE_URL", "sqlite+pysqlite:///:memory:")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from spendtrack.db.base import Base
from spendtrack.db.dependencies import get_db_session
import spendtrack.models.entities  # noqa: F401
from spendtrack.main import create_app
from spendtrack.models.entities import Project, RateHistory, TimeEntry, User

TEST_TABLES = [
    User.__table__,
    Project.__table__,
    TimeEntry.__table__,
    RateHistory.__table__,
]


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(bind=engine, tables=TEST_TABLES)
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)

    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine, tables=TEST_TABLES)


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    app = create_app()

    def override_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db_session] = override_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def create_user(
    db: Session,
    *,
    name: str,
    email: str,
    current_rate: str,
    created_at: datetime = datetime(2023, 6, 1, 9, 0),
) -> User:
    user = User(name=name, email=email, current_rate=Decimal(current_rate), active=True, created_at=created_at)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def create_project(
    db: Session,
    *,
    name: str,
    total_budget: str = "0",
    q1_budget: str = "0",
    q2_budget: str = "0",
    q3_budget: str = "0",
    q4_budget: str = "0",
    active: bool = True,
) -> Project:
    now = datetime.now(timezone.utc)
    project = Project(
        name=name,
        active=active,
        total_budget=Decimal(total_budget),
        q1_budget=Decimal(q1_budget),
        q2_budget=Decimal(q2_budget),
        q3_budget=Decimal(q3_budget),
        q4_budget=Decimal(q4_budget),
        created_at=now,
        updated_at=now,
    )
    db.add(project)
    db.commit()
    db.refresh(project)
    return project


def add_rate(
    db: Session,
    user: User,
    *,
    rate: str,
    effective_date: date,
    created_by: str = "admin",
    created_at: datetime | None = None,
) -> RateHistory:
    row = RateHistory(
        user_id=user.id,
        rate=Decimal(rate),
        effective_date=effective_date,
        created_by=created_by,
        created_at=created_at or datetime.now(timezone.utc),
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    return row


def add_entry(db: Session, user: User, project: Project, *, day: date, hours: str) -> TimeEntry:
    row = TimeEntry(user_id=user.id, project_id=project.id, date=day, hours=Decimal(hours))
    db.add(row)
    db.commit()
    db.refresh(row)
    return row
