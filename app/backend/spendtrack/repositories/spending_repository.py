"""Repository helpers for users, projects, time entries and rate history."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import date
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from spendtrack.engine.budget import Budget
from spendtrack.models.entities import Project, RateHistory, TimeEntry, User


class SpendingRepository:
    """Persistence operations used by the spending service."""

    def __init__(self, db: Session) -> None:
        self.db = db

    # ---------- Users ----------
    def get_user(self, user_id: UUID) -> User | None:
        return self.db.scalar(select(User).where(User.id == user_id))

    def list_users(self, user_ids: Iterable[UUID] | None = None) -> list[User]:
        query = select(User).order_by(User.name.asc())
        if user_ids is not None:
            ids = list(user_ids)
            if not ids:
                return []
            query = query.where(User.id.in_(ids))
        return self.db.scalars(query).all()

    def list_users_without_rate_history(self) -> list[User]:
        with_history = select(RateHistory.user_id).distinct()
        return self.db.scalars(
            select(User).where(User.id.not_in(with_history)).order_by(User.created_at.asc())
        ).all()

    # ---------- Rate history ----------
    def get_rate_history(self, user_id: UUID) -> list[RateHistory]:
        return self.db.scalars(
            select(RateHistory)
            .where(RateHistory.user_id == user_id)
            .order_by(RateHistory.effective_date.asc(), RateHistory.created_at.asc())
        ).all()

    def list_rate_history_for_users(self, user_ids: Iterable[UUID]) -> list[RateHistory]:
        ids = list(user_ids)
        if not ids:
            return []
        return self.db.scalars(
            select(RateHistory)
            .where(RateHistory.user_id.in_(ids))
            .order_by(RateHistory.user_id.asc(), RateHistory.effective_date.asc(), RateHistory.created_at.asc())
        ).all()

    def add_rate_history(self, row: RateHistory) -> RateHistory:
        self.db.add(row)
        self.db.flush()
        return row

    # ---------- Time entries ----------
    def list_time_entries(
        self,
        project_id: UUID,
        from_date: date | None = None,
        to_date: date | None = None,
    ) -> list[TimeEntry]:
        """Entries of a project, optionally limited to ``[from_date, to_date)``."""

        query = select(TimeEntry).where(TimeEntry.project_id == project_id)
        if from_date is not None:
            query = query.where(TimeEntry.date >= from_date)
        if to_date is not None:
            query = query.where(TimeEntry.date < to_date)
        return self.db.scalars(query.order_by(TimeEntry.date.asc())).all()

    def list_time_entries_for_projects(
        self,
        project_ids: Iterable[UUID],
        from_date: date,
        to_date: date,
    ) -> list[TimeEntry]:
        ids = list(project_ids)
        if not ids:
            return []
        return self.db.scalars(
            select(TimeEntry)
            .where(
                TimeEntry.project_id.in_(ids),
                TimeEntry.date >= from_date,
                TimeEntry.date < to_date,
            )
            .order_by(TimeEntry.project_id.asc(), TimeEntry.date.asc())
        ).all()

    def list_project_ids_for_user(self, user_id: UUID) -> list[UUID]:
        return self.db.scalars(
            select(TimeEntry.project_id).where(TimeEntry.user_id == user_id).distinct()
        ).all()

    # ---------- Projects ----------
    def get_project(self, project_id: UUID) -> Project | None:
        return self.db.scalar(select(Project).where(Project.id == project_id))

    def get_project_for_update(self, project_id: UUID) -> Project | None:
        # FOR UPDATE is ignored by SQLite and honoured by PostgreSQL.
        return self.db.scalar(select(Project).where(Project.id == project_id).with_for_update())

    def list_projects(self, *, active_only: bool = False) -> list[Project]:
        query = select(Project).order_by(Project.name.asc())
        if active_only:
            query = query.where(Project.active.is_(True))
        return self.db.scalars(query).all()

    @staticmethod
    def get_budget(project: Project) -> Budget:
        return Budget.from_record(project)
