"""Spending, rate and budget service layer."""

from __future__ import annotations

import logging
import threading
import weakref
from collections.abc import Iterable
from contextlib import ExitStack
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from uuid import UUID

from fastapi import HTTPException, status
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from spendtrack.core.config import get_settings
from spendtrack.core.errors import (
    InvalidDateError,
    InvalidRateError,
    LookupFailedError,
    ProjectNotFoundError,
    SpendTrackError,
    UserNotFoundError,
)
from spendtrack.engine.aggregation import EntryRejection, SpendingBuckets, aggregate_spending
from spendtrack.engine.budget import (
    Budget,
    BudgetAlert,
    BudgetStatus,
    budget_allocation_warning,
    collect_budget_alerts,
    evaluate_project_budget,
)
from spendtrack.engine.fiscal_calendar import (
    QUARTERS,
    coerce_date,
    fiscal_year_bounds,
    fiscal_year_of,
    quarter_label,
)
from spendtrack.engine.numeric import ZERO, is_finite_number, money, to_safe_decimal
from spendtrack.engine.projection import ProjectionResult
from spendtrack.engine.rates import RateBook, RatePeriod
from spendtrack.engine.report import ProjectReport, build_project_report
from spendtrack.models.entities import Project, RateHistory, TimeEntry, User
from spendtrack.repositories.spending_repository import SpendingRepository

logger = logging.getLogger(__name__)

SYSTEM_MIGRATION = "SYSTEM_MIGRATION"

# Serializes spent recalculation per project inside this process; the row
# lock taken by get_project_for_update covers other processes. Entries go
# away once no caller holds the lock.
_project_locks: weakref.WeakValueDictionary[UUID, threading.Lock] = weakref.WeakValueDictionary()
_project_locks_guard = threading.Lock()


def _project_lock(project_id: UUID) -> threading.Lock:
    with _project_locks_guard:
        lock = _project_locks.get(project_id)
        if lock is None:
            lock = threading.Lock()
            _project_locks[project_id] = lock
        return lock


def _http_error(exc: SpendTrackError) -> HTTPException:
    if isinstance(exc, LookupFailedError):
        status_code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, (InvalidDateError, InvalidRateError)):
        status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    else:
        status_code = status.HTTP_400_BAD_REQUEST
    return HTTPException(status_code=status_code, detail=exc.to_dict())


def _amount(value: Decimal) -> str:
    return str(money(value))


@dataclass(slots=True)
class RateChangeResult:
    entry: RateHistory
    current_rate_updated: bool
    recalculated_project_ids: list[UUID] = field(default_factory=list)


@dataclass(slots=True)
class BudgetUpdateResult:
    project: Project
    allocation_warning: str | None


class SpendingService:
    """Service computing historical-rate spending and budget status from stored data."""

    def __init__(self, db: Session) -> None:
        self.db = db
        self.repo = SpendingRepository(db)
        self.settings = get_settings()

    # ---------- Lookups ----------
    def _get_project(self, project_id: UUID) -> Project:
        project = self.repo.get_project(project_id)
        if project is None:
            raise _http_error(ProjectNotFoundError(project_id))
        return project

    def _get_user(self, user_id: UUID) -> User:
        user = self.repo.get_user(user_id)
        if user is None:
            raise _http_error(UserNotFoundError(user_id))
        return user

    def _rate_book_for_entries(self, entries: Iterable[TimeEntry]) -> tuple[RateBook, dict[UUID, User]]:
        user_ids = {entry.user_id for entry in entries if entry.user_id is not None}
        users = self.repo.list_users(user_ids)
        history = self.repo.list_rate_history_for_users([user.id for user in users])
        return RateBook.from_records(users, history), {user.id: user for user in users}

    # ---------- Serialization ----------
    @staticmethod
    def serialize_user(user: User) -> dict[str, object]:
        return {
            "id": str(user.id),
            "name": user.name,
            "email": user.email,
            "current_rate": _amount(user.current_rate),
            "active": user.active,
        }

    @staticmethod
    def serialize_rate_history(row: RateHistory) -> dict[str, object]:
        return {
            "id": str(row.id),
            "user_id": str(row.user_id),
            "rate": _amount(row.rate),
            "effective_date": row.effective_date.isoformat(),
            "created_by": row.created_by,
            "created_at": row.created_at.isoformat() if row.created_at else None,
        }

    @staticmethod
    def serialize_rate_period(period: RatePeriod) -> dict[str, object]:
        return {
            "rate": _amount(period.rate),
            "start": period.start.isoformat(),
            "end": period.end.isoformat() if period.end is not None else None,
            "from_history": period.from_history,
        }

    @staticmethod
    def serialize_budget(budget: Budget) -> dict[str, str]:
        return {
            "total_budget": _amount(budget.total_budget),
            "q1_budget": _amount(budget.q1_budget),
            "q2_budget": _amount(budget.q2_budget),
            "q3_budget": _amount(budget.q3_budget),
            "q4_budget": _amount(budget.q4_budget),
        }

    @staticmethod
    def serialize_status(budget_status: BudgetStatus) -> dict[str, object]:
        return {
            "spent": _amount(budget_status.spent),
            "budget": _amount(budget_status.budget),
            # JSON has no infinity: spend against a zero budget renders as null.
            "utilization": _amount(budget_status.utilization) if budget_status.utilization_is_finite else None,
            "tier": budget_status.tier.value,
            "label": budget_status.label,
            "remaining": _amount(budget_status.remaining),
            "overage": _amount(budget_status.overage),
        }

    @staticmethod
    def serialize_buckets(buckets: SpendingBuckets, month_keys: list[str]) -> dict[str, object]:
        return {
            "hours": _amount(buckets.hours),
            "cost": _amount(buckets.cost),
            "months": {
                key: {"hours": _amount(buckets.month(key).hours), "cost": _amount(buckets.month(key).cost)}
                for key in month_keys
            },
            "quarters": {
                f"q{quarter}": {
                    "hours": _amount(buckets.quarter(quarter).hours),
                    "cost": _amount(buckets.quarter(quarter).cost),
                }
                for quarter in QUARTERS
            },
        }

    @staticmethod
    def serialize_projection(projection: ProjectionResult) -> dict[str, object]:
        return {
            "is_valid": projection.is_valid,
            "reason": projection.reason,
            "projected_spend": _amount(projection.projected_spend),
            "on_track_spend": _amount(projection.on_track_spend),
            "variance": _amount(projection.variance),
            "days_elapsed": projection.days_elapsed,
            "total_days": projection.total_days,
            "progress_percent": _amount(projection.progress * Decimal("100")),
        }

    @staticmethod
    def serialize_rejection(rejection: EntryRejection) -> dict[str, object]:
        return {
            "entry_id": str(rejection.entry_id) if rejection.entry_id is not None else None,
            "code": rejection.code,
            "reason": rejection.reason,
        }

    @staticmethod
    def serialize_alert(alert: BudgetAlert) -> dict[str, object]:
        return {
            "project_id": str(alert.project_id),
            "project_name": alert.project_name,
            "quarter": f"q{alert.quarter}",
            "quarter_label": quarter_label(alert.quarter),
            "alert_type": alert.tier.value,
            "utilization": _amount(alert.utilization),
            "budget": _amount(alert.budget),
            "spent": _amount(alert.spent),
        }

    @classmethod
    def serialize_report(cls, report: ProjectReport) -> dict[str, object]:
        evaluation = report.budget_evaluation
        return {
            "project": {"id": str(report.project_id), "name": report.project_name},
            "fiscal_year": report.fiscal_year,
            "as_of": report.as_of.isoformat(),
            "is_valid": report.is_valid,
            "errors": [cls.serialize_rejection(item) for item in report.errors],
            "budget_warning": report.budget_warning,
            "month_keys": report.month_keys,
            "employees": [
                {
                    "user_id": str(row.user_id),
                    "name": row.name,
                    "email": row.email,
                    "rate_changes": [
                        {"effective_date": effective.isoformat(), "rate": _amount(rate)}
                        for effective, rate in row.rate_changes
                    ],
                    **cls.serialize_buckets(row.buckets, report.month_keys),
                }
                for row in report.employees
            ],
            "projects": [
                {
                    "project_id": str(row.project_id),
                    "name": row.name,
                    **cls.serialize_buckets(row.buckets, report.month_keys),
                }
                for row in report.projects
            ],
            "employee_projects": [
                {
                    "user_id": str(row.user_id),
                    "project_id": str(row.project_id),
                    **cls.serialize_buckets(row.buckets, report.month_keys),
                }
                for row in report.employee_projects
            ],
            "totals": cls.serialize_buckets(report.totals, report.month_keys),
            "budget": cls.serialize_budget(report.budget),
            "budget_status": {
                "quarters": {f"q{quarter}": cls.serialize_status(item) for quarter, item in evaluation.quarters.items()},
                "total": cls.serialize_status(evaluation.total),
                "over_budget_quarters": [f"q{quarter}" for quarter in evaluation.over_budget_quarters],
            },
            "current_quarter": {
                "quarter": f"q{report.current_quarter}",
                "label": quarter_label(report.current_quarter),
                "projection": cls.serialize_projection(report.projection),
            },
        }

    # ---------- Rates ----------
    def _rate_book_for_user(self, user: User) -> RateBook:
        return RateBook.from_records([user], self.repo.get_rate_history(user.id))

    def resolve_rate(self, user_id: UUID, on: object) -> Decimal:
        user = self._get_user(user_id)
        try:
            return self._rate_book_for_user(user).effective_rate(user.id, on)
        except SpendTrackError as exc:
            raise _http_error(exc) from exc

    def list_rate_history(self, user_id: UUID) -> list[RateHistory]:
        user = self._get_user(user_id)
        return self.repo.get_rate_history(user.id)

    def rate_periods(
        self,
        user_id: UUID,
        *,
        from_date: date | None = None,
        to_date: date | None = None,
    ) -> list[RatePeriod]:
        """Rate periods overlapping ``[from_date, to_date]``, including the one in force at ``from_date``.

        A missing ``from_date`` starts at the first recorded change; a missing
        ``to_date`` leaves the range open.
        """

        user = self._get_user(user_id)
        if from_date is not None and to_date is not None and to_date < from_date:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="to_date must be greater than or equal to from_date.",
            )
        book = self._rate_book_for_user(user)
        range_end = to_date or date.max
        if from_date is None:
            changes = book.rate_changes(user.id)
            from_date = min(changes[0][0], range_end) if changes else range_end
        return book.rate_periods(user.id, from_date, range_end)

    def change_user_rate(
        self,
        user_id: UUID,
        *,
        new_rate: object,
        effective_date: object,
        created_by: str | None = None,
        today: date | None = None,
    ) -> RateChangeResult:
        """Record a rate change and recompute spent for every project the user worked on.

        The current rate is only replaced when the change is already in effect;
        future-dated changes wait in the history until they apply.
        """

        try:
            if not is_finite_number(new_rate) or to_safe_decimal(new_rate) < ZERO:
                raise InvalidRateError(new_rate)
            effective = coerce_date(effective_date)
        except SpendTrackError as exc:
            raise _http_error(exc) from exc

        rate = money(new_rate)
        today = today or date.today()
        user = self._get_user(user_id)
        project_ids = sorted(self.repo.list_project_ids_for_user(user.id), key=str)

        with ExitStack() as stack:
            for project_id in project_ids:
                stack.enter_context(_project_lock(project_id))
            try:
                entry = self.repo.add_rate_history(
                    RateHistory(
                        user_id=user.id,
                        rate=rate,
                        effective_date=effective,
                        created_by=created_by,
                        created_at=datetime.now(timezone.utc),
                    )
                )
                current_rate_updated = effective <= today
                if current_rate_updated:
                    user.current_rate = rate
                    self.db.flush()

                for project_id in project_ids:
                    self._recalculate_locked(project_id, fiscal_year=fiscal_year_of(today))
                self.db.commit()
            except HTTPException:
                self.db.rollback()
                raise
            except IntegrityError as exc:
                self.db.rollback()
                raise HTTPException(
                    status_code=status.HTTP_409_CONFLICT,
                    detail="Rate change violated database constraints.",
                ) from exc

        logger.info(
            "Rate for user %s set to %s effective %s by %s; recalculated %d project(s)",
            user.id,
            rate,
            effective.isoformat(),
            created_by,
            len(project_ids),
        )
        self.db.refresh(entry)
        return RateChangeResult(
            entry=entry,
            current_rate_updated=current_rate_updated,
            recalculated_project_ids=project_ids,
        )

    def backfill_rate_history(self, *, created_by: str = SYSTEM_MIGRATION) -> int:
        """Give every user without history an initial entry at their current rate."""

        users = self.repo.list_users_without_rate_history()
        for user in users:
            self.repo.add_rate_history(
                RateHistory(
                    user_id=user.id,
                    rate=user.current_rate,
                    effective_date=user.created_at.date(),
                    created_by=created_by,
                    created_at=datetime.now(timezone.utc),
                )
            )
        self.db.commit()
        logger.info("Backfilled rate history for %d user(s)", len(users))
        return len(users)

    # ---------- Reports ----------
    def build_project_report(
        self,
        project_id: UUID,
        *,
        as_of: object,
        fiscal_year: int | None = None,
    ) -> ProjectReport:
        project = self._get_project(project_id)
        try:
            as_of_date = coerce_date(as_of)
            report_year = fiscal_year if fiscal_year is not None else fiscal_year_of(as_of_date)
            from_date, to_date = fiscal_year_bounds(report_year)
            entries = self.repo.list_time_entries(project.id, from_date, to_date)
            rate_book, users = self._rate_book_for_entries(entries)
            return build_project_report(
                project,
                entries,
                self.repo.get_budget(project),
                as_of_date,
                rate_book=rate_book,
                users=users,
                fiscal_year=report_year,
            )
        except SpendTrackError as exc:
            raise _http_error(exc) from exc

    def budget_summary(self, project_id: UUID, *, as_of: object) -> dict[str, object]:
        report = self.build_project_report(project_id, as_of=as_of)
        evaluation = report.budget_evaluation
        return {
            "project_id": str(report.project_id),
            "fiscal_year": report.fiscal_year,
            "as_of": report.as_of.isoformat(),
            "is_valid": report.is_valid,
            "budget": self.serialize_budget(report.budget),
            "quarters": {f"q{quarter}": self.serialize_status(item) for quarter, item in evaluation.quarters.items()},
            "total": self.serialize_status(evaluation.total),
            "allocation_warning": evaluation.allocation_warning,
            "projection": self.serialize_projection(report.projection),
        }

    def budget_alerts(self, *, as_of: object) -> list[BudgetAlert]:
        """Warning/critical/over-budget quarters across active projects for the fiscal year of ``as_of``."""

        try:
            from_date, to_date = fiscal_year_bounds(fiscal_year_of(as_of))
        except SpendTrackError as exc:
            raise _http_error(exc) from exc

        projects = self.repo.list_projects(active_only=True)
        entries = self.repo.list_time_entries_for_projects([project.id for project in projects], from_date, to_date)
        rate_book, _ = self._rate_book_for_entries(entries)
        aggregate = aggregate_spending(entries, rate_book)

        evaluations = []
        for project in projects:
            buckets = aggregate.per_project.get(project.id) or SpendingBuckets()
            evaluation = evaluate_project_budget(
                {quarter: buckets.quarter(quarter).cost for quarter in QUARTERS},
                self.repo.get_budget(project),
                total_spent=buckets.cost,
            )
            evaluations.append((project.id, project.name, evaluation))
        return collect_budget_alerts(evaluations, limit=self.settings.report_top_alerts)

    # ---------- Budgets and persisted spend ----------
    @staticmethod
    def _validate_non_negative_amount(value: Decimal, field_name: str) -> None:
        if not is_finite_number(value) or to_safe_decimal(value) < ZERO:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=f"{field_name} must be greater or equal zero.",
            )

    def update_project_budget(self, project_id: UUID, *, budget: Budget) -> BudgetUpdateResult:
        project = self._get_project(project_id)
        self._validate_non_negative_amount(budget.total_budget, "total_budget")
        for quarter in QUARTERS:
            self._validate_non_negative_amount(budget.quarter_budget(quarter), f"q{quarter}_budget")

        project.total_budget = money(budget.total_budget)
        for quarter in QUARTERS:
            setattr(project, f"q{quarter}_budget", money(budget.quarter_budget(quarter)))
        project.updated_at = datetime.now(timezone.utc)
        self.db.commit()
        self.db.refresh(project)

        warning = budget_allocation_warning(self.repo.get_budget(project))
        if warning is not None:
            logger.warning("Budget allocation mismatch on project %s: %s", project.id, warning)
        return BudgetUpdateResult(project=project, allocation_warning=warning)

    def _recalculate_locked(self, project_id: UUID, *, fiscal_year: int) -> Project:
        project = self.repo.get_project_for_update(project_id)
        if project is None:
            raise _http_error(ProjectNotFoundError(project_id))

        from_date, to_date = fiscal_year_bounds(fiscal_year)
        entries = self.repo.list_time_entries(project.id, from_date, to_date)
        rate_book, _ = self._rate_book_for_entries(entries)
        aggregate = aggregate_spending(entries, rate_book)
        for quarter in QUARTERS:
            setattr(project, f"q{quarter}_spent", money(aggregate.totals.quarter(quarter).cost))
        project.updated_at = datetime.now(timezone.utc)
        self.db.flush()

        logger.info(
            "Recalculated spent for project %s (FY%d): q1=%s q2=%s q3=%s q4=%s, %d rejected entries",
            project.id,
            fiscal_year,
            project.q1_spent,
            project.q2_spent,
            project.q3_spent,
            project.q4_spent,
            len(aggregate.errors),
        )
        return project

    def recalculate_project_spent(
        self,
        project_id: UUID,
        *,
        fiscal_year: int | None = None,
        today: date | None = None,
    ) -> Project:
        """Recompute and store q1..q4 spent at historical rates, one writer per project."""

        report_year = fiscal_year if fiscal_year is not None else fiscal_year_of(today or date.today())
        with _project_lock(project_id):
            try:
                project = self._recalculate_locked(project_id, fiscal_year=report_year)
                self.db.commit()
            except HTTPException:
                self.db.rollback()
                raise
        self.db.refresh(project)
        return project

    @classmethod
    def serialize_project_spend(cls, project: Project) -> dict[str, object]:
        return {
            "id": str(project.id),
            "name": project.name,
            "budget": cls.serialize_budget(Budget.from_record(project)),
            "spent": {f"q{quarter}": _amount(getattr(project, f"q{quarter}_spent")) for quarter in QUARTERS},
            "updated_at": project.updated_at.isoformat() if project.updated_at else None,
        }
