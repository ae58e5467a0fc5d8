"""Project report composed from aggregation, budget evaluation and projection."""

from __future__ import annotations

from collections.abc import Hashable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal

from spendtrack.engine.aggregation import AggregateResult, EntryRejection, SpendingBuckets, aggregate_spending
from spendtrack.engine.budget import Budget, ProjectBudgetEvaluation, evaluate_project_budget
from spendtrack.engine.fiscal_calendar import (
    QUARTERS,
    coerce_date,
    fiscal_month_keys,
    fiscal_year_of,
    quarter_bounds,
    quarter_of,
)
from spendtrack.engine.projection import ProjectionResult, project_quarter_end
from spendtrack.engine.rates import RateBook


@dataclass(slots=True)
class EmployeeSpendingRow:
    user_id: Hashable
    name: str
    email: str | None
    buckets: SpendingBuckets
    rate_changes: list[tuple[date, Decimal]] = field(default_factory=list)


@dataclass(slots=True)
class ProjectSpendingRow:
    project_id: Hashable
    name: str
    buckets: SpendingBuckets


@dataclass(slots=True)
class EmployeeProjectSpendingRow:
    user_id: Hashable
    project_id: Hashable
    buckets: SpendingBuckets


@dataclass(slots=True)
class ProjectReport:
    project_id: Hashable
    project_name: str
    fiscal_year: int
    as_of: date
    month_keys: list[str]
    employees: list[EmployeeSpendingRow]
    projects: list[ProjectSpendingRow]
    employee_projects: list[EmployeeProjectSpendingRow]
    totals: SpendingBuckets
    budget: Budget
    budget_evaluation: ProjectBudgetEvaluation
    current_quarter: int
    projection: ProjectionResult
    errors: list[EntryRejection]

    @property
    def is_valid(self) -> bool:
        return not self.errors

    @property
    def budget_warning(self) -> str | None:
        return self.budget_evaluation.allocation_warning


def _month_keys(fiscal_year: int, aggregate: AggregateResult) -> list[str]:
    keys = set(fiscal_month_keys(fiscal_year))
    keys.update(aggregate.totals.monthly.keys())
    return sorted(keys)


def _employee_rows(
    aggregate: AggregateResult,
    rate_book: RateBook,
    users: Mapping[Hashable, object],
) -> list[EmployeeSpendingRow]:
    rows: list[EmployeeSpendingRow] = []
    for user_id, buckets in aggregate.per_employee.items():
        user = users.get(user_id)
        name = getattr(user, "name", None) or getattr(user, "email", None) or str(user_id)
        rows.append(
            EmployeeSpendingRow(
                user_id=user_id,
                name=name,
                email=getattr(user, "email", None),
                buckets=buckets,
                rate_changes=rate_book.rate_changes(user_id),
            )
        )
    rows.sort(key=lambda row: (-row.buckets.hours, row.name, str(row.user_id)))
    return rows


def build_project_report(
    project: object,
    entries: Iterable[object],
    budget: Budget,
    as_of: object,
    *,
    rate_book: RateBook,
    users: Mapping[Hashable, object] | None = None,
    fiscal_year: int | None = None,
) -> ProjectReport:
    """Aggregate ``entries`` and evaluate them against ``budget`` as of a date.

    The report covers exactly the entries given; callers choose the window
    (normally one fiscal year). Rejected entries make the report invalid but
    the remaining numbers are still returned.
    """

    as_of_date = coerce_date(as_of)
    report_year = fiscal_year if fiscal_year is not None else fiscal_year_of(as_of_date)
    aggregate = aggregate_spending(entries, rate_book)
    totals = aggregate.totals

    evaluation = evaluate_project_budget(
        {quarter: totals.quarter(quarter).cost for quarter in QUARTERS},
        budget,
        total_spent=totals.cost,
    )

    current_quarter = quarter_of(as_of_date)
    start, end = quarter_bounds(report_year, current_quarter)
    projection = project_quarter_end(
        totals.quarter(current_quarter).cost,
        as_of_date,
        start,
        end,
        budget.quarter_budget(current_quarter),
    )

    project_id = getattr(project, "id", None)
    project_rows = [
        ProjectSpendingRow(
            project_id=row_project_id,
            name=getattr(project, "name", "") if row_project_id == project_id else str(row_project_id),
            buckets=buckets,
        )
        for row_project_id, buckets in aggregate.per_project.items()
    ]
    project_rows.sort(key=lambda row: (row.project_id != project_id, row.name))

    employee_rows = _employee_rows(aggregate, rate_book, users or {})
    employee_order = {row.user_id: index for index, row in enumerate(employee_rows)}
    project_order = {row.project_id: index for index, row in enumerate(project_rows)}
    pair_rows = [
        EmployeeProjectSpendingRow(user_id=user_id, project_id=row_project_id, buckets=buckets)
        for (user_id, row_project_id), buckets in aggregate.per_employee_project.items()
    ]
    pair_rows.sort(key=lambda row: (employee_order[row.user_id], project_order[row.project_id]))

    return ProjectReport(
        project_id=project_id,
        project_name=getattr(project, "name", ""),
        fiscal_year=report_year,
        as_of=as_of_date,
        month_keys=_month_keys(report_year, aggregate),
        employees=employee_rows,
        projects=project_rows,
        employee_projects=pair_rows,
        totals=totals,
        budget=budget,
        budget_evaluation=evaluation,
        current_quarter=current_quarter,
        projection=projection,
        errors=list(aggregate.errors),
    )
