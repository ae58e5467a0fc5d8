"""Linear burn-rate projection of quarter-end spend."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from spendtrack.core.errors import InvalidDateError
from spendtrack.engine.fiscal_calendar import coerce_date
from spendtrack.engine.numeric import ZERO, is_finite_number, to_safe_decimal

ONE = Decimal("1")


@dataclass(frozen=True, slots=True)
class ProjectionResult:
    projected_spend: Decimal
    on_track_spend: Decimal
    variance: Decimal
    is_valid: bool
    reason: str | None = None
    days_elapsed: int = 0
    total_days: int = 0
    progress: Decimal = ZERO


def _invalid(reason: str) -> ProjectionResult:
    return ProjectionResult(
        projected_spend=ZERO,
        on_track_spend=ZERO,
        variance=ZERO,
        is_valid=False,
        reason=reason,
    )


def _date_or_none(value: object) -> date | None:
    try:
        return coerce_date(value)
    except InvalidDateError:
        return None


def project_quarter_end(
    spent_to_date: object,
    as_of: object,
    quarter_start: object,
    quarter_end: object,
    quarter_budget: object,
) -> ProjectionResult:
    """Project quarter-end spend from the burn rate observed so far.

    ``quarter_end`` is exclusive: an ``as_of`` on or after it means the
    quarter has fully elapsed and the projection equals the actual spend.
    Bad input yields ``is_valid=False`` with a reason instead of raising.
    """

    errors: list[str] = []
    if not is_finite_number(spent_to_date):
        errors.append("Invalid spent to date")
    as_of_date = _date_or_none(as_of)
    if as_of_date is None:
        errors.append("Invalid as-of date")
    if not is_finite_number(quarter_budget):
        errors.append("Invalid quarter budget")
    start = _date_or_none(quarter_start)
    if start is None:
        errors.append("Invalid quarter start date")
    end = _date_or_none(quarter_end)
    if end is None:
        errors.append("Invalid quarter end date")
    if errors:
        return _invalid(", ".join(errors))
    if start >= end:
        return _invalid("Quarter start date must be before end date")

    spent = to_safe_decimal(spent_to_date)
    budget = to_safe_decimal(quarter_budget)
    total_days = (end - start).days
    days_elapsed = max(0, (as_of_date - start).days)
    progress = min(max(Decimal(days_elapsed) / Decimal(total_days), ZERO), ONE)

    if days_elapsed <= 0:
        projected = ZERO
    elif progress >= ONE:
        projected = spent
    else:
        projected = spent / Decimal(days_elapsed) * Decimal(total_days)

    on_track = budget * progress
    return ProjectionResult(
        projected_spend=max(ZERO, projected),
        on_track_spend=max(ZERO, on_track),
        variance=projected - budget,
        is_valid=True,
        days_elapsed=days_elapsed,
        total_days=total_days,
        progress=progress,
    )
