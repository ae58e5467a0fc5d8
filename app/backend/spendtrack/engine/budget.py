"""Budget utilization, status tiers and alerts."""

from __future__ import annotations

import enum
from collections.abc import Hashable, Iterable, Mapping
from dataclasses import dataclass
from decimal import Decimal

from spendtrack.engine.fiscal_calendar import QUARTERS
from spendtrack.engine.numeric import ZERO, money, to_safe_decimal

HUNDRED = Decimal("100")
WARNING_THRESHOLD = Decimal("75")
CRITICAL_THRESHOLD = Decimal("90")
OVER_BUDGET_THRESHOLD = HUNDRED
INFINITE = Decimal("Infinity")


class BudgetTier(str, enum.Enum):
    ON_TRACK = "on-track"
    WARNING = "warning"
    CRITICAL = "critical"
    OVER_BUDGET = "over-budget"


TIER_LABELS: dict[BudgetTier, str] = {
    BudgetTier.ON_TRACK: "On Track",
    BudgetTier.WARNING: "Warning",
    BudgetTier.CRITICAL: "Critical",
    BudgetTier.OVER_BUDGET: "Over Budget",
}

TIER_SEVERITY: dict[BudgetTier, int] = {
    BudgetTier.ON_TRACK: 0,
    BudgetTier.WARNING: 1,
    BudgetTier.CRITICAL: 2,
    BudgetTier.OVER_BUDGET: 3,
}


@dataclass(frozen=True, slots=True)
class Budget:
    total_budget: Decimal = ZERO
    q1_budget: Decimal = ZERO
    q2_budget: Decimal = ZERO
    q3_budget: Decimal = ZERO
    q4_budget: Decimal = ZERO

    @classmethod
    def from_record(cls, record: object) -> Budget:
        return cls(
            total_budget=to_safe_decimal(getattr(record, "total_budget", None)),
            q1_budget=to_safe_decimal(getattr(record, "q1_budget", None)),
            q2_budget=to_safe_decimal(getattr(record, "q2_budget", None)),
            q3_budget=to_safe_decimal(getattr(record, "q3_budget", None)),
            q4_budget=to_safe_decimal(getattr(record, "q4_budget", None)),
        )

    def quarter_budget(self, quarter: int) -> Decimal:
        if quarter not in QUARTERS:
            raise ValueError(f"quarter must be one of 1-4, got {quarter!r}")
        return getattr(self, f"q{quarter}_budget")

    @property
    def quarterly_sum(self) -> Decimal:
        return sum((self.quarter_budget(quarter) for quarter in QUARTERS), ZERO)


@dataclass(frozen=True, slots=True)
class BudgetStatus:
    spent: Decimal
    budget: Decimal
    utilization: Decimal
    tier: BudgetTier
    remaining: Decimal
    overage: Decimal

    @property
    def utilization_percent(self) -> float:
        return float(self.utilization)

    @property
    def utilization_is_finite(self) -> bool:
        return self.utilization.is_finite()

    @property
    def label(self) -> str:
        if not self.utilization_is_finite:
            return "No Budget Set"
        return TIER_LABELS[self.tier]


def budget_utilization(spent: object, budget: object) -> Decimal:
    """Spent as a percentage of budget; Infinity when there is spend but no budget."""

    spent_value = to_safe_decimal(spent)
    budget_value = to_safe_decimal(budget)
    if budget_value <= ZERO:
        return INFINITE if spent_value > ZERO else ZERO
    return spent_value / budget_value * HUNDRED


def tier_for(utilization: Decimal) -> BudgetTier:
    if utilization >= OVER_BUDGET_THRESHOLD:
        return BudgetTier.OVER_BUDGET
    if utilization >= CRITICAL_THRESHOLD:
        return BudgetTier.CRITICAL
    if utilization >= WARNING_THRESHOLD:
        return BudgetTier.WARNING
    return BudgetTier.ON_TRACK


def evaluate_budget(spent: object, budget: object) -> BudgetStatus:
    """Classify ``spent`` against ``budget``.

    A negative budget is treated as zero. Zero spend against a zero budget is
    on-track with 0% utilization; any spend against a zero budget is
    over-budget with infinite utilization.
    """

    spent_value = to_safe_decimal(spent)
    budget_value = max(to_safe_decimal(budget), ZERO)
    utilization = budget_utilization(spent_value, budget_value)
    return BudgetStatus(
        spent=spent_value,
        budget=budget_value,
        utilization=utilization,
        tier=tier_for(utilization),
        remaining=max(ZERO, budget_value - spent_value),
        overage=max(ZERO, spent_value - budget_value),
    )


def budget_allocation_warning(budget: Budget) -> str | None:
    """Soft warning when the quarterly budgets do not add up to the total."""

    quarterly_sum = budget.quarterly_sum
    if quarterly_sum == budget.total_budget:
        return None
    return (
        f"Quarterly budgets sum to {quarterly_sum:.2f} "
        f"but the total budget is {budget.total_budget:.2f}."
    )


@dataclass(frozen=True, slots=True)
class ProjectBudgetEvaluation:
    quarters: dict[int, BudgetStatus]
    total: BudgetStatus
    allocation_warning: str | None

    @property
    def over_budget_quarters(self) -> list[int]:
        return [quarter for quarter, status in self.quarters.items() if status.tier is BudgetTier.OVER_BUDGET]

    @property
    def is_over_budget(self) -> bool:
        return bool(self.over_budget_quarters) or self.total.tier is BudgetTier.OVER_BUDGET


def evaluate_project_budget(
    spent_by_quarter: Mapping[int, object],
    budget: Budget,
    *,
    total_spent: object | None = None,
) -> ProjectBudgetEvaluation:
    """Evaluate each quarter and the total; total spend defaults to the quarter sum."""

    quarter_spent = {quarter: to_safe_decimal(spent_by_quarter.get(quarter)) for quarter in QUARTERS}
    if total_spent is None:
        total_value = sum(quarter_spent.values(), ZERO)
    else:
        total_value = to_safe_decimal(total_spent)
    return ProjectBudgetEvaluation(
        quarters={
            quarter: evaluate_budget(quarter_spent[quarter], budget.quarter_budget(quarter))
            for quarter in QUARTERS
        },
        total=evaluate_budget(total_value, budget.total_budget),
        allocation_warning=budget_allocation_warning(budget),
    )


@dataclass(frozen=True, slots=True)
class BudgetAlert:
    project_id: Hashable
    project_name: str
    quarter: int
    tier: BudgetTier
    utilization: Decimal
    budget: Decimal
    spent: Decimal


def collect_budget_alerts(
    evaluations: Iterable[tuple[Hashable, str, ProjectBudgetEvaluation]],
    *,
    limit: int | None = None,
) -> list[BudgetAlert]:
    """Quarters needing attention, most severe first. Quarters without a budget are skipped."""

    alerts: list[BudgetAlert] = []
    for project_id, project_name, evaluation in evaluations:
        for quarter, status in evaluation.quarters.items():
            if status.budget <= ZERO or status.tier is BudgetTier.ON_TRACK:
                continue
            alerts.append(
                BudgetAlert(
                    project_id=project_id,
                    project_name=project_name,
                    quarter=quarter,
                    tier=status.tier,
                    utilization=money(status.utilization),
                    budget=status.budget,
                    spent=status.spent,
                )
            )

    alerts.sort(key=lambda alert: (TIER_SEVERITY[alert.tier], alert.utilization), reverse=True)
    if limit is not None:
        return alerts[:limit]
    return alerts
