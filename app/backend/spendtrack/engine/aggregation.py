"""Cost aggregation of time entries into employee/project/month/quarter buckets."""

from __future__ import annotations

import logging
from collections.abc import Hashable, Iterable
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal

from spendtrack.core.errors import InvalidDateError, UserNotFoundError
from spendtrack.engine.fiscal_calendar import QUARTERS, coerce_date, month_key_of, quarter_of
from spendtrack.engine.numeric import ZERO, to_safe_decimal
from spendtrack.engine.rates import RateBook

logger = logging.getLogger(__name__)

# Rejection codes recorded on AggregateResult.errors.
MISSING_USER = "MISSING_USER"
INVALID_DATE = "INVALID_DATE"
NON_POSITIVE_HOURS = "NON_POSITIVE_HOURS"
USER_NOT_FOUND = "USER_NOT_FOUND"
NEGATIVE_RATE = "NEGATIVE_RATE"


@dataclass(slots=True)
class TimeEntryInput:
    """Plain time entry; ORM rows with the same attributes work as well."""

    id: Hashable
    user_id: Hashable | None
    project_id: Hashable
    date: date | str | None
    hours: Decimal | float | str | None


@dataclass(slots=True)
class Bucket:
    hours: Decimal = ZERO
    cost: Decimal = ZERO

    def add(self, hours: Decimal, cost: Decimal) -> None:
        self.hours += hours
        self.cost += cost


@dataclass(slots=True)
class SpendingBuckets:
    """Hours and cost split by calendar month key and by fiscal quarter."""

    total: Bucket = field(default_factory=Bucket)
    monthly: dict[str, Bucket] = field(default_factory=dict)
    quarterly: dict[int, Bucket] = field(default_factory=lambda: {quarter: Bucket() for quarter in QUARTERS})

    @property
    def hours(self) -> Decimal:
        return self.total.hours

    @property
    def cost(self) -> Decimal:
        return self.total.cost

    def record(self, *, month_key: str, quarter: int, hours: Decimal, cost: Decimal) -> None:
        self.total.add(hours, cost)
        self.monthly.setdefault(month_key, Bucket()).add(hours, cost)
        self.quarterly[quarter].add(hours, cost)

    def merge(self, other: SpendingBuckets) -> None:
        self.total.add(other.total.hours, other.total.cost)
        for month_key, bucket in other.monthly.items():
            self.monthly.setdefault(month_key, Bucket()).add(bucket.hours, bucket.cost)
        for quarter, bucket in other.quarterly.items():
            self.quarterly[quarter].add(bucket.hours, bucket.cost)

    def month(self, month_key: str) -> Bucket:
        return self.monthly.get(month_key) or Bucket()

    def quarter(self, quarter: int) -> Bucket:
        return self.quarterly[quarter]


@dataclass(frozen=True, slots=True)
class EntryRejection:
    entry_id: Hashable | None
    code: str
    reason: str


@dataclass(frozen=True, slots=True)
class PricedEntry:
    entry_id: Hashable | None
    user_id: Hashable
    project_id: Hashable
    date: date
    hours: Decimal
    rate: Decimal
    cost: Decimal
    quarter: int
    month_key: str


@dataclass(slots=True)
class AggregateResult:
    per_employee: dict[Hashable, SpendingBuckets] = field(default_factory=dict)
    per_project: dict[Hashable, SpendingBuckets] = field(default_factory=dict)
    per_employee_project: dict[tuple[Hashable, Hashable], SpendingBuckets] = field(default_factory=dict)
    totals: SpendingBuckets = field(default_factory=SpendingBuckets)
    errors: list[EntryRejection] = field(default_factory=list)
    accepted_count: int = 0

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def add(self, priced: PricedEntry) -> None:
        targets = (
            self.per_employee.setdefault(priced.user_id, SpendingBuckets()),
            self.per_project.setdefault(priced.project_id, SpendingBuckets()),
            self.per_employee_project.setdefault((priced.user_id, priced.project_id), SpendingBuckets()),
            self.totals,
        )
        for buckets in targets:
            buckets.record(
                month_key=priced.month_key,
                quarter=priced.quarter,
                hours=priced.hours,
                cost=priced.cost,
            )
        self.accepted_count += 1

    def merge(self, other: AggregateResult) -> AggregateResult:
        """Fold ``other`` into a new result; neither operand is modified."""

        merged = AggregateResult()
        for source in (self, other):
            for user_id, buckets in source.per_employee.items():
                merged.per_employee.setdefault(user_id, SpendingBuckets()).merge(buckets)
            for project_id, buckets in source.per_project.items():
                merged.per_project.setdefault(project_id, SpendingBuckets()).merge(buckets)
            for key, buckets in source.per_employee_project.items():
                merged.per_employee_project.setdefault(key, SpendingBuckets()).merge(buckets)
            merged.totals.merge(source.totals)
            merged.errors.extend(source.errors)
            merged.accepted_count += source.accepted_count
        return merged


def price_entry(entry: object, rate_book: RateBook) -> PricedEntry | EntryRejection:
    """Validate one entry and compute its cost at the rate effective on its date."""

    entry_id = getattr(entry, "id", None)
    user_id = getattr(entry, "user_id", None)
    if user_id is None:
        return EntryRejection(entry_id, MISSING_USER, "Time entry has no user.")

    try:
        entry_date = coerce_date(getattr(entry, "date", None))
    except InvalidDateError as exc:
        return EntryRejection(entry_id, INVALID_DATE, exc.message)

    hours = to_safe_decimal(getattr(entry, "hours", None))
    if hours <= ZERO:
        return EntryRejection(entry_id, NON_POSITIVE_HOURS, f"Hours must be positive, got {hours}.")

    try:
        rate = rate_book.effective_rate(user_id, entry_date)
    except UserNotFoundError as exc:
        return EntryRejection(entry_id, USER_NOT_FOUND, exc.message)
    if rate < ZERO:
        return EntryRejection(entry_id, NEGATIVE_RATE, f"Resolved rate {rate} is negative.")

    return PricedEntry(
        entry_id=entry_id,
        user_id=user_id,
        project_id=getattr(entry, "project_id", None),
        date=entry_date,
        hours=hours,
        rate=rate,
        cost=hours * rate,
        quarter=quarter_of(entry_date),
        month_key=month_key_of(entry_date),
    )


def aggregate_spending(entries: Iterable[object], rate_book: RateBook) -> AggregateResult:
    """Aggregate hours and cost for every valid entry.

    Invalid entries are recorded on ``errors`` and skipped; the rest of the
    run continues. The result does not depend on entry order.
    """

    result = AggregateResult()
    for entry in entries:
        priced = price_entry(entry, rate_book)
        if isinstance(priced, EntryRejection):
            logger.warning("Rejected time entry %s: %s (%s)", priced.entry_id, priced.reason, priced.code)
            result.errors.append(priced)
            continue
        result.add(priced)

    logger.debug(
        "Aggregated %d time entries (%d rejected)",
        result.accepted_count,
        len(result.errors),
    )
    return result


def merge_aggregates(results: Iterable[AggregateResult]) -> AggregateResult:
    """Combine independently aggregated partitions into one result."""

    merged = AggregateResult()
    for result in results:
        merged = merged.merge(result)
    return merged
