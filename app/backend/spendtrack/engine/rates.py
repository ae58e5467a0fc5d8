"""Effective-dated hourly rate resolution."""

from __future__ import annotations

from bisect import bisect_right
from collections.abc import Hashable, Iterable
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal

from spendtrack.core.errors import UserNotFoundError
from spendtrack.engine.fiscal_calendar import coerce_date
from spendtrack.engine.numeric import to_safe_decimal


@dataclass(frozen=True, slots=True)
class RateHistoryEntry:
    """A rate change taking effect at the start of ``effective_date``."""

    user_id: Hashable
    rate: Decimal
    effective_date: date
    created_by: str | None = None
    created_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class RatePeriod:
    """A rate valid over ``[start, end)``; ``end`` is None when open-ended."""

    rate: Decimal
    start: date
    end: date | None
    from_history: bool


@dataclass(slots=True)
class _UserRates:
    current_rate: Decimal
    dates: list[date] = field(default_factory=list)
    rates: list[Decimal] = field(default_factory=list)


def resolve_effective_rate(history: Iterable[object], current_rate: object, on: object) -> Decimal:
    """Rate in effect on ``on``: the latest history entry not after it, else ``current_rate``.

    ``history`` may be in any order and may hold ORM rows or ``RateHistoryEntry``
    values; only ``rate`` and ``effective_date`` are read. Among entries sharing
    an effective date the one iterated last wins, as in ``RateBook``.
    """

    target = coerce_date(on)
    best_date: date | None = None
    best_rate: Decimal | None = None
    for entry in history:
        effective = coerce_date(entry.effective_date)
        if effective <= target and (best_date is None or effective >= best_date):
            best_date = effective
            best_rate = to_safe_decimal(entry.rate)
    if best_rate is not None:
        return best_rate
    return to_safe_decimal(current_rate)


class RateBook:
    """In-memory rate lookup over a pre-fetched snapshot of users and history.

    Built once per report so many entries for the same user resolve without
    going back to the data store. Lookups bisect a per-user list sorted by
    effective date.
    """

    def __init__(self) -> None:
        self._users: dict[Hashable, _UserRates] = {}

    @classmethod
    def from_records(
        cls,
        users: Iterable[object],
        history: Iterable[object],
    ) -> RateBook:
        """Build from objects exposing ``id``/``current_rate`` and ``user_id``/``rate``/``effective_date``."""

        book = cls()
        for user in users:
            book.add_user(user.id, user.current_rate)
        for entry in history:
            book.add_history(entry.user_id, entry.rate, entry.effective_date)
        return book

    def add_user(self, user_id: Hashable, current_rate: object) -> None:
        existing = self._users.get(user_id)
        if existing is None:
            self._users[user_id] = _UserRates(current_rate=to_safe_decimal(current_rate))
        else:
            existing.current_rate = to_safe_decimal(current_rate)

    def add_history(self, user_id: Hashable, rate: object, effective_date: object) -> None:
        rates = self._users.get(user_id)
        if rates is None:
            raise UserNotFoundError(user_id)
        effective = coerce_date(effective_date)
        index = bisect_right(rates.dates, effective)
        rates.dates.insert(index, effective)
        rates.rates.insert(index, to_safe_decimal(rate))

    def has_user(self, user_id: Hashable) -> bool:
        return user_id in self._users

    def _user(self, user_id: Hashable) -> _UserRates:
        rates = self._users.get(user_id)
        if rates is None:
            raise UserNotFoundError(user_id)
        return rates

    def current_rate(self, user_id: Hashable) -> Decimal:
        return self._user(user_id).current_rate

    def effective_rate(self, user_id: Hashable, on: object) -> Decimal:
        rates = self._user(user_id)
        target = coerce_date(on)
        index = bisect_right(rates.dates, target)
        if index == 0:
            return rates.current_rate
        # Same-day entries: the one inserted last wins.
        return rates.rates[index - 1]

    def rate_changes(self, user_id: Hashable) -> list[tuple[date, Decimal]]:
        rates = self._user(user_id)
        return list(zip(rates.dates, rates.rates))

    def rate_periods(self, user_id: Hashable, start: object, end: object) -> list[RatePeriod]:
        """Rate validity periods overlapping ``[start, end]``, starts clipped to ``start``.

        Consistent with ``effective_rate``: days before the first history
        entry are covered by a leading period at the current rate.
        """

        rates = self._user(user_id)
        range_start = coerce_date(start)
        range_end = coerce_date(end)
        if range_end < range_start:
            return []

        periods: list[RatePeriod] = []
        if not rates.dates or range_start < rates.dates[0]:
            fallback_end = rates.dates[0] if rates.dates else None
            periods.append(
                RatePeriod(
                    rate=rates.current_rate,
                    start=range_start,
                    end=fallback_end,
                    from_history=False,
                )
            )

        for index, effective in enumerate(rates.dates):
            next_date = rates.dates[index + 1] if index + 1 < len(rates.dates) else None
            if next_date is not None and next_date <= range_start:
                continue
            if next_date is not None and next_date == effective:
                continue
            if effective > range_end:
                break
            periods.append(
                RatePeriod(
                    rate=rates.rates[index],
                    start=max(effective, range_start),
                    end=next_date,
                    from_history=True,
                )
            )

        return periods
