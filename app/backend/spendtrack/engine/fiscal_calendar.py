"""Fiscal calendar: April-start fiscal year, calendar-month buckets."""

from __future__ import annotations

from datetime import date, datetime

from spendtrack.core.errors import InvalidDateError

FISCAL_YEAR_START_MONTH = 4
QUARTERS: tuple[int, ...] = (1, 2, 3, 4)

QUARTER_LABELS: dict[int, str] = {
    1: "Q1 (Apr-Jun)",
    2: "Q2 (Jul-Sep)",
    3: "Q3 (Oct-Dec)",
    4: "Q4 (Jan-Mar)",
}


def coerce_date(value: object) -> date:
    """Normalize a date-like value to a calendar day.

    Accepts ``date``, ``datetime`` (time of day is dropped) and ISO-8601
    strings. Anything else raises ``InvalidDateError``.
    """

    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        text = value.strip()
        if text:
            try:
                return date.fromisoformat(text)
            except ValueError:
                pass
            try:
                return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
            except ValueError:
                pass
    raise InvalidDateError(value)


def quarter_of(value: object) -> int:
    """Fiscal quarter 1-4. Apr-Jun is Q1; Jan-Mar is Q4 of the prior fiscal year."""

    month = coerce_date(value).month
    if 4 <= month <= 6:
        return 1
    if 7 <= month <= 9:
        return 2
    if 10 <= month <= 12:
        return 3
    return 4


def month_key_of(value: object) -> str:
    """Calendar (not fiscal-shifted) month key ``YYYY-MM``."""

    day = coerce_date(value)
    return f"{day.year:04d}-{day.month:02d}"


def fiscal_year_of(value: object) -> int:
    """Calendar year in which the containing fiscal year starts."""

    day = coerce_date(value)
    return day.year if day.month >= FISCAL_YEAR_START_MONTH else day.year - 1


def _validate_quarter(quarter: int) -> None:
    if quarter not in QUARTERS:
        raise ValueError(f"quarter must be one of 1-4, got {quarter!r}")


def quarter_bounds(fiscal_year: int, quarter: int) -> tuple[date, date]:
    """Half-open ``[start, end)`` range of a fiscal quarter."""

    _validate_quarter(quarter)
    start_month = FISCAL_YEAR_START_MONTH + (quarter - 1) * 3
    start_year = fiscal_year + (start_month - 1) // 12
    start_month = (start_month - 1) % 12 + 1
    end_month = start_month + 3
    end_year = start_year + (end_month - 1) // 12
    end_month = (end_month - 1) % 12 + 1
    return date(start_year, start_month, 1), date(end_year, end_month, 1)


def fiscal_year_bounds(fiscal_year: int) -> tuple[date, date]:
    """Half-open ``[start, end)`` range of a whole fiscal year."""

    return (
        date(fiscal_year, FISCAL_YEAR_START_MONTH, 1),
        date(fiscal_year + 1, FISCAL_YEAR_START_MONTH, 1),
    )


def fiscal_month_keys(fiscal_year: int) -> list[str]:
    """The twelve calendar month keys of a fiscal year, April first."""

    keys: list[str] = []
    for offset in range(12):
        month_index = FISCAL_YEAR_START_MONTH - 1 + offset
        keys.append(f"{fiscal_year + month_index // 12:04d}-{month_index % 12 + 1:02d}")
    return keys


def quarter_label(quarter: int) -> str:
    _validate_quarter(quarter)
    return QUARTER_LABELS[quarter]
