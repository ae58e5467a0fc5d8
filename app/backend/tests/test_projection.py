from __future__ import annotations

from datetime import date
from decimal import Decimal

from spendtrack.engine.numeric import money
from spendtrack.engine.projection import project_quarter_end

Q_START = date(2024, 4, 1)
Q_END = date(2024, 7, 1)


def test_before_quarter_start_projects_nothing() -> None:
    result = project_quarter_end(Decimal("0"), date(2024, 3, 15), Q_START, Q_END, Decimal("900"))

    assert result.is_valid
    assert result.projected_spend == 0
    assert result.on_track_spend == 0
    assert result.days_elapsed == 0
    assert result.variance == Decimal("-900")


def test_after_quarter_end_projection_equals_actual_spend() -> None:
    for as_of in (Q_END, date(2024, 8, 20)):
        result = project_quarter_end(Decimal("500"), as_of, Q_START, Q_END, Decimal("900"))

        assert result.projected_spend == Decimal("500")
        assert result.on_track_spend == Decimal("900")
        assert result.variance == Decimal("-400")


def test_mid_quarter_linear_burn_rate() -> None:
    # 45 of 91 days elapsed.
    result = project_quarter_end(Decimal("450"), date(2024, 5, 16), Q_START, Q_END, Decimal("900"))

    assert result.is_valid
    assert result.total_days == 91
    assert result.days_elapsed == 45
    assert result.projected_spend == Decimal("910")
    assert money(result.on_track_spend) == Decimal("445.05")
    assert result.variance == Decimal("10")


def test_accepts_string_inputs() -> None:
    result = project_quarter_end("450", "2024-05-16", "2024-04-01", "2024-07-01", "900")

    assert result.projected_spend == Decimal("910")


def test_reversed_quarter_is_invalid() -> None:
    result = project_quarter_end(Decimal("10"), date(2024, 5, 1), Q_END, Q_START, Decimal("900"))

    assert not result.is_valid
    assert result.reason == "Quarter start date must be before end date"
    assert result.projected_spend == 0


def test_validation_failures_are_reported_together() -> None:
    result = project_quarter_end("abc", None, Q_START, Q_END, float("nan"))

    assert not result.is_valid
    assert result.reason == "Invalid spent to date, Invalid as-of date, Invalid quarter budget"
