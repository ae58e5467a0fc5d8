from __future__ import annotations

import gc
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient
from sqlalchemy import select
from sqlalchemy.orm import Session

from conftest import add_entry, add_rate, create_project, create_user
from spendtrack.models.entities import RateHistory
from spendtrack.services.spending_service import SYSTEM_MIGRATION, SpendingService, _project_lock, _project_locks


def _seed_scenario(db: Session) -> tuple[str, str]:
    user = create_user(db, name="Ada Lovelace", email="ada@example.test", current_rate="30")
    add_rate(db, user, rate="20", effective_date=date(2024, 1, 1))
    add_rate(db, user, rate="25", effective_date=date(2024, 6, 1))
    project = create_project(
        db,
        name="Apollo",
        total_budget="250",
        q1_budget="150",
        q2_budget="90",
    )
    add_entry(db, user, project, day=date(2024, 4, 15), hours="5")
    add_entry(db, user, project, day=date(2024, 7, 1), hours="4")
    # Previous fiscal year, outside a FY2024 report.
    add_entry(db, user, project, day=date(2024, 3, 15), hours="3")
    return str(project.id), str(user.id)


def test_project_report_uses_historical_rates(client: TestClient, db_session: Session) -> None:
    project_id, user_id = _seed_scenario(db_session)

    response = client.get(f"/api/v1/projects/{project_id}/report", params={"as_of": "2024-07-15"})

    assert response.status_code == 200
    payload = response.json()
    assert payload["project"] == {"id": project_id, "name": "Apollo"}
    assert payload["fiscal_year"] == 2024
    assert payload["is_valid"] is True
    assert payload["errors"] == []
    assert payload["totals"]["cost"] == "200.00"
    assert payload["totals"]["hours"] == "9.00"
    assert payload["totals"]["months"]["2024-04"] == {"hours": "5.00", "cost": "100.00"}
    assert payload["totals"]["quarters"]["q2"] == {"hours": "4.00", "cost": "100.00"}

    quarters = payload["budget_status"]["quarters"]
    assert quarters["q1"]["tier"] == "on-track"
    assert quarters["q1"]["utilization"] == "66.67"
    assert quarters["q2"]["tier"] == "over-budget"
    assert quarters["q2"]["utilization"] == "111.11"
    assert quarters["q2"]["overage"] == "10.00"
    assert payload["budget_status"]["over_budget_quarters"] == ["q2"]
    assert payload["budget_warning"] == "Quarterly budgets sum to 240.00 but the total budget is 250.00."

    [employee] = payload["employees"]
    assert employee["user_id"] == user_id
    assert employee["rate_changes"] == [
        {"effective_date": "2024-01-01", "rate": "20.00"},
        {"effective_date": "2024-06-01", "rate": "25.00"},
    ]
    [pair] = payload["employee_projects"]
    assert (pair["user_id"], pair["project_id"]) == (user_id, project_id)
    assert pair["cost"] == "200.00"
    assert pair["quarters"]["q1"] == {"hours": "5.00", "cost": "100.00"}
    assert payload["current_quarter"]["quarter"] == "q2"
    assert payload["current_quarter"]["label"] == "Q2 (Jul-Sep)"
    assert payload["current_quarter"]["projection"]["is_valid"] is True


def test_previous_fiscal_year_report(client: TestClient, db_session: Session) -> None:
    project_id, _ = _seed_scenario(db_session)

    response = client.get(
        f"/api/v1/projects/{project_id}/report",
        params={"as_of": "2024-07-15", "fiscal_year": 2023},
    )

    assert response.status_code == 200
    payload = response.json()
    assert payload["totals"]["cost"] == "60.00"
    assert payload["totals"]["quarters"]["q4"]["cost"] == "60.00"


def test_zero_budget_utilization_renders_as_null(client: TestClient, db_session: Session) -> None:
    user = create_user(db_session, name="Bob", email="bob@example.test", current_rate="10")
    project = create_project(db_session, name="Unbudgeted")
    add_entry(db_session, user, project, day=date(2024, 5, 2), hours="2")

    response = client.get(f"/api/v1/projects/{project.id}/budget-status", params={"as_of": "2024-05-10"})

    assert response.status_code == 200
    q1 = response.json()["quarters"]["q1"]
    assert q1["utilization"] is None
    assert q1["tier"] == "over-budget"
    assert q1["label"] == "No Budget Set"
    assert q1["overage"] == "20.00"


def test_unknown_project_returns_404(client: TestClient) -> None:
    response = client.get(f"/api/v1/projects/{uuid.uuid4()}/report", params={"as_of": "2024-07-15"})

    assert response.status_code == 404
    assert response.json()["detail"]["code"] == "PROJECT_NOT_FOUND"


def test_invalid_as_of_is_rejected(client: TestClient, db_session: Session) -> None:
    project_id, _ = _seed_scenario(db_session)

    response = client.get(f"/api/v1/projects/{project_id}/report", params={"as_of": "15/07/2024"})

    assert response.status_code == 422


def test_user_rate_lookup(client: TestClient, db_session: Session) -> None:
    _, user_id = _seed_scenario(db_session)

    before = client.get(f"/api/v1/users/{user_id}/rate", params={"on": "2023-12-31"})
    during = client.get(f"/api/v1/users/{user_id}/rate", params={"on": "2024-05-31"})
    after = client.get(f"/api/v1/users/{user_id}/rate", params={"on": "2024-06-01"})

    assert before.json()["rate"] == "30.00"
    assert during.json()["rate"] == "20.00"
    assert after.json()["rate"] == "25.00"

    missing = client.get(f"/api/v1/users/{uuid.uuid4()}/rate", params={"on": "2024-06-01"})
    assert missing.status_code == 404
    assert missing.json()["detail"]["code"] == "USER_NOT_FOUND"


def test_rate_history_listing_and_period_filter(client: TestClient, db_session: Session) -> None:
    _, user_id = _seed_scenario(db_session)

    full = client.get(f"/api/v1/users/{user_id}/rate-history")
    assert [item["rate"] for item in full.json()["items"]] == ["20.00", "25.00"]

    period = client.get(
        f"/api/v1/users/{user_id}/rate-history",
        params={"from_date": "2024-03-01", "to_date": "2024-12-31"},
    )
    assert period.status_code == 200
    assert period.json()["periods"] == [
        {"rate": "20.00", "start": "2024-03-01", "end": "2024-06-01", "from_history": True},
        {"rate": "25.00", "start": "2024-06-01", "end": None, "from_history": True},
    ]

    before_history = client.get(
        f"/api/v1/users/{user_id}/rate-history",
        params={"from_date": "2023-12-01", "to_date": "2024-02-01"},
    )
    assert before_history.json()["periods"] == [
        {"rate": "30.00", "start": "2023-12-01", "end": "2024-01-01", "from_history": False},
        {"rate": "20.00", "start": "2024-01-01", "end": "2024-06-01", "from_history": True},
    ]

    reversed_range = client.get(
        f"/api/v1/users/{user_id}/rate-history",
        params={"from_date": "2024-12-31", "to_date": "2024-01-01"},
    )
    assert reversed_range.status_code == 422


def test_change_user_rate_updates_current_rate_and_recalculates(db_session: Session) -> None:
    user = create_user(db_session, name="Ada", email="ada@example.test", current_rate="20")
    add_rate(db_session, user, rate="20", effective_date=date(2024, 1, 1))
    project = create_project(db_session, name="Apollo", q2_budget="500")
    add_entry(db_session, user, project, day=date(2024, 6, 20), hours="2")
    add_entry(db_session, user, project, day=date(2024, 7, 10), hours="4")

    result = SpendingService(db_session).change_user_rate(
        user.id,
        new_rate=Decimal("25"),
        effective_date=date(2024, 7, 1),
        created_by="finance@example.test",
        today=date(2024, 8, 1),
    )

    assert result.current_rate_updated is True
    assert result.recalculated_project_ids == [project.id]
    assert result.entry.created_by == "finance@example.test"
    db_session.refresh(user)
    db_session.refresh(project)
    assert user.current_rate == Decimal("25.00")
    assert project.q1_spent == Decimal("40.00")
    assert project.q2_spent == Decimal("100.00")


def test_future_rate_change_keeps_current_rate(client: TestClient, db_session: Session) -> None:
    project_id, user_id = _seed_scenario(db_session)

    response = client.post(
        f"/api/v1/users/{user_id}/rates",
        json={"rate": "45", "effective_date": "2999-01-01", "created_by": "finance"},
    )

    assert response.status_code == 201
    payload = response.json()
    assert payload["current_rate_updated"] is False
    assert payload["entry"]["rate"] == "45.00"
    assert payload["recalculated_project_ids"] == [project_id]

    current = client.get(f"/api/v1/users/{user_id}/rate", params={"on": "2998-12-31"})
    assert current.json()["rate"] == "25.00"


def test_negative_rate_is_rejected(client: TestClient, db_session: Session) -> None:
    _, user_id = _seed_scenario(db_session)

    response = client.post(
        f"/api/v1/users/{user_id}/rates",
        json={"rate": "-1", "effective_date": "2024-01-01"},
    )
    assert response.status_code == 422

    with pytest.raises(HTTPException) as exc_info:
        SpendingService(db_session).change_user_rate(
            uuid.UUID(user_id),
            new_rate="-1",
            effective_date=date(2024, 1, 1),
        )
    assert exc_info.value.status_code == 422
    assert exc_info.value.detail["code"] == "INVALID_RATE"


def test_update_budget_returns_allocation_warning(client: TestClient, db_session: Session) -> None:
    project = create_project(db_session, name="Apollo")

    response = client.put(
        f"/api/v1/projects/{project.id}/budget",
        json={"total_budget": "1000", "q1_budget": "250", "q2_budget": "250", "q3_budget": "250"},
    )

    assert response.status_code == 200
    payload = response.json()
    assert payload["warning"] == "Quarterly budgets sum to 750.00 but the total budget is 1000.00."
    assert payload["project"]["budget"]["q3_budget"] == "250.00"
    assert payload["project"]["budget"]["q4_budget"] == "0.00"

    balanced = client.put(
        f"/api/v1/projects/{project.id}/budget",
        json={"total_budget": "1000", "q1_budget": "250", "q2_budget": "250", "q3_budget": "250", "q4_budget": "250"},
    )
    assert balanced.json()["warning"] is None

    negative = client.put(f"/api/v1/projects/{project.id}/budget", json={"total_budget": "-5"})
    assert negative.status_code == 422


def test_recalculate_persists_quarter_spent(client: TestClient, db_session: Session) -> None:
    project_id, _ = _seed_scenario(db_session)

    response = client.post(f"/api/v1/projects/{project_id}/recalculate", params={"fiscal_year": 2024})

    assert response.status_code == 200
    assert response.json()["spent"] == {"q1": "100.00", "q2": "100.00", "q3": "0.00", "q4": "0.00"}

    missing = client.post(f"/api/v1/projects/{uuid.uuid4()}/recalculate", params={"fiscal_year": 2024})
    assert missing.status_code == 404


def test_project_lock_is_shared_per_project() -> None:
    project_id = uuid.uuid4()
    lock = _project_lock(project_id)

    assert _project_lock(project_id) is lock
    assert _project_lock(uuid.uuid4()) is not lock


def test_project_lock_is_dropped_once_unused() -> None:
    project_id = uuid.uuid4()
    with _project_lock(project_id):
        assert project_id in _project_locks

    gc.collect()
    assert project_id not in _project_locks


def test_backfill_creates_history_only_for_users_without_any(client: TestClient, db_session: Session) -> None:
    with_history = create_user(db_session, name="Ada", email="ada@example.test", current_rate="30")
    add_rate(db_session, with_history, rate="20", effective_date=date(2024, 1, 1))
    without_history = create_user(
        db_session,
        name="Bob",
        email="bob@example.test",
        current_rate="55",
        created_at=datetime(2022, 9, 14, 8, 30),
    )

    response = client.post("/api/v1/admin/rate-history/backfill")

    assert response.status_code == 200
    assert response.json() == {"created": 1}
    [entry] = db_session.scalars(select(RateHistory).where(RateHistory.user_id == without_history.id)).all()
    assert entry.rate == Decimal("55.00")
    assert entry.effective_date == date(2022, 9, 14)
    assert entry.created_by == SYSTEM_MIGRATION

    assert client.post("/api/v1/admin/rate-history/backfill").json() == {"created": 0}


def test_alerts_list_live_budget_pressure(client: TestClient, db_session: Session) -> None:
    user = create_user(db_session, name="Ada", email="ada@example.test", current_rate="10")
    over = create_project(db_session, name="Over", q2_budget="90")
    warn = create_project(db_session, name="Warn", q1_budget="120", q2_budget="500", q3_budget="500", q4_budget="500")
    unbudgeted = create_project(db_session, name="Unbudgeted")
    inactive = create_project(db_session, name="Inactive", q1_budget="1", active=False)
    add_entry(db_session, user, over, day=date(2024, 7, 3), hours="10")
    add_entry(db_session, user, warn, day=date(2024, 5, 3), hours="10")
    add_entry(db_session, user, unbudgeted, day=date(2024, 5, 3), hours="10")
    add_entry(db_session, user, inactive, day=date(2024, 5, 3), hours="10")

    response = client.get("/api/v1/alerts", params={"as_of": "2024-07-15"})

    assert response.status_code == 200
    items = response.json()["items"]
    assert [(item["project_name"], item["quarter"], item["alert_type"]) for item in items] == [
        ("Over", "q2", "over-budget"),
        ("Warn", "q1", "warning"),
    ]
    assert items[0]["utilization"] == "111.11"
    assert items[1]["utilization"] == "83.33"
    assert items[1]["quarter_label"] == "Q1 (Apr-Jun)"


def test_same_day_rate_changes_price_and_report_alike(client: TestClient, db_session: Session) -> None:
    user = create_user(db_session, name="Ada", email="ada@example.test", current_rate="30")
    add_rate(
        db_session,
        user,
        rate="20",
        effective_date=date(2024, 5, 1),
        created_at=datetime(2024, 4, 1, 10, 0, tzinfo=timezone.utc),
    )
    add_rate(
        db_session,
        user,
        rate="40",
        effective_date=date(2024, 5, 1),
        created_at=datetime(2024, 4, 2, 10, 0, tzinfo=timezone.utc),
    )
    project = create_project(db_session, name="Apollo")
    add_entry(db_session, user, project, day=date(2024, 5, 10), hours="1")

    rate = client.get(f"/api/v1/users/{user.id}/rate", params={"on": "2024-05-10"})
    report = client.get(f"/api/v1/projects/{project.id}/report", params={"as_of": "2024-05-15"})

    assert rate.json()["rate"] == "40.00"
    assert report.json()["totals"]["cost"] == "40.00"


def test_writes_stamp_timestamps(db_session: Session) -> None:
    user = create_user(db_session, name="Ada", email="ada@example.test", current_rate="20")
    project = create_project(db_session, name="Apollo")
    entry = add_entry(db_session, user, project, day=date(2024, 5, 2), hours="1")
    before = project.updated_at

    result = SpendingService(db_session).change_user_rate(
        user.id,
        new_rate="22",
        effective_date=date(2024, 5, 1),
        today=date(2024, 5, 3),
    )

    db_session.refresh(project)
    assert entry.created_at is not None
    assert result.entry.created_at is not None
    assert project.updated_at > before
    assert project.q1_spent == Decimal("22.00")
