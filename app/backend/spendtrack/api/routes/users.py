"""User rate lookup and rate change endpoints."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from uuid import UUID

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from spendtrack.db.dependencies import get_db_session
from spendtrack.engine.numeric import money
from spendtrack.services.spending_service import SpendingService

router = APIRouter(tags=["users"])


class RateChangePayload(BaseModel):
    rate: Decimal = Field(ge=0)
    effective_date: date
    created_by: str | None = Field(default=None, min_length=1, max_length=255)


def _spending_service(db: Session) -> SpendingService:
    return SpendingService(db)


@router.get("/users/{user_id}/rate")
def get_user_rate(
    user_id: UUID,
    on: date | None = None,
    db: Session = Depends(get_db_session),
) -> dict[str, object]:
    service = _spending_service(db)
    on_date = on or date.today()
    rate = service.resolve_rate(user_id, on_date)
    return {"user_id": str(user_id), "on": on_date.isoformat(), "rate": str(money(rate))}


@router.get("/users/{user_id}/rate-history")
def get_user_rate_history(
    user_id: UUID,
    from_date: date | None = None,
    to_date: date | None = None,
    db: Session = Depends(get_db_session),
) -> dict[str, object]:
    service = _spending_service(db)
    if from_date is None and to_date is None:
        rows = service.list_rate_history(user_id)
        return {"items": [service.serialize_rate_history(row) for row in rows]}
    periods = service.rate_periods(user_id, from_date=from_date, to_date=to_date)
    return {
        "user_id": str(user_id),
        "from_date": from_date.isoformat() if from_date else None,
        "to_date": to_date.isoformat() if to_date else None,
        "periods": [service.serialize_rate_period(period) for period in periods],
    }


@router.post("/users/{user_id}/rates", status_code=status.HTTP_201_CREATED)
def post_user_rate(
    user_id: UUID,
    payload: RateChangePayload,
    db: Session = Depends(get_db_session),
) -> dict[str, object]:
    service = _spending_service(db)
    result = service.change_user_rate(
        user_id,
        new_rate=payload.rate,
        effective_date=payload.effective_date,
        created_by=payload.created_by.strip() if payload.created_by else None,
    )
    return {
        "entry": service.serialize_rate_history(result.entry),
        "current_rate_updated": result.current_rate_updated,
        "recalculated_project_ids": [str(project_id) for project_id in result.recalculated_project_ids],
    }
