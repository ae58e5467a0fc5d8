"""Budget alert listing across active projects."""

from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from spendtrack.db.dependencies import get_db_session
from spendtrack.services.spending_service import SpendingService

router = APIRouter(tags=["alerts"])


@router.get("/alerts")
def get_budget_alerts(
    as_of: date | None = None,
    db: Session = Depends(get_db_session),
) -> dict[str, object]:
    service = SpendingService(db)
    on_date = as_of or date.today()
    alerts = service.budget_alerts(as_of=on_date)
    return {"as_of": on_date.isoformat(), "items": [service.serialize_alert(alert) for alert in alerts]}
