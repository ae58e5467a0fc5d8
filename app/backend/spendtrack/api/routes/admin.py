"""Administrative maintenance endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from spendtrack.db.dependencies import get_db_session
from spendtrack.services.spending_service import SpendingService

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/rate-history/backfill")
def post_rate_history_backfill(db: Session = Depends(get_db_session)) -> dict[str, int]:
    created = SpendingService(db).backfill_rate_history()
    return {"created": created}
