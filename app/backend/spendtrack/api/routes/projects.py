"""Project spending report, budget and recalculation endpoints."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from spendtrack.db.dependencies import get_db_session
from spendtrack.engine.budget import Budget
from spendtrack.services.spending_service import SpendingService

router = APIRouter(tags=["projects"])


class BudgetUpdatePayload(BaseModel):
    total_budget: Decimal = Field(ge=0)
    q1_budget: Decimal = Field(default=Decimal("0.00"), ge=0)
    q2_budget: Decimal = Field(default=Decimal("0.00"), ge=0)
    q3_budget: Decimal = Field(default=Decimal("0.00"), ge=0)
    q4_budget: Decimal = Field(default=Decimal("0.00"), ge=0)


def _spending_service(db: Session) -> SpendingService:
    return SpendingService(db)


@router.get("/projects/{project_id}/report")
def get_project_report(
    project_id: UUID,
    as_of: date | None = None,
    fiscal_year: int | None = Query(default=None, ge=1900, le=9999),
    db: Session = Depends(get_db_session),
) -> dict[str, object]:
    service = _spending_service(db)
    report = service.build_project_report(project_id, as_of=as_of or date.today(), fiscal_year=fiscal_year)
    return service.serialize_report(report)


@router.get("/projects/{project_id}/budget-status")
def get_project_budget_status(
    project_id: UUID,
    as_of: date | None = None,
    db: Session = Depends(get_db_session),
) -> dict[str, object]:
    service = _spending_service(db)
    return service.budget_summary(project_id, as_of=as_of or date.today())


@router.put("/projects/{project_id}/budget")
def put_project_budget(
    project_id: UUID,
    payload: BudgetUpdatePayload,
    db: Session = Depends(get_db_session),
) -> dict[str, object]:
    service = _spending_service(db)
    result = service.update_project_budget(
        project_id,
        budget=Budget(
            total_budget=payload.total_budget,
            q1_budget=payload.q1_budget,
            q2_budget=payload.q2_budget,
            q3_budget=payload.q3_budget,
            q4_budget=payload.q4_budget,
        ),
    )
    return {
        "project": service.serialize_project_spend(result.project),
        "warning": result.allocation_warning,
    }


@router.post("/projects/{project_id}/recalculate")
def post_project_recalculate(
    project_id: UUID,
    fiscal_year: int | None = Query(default=None, ge=1900, le=9999),
    db: Session = Depends(get_db_session),
) -> dict[str, object]:
    service = _spending_service(db)
    project = service.recalculate_project_spent(project_id, fiscal_year=fiscal_year)
    return service.serialize_project_spend(project)
