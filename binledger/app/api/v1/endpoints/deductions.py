from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from binledger.app.api.deps import get_actor_id, get_client_meta, get_db, get_orchestrator
from binledger.app.schemas.deduction import (
    DeductionAuditRead,
    DeductionCreate,
    DeductionRequest,
    DeductionResultRead,
)
from binledger.app.schemas.stock_movement import PaginatedResponse
from binledger.services.audit import AuditTrail
from binledger.services.deduction import ClientMeta, DeductionOrchestrator

router = APIRouter(prefix="/deductions")
audit_trail = AuditTrail()


@router.post("", response_model=DeductionResultRead, status_code=201)
def create_deduction(
    payload: DeductionCreate,
    actor_id: str = Depends(get_actor_id),
    client: ClientMeta = Depends(get_client_meta),
    orchestrator: DeductionOrchestrator = Depends(get_orchestrator),
):
    # les DeductionError remontent au handler global (errors.py)
    request = DeductionRequest(actor_id=actor_id, **payload.model_dump())
    return orchestrator.deduct(request, client).as_dict()


# ---------- Audit ----------
@router.get("/audit", response_model=PaginatedResponse[DeductionAuditRead])
def list_audits(
    start: datetime | None = None,
    end: datetime | None = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
):
    return audit_trail.by_date_range(db, start, end, skip=skip, limit=limit).as_dict()


@router.get("/audit/fallback", response_model=list[DeductionAuditRead])
def list_fallback_postings(
    start: datetime | None = None,
    end: datetime | None = None,
    db: Session = Depends(get_db),
):
    return audit_trail.fallback_postings(db, start, end)


@router.get("/audit/{order_number}", response_model=list[DeductionAuditRead])
def get_order_audit(order_number: str, db: Session = Depends(get_db)):
    return audit_trail.by_order(db, order_number)
