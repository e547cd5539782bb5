from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from binledger.app.api.deps import get_actor_id, get_db
from binledger.app.db.models.core_types import MovementSource, MovementType
from binledger.app.schemas.stock_movement import (
    CompensationCreate,
    MovementSummaryRead,
    PaginatedResponse,
    StockMovementRead,
)
from binledger.services.movements import AlreadyCompensated, MovementFilters, MovementLedger

router = APIRouter(prefix="/stock-movements")
ledger = MovementLedger()


@router.get("", response_model=PaginatedResponse[StockMovementRead])
def list_movements(
    bin_id: str | None = None,
    item_id: str | None = None,
    movement_type: MovementType | None = None,
    source_type: MovementSource | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
):
    filters = MovementFilters(
        bin_id=bin_id,
        item_id=item_id,
        movement_type=movement_type,
        source_type=source_type,
        start=start,
        end=end,
    )
    return ledger.history(db, filters, skip=skip, limit=limit).as_dict()


@router.get("/summary", response_model=MovementSummaryRead)
def movements_summary(
    start: datetime | None = None,
    end: datetime | None = None,
    db: Session = Depends(get_db),
):
    return ledger.summary(db, start, end)


@router.post("/{movement_id}/compensate", response_model=StockMovementRead, status_code=201)
def compensate_movement(
    movement_id: str,
    payload: CompensationCreate,
    actor_id: str = Depends(get_actor_id),
    db: Session = Depends(get_db),
):
    try:
        mv = ledger.record_compensation(
            db,
            movement_id,
            actor_id=actor_id,
            reason=payload.reason,
            notes=payload.notes,
        )
        db.commit()
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except AlreadyCompensated as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except IntegrityError:
        # compensation concurrente : l'index unique a tranché
        db.rollback()
        raise HTTPException(status_code=409, detail=f"Movement {movement_id} already compensated")
    return mv
