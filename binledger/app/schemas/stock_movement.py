from __future__ import annotations

from datetime import datetime
from typing import Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from binledger.app.db.models.core_types import MovementSource, MovementType, SyncStatus

T = TypeVar("T")


class PaginatedResponse(BaseModel, Generic[T]):
    items: list[T]
    total: int
    skip: int
    limit: int
    has_more: bool


class StockMovementRead(BaseModel):
    movement_id: str
    order_number: str | None
    item_id: str
    item_name: str | None
    item_sku: str | None
    bin_id: str
    bin_name: str | None
    warehouse_id: str | None
    zone: str | None
    aisle: str | None
    rack: str | None
    shelf: str | None
    movement_type: MovementType
    quantity_before: int
    quantity_changed: int  # négatif en sortie
    quantity_after: int
    source_type: MovementSource
    source_reference: str | None
    reason: str | None
    actor_id: str | None
    performed_by: str
    remote_transaction_id: str | None
    sync_status: SyncStatus
    notes: str | None
    movement_at: datetime

    model_config = ConfigDict(from_attributes=True)


class MovementTotals(BaseModel):
    count: int
    total_quantity: int


class MovementSummaryRead(BaseModel):
    by_type: dict[str, MovementTotals]
    by_source: dict[str, MovementTotals]
    total_movements: int


class CompensationCreate(BaseModel):
    reason: str = Field(min_length=1, max_length=255)
    notes: str | None = None
