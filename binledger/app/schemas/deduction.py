from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from binledger.app.db.models.core_types import AuditOutcome, DeductionReason, PostingMode


class DeductionRequest(BaseModel):
    """
    Demande de déduction (immuable).

    `reason` est un enum fermé : une valeur inconnue est rejetée dès la
    construction. La quantité n'est PAS bornée ici, c'est une règle métier
    (InvalidQuantity) vérifiée par le validateur.
    """

    model_config = ConfigDict(frozen=True)

    order_number: str = Field(min_length=1, max_length=64)
    item_id: str = Field(min_length=1, max_length=64)
    bin_id: str = Field(min_length=1, max_length=64)
    quantity: int
    actor_id: str = Field(min_length=1, max_length=64)
    reason: DeductionReason
    otp_code: str | None = None
    warehouse_id: str | None = None


class DeductionCreate(BaseModel):
    order_number: str = Field(min_length=1, max_length=64)
    item_id: str = Field(min_length=1, max_length=64)
    bin_id: str = Field(min_length=1, max_length=64)
    quantity: int
    reason: DeductionReason
    otp_code: str | None = None
    warehouse_id: str | None = None


class DeductionResultRead(BaseModel):
    success: bool
    audit_id: int
    correlation_id: str
    remaining_stock: int
    posting_mode: PostingMode
    movement_id: str


class DeductionAuditRead(BaseModel):
    id: int
    order_number: str
    item_id: str
    bin_id: str
    warehouse_id: str | None
    quantity: int
    reason: str
    outcome: AuditOutcome
    error_code: str | None
    correlation_id: str | None
    posting_mode: PostingMode | None
    remaining_stock: int | None
    actor_id: str
    ip_address: str | None
    user_agent: str | None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)
