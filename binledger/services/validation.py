from __future__ import annotations

from sqlalchemy.orm import Session

from binledger.app.db.models.models_v1 import BinLocation
from binledger.app.db.models.core_types import OrderStatus
from binledger.app.schemas.deduction import DeductionRequest
from binledger.services import lookups
from binledger.services.audit import AuditTrail
from binledger.services.exceptions import InvalidBin, InvalidQuantity, OrderNotDeductible

DEDUCTIBLE_ORDER_STATUSES = {
    OrderStatus.confirmed,
    OrderStatus.processing,
    OrderStatus.ready_for_pickup,
}


class BusinessRuleValidator:
    """Règles métier, lectures locales uniquement (aucun appel distant)."""

    def __init__(self, audit_trail: AuditTrail, *, max_quantity: int = 1000):
        self.audit_trail = audit_trail
        self.max_quantity = max_quantity

    def validate(self, db: Session, request: DeductionRequest) -> BinLocation:
        order = lookups.find_order(db, request.order_number)
        if order is None or order.status not in DEDUCTIBLE_ORDER_STATUSES:
            raise OrderNotDeductible(
                f"Order {request.order_number} not found or not in deductible state",
                order_number=request.order_number,
                status=order.status.value if order else None,
            )

        bin_location = lookups.find_active_bin(db, request.bin_id)
        if bin_location is None:
            raise InvalidBin(f"BIN {request.bin_id} not found or inactive", bin_id=request.bin_id)

        if request.quantity <= 0 or request.quantity > self.max_quantity:
            raise InvalidQuantity(
                f"Quantity must be between 1 and {self.max_quantity} (got {request.quantity})",
                quantity=request.quantity,
            )

        # pré-check ; la garde définitive est l'index unique sur deduction_audits
        self.audit_trail.ensure_not_deducted(db, request.order_number, request.item_id)
        return bin_location
