"""Piste d'audit des déductions (append-only)."""

from __future__ import annotations

import json
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.orm import Session

from binledger.app.db.models.models_v1 import DeductionAudit
from binledger.app.db.models.core_types import AuditOutcome, PostingMode
from binledger.app.schemas.deduction import DeductionRequest
from binledger.services.exceptions import DuplicateDeduction
from binledger.services.pagination import Page, paginate

if TYPE_CHECKING:
    from binledger.services.deduction import ClientMeta


class AuditTrail:
    def record(
        self,
        db: Session,
        request: DeductionRequest,
        *,
        outcome: AuditOutcome,
        correlation_id: str | None = None,
        posting_mode: PostingMode | None = None,
        remaining_stock: int | None = None,
        remote_response: dict | None = None,
        error_code: str | None = None,
        warehouse_id: str | None = None,
        client: ClientMeta | None = None,
    ) -> DeductionAudit:
        """`warehouse_id` : entrepôt effectivement ajusté (sinon celui de la demande)."""
        audit = DeductionAudit(
            order_number=request.order_number,
            item_id=request.item_id,
            bin_id=request.bin_id,
            warehouse_id=warehouse_id or request.warehouse_id,
            quantity=request.quantity,
            reason=request.reason.value,
            outcome=outcome,
            error_code=error_code,
            correlation_id=correlation_id,
            posting_mode=posting_mode,
            remote_response=json.dumps(remote_response, default=str) if remote_response is not None else None,
            remaining_stock=remaining_stock,
            actor_id=request.actor_id,
            ip_address=client.ip_address if client else None,
            user_agent=client.user_agent if client else None,
        )
        db.add(audit)
        db.flush()
        return audit

    def find_successful(self, db: Session, order_number: str, item_id: str) -> DeductionAudit | None:
        return (
            db.execute(
                select(DeductionAudit)
                .where(DeductionAudit.order_number == order_number)
                .where(DeductionAudit.item_id == item_id)
                .where(DeductionAudit.outcome == AuditOutcome.success)
            )
            .scalars()
            .first()
        )

    def ensure_not_deducted(self, db: Session, order_number: str, item_id: str) -> None:
        existing = self.find_successful(db, order_number, item_id)
        if existing is not None:
            raise DuplicateDeduction(
                f"Inventory already deducted for order {order_number} and item {item_id}",
                order_number=order_number,
                item_id=item_id,
                audit_id=existing.id,
            )

    def by_order(self, db: Session, order_number: str) -> list[DeductionAudit]:
        return list(
            db.execute(
                select(DeductionAudit)
                .where(DeductionAudit.order_number == order_number)
                .order_by(DeductionAudit.created_at, DeductionAudit.id)
            )
            .scalars()
            .all()
        )

    def by_date_range(
        self,
        db: Session,
        start: datetime | None = None,
        end: datetime | None = None,
        *,
        skip: int = 0,
        limit: int = 50,
    ) -> Page:
        stmt = select(DeductionAudit)
        if start is not None:
            stmt = stmt.where(DeductionAudit.created_at >= start)
        if end is not None:
            stmt = stmt.where(DeductionAudit.created_at <= end)
        stmt = stmt.order_by(DeductionAudit.created_at.desc(), DeductionAudit.id.desc())
        return paginate(db, stmt, skip=skip, limit=limit)

    def fallback_postings(
        self,
        db: Session,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[DeductionAudit]:
        """
        Hook de réconciliation : déductions validées localement alors que le
        ledger distant n'a pas confirmé (id de corrélation synthétique).
        """
        stmt = (
            select(DeductionAudit)
            .where(DeductionAudit.outcome == AuditOutcome.success)
            .where(DeductionAudit.posting_mode == PostingMode.fallback)
        )
        if start is not None:
            stmt = stmt.where(DeductionAudit.created_at >= start)
        if end is not None:
            stmt = stmt.where(DeductionAudit.created_at <= end)
        return list(db.execute(stmt.order_by(DeductionAudit.created_at)).scalars().all())
