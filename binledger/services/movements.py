"""
Journal des mouvements de stock (append-only).

Toute variation de quantité, entrante ou sortante, quelle que soit son
origine, y laisse une ligne. Règles :

    quantity_after = quantity_before + quantity_changed
    OUTBOUND => quantity_changed < 0, INBOUND => quantity_changed > 0

Aucune ligne n'est jamais modifiée : une correction est un nouveau
mouvement de sens opposé (source CORRECTION).
"""

from __future__ import annotations

import json
import logging
import secrets
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from binledger.app.core.clock import utcnow
from binledger.app.db.models.models_v1 import InventoryMovement, StockEntry
from binledger.app.db.models.core_types import MovementSource, MovementType, SyncStatus
from binledger.services import lookups
from binledger.services.pagination import Page, paginate

logger = logging.getLogger(__name__)


@dataclass
class MovementCreate:
    item_id: str
    bin_id: str
    movement_type: MovementType
    quantity_changed: int
    source_type: MovementSource
    quantity_before: int | None = None  # None => lu dans le cache de stock
    order_number: str | None = None
    item_name: str | None = None
    item_sku: str | None = None
    warehouse_id: str | None = None
    source_reference: str | None = None
    source_details: dict[str, Any] | None = None
    reason: str | None = None
    actor_id: str | None = None
    performed_by: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    remote_transaction_id: str | None = None
    sync_status: SyncStatus = SyncStatus.not_synced
    notes: str | None = None
    movement_at: datetime | None = None


@dataclass
class MovementFilters:
    bin_id: str | None = None
    item_id: str | None = None
    movement_type: MovementType | None = None
    source_type: MovementSource | None = None
    start: datetime | None = None
    end: datetime | None = None


class AlreadyCompensated(Exception):
    pass


def generate_movement_id(now: datetime | None = None) -> str:
    now = now or utcnow()
    return f"MOV-{secrets.token_hex(4).upper()}-{now.strftime('%Y%m%d%H%M%S')}"


class MovementLedger:
    def record(self, db: Session, entry: MovementCreate) -> InventoryMovement:
        if entry.movement_type == MovementType.outbound and entry.quantity_changed >= 0:
            raise ValueError("Outbound movements must have a negative quantity_changed")
        if entry.movement_type == MovementType.inbound and entry.quantity_changed <= 0:
            raise ValueError("Inbound movements must have a positive quantity_changed")

        before = entry.quantity_before
        if before is None:
            cached = db.get(StockEntry, (entry.item_id, entry.bin_id))
            before = cached.available_stock if cached else 0

        now = entry.movement_at or utcnow()
        # snapshot de l'emplacement (le BIN peut être renommé / déplacé plus tard)
        bin_location = lookups.find_bin(db, entry.bin_id)

        mv = InventoryMovement(
            movement_id=generate_movement_id(now),
            order_number=entry.order_number,
            item_id=entry.item_id,
            item_name=entry.item_name,
            item_sku=entry.item_sku,
            bin_id=entry.bin_id,
            bin_name=bin_location.bin_name if bin_location else None,
            warehouse_id=entry.warehouse_id or (bin_location.warehouse_id if bin_location else None),
            zone=bin_location.zone if bin_location else None,
            aisle=bin_location.aisle if bin_location else None,
            rack=bin_location.rack if bin_location else None,
            shelf=bin_location.shelf if bin_location else None,
            movement_type=entry.movement_type,
            quantity_before=before,
            quantity_changed=entry.quantity_changed,
            quantity_after=before + entry.quantity_changed,
            source_type=entry.source_type,
            source_reference=entry.source_reference,
            source_details=json.dumps(entry.source_details) if entry.source_details is not None else None,
            reason=entry.reason,
            actor_id=entry.actor_id,
            performed_by=entry.performed_by or entry.actor_id or "System",
            ip_address=entry.ip_address,
            user_agent=entry.user_agent,
            remote_transaction_id=entry.remote_transaction_id,
            sync_status=entry.sync_status,
            notes=entry.notes,
            movement_at=now,
        )
        db.add(mv)
        db.flush()
        return mv

    def record_outbound(self, db: Session, entry: MovementCreate) -> InventoryMovement:
        entry.movement_type = MovementType.outbound
        entry.quantity_changed = -abs(entry.quantity_changed)
        return self.record(db, entry)

    def record_inbound(self, db: Session, entry: MovementCreate) -> InventoryMovement:
        entry.movement_type = MovementType.inbound
        entry.quantity_changed = abs(entry.quantity_changed)
        return self.record(db, entry)

    def get(self, db: Session, movement_id: str) -> InventoryMovement | None:
        return db.execute(
            select(InventoryMovement).where(InventoryMovement.movement_id == movement_id)
        ).scalar_one_or_none()

    def find_compensation(self, db: Session, movement_id: str) -> InventoryMovement | None:
        return (
            db.execute(
                select(InventoryMovement)
                .where(InventoryMovement.source_type == MovementSource.correction)
                .where(InventoryMovement.source_reference == movement_id)
            )
            .scalars()
            .first()
        )

    def last_balance(self, db: Session, item_id: str, bin_id: str) -> int | None:
        """`quantity_after` du mouvement le plus récent (None si aucun)."""
        return db.execute(
            select(InventoryMovement.quantity_after)
            .where(InventoryMovement.item_id == item_id)
            .where(InventoryMovement.bin_id == bin_id)
            .order_by(InventoryMovement.movement_at.desc(), InventoryMovement.id.desc())
            .limit(1)
        ).scalar_one_or_none()

    def record_compensation(
        self,
        db: Session,
        movement_id: str,
        *,
        actor_id: str | None,
        reason: str,
        notes: str | None = None,
    ) -> InventoryMovement:
        """
        Annule un mouvement par une écriture inverse ; l'original reste intact.

        Un mouvement ne se compense qu'une fois (garde finale : index unique
        sur `source_reference` des CORRECTION). Le solde de départ est le
        `quantity_after` du dernier mouvement du couple (item, BIN), pour que
        l'historique reste rejouable.
        """
        original = self.get(db, movement_id)
        if original is None:
            raise LookupError(f"Movement {movement_id} not found")
        existing = self.find_compensation(db, movement_id)
        if existing is not None:
            raise AlreadyCompensated(f"Movement {movement_id} already compensated by {existing.movement_id}")

        reverse_type = (
            MovementType.inbound if original.movement_type == MovementType.outbound else MovementType.outbound
        )
        entry = MovementCreate(
            item_id=original.item_id,
            bin_id=original.bin_id,
            movement_type=reverse_type,
            quantity_changed=-original.quantity_changed,
            source_type=MovementSource.correction,
            order_number=original.order_number,
            item_name=original.item_name,
            item_sku=original.item_sku,
            warehouse_id=original.warehouse_id,
            quantity_before=self.last_balance(db, original.item_id, original.bin_id),
            source_reference=original.movement_id,
            reason=reason,
            actor_id=actor_id,
            notes=notes,
        )
        mv = self.record(db, entry)
        logger.info("movement %s compensated by %s", original.movement_id, mv.movement_id)
        return mv

    # ---------- LECTURE ----------
    @staticmethod
    def _filtered(filters: MovementFilters):
        stmt = select(InventoryMovement)
        if filters.bin_id is not None:
            stmt = stmt.where(InventoryMovement.bin_id == filters.bin_id)
        if filters.item_id is not None:
            stmt = stmt.where(InventoryMovement.item_id == filters.item_id)
        if filters.movement_type is not None:
            stmt = stmt.where(InventoryMovement.movement_type == filters.movement_type)
        if filters.source_type is not None:
            stmt = stmt.where(InventoryMovement.source_type == filters.source_type)
        if filters.start is not None:
            stmt = stmt.where(InventoryMovement.movement_at >= filters.start)
        if filters.end is not None:
            stmt = stmt.where(InventoryMovement.movement_at <= filters.end)
        return stmt

    def history(self, db: Session, filters: MovementFilters | None = None, *, skip: int = 0, limit: int = 50) -> Page:
        stmt = self._filtered(filters or MovementFilters()).order_by(
            InventoryMovement.movement_at.desc(),
            InventoryMovement.id.desc(),
        )
        return paginate(db, stmt, skip=skip, limit=limit)

    def bin_history(self, db: Session, bin_id: str, filters: MovementFilters | None = None, **page) -> Page:
        return self.history(db, replace(filters or MovementFilters(), bin_id=bin_id), **page)

    def item_history(self, db: Session, item_id: str, filters: MovementFilters | None = None, **page) -> Page:
        return self.history(db, replace(filters or MovementFilters(), item_id=item_id), **page)

    def summary(self, db: Session, start: datetime | None = None, end: datetime | None = None) -> dict[str, Any]:
        """Nombre de mouvements et quantité absolue totale, par type et par source."""
        period = MovementFilters(start=start, end=end)

        def grouped(column) -> dict[str, dict[str, int]]:
            base = self._filtered(period).subquery()
            rows = db.execute(
                select(
                    base.c[column],
                    func.count().label("count"),
                    func.coalesce(func.sum(func.abs(base.c.quantity_changed)), 0).label("total_quantity"),
                ).group_by(base.c[column])
            ).all()
            return {
                _enum_key(key): {"count": int(count), "total_quantity": int(total)}
                for key, count, total in rows
            }

        by_type = grouped("movement_type")
        by_source = grouped("source_type")
        return {
            "by_type": by_type,
            "by_source": by_source,
            "total_movements": sum(v["count"] for v in by_type.values()),
        }


def _enum_key(value: Any) -> str:
    return value.value if hasattr(value, "value") else str(value)
