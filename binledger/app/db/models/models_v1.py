from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    String,
    Integer,
    DateTime,
    Boolean,
    Numeric,
    Text,
    Enum,
    Index,
    CheckConstraint,
    event,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from binledger.app.core.clock import utcnow
from binledger.app.db.base import Base, BigIntPK
from binledger.app.db.models.core_types import (
    OrderStatus,
    FulfillmentType,
    PaymentStatus,
    OtpStatus,
    MovementType,
    MovementSource,
    SyncStatus,
    AuditOutcome,
    PostingMode,
)


# ---------- COLLABORATEURS (lecture seule pour le coeur) ----------
class Order(Base):
    __tablename__ = "orders"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    order_number: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    status: Mapped[OrderStatus] = mapped_column(Enum(OrderStatus, name="order_status"), nullable=False)
    fulfillment_type: Mapped[FulfillmentType] = mapped_column(
        Enum(FulfillmentType, name="fulfillment_type"),
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


class Payment(Base):
    __tablename__ = "payments"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    order_number: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    status: Mapped[PaymentStatus] = mapped_column(Enum(PaymentStatus, name="payment_status"), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (CheckConstraint("amount >= 0", name="ck_payment_amount_nonneg"),)


class OtpVerification(Base):
    __tablename__ = "otp_verifications"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    order_number: Mapped[str] = mapped_column(String(64), nullable=False)
    otp_code: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[OtpStatus] = mapped_column(
        Enum(OtpStatus, name="otp_status"),
        default=OtpStatus.pending,
        nullable=False,
    )
    generated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3, nullable=False)

    __table_args__ = (
        CheckConstraint("attempts >= 0", name="ck_otp_attempts_nonneg"),
        Index("ix_otp_order_code", "order_number", "otp_code"),
    )


class BinLocation(Base):
    __tablename__ = "bin_locations"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    bin_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    bin_name: Mapped[str | None] = mapped_column(String(200))
    warehouse_id: Mapped[str | None] = mapped_column(String(64))
    zone: Mapped[str | None] = mapped_column(String(32))
    aisle: Mapped[str | None] = mapped_column(String(32))
    rack: Mapped[str | None] = mapped_column(String(32))
    shelf: Mapped[str | None] = mapped_column(String(32))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


# ---------- INVENTORY ----------
class StockEntry(Base):
    """Vue locale (cache) du stock disponible ; la vérité est chez le ledger distant."""

    __tablename__ = "stock_cache"
    item_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    bin_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    available_stock: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    refreshed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (CheckConstraint("available_stock >= 0", name="ck_stock_cache_available_nonneg"),)


class InventoryMovement(Base):
    __tablename__ = "inventory_movements"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    movement_id: Mapped[str] = mapped_column(String(40), unique=True, nullable=False)
    order_number: Mapped[str | None] = mapped_column(String(64), index=True)

    item_id: Mapped[str] = mapped_column(String(64), nullable=False)
    item_name: Mapped[str | None] = mapped_column(String(255))
    item_sku: Mapped[str | None] = mapped_column(String(64))

    # snapshot de l'emplacement au moment de l'écriture
    bin_id: Mapped[str] = mapped_column(String(64), nullable=False)
    bin_name: Mapped[str | None] = mapped_column(String(200))
    warehouse_id: Mapped[str | None] = mapped_column(String(64))
    zone: Mapped[str | None] = mapped_column(String(32))
    aisle: Mapped[str | None] = mapped_column(String(32))
    rack: Mapped[str | None] = mapped_column(String(32))
    shelf: Mapped[str | None] = mapped_column(String(32))

    movement_type: Mapped[MovementType] = mapped_column(Enum(MovementType, name="movement_type"), nullable=False)
    quantity_before: Mapped[int] = mapped_column(Integer, nullable=False)
    quantity_changed: Mapped[int] = mapped_column(Integer, nullable=False)
    quantity_after: Mapped[int] = mapped_column(Integer, nullable=False)

    source_type: Mapped[MovementSource] = mapped_column(Enum(MovementSource, name="movement_source"), nullable=False)
    source_reference: Mapped[str | None] = mapped_column(String(128))
    source_details: Mapped[str | None] = mapped_column(Text)
    reason: Mapped[str | None] = mapped_column(String(255))

    actor_id: Mapped[str | None] = mapped_column(String(64))
    performed_by: Mapped[str] = mapped_column(String(200), default="System", nullable=False)
    ip_address: Mapped[str | None] = mapped_column(String(64))
    user_agent: Mapped[str | None] = mapped_column(String(512))

    remote_transaction_id: Mapped[str | None] = mapped_column(String(128))
    sync_status: Mapped[SyncStatus] = mapped_column(
        Enum(SyncStatus, name="sync_status"),
        default=SyncStatus.not_synced,
        nullable=False,
    )
    notes: Mapped[str | None] = mapped_column(Text)

    movement_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "quantity_after = quantity_before + quantity_changed",
            name="ck_movement_conservation",
        ),
        # SQLAlchemy stocke le *nom* du membre d'enum
        CheckConstraint(
            "(movement_type = 'outbound' AND quantity_changed < 0)"
            " OR (movement_type = 'inbound' AND quantity_changed > 0)",
            name="ck_movement_sign_matches_type",
        ),
        Index("ix_movements_bin_time", "bin_id", "movement_at"),
        Index("ix_movements_item_time", "item_id", "movement_at"),
        # un mouvement ne se compense qu'une fois
        Index(
            "uq_movement_correction_reference",
            "source_reference",
            unique=True,
            sqlite_where=text("source_type = 'correction'"),
            postgresql_where=text("source_type = 'correction'"),
        ),
    )


# ---------- AUDIT ----------
class DeductionAudit(Base):
    __tablename__ = "deduction_audits"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)

    order_number: Mapped[str] = mapped_column(String(64), nullable=False)
    item_id: Mapped[str] = mapped_column(String(64), nullable=False)
    bin_id: Mapped[str] = mapped_column(String(64), nullable=False)
    warehouse_id: Mapped[str | None] = mapped_column(String(64))
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(String(64), nullable=False)

    outcome: Mapped[AuditOutcome] = mapped_column(Enum(AuditOutcome, name="audit_outcome"), nullable=False)
    error_code: Mapped[str | None] = mapped_column(String(64))
    correlation_id: Mapped[str | None] = mapped_column(String(128))
    posting_mode: Mapped[PostingMode | None] = mapped_column(Enum(PostingMode, name="posting_mode"))
    remote_response: Mapped[str | None] = mapped_column(Text)
    remaining_stock: Mapped[int | None] = mapped_column(Integer)

    actor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    ip_address: Mapped[str | None] = mapped_column(String(64))
    user_agent: Mapped[str | None] = mapped_column(String(512))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        # garde finale contre la double déduction (course entre pré-check et commit)
        Index(
            "uq_audit_success_order_item",
            "order_number",
            "item_id",
            unique=True,
            sqlite_where=text("outcome = 'success'"),
            postgresql_where=text("outcome = 'success'"),
        ),
        Index("ix_audit_created_at", "created_at"),
    )


# ---------- RATE LIMIT ----------
class RateCounter(Base):
    __tablename__ = "rate_counters"
    actor_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    window_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), primary_key=True)
    count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    __table_args__ = (CheckConstraint("count >= 0", name="ck_rate_counter_nonneg"),)


class AppendOnlyViolation(RuntimeError):
    pass


def _forbid_mutation(mapper, connection, target) -> None:
    raise AppendOnlyViolation(f"{type(target).__name__} rows are append-only")


for _model in (InventoryMovement, DeductionAudit):
    event.listen(_model, "before_update", _forbid_mutation)
    event.listen(_model, "before_delete", _forbid_mutation)
