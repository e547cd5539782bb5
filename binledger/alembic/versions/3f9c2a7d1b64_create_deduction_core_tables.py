"""create deduction core tables

Revision ID: 3f9c2a7d1b64
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3f9c2a7d1b64"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# SQLAlchemy persiste le NOM du membre d'enum
ORDER_STATUS = sa.Enum(
    "pending", "confirmed", "processing", "ready_for_pickup", "dispatched", "delivered", "cancelled",
    name="order_status",
)
FULFILLMENT_TYPE = sa.Enum("delivery", "pickup", "shipping", "in_store", name="fulfillment_type")
PAYMENT_STATUS = sa.Enum("pending", "completed", "failed", "refunded", name="payment_status")
OTP_STATUS = sa.Enum("pending", "verified", "expired", "failed", name="otp_status")
MOVEMENT_TYPE = sa.Enum("inbound", "outbound", name="movement_type")
MOVEMENT_SOURCE = sa.Enum(
    "order", "customer_return", "purchase_receipt", "transfer", "reconciliation", "correction", "manual",
    name="movement_source",
)
SYNC_STATUS = sa.Enum("synced", "pending_reconciliation", "not_synced", name="sync_status")
AUDIT_OUTCOME = sa.Enum("success", "failure", "error", name="audit_outcome")
POSTING_MODE = sa.Enum("direct", "fallback", name="posting_mode")

PK = sa.BigInteger().with_variant(sa.Integer(), "sqlite")


def upgrade() -> None:
    op.create_table(
        "orders",
        sa.Column("id", PK, primary_key=True),
        sa.Column("order_number", sa.String(64), nullable=False, unique=True),
        sa.Column("status", ORDER_STATUS, nullable=False),
        sa.Column("fulfillment_type", FULFILLMENT_TYPE, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "payments",
        sa.Column("id", PK, primary_key=True),
        sa.Column("order_number", sa.String(64), nullable=False),
        sa.Column("status", PAYMENT_STATUS, nullable=False),
        sa.Column("amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("paid_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("amount >= 0", name="ck_payment_amount_nonneg"),
    )
    op.create_index("ix_payments_order_number", "payments", ["order_number"])

    op.create_table(
        "otp_verifications",
        sa.Column("id", PK, primary_key=True),
        sa.Column("order_number", sa.String(64), nullable=False),
        sa.Column("otp_code", sa.String(16), nullable=False),
        sa.Column("status", OTP_STATUS, nullable=False),
        sa.Column("generated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("verified_at", sa.DateTime(timezone=True)),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.CheckConstraint("attempts >= 0", name="ck_otp_attempts_nonneg"),
    )
    op.create_index("ix_otp_order_code", "otp_verifications", ["order_number", "otp_code"])

    op.create_table(
        "bin_locations",
        sa.Column("id", PK, primary_key=True),
        sa.Column("bin_id", sa.String(64), nullable=False, unique=True),
        sa.Column("bin_name", sa.String(200)),
        sa.Column("warehouse_id", sa.String(64)),
        sa.Column("zone", sa.String(32)),
        sa.Column("aisle", sa.String(32)),
        sa.Column("rack", sa.String(32)),
        sa.Column("shelf", sa.String(32)),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
    )

    op.create_table(
        "stock_cache",
        sa.Column("item_id", sa.String(64), primary_key=True),
        sa.Column("bin_id", sa.String(64), primary_key=True),
        sa.Column("available_stock", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("refreshed_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("available_stock >= 0", name="ck_stock_cache_available_nonneg"),
    )

    op.create_table(
        "inventory_movements",
        sa.Column("id", PK, primary_key=True),
        sa.Column("movement_id", sa.String(40), nullable=False, unique=True),
        sa.Column("order_number", sa.String(64)),
        sa.Column("item_id", sa.String(64), nullable=False),
        sa.Column("item_name", sa.String(255)),
        sa.Column("item_sku", sa.String(64)),
        sa.Column("bin_id", sa.String(64), nullable=False),
        sa.Column("bin_name", sa.String(200)),
        sa.Column("warehouse_id", sa.String(64)),
        sa.Column("zone", sa.String(32)),
        sa.Column("aisle", sa.String(32)),
        sa.Column("rack", sa.String(32)),
        sa.Column("shelf", sa.String(32)),
        sa.Column("movement_type", MOVEMENT_TYPE, nullable=False),
        sa.Column("quantity_before", sa.Integer(), nullable=False),
        sa.Column("quantity_changed", sa.Integer(), nullable=False),
        sa.Column("quantity_after", sa.Integer(), nullable=False),
        sa.Column("source_type", MOVEMENT_SOURCE, nullable=False),
        sa.Column("source_reference", sa.String(128)),
        sa.Column("source_details", sa.Text()),
        sa.Column("reason", sa.String(255)),
        sa.Column("actor_id", sa.String(64)),
        sa.Column("performed_by", sa.String(200), nullable=False),
        sa.Column("ip_address", sa.String(64)),
        sa.Column("user_agent", sa.String(512)),
        sa.Column("remote_transaction_id", sa.String(128)),
        sa.Column("sync_status", SYNC_STATUS, nullable=False),
        sa.Column("notes", sa.Text()),
        sa.Column("movement_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "quantity_after = quantity_before + quantity_changed",
            name="ck_movement_conservation",
        ),
        sa.CheckConstraint(
            "(movement_type = 'outbound' AND quantity_changed < 0)"
            " OR (movement_type = 'inbound' AND quantity_changed > 0)",
            name="ck_movement_sign_matches_type",
        ),
    )
    op.create_index("ix_inventory_movements_order_number", "inventory_movements", ["order_number"])
    op.create_index("ix_movements_bin_time", "inventory_movements", ["bin_id", "movement_at"])
    op.create_index("ix_movements_item_time", "inventory_movements", ["item_id", "movement_at"])
    op.create_index(
        "uq_movement_correction_reference",
        "inventory_movements",
        ["source_reference"],
        unique=True,
        sqlite_where=sa.text("source_type = 'correction'"),
        postgresql_where=sa.text("source_type = 'correction'"),
    )

    op.create_table(
        "deduction_audits",
        sa.Column("id", PK, primary_key=True),
        sa.Column("order_number", sa.String(64), nullable=False),
        sa.Column("item_id", sa.String(64), nullable=False),
        sa.Column("bin_id", sa.String(64), nullable=False),
        sa.Column("warehouse_id", sa.String(64)),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("reason", sa.String(64), nullable=False),
        sa.Column("outcome", AUDIT_OUTCOME, nullable=False),
        sa.Column("error_code", sa.String(64)),
        sa.Column("correlation_id", sa.String(128)),
        sa.Column("posting_mode", POSTING_MODE),
        sa.Column("remote_response", sa.Text()),
        sa.Column("remaining_stock", sa.Integer()),
        sa.Column("actor_id", sa.String(64), nullable=False),
        sa.Column("ip_address", sa.String(64)),
        sa.Column("user_agent", sa.String(512)),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "uq_audit_success_order_item",
        "deduction_audits",
        ["order_number", "item_id"],
        unique=True,
        sqlite_where=sa.text("outcome = 'success'"),
        postgresql_where=sa.text("outcome = 'success'"),
    )
    op.create_index("ix_audit_created_at", "deduction_audits", ["created_at"])

    op.create_table(
        "rate_counters",
        sa.Column("actor_id", sa.String(64), primary_key=True),
        sa.Column("window_start", sa.DateTime(timezone=True), primary_key=True),
        sa.Column("count", sa.Integer(), nullable=False, server_default="0"),
        sa.CheckConstraint("count >= 0", name="ck_rate_counter_nonneg"),
    )


def downgrade() -> None:
    op.drop_table("rate_counters")
    op.drop_index("ix_audit_created_at", table_name="deduction_audits")
    op.drop_index("uq_audit_success_order_item", table_name="deduction_audits")
    op.drop_table("deduction_audits")
    op.drop_index("uq_movement_correction_reference", table_name="inventory_movements")
    op.drop_index("ix_movements_item_time", table_name="inventory_movements")
    op.drop_index("ix_movements_bin_time", table_name="inventory_movements")
    op.drop_index("ix_inventory_movements_order_number", table_name="inventory_movements")
    op.drop_table("inventory_movements")
    op.drop_table("stock_cache")
    op.drop_table("bin_locations")
    op.drop_index("ix_otp_order_code", table_name="otp_verifications")
    op.drop_table("otp_verifications")
    op.drop_index("ix_payments_order_number", table_name="payments")
    op.drop_table("payments")
    op.drop_table("orders")

    bind = op.get_bind()
    for enum_type in (
        POSTING_MODE,
        AUDIT_OUTCOME,
        SYNC_STATUS,
        MOVEMENT_SOURCE,
        MOVEMENT_TYPE,
        OTP_STATUS,
        PAYMENT_STATUS,
        FULFILLMENT_TYPE,
        ORDER_STATUS,
    ):
        enum_type.drop(bind, checkfirst=True)
