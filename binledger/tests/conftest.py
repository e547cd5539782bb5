from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy.orm import Session

from binledger.app.core.config import Settings
from binledger.app.db.base import Base
from binledger.app.db.models import models_v1  # noqa: F401  (enregistre les tables)
from binledger.app.db.models.models_v1 import BinLocation, Order, OtpVerification, Payment, StockEntry
from binledger.app.db.models.core_types import FulfillmentType, OrderStatus, OtpStatus, PaymentStatus
from binledger.app.db.session import make_engine, make_session_factory
from binledger.services.ledger_client import LedgerUnavailable

# instant figé : milieu d'une heure calendaire UTC
NOW = datetime(2026, 3, 10, 14, 25, 0, tzinfo=timezone.utc)


def fixed_clock() -> datetime:
    return NOW


class FakeLedgerClient:
    """Ledger distant en mémoire ; `fail_reads` / `fail_posting` simulent une panne."""

    def __init__(self, stock: dict[tuple[str, str], int] | None = None):
        self.stock = dict(stock or {})
        self.adjustments: list[dict] = []
        self.reads = 0
        self.fail_reads = False
        self.fail_posting = False

    def get_available_stock(self, item_id: str, bin_id: str) -> int:
        self.reads += 1
        if self.fail_reads:
            raise LedgerUnavailable("ledger down")
        return self.stock.get((item_id, bin_id), 0)

    def post_adjustment(self, *, item_id, bin_id, warehouse_id, delta_quantity, reason, reference_key):
        if self.fail_posting:
            raise LedgerUnavailable("ledger down")
        self.adjustments.append(
            {
                "item_id": item_id,
                "bin_id": bin_id,
                "warehouse_id": warehouse_id,
                "delta_quantity": delta_quantity,
                "reason": reason,
                "reference_key": reference_key,
            }
        )
        key = (item_id, bin_id)
        self.stock[key] = self.stock.get(key, 0) + delta_quantity
        adjustment_id = f"ADJ-{len(self.adjustments):04d}"
        return adjustment_id, {"inventory_adjustment": {"inventory_adjustment_id": adjustment_id}}


@pytest.fixture
def engine(tmp_path):
    """Base SQLite fichier par test (les tests concurrents ont besoin de vraies connexions)."""
    engine = make_engine(f"sqlite:///{tmp_path / 'binledger-test.db'}", busy_timeout=10)
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture(scope="function")
def db_session(engine) -> Session:
    """
    Session DB isolée par test.

    Transaction englobante + SAVEPOINT : les commit() des services ne font
    que relâcher un savepoint, TOUT est rollback à la fin du test.
    """
    connection = engine.connect()
    transaction = connection.begin()
    session = make_session_factory(engine)(bind=connection, join_transaction_mode="create_savepoint")

    try:
        yield session
    finally:
        session.close()
        transaction.rollback()
        connection.close()


@pytest.fixture
def ledger() -> FakeLedgerClient:
    return FakeLedgerClient()


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        database_url="sqlite://",
        payment_freshness_hours=24,
        max_deductions_per_hour=100,
        max_deduction_quantity=1000,
        stock_cache_ttl_seconds=30,
        ledger_fallback_enabled=True,
    )


# ---------- SEED HELPERS ----------
def seed_order(
    db: Session,
    order_number: str,
    *,
    status: OrderStatus = OrderStatus.confirmed,
    fulfillment_type: FulfillmentType = FulfillmentType.shipping,
    paid_at: datetime | None = None,
    payment_status: PaymentStatus = PaymentStatus.completed,
) -> Order:
    order = Order(order_number=order_number, status=status, fulfillment_type=fulfillment_type, created_at=NOW)
    db.add(order)
    db.add(
        Payment(
            order_number=order_number,
            status=payment_status,
            amount=Decimal("49.90"),
            paid_at=paid_at or NOW - timedelta(hours=1),
        )
    )
    db.flush()
    return order


def seed_otp(
    db: Session,
    order_number: str,
    code: str = "123456",
    *,
    expires_at: datetime | None = None,
    status: OtpStatus = OtpStatus.pending,
    attempts: int = 0,
) -> OtpVerification:
    otp = OtpVerification(
        order_number=order_number,
        otp_code=code,
        status=status,
        generated_at=NOW - timedelta(minutes=5),
        expires_at=expires_at or NOW + timedelta(minutes=10),
        attempts=attempts,
    )
    db.add(otp)
    db.flush()
    return otp


def seed_bin(db: Session, bin_id: str = "BIN-A1", *, is_active: bool = True) -> BinLocation:
    bin_location = BinLocation(
        bin_id=bin_id,
        bin_name=f"Bin {bin_id}",
        warehouse_id="WH-1",
        zone="A",
        aisle="01",
        rack="R1",
        shelf="S2",
        is_active=is_active,
    )
    db.add(bin_location)
    db.flush()
    return bin_location


def seed_stock(
    db: Session,
    item_id: str,
    bin_id: str,
    available: int,
    *,
    refreshed_at: datetime | None = None,
) -> StockEntry:
    entry = StockEntry(item_id=item_id, bin_id=bin_id, available_stock=available, refreshed_at=refreshed_at or NOW)
    db.add(entry)
    db.flush()
    return entry
