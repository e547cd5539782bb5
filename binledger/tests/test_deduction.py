import threading

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from binledger.app.db.models.models_v1 import (
    DeductionAudit,
    InventoryMovement,
    OtpVerification,
    RateCounter,
    StockEntry,
)
from binledger.app.db.models.core_types import (
    AuditOutcome,
    DeductionReason,
    FulfillmentType,
    MovementSource,
    MovementType,
    OtpStatus,
    PostingMode,
    SyncStatus,
)
from binledger.app.schemas.deduction import DeductionRequest
from binledger.services.deduction import ClientMeta, DeductionOrchestrator
from binledger.services.exceptions import (
    DeductionError,
    DuplicateDeduction,
    InsufficientStock,
    InvalidBin,
    OtpMissing,
    PaymentNotVerified,
    RateLimitExceeded,
    RemoteLedgerUnavailable,
    StorageFailure,
)

from conftest import fixed_clock, seed_bin, seed_order, seed_otp, seed_stock


def make_request(**overrides) -> DeductionRequest:
    values = dict(
        order_number="ORD-1001",
        item_id="ITEM-1",
        bin_id="BIN-A1",
        quantity=3,
        actor_id="picker-7",
        reason=DeductionReason.package_dispatch,
    )
    values.update(overrides)
    return DeductionRequest(**values)


@pytest.fixture
def orchestrator(session_factory, ledger, test_settings):
    return DeductionOrchestrator(session_factory, ledger, settings=test_settings, clock=fixed_clock)


@pytest.fixture
def shop(session_factory):
    """Commande expédiée (sans OTP), BIN actif, 10 unités en cache."""
    with session_factory.begin() as db:
        seed_order(db, "ORD-1001", fulfillment_type=FulfillmentType.shipping)
        seed_bin(db, "BIN-A1")
        seed_stock(db, "ITEM-1", "BIN-A1", 10)


def count(session_factory, model, *where) -> int:
    with session_factory() as db:
        return db.execute(select(func.count()).select_from(model).where(*where)).scalar_one()


def stock(session_factory, item_id="ITEM-1", bin_id="BIN-A1") -> int:
    with session_factory() as db:
        return db.get(StockEntry, (item_id, bin_id)).available_stock


# ---------- SCÉNARIOS ----------
def test_verified_delivery_deduction_commits_everything(orchestrator, session_factory, ledger):
    """
    GIVEN commande en livraison payée il y a 1h, OTP valide, BIN actif, stock 10
    WHEN  déduction de 3 unités
    THEN  ajustement distant -3, cache 7, un mouvement OUTBOUND, un audit SUCCESS,
          OTP consommé
    """
    with session_factory.begin() as db:
        seed_order(db, "ORD-1001", fulfillment_type=FulfillmentType.delivery)
        seed_otp(db, "ORD-1001", "482913")
        seed_bin(db, "BIN-A1")
        seed_stock(db, "ITEM-1", "BIN-A1", 10)

    result = orchestrator.deduct(
        make_request(otp_code="482913"),
        ClientMeta(ip_address="10.1.2.3", user_agent="scanner/2.1"),
    )

    assert result.success
    assert result.remaining_stock == 7
    assert result.correlation_id == "ADJ-0001"
    assert result.posting_mode == PostingMode.direct
    assert ledger.adjustments == [
        {
            "item_id": "ITEM-1",
            "bin_id": "BIN-A1",
            "warehouse_id": "WH-1",
            "delta_quantity": -3,
            "reason": "package_dispatch",
            "reference_key": "ORD-1001",
        }
    ]
    assert stock(session_factory) == 7

    with session_factory() as db:
        mv = db.execute(select(InventoryMovement)).scalar_one()
        assert mv.movement_id == result.movement_id
        assert mv.movement_type == MovementType.outbound
        assert (mv.quantity_before, mv.quantity_changed, mv.quantity_after) == (10, -3, 7)
        assert mv.source_type == MovementSource.order
        assert mv.order_number == "ORD-1001"
        assert mv.remote_transaction_id == "ADJ-0001"
        assert mv.sync_status == SyncStatus.synced
        assert mv.ip_address == "10.1.2.3"

        audit = db.execute(select(DeductionAudit)).scalar_one()
        assert audit.id == result.audit_id
        assert audit.outcome == AuditOutcome.success
        assert audit.remaining_stock == 7
        assert audit.actor_id == "picker-7"

        otp = db.execute(select(OtpVerification)).scalar_one()
        assert otp.status == OtpStatus.verified


def test_second_deduction_of_same_item_is_duplicate(orchestrator, session_factory, ledger, shop):
    orchestrator.deduct(make_request())

    with pytest.raises(DuplicateDeduction):
        orchestrator.deduct(make_request())

    assert stock(session_factory) == 7
    assert len(ledger.adjustments) == 1
    assert count(session_factory, InventoryMovement) == 1
    assert count(session_factory, DeductionAudit) == 1


def test_other_item_of_same_order_is_still_deductible(orchestrator, session_factory, shop):
    with session_factory.begin() as db:
        seed_stock(db, "ITEM-2", "BIN-A1", 4)

    orchestrator.deduct(make_request())
    result = orchestrator.deduct(make_request(item_id="ITEM-2", quantity=4))

    assert result.remaining_stock == 0


def test_insufficient_stock_changes_nothing(orchestrator, session_factory, ledger):
    with session_factory.begin() as db:
        seed_order(db, "ORD-1001")
        seed_bin(db, "BIN-A1")
        seed_stock(db, "ITEM-1", "BIN-A1", 2)

    with pytest.raises(InsufficientStock) as excinfo:
        orchestrator.deduct(make_request(quantity=3))

    assert "Available: 2, Requested: 3" in excinfo.value.message
    assert ledger.adjustments == []
    assert stock(session_factory) == 2
    assert count(session_factory, InventoryMovement) == 0
    assert count(session_factory, DeductionAudit) == 0


def test_missing_cache_entry_is_loaded_from_ledger(orchestrator, session_factory, ledger):
    with session_factory.begin() as db:
        seed_order(db, "ORD-1001")
        seed_bin(db, "BIN-A1")
    ledger.stock[("ITEM-1", "BIN-A1")] = 6

    result = orchestrator.deduct(make_request(quantity=2))

    assert ledger.reads == 1
    assert result.remaining_stock == 4


def test_missing_cache_entry_with_ledger_down_is_unavailable(orchestrator, session_factory, ledger):
    with session_factory.begin() as db:
        seed_order(db, "ORD-1001")
        seed_bin(db, "BIN-A1")
    ledger.fail_reads = True

    with pytest.raises(RemoteLedgerUnavailable) as excinfo:
        orchestrator.deduct(make_request())

    assert excinfo.value.retryable
    assert count(session_factory, StockEntry) == 0


# ---------- FALLBACK ----------
def test_ledger_outage_falls_back_to_local_correlation_id(orchestrator, session_factory, ledger, shop):
    ledger.fail_posting = True

    result = orchestrator.deduct(make_request())

    assert result.success
    assert result.posting_mode == PostingMode.fallback
    assert result.correlation_id.startswith("LOCAL-")
    assert result.remaining_stock == 7

    with session_factory() as db:
        mv = db.execute(select(InventoryMovement)).scalar_one()
        assert mv.sync_status == SyncStatus.pending_reconciliation
        assert mv.remote_transaction_id == result.correlation_id
        assert [a.correlation_id for a in orchestrator.audit_trail.fallback_postings(db)] == [result.correlation_id]


def test_disabled_fallback_surfaces_outage_without_local_changes(session_factory, ledger, test_settings, shop):
    ledger.fail_posting = True
    settings = test_settings.model_copy(update={"ledger_fallback_enabled": False})
    orchestrator = DeductionOrchestrator(session_factory, ledger, settings=settings, clock=fixed_clock)

    with pytest.raises(RemoteLedgerUnavailable):
        orchestrator.deduct(make_request())

    assert stock(session_factory) == 10
    assert count(session_factory, InventoryMovement) == 0
    assert count(session_factory, DeductionAudit) == 0


def test_unexpected_ledger_client_error_is_typed_and_changes_nothing(orchestrator, session_factory, ledger, shop, monkeypatch):
    """
    GIVEN un client ledger qui lève une erreur hors LedgerError
    THEN  RemoteLedgerUnavailable (pas de fallback, état distant inconnu) ;
          ni cache, ni mouvement, ni audit
    """
    def broken_post(**kwargs):
        raise RuntimeError("unexpected payload")

    monkeypatch.setattr(ledger, "post_adjustment", broken_post)

    with pytest.raises(RemoteLedgerUnavailable):
        orchestrator.deduct(make_request())

    assert stock(session_factory) == 10
    assert count(session_factory, InventoryMovement) == 0
    assert count(session_factory, DeductionAudit) == 0


# ---------- ENTREPÔT ----------
def test_requested_warehouse_is_used_by_every_writer(orchestrator, session_factory, ledger, shop):
    """
    GIVEN BIN-A1 rattaché à WH-1 et une demande qui cible WH-9
    THEN  ajustement distant, mouvement et audit portent tous WH-9
    """
    result = orchestrator.deduct(make_request(warehouse_id="WH-9"))

    assert ledger.adjustments[0]["warehouse_id"] == "WH-9"
    with session_factory() as db:
        assert db.execute(select(InventoryMovement)).scalar_one().warehouse_id == "WH-9"
        assert db.get(DeductionAudit, result.audit_id).warehouse_id == "WH-9"


def test_bin_warehouse_is_the_default_for_every_writer(orchestrator, session_factory, ledger, shop):
    result = orchestrator.deduct(make_request())

    assert ledger.adjustments[0]["warehouse_id"] == "WH-1"
    with session_factory() as db:
        assert db.execute(select(InventoryMovement)).scalar_one().warehouse_id == "WH-1"
        assert db.get(DeductionAudit, result.audit_id).warehouse_id == "WH-1"


# ---------- ORDRE DES PORTES ----------
def test_payment_gate_runs_before_business_rules(orchestrator, session_factory):
    with session_factory.begin() as db:
        seed_bin(db, "BIN-A1")

    # commande inconnue + BIN inconnu : c'est le paiement qui échoue en premier
    with pytest.raises(PaymentNotVerified):
        orchestrator.deduct(make_request(order_number="ORD-404", bin_id="BIN-ZZ"))


def test_identity_gate_runs_before_rate_gate(orchestrator, session_factory):
    with session_factory.begin() as db:
        seed_order(db, "ORD-1001", fulfillment_type=FulfillmentType.pickup)

    with pytest.raises(OtpMissing):
        orchestrator.deduct(make_request(bin_id="BIN-ZZ"))

    # la porte de débit n'a rien compté
    assert count(session_factory, RateCounter) == 0


def test_rate_limit_is_checked_before_bin_validity(session_factory, ledger, test_settings):
    """
    GIVEN un acteur ayant atteint son plafond horaire
    WHEN  il soumet une demande par ailleurs invalide (BIN inexistant)
    THEN  RateLimitExceeded, pas InvalidBin
    """
    settings = test_settings.model_copy(update={"max_deductions_per_hour": 1})
    orchestrator = DeductionOrchestrator(session_factory, ledger, settings=settings, clock=fixed_clock)
    with session_factory.begin() as db:
        seed_order(db, "ORD-1001")
        seed_order(db, "ORD-1002")
        seed_bin(db, "BIN-A1")

    with pytest.raises(InvalidBin):
        orchestrator.deduct(make_request(bin_id="BIN-ZZ"))

    with pytest.raises(RateLimitExceeded):
        orchestrator.deduct(make_request(order_number="ORD-1002", bin_id="BIN-ZZ"))


def test_consumed_otp_stays_consumed_when_validation_fails(orchestrator, session_factory):
    with session_factory.begin() as db:
        seed_order(db, "ORD-1001", fulfillment_type=FulfillmentType.delivery)
        seed_otp(db, "ORD-1001", "777000")

    with pytest.raises(InvalidBin):
        orchestrator.deduct(make_request(otp_code="777000", bin_id="BIN-ZZ"))

    with session_factory() as db:
        assert db.execute(select(OtpVerification)).scalar_one().status == OtpStatus.verified


# ---------- ÉCHECS DE STOCKAGE ----------
def test_storage_failure_after_remote_posting_is_audited(orchestrator, session_factory, ledger, shop, monkeypatch):
    """
    GIVEN le ledger distant accepte l'ajustement
    WHEN  l'écriture locale échoue
    THEN  tout est annulé localement, StorageFailure (retryable) et un audit
          ERROR conserve l'id de corrélation distant pour la réconciliation
    """

    def broken_record(db, entry):
        raise OperationalError("INSERT INTO inventory_movements", {}, Exception("disk I/O error"))

    monkeypatch.setattr(orchestrator.movements, "record_outbound", broken_record)

    with pytest.raises(StorageFailure) as excinfo:
        orchestrator.deduct(make_request())

    assert excinfo.value.retryable
    assert len(ledger.adjustments) == 1
    assert stock(session_factory) == 10
    assert count(session_factory, InventoryMovement) == 0

    with session_factory() as db:
        audit = db.execute(select(DeductionAudit)).scalar_one()
        assert audit.outcome == AuditOutcome.error
        assert audit.error_code == "storage_failure"
        assert audit.correlation_id == "ADJ-0001"


def test_unexpected_error_after_remote_posting_is_typed_and_audited(orchestrator, session_factory, ledger, shop, monkeypatch):
    def broken_record(db, entry):
        raise RuntimeError("movement serializer crashed")

    monkeypatch.setattr(orchestrator.movements, "record_outbound", broken_record)

    with pytest.raises(StorageFailure):
        orchestrator.deduct(make_request())

    assert stock(session_factory) == 10
    assert count(session_factory, InventoryMovement) == 0
    with session_factory() as db:
        audit = db.execute(select(DeductionAudit)).scalar_one()
        assert audit.outcome == AuditOutcome.error
        assert audit.correlation_id == "ADJ-0001"
        assert audit.warehouse_id == "WH-1"


def test_duplicate_lost_at_commit_is_reported_as_duplicate(
orchestrator, session_factory, ledger, shop, monkeypatch):
    orchestrator.deduct(make_request())
    # simule deux demandes passées toutes deux par les pré-checks
    monkeypatch.setattr(orchestrator.audit_trail, "ensure_not_deducted", lambda db, order_number, item_id: None)

    with pytest.raises(DuplicateDeduction):
        orchestrator.deduct(make_request())

    assert stock(session_factory) == 7
    assert count(session_factory, InventoryMovement) == 1
    assert count(session_factory, DeductionAudit, DeductionAudit.outcome == AuditOutcome.success) == 1
    assert count(session_factory, DeductionAudit, DeductionAudit.outcome == AuditOutcome.failure) == 1


# ---------- CONCURRENCE ----------
def run_concurrently(orchestrator, requests):
    barrier = threading.Barrier(len(requests))
    outcomes = [None] * len(requests)

    def worker(i, request):
        barrier.wait()
        try:
            outcomes[i] = orchestrator.deduct(request)
        except DeductionError as exc:
            outcomes[i] = exc

    threads = [threading.Thread(target=worker, args=(i, r)) for i, r in enumerate(requests)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)
    return outcomes


def test_concurrent_orders_never_oversell_a_bin(orchestrator, session_factory, ledger):
    """
    GIVEN stock 5, deux commandes distinctes demandant 3 unités en parallèle
    THEN  exactement une réussit, l'autre échoue en InsufficientStock, stock final 2
    """
    with session_factory.begin() as db:
        seed_order(db, "ORD-A")
        seed_order(db, "ORD-B", fulfillment_type=FulfillmentType.in_store)
        seed_bin(db, "BIN-A1")
        seed_stock(db, "ITEM-1", "BIN-A1", 5)

    outcomes = run_concurrently(
        orchestrator,
        [
            make_request(order_number="ORD-A", actor_id="picker-1"),
            make_request(order_number="ORD-B", actor_id="picker-2"),
        ],
    )

    successes = [o for o in outcomes if not isinstance(o, Exception)]
    failures = [o for o in outcomes if isinstance(o, Exception)]
    assert len(successes) == 1
    assert len(failures) == 1
    assert isinstance(failures[0], InsufficientStock)
    assert stock(session_factory) == 2
    assert len(ledger.adjustments) == 1
    assert count(session_factory, InventoryMovement) == 1


def test_concurrent_duplicates_deduct_once(orchestrator, session_factory, ledger, shop):
    outcomes = run_concurrently(
        orchestrator,
        [make_request(actor_id="picker-1"), make_request(actor_id="picker-2")],
    )

    failures = [o for o in outcomes if isinstance(o, Exception)]
    assert len(failures) == 1
    assert isinstance(failures[0], DuplicateDeduction)
    assert stock(session_factory) == 7
    assert count(session_factory, DeductionAudit, DeductionAudit.outcome == AuditOutcome.success) == 1
