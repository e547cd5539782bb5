"""
Orchestrateur de déduction de stock : SEULE voie pour décrémenter un BIN.

Séquence :
    1. portes : paiement -> OTP -> rate limit (effets de bord locaux aux portes)
    2. règles métier
    3. unité de travail atomique :
        re-check doublon -> verrou stock (FOR UPDATE) -> stock suffisant ?
        -> ajustement ledger distant (ou fallback) -> décrément cache
        -> mouvement OUTBOUND -> audit SUCCESS -> commit

Propriétés :
- exactement une déduction par (commande, article) : pré-check + index unique
- aucune déduction "à moitié" : toute erreur après le début de l'unité de
  travail annule tout (cache, mouvement, audit)
- ledger distant injoignable : fallback avec id local, tagué pour la
  réconciliation (désactivable via `ledger_fallback_enabled`)
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from binledger.app.core.clock import utcnow
from binledger.app.core.config import Settings, get_settings
from binledger.app.db.models.models_v1 import BinLocation
from binledger.app.db.models.core_types import AuditOutcome, MovementSource, MovementType, PostingMode, SyncStatus
from binledger.app.schemas.deduction import DeductionRequest
from binledger.services.audit import AuditTrail
from binledger.services.exceptions import (
    DeductionError,
    DeductionErrorCode,
    DuplicateDeduction,
    InsufficientStock,
    RemoteLedgerUnavailable,
    StorageFailure,
)
from binledger.services.gates import IdentityGate, PaymentGate, RateGate
from binledger.services.ledger_client import ExternalLedgerClient, LedgerError
from binledger.services.movements import MovementCreate, MovementLedger
from binledger.services.stock_cache import StockCache
from binledger.services.validation import BusinessRuleValidator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClientMeta:
    ip_address: str | None = None
    user_agent: str | None = None


@dataclass(frozen=True)
class PostedAdjustment:
    correlation_id: str
    mode: PostingMode
    response: dict
    warehouse_id: str | None = None


@dataclass(frozen=True)
class DeductionResult:
    success: bool
    audit_id: int
    correlation_id: str
    remaining_stock: int
    posting_mode: PostingMode
    movement_id: str

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


class DeductionOrchestrator:
    """
    Sans état propre : plusieurs instances (threads / process) peuvent
    tourner en parallèle sur la même base, la cohérence repose sur les
    verrous ligne et les contraintes d'unicité.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        ledger: ExternalLedgerClient,
        *,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        settings = settings or get_settings()
        self.session_factory = session_factory
        self.ledger = ledger
        self.clock = clock
        self.fallback_enabled = settings.ledger_fallback_enabled

        self.payment_gate = PaymentGate(freshness_hours=settings.payment_freshness_hours, clock=clock)
        self.identity_gate = IdentityGate(clock=clock)
        self.rate_gate = RateGate(max_per_hour=settings.max_deductions_per_hour, clock=clock)
        self.audit_trail = AuditTrail()
        self.movements = MovementLedger()
        self.validator = BusinessRuleValidator(self.audit_trail, max_quantity=settings.max_deduction_quantity)
        self.stock_cache = StockCache(ledger, ttl_seconds=settings.stock_cache_ttl_seconds)

    def deduct(self, request: DeductionRequest, client: ClientMeta | None = None) -> DeductionResult:
        client = client or ClientMeta()
        try:
            with self.session_factory() as db:
                self.payment_gate.check(db, request.order_number)
                self.identity_gate.check(db, request)
                self.rate_gate.check(db, request.actor_id)
                bin_location = self.validator.validate(db, request)
        except DeductionError as exc:
            self._log_rejection(request, exc)
            raise
        except SQLAlchemyError as exc:
            logger.exception("deduction verification failed order=%s item=%s", request.order_number, request.item_id)
            raise StorageFailure(
                "Storage failure while verifying the deduction",
                order_number=request.order_number,
            ) from exc

        return self._apply(request, bin_location, client)

    def _apply(self, request: DeductionRequest, bin_location: BinLocation, client: ClientMeta) -> DeductionResult:
        warehouse_id = request.warehouse_id or bin_location.warehouse_id
        posted: PostedAdjustment | None = None

        try:
            with self.session_factory.begin() as db:
                # la fenêtre entre le pré-check et ce point est couverte par l'index unique
                self.audit_trail.ensure_not_deducted(db, request.order_number, request.item_id)

                entry = self.stock_cache.lock(db, request.item_id, request.bin_id, now=self.clock())
                available = entry.available_stock
                if available < request.quantity:
                    raise InsufficientStock(
                        f"Insufficient stock in BIN {request.bin_id}. "
                        f"Available: {available}, Requested: {request.quantity}",
                        available=available,
                        requested=request.quantity,
                    )

                posted = self._post_adjustment(request, warehouse_id)

                remaining = self.stock_cache.decrement(db, entry, request.quantity)
                movement = self.movements.record_outbound(
                    db,
                    MovementCreate(
                        item_id=request.item_id,
                        bin_id=request.bin_id,
                        movement_type=MovementType.outbound,
                        quantity_changed=request.quantity,
                        quantity_before=available,
                        source_type=MovementSource.order,
                        order_number=request.order_number,
                        warehouse_id=warehouse_id,
                        source_reference=request.order_number,
                        reason=request.reason.value,
                        actor_id=request.actor_id,
                        ip_address=client.ip_address,
                        user_agent=client.user_agent,
                        remote_transaction_id=posted.correlation_id,
                        sync_status=(
                            SyncStatus.synced
                            if posted.mode == PostingMode.direct
                            else SyncStatus.pending_reconciliation
                        ),
                    ),
                )
                audit = self.audit_trail.record(
                    db,
                    request,
                    outcome=AuditOutcome.success,
                    correlation_id=posted.correlation_id,
                    posting_mode=posted.mode,
                    remaining_stock=remaining,
                    remote_response=posted.response,
                    warehouse_id=warehouse_id,
                    client=client,
                )
                result = DeductionResult(
                    success=True,
                    audit_id=int(audit.id),
                    correlation_id=posted.correlation_id,
                    remaining_stock=remaining,
                    posting_mode=posted.mode,
                    movement_id=movement.movement_id,
                )
        except DeductionError as exc:
            self._log_rejection(request, exc)
            raise
        except Exception as exc:
            # stockage ou erreur inattendue : tout est annulé, erreur typée
            raise self._commit_failure(request, posted, client, exc) from exc

        logger.info(
            "deduction committed order=%s item=%s bin=%s qty=%s remaining=%s correlation=%s mode=%s",
            request.order_number,
            request.item_id,
            request.bin_id,
            request.quantity,
            result.remaining_stock,
            result.correlation_id,
            result.posting_mode.value,
        )
        return result

    def _post_adjustment(self, request: DeductionRequest, warehouse_id: str | None) -> PostedAdjustment:
        try:
            correlation_id, response = self.ledger.post_adjustment(
                item_id=request.item_id,
                bin_id=request.bin_id,
                warehouse_id=warehouse_id,
                delta_quantity=-request.quantity,
                reason=request.reason.value,
                reference_key=request.order_number,
            )
        except LedgerError as exc:
            if not self.fallback_enabled:
                raise RemoteLedgerUnavailable(
                    f"Remote ledger adjustment failed: {exc}",
                    order_number=request.order_number,
                ) from exc
            correlation_id = f"LOCAL-{uuid.uuid4().hex[:16].upper()}"
            logger.warning(
                "remote ledger unavailable, fallback posting order=%s item=%s bin=%s local_id=%s: %s",
                request.order_number,
                request.item_id,
                request.bin_id,
                correlation_id,
                exc,
            )
            return PostedAdjustment(
                correlation_id=correlation_id,
                mode=PostingMode.fallback,
                response={"fallback": True, "error": str(exc)},
                warehouse_id=warehouse_id,
            )
        except Exception as exc:
            # état distant inconnu : pas de fallback, rien n'est écrit localement
            logger.exception(
                "unexpected ledger client failure order=%s item=%s bin=%s",
                request.order_number,
                request.item_id,
                request.bin_id,
            )
            raise RemoteLedgerUnavailable(
                f"Remote ledger adjustment failed unexpectedly: {exc}",
                order_number=request.order_number,
            ) from exc
        return PostedAdjustment(
            correlation_id=correlation_id,
            mode=PostingMode.direct,
            response=response,
            warehouse_id=warehouse_id,
        )

    def _commit_failure(
        self,
        request: DeductionRequest,
        posted: PostedAdjustment | None,
        client: ClientMeta,
        exc: Exception,
    ) -> DeductionError:
        """
        L'unité de travail a été annulée. Si le ledger distant a déjà été
        ajusté, on trace la divergence dans une transaction séparée.
        """
        if self._has_successful_deduction(request):
            error: DeductionError = DuplicateDeduction(
                f"Inventory already deducted for order {request.order_number} and item {request.item_id}",
                order_number=request.order_number,
                item_id=request.item_id,
            )
            outcome = AuditOutcome.failure
            logger.info("duplicate deduction lost the commit race order=%s item=%s", request.order_number, request.item_id)
        else:
            error = StorageFailure(
                "Storage failure during deduction; no local change was applied",
                order_number=request.order_number,
            )
            outcome = AuditOutcome.error
            logger.error(
                "deduction rolled back order=%s item=%s bin=%s qty=%s",
                request.order_number,
                request.item_id,
                request.bin_id,
                request.quantity,
                exc_info=exc,
            )

        if posted is not None:
            self._record_divergence(request, posted, client, outcome, error.code)
        return error

    def _has_successful_deduction(self, request: DeductionRequest) -> bool:
        try:
            with self.session_factory() as db:
                return self.audit_trail.find_successful(db, request.order_number, request.item_id) is not None
        except SQLAlchemyError:
            logger.exception("duplicate lookup failed order=%s item=%s", request.order_number, request.item_id)
            return False

    def _record_divergence(
        self,
        request: DeductionRequest,
        posted: PostedAdjustment,
        client: ClientMeta,
        outcome: AuditOutcome,
        code: DeductionErrorCode,
    ) -> None:
        try:
            with self.session_factory.begin() as db:
                self.audit_trail.record(
                    db,
                    request,
                    outcome=outcome,
                    correlation_id=posted.correlation_id,
                    posting_mode=posted.mode,
                    remote_response=posted.response,
                    error_code=code.value,
                    warehouse_id=posted.warehouse_id,
                    client=client,
                )
        except SQLAlchemyError:
            logger.critical(
                "remote adjustment %s not reflected locally and could not be audited order=%s item=%s",
                posted.correlation_id,
                request.order_number,
                request.item_id,
                exc_info=True,
            )
        else:
            logger.warning(
                "remote adjustment %s not reflected locally (%s) order=%s item=%s",
                posted.correlation_id,
                outcome.value,
                request.order_number,
                request.item_id,
            )

    @staticmethod
    def _log_rejection(request: DeductionRequest, exc: DeductionError) -> None:
        level = logging.INFO if exc.caller_fixable else logging.WARNING
        logger.log(
            level,
            "deduction rejected order=%s item=%s bin=%s actor=%s code=%s: %s",
            request.order_number,
            request.item_id,
            request.bin_id,
            request.actor_id,
            exc.code.value,
            exc.message,
        )
