"""
Portes de vérification : paiement, identité (OTP), débit (rate limit).

Chaque porte échoue avec sa propre erreur. Les effets de bord d'une porte
(OTP consommé, compteur incrémenté) sont committés par la porte elle-même :
ils ne font pas partie de la transaction de déduction et ne sont pas annulés
si une porte suivante échoue.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from binledger.app.core.clock import as_utc, hour_window, utcnow
from binledger.app.db.models.models_v1 import RateCounter
from binledger.app.db.models.core_types import FulfillmentType
from binledger.app.schemas.deduction import DeductionRequest
from binledger.services import lookups
from binledger.services.exceptions import (
    OtpInvalid,
    OtpMissing,
    PaymentNotVerified,
    PaymentStale,
    RateLimitExceeded,
)

logger = logging.getLogger(__name__)

OTP_REQUIRED_FULFILLMENT_TYPES = {
    FulfillmentType.delivery,
    FulfillmentType.pickup,
}


class PaymentGate:
    def __init__(self, *, freshness_hours: int = 24, clock: Callable[[], datetime] = utcnow):
        self.freshness = timedelta(hours=freshness_hours)
        self.clock = clock

    def check(self, db: Session, order_number: str) -> None:
        payment = lookups.find_completed_payment(db, order_number)
        if payment is None:
            raise PaymentNotVerified(f"No completed payment for order {order_number}", order_number=order_number)

        age = self.clock() - as_utc(payment.paid_at)
        if age > self.freshness:
            raise PaymentStale(
                f"Latest payment for order {order_number} is older than {self.freshness}",
                order_number=order_number,
                paid_at=as_utc(payment.paid_at).isoformat(),
            )


class IdentityGate:
    def __init__(self, *, clock: Callable[[], datetime] = utcnow):
        self.clock = clock

    @staticmethod
    def otp_required(db: Session, order_number: str) -> bool:
        order = lookups.find_order(db, order_number)
        # commande inconnue : on exige l'OTP (fail closed)
        if order is None:
            return True
        return order.fulfillment_type in OTP_REQUIRED_FULFILLMENT_TYPES

    def check(self, db: Session, request: DeductionRequest) -> None:
        if not self.otp_required(db, request.order_number):
            return

        code = (request.otp_code or "").strip()
        if not code:
            raise OtpMissing(
                f"OTP verification required for order {request.order_number}",
                order_number=request.order_number,
            )

        now = self.clock()
        otp = lookups.find_active_otp(db, request.order_number, code, now)
        if otp is not None and lookups.mark_otp_used(db, otp.id, now):
            db.commit()
            return

        known = lookups.find_any_otp(db, request.order_number, code)
        if known is None:
            # mauvais code : compte la tentative sur les OTP en attente
            lookups.register_failed_otp_attempt(db, request.order_number)
            db.commit()
            raise OtpInvalid("OTP code does not match", order_number=request.order_number)

        if known.verified_at is not None:
            message = "OTP code already used"
        elif known.attempts >= known.max_attempts:
            message = "Too many OTP attempts"
        else:
            message = "OTP code expired"
        raise OtpInvalid(message, order_number=request.order_number)


class RateGate:
    """Compteur par acteur et par heure calendaire UTC (pas de fenêtre glissante)."""

    def __init__(self, *, max_per_hour: int = 100, clock: Callable[[], datetime] = utcnow):
        self.max_per_hour = max_per_hour
        self.clock = clock

    def _exceeded(self, actor_id: str, window_end: datetime, now: datetime) -> RateLimitExceeded:
        retry_after = max(int((window_end - now).total_seconds()), 1)
        return RateLimitExceeded(
            f"Hourly deduction limit of {self.max_per_hour} reached for {actor_id}",
            retry_after,
            actor_id=actor_id,
        )

    def _try_increment(self, db: Session, actor_id: str, window_start: datetime) -> bool:
        result = db.execute(
            update(RateCounter)
            .where(RateCounter.actor_id == actor_id)
            .where(RateCounter.window_start == window_start)
            .where(RateCounter.count < self.max_per_hour)
            .values(count=RateCounter.count + 1)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def check(self, db: Session, actor_id: str) -> None:
        now = self.clock()
        window_start, window_end = hour_window(now)

        if self.max_per_hour <= 0:
            raise self._exceeded(actor_id, window_end, now)

        if self._try_increment(db, actor_id, window_start):
            db.commit()
            return

        if db.get(RateCounter, (actor_id, window_start)) is not None:
            db.rollback()
            raise self._exceeded(actor_id, window_end, now)

        # première déduction de l'heure pour cet acteur
        try:
            with db.begin_nested():
                db.add(RateCounter(actor_id=actor_id, window_start=window_start, count=1))
        except IntegrityError:
            # une autre instance a créé la ligne entre-temps
            if not self._try_increment(db, actor_id, window_start):
                db.rollback()
                raise self._exceeded(actor_id, window_end, now)
        db.commit()
