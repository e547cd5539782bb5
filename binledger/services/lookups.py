"""
Accès aux tables des services collaborateurs (commandes, paiements, OTP, BINs).

Le coeur ne fait que lire ces tables, sauf la consommation d'OTP qui est un
compare-and-set atomique.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from binledger.app.db.models.models_v1 import BinLocation, Order, OtpVerification, Payment
from binledger.app.db.models.core_types import OtpStatus, PaymentStatus


def find_order(db: Session, order_number: str) -> Order | None:
    return db.execute(select(Order).where(Order.order_number == order_number)).scalar_one_or_none()


def find_completed_payment(db: Session, order_number: str) -> Payment | None:
    """Paiement COMPLETED le plus récent de la commande."""
    return (
        db.execute(
            select(Payment)
            .where(Payment.order_number == order_number)
            .where(Payment.status == PaymentStatus.completed)
            .where(Payment.paid_at.is_not(None))
            .order_by(Payment.paid_at.desc(), Payment.id.desc())
        )
        .scalars()
        .first()
    )


def find_active_otp(db: Session, order_number: str, code: str, now: datetime) -> OtpVerification | None:
    return (
        db.execute(
            select(OtpVerification)
            .where(OtpVerification.order_number == order_number)
            .where(OtpVerification.otp_code == code)
            .where(OtpVerification.status == OtpStatus.pending)
            .where(OtpVerification.expires_at > now)
            .where(OtpVerification.attempts < OtpVerification.max_attempts)
            .order_by(OtpVerification.generated_at.desc())
        )
        .scalars()
        .first()
    )


def find_any_otp(db: Session, order_number: str, code: str) -> OtpVerification | None:
    return (
        db.execute(
            select(OtpVerification)
            .where(OtpVerification.order_number == order_number)
            .where(OtpVerification.otp_code == code)
            .order_by(OtpVerification.generated_at.desc())
            .execution_options(populate_existing=True)
        )
        .scalars()
        .first()
    )


def mark_otp_used(db: Session, otp_id: int, now: datetime) -> bool:
    """
    Compare-and-set : PENDING -> VERIFIED en un seul UPDATE conditionnel.
    Deux soumissions concurrentes du même code : une seule voit rowcount == 1.
    """
    result = db.execute(
        update(OtpVerification)
        .where(OtpVerification.id == otp_id)
        .where(OtpVerification.status == OtpStatus.pending)
        .where(OtpVerification.expires_at > now)
        .values(status=OtpStatus.verified, verified_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def register_failed_otp_attempt(db: Session, order_number: str) -> None:
    db.execute(
        update(OtpVerification)
        .where(OtpVerification.order_number == order_number)
        .where(OtpVerification.status == OtpStatus.pending)
        .values(attempts=OtpVerification.attempts + 1)
        .execution_options(synchronize_session=False)
    )


def find_bin(db: Session, bin_id: str) -> BinLocation | None:
    return db.execute(select(BinLocation).where(BinLocation.bin_id == bin_id)).scalar_one_or_none()


def find_active_bin(db: Session, bin_id: str) -> BinLocation | None:
    return (
        db.execute(
            select(BinLocation)
            .where(BinLocation.bin_id == bin_id)
            .where(BinLocation.is_active.is_(True))
        )
        .scalar_one_or_none()
    )
