"""Erreurs typées du pipeline de déduction.

Chaque erreur porte un code stable (`DeductionErrorCode`) et un message
lisible. Les erreurs "caller fixable" (OTP manquant, stock insuffisant...)
se distinguent des fautes système (stockage, ledger distant injoignable).
"""

from __future__ import annotations

import enum
from typing import Any


class DeductionErrorCode(str, enum.Enum):
    PAYMENT_NOT_VERIFIED = "payment_not_verified"
    PAYMENT_STALE = "payment_stale"
    OTP_MISSING = "otp_missing"
    OTP_INVALID = "otp_invalid"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    ORDER_NOT_DEDUCTIBLE = "order_not_deductible"
    INVALID_BIN = "invalid_bin"
    INVALID_QUANTITY = "invalid_quantity"
    DUPLICATE_DEDUCTION = "duplicate_deduction"
    INSUFFICIENT_STOCK = "insufficient_stock"
    REMOTE_LEDGER_UNAVAILABLE = "remote_ledger_unavailable"
    STORAGE_FAILURE = "storage_failure"


SYSTEM_FAULTS = frozenset(
    {
        DeductionErrorCode.REMOTE_LEDGER_UNAVAILABLE,
        DeductionErrorCode.STORAGE_FAILURE,
    }
)


class DeductionError(Exception):
    code: DeductionErrorCode

    def __init__(self, message: str, **context: Any):
        self.message = message
        self.context = context
        super().__init__(message)

    @property
    def caller_fixable(self) -> bool:
        return self.code not in SYSTEM_FAULTS

    @property
    def retryable(self) -> bool:
        return self.code in SYSTEM_FAULTS or self.code is DeductionErrorCode.RATE_LIMIT_EXCEEDED

    def as_dict(self) -> dict[str, Any]:
        return {"code": self.code.value, "message": self.message, "retryable": self.retryable}


class PaymentNotVerified(DeductionError):
    code = DeductionErrorCode.PAYMENT_NOT_VERIFIED


class PaymentStale(DeductionError):
    code = DeductionErrorCode.PAYMENT_STALE


class OtpMissing(DeductionError):
    code = DeductionErrorCode.OTP_MISSING


class OtpInvalid(DeductionError):
    code = DeductionErrorCode.OTP_INVALID


class RateLimitExceeded(DeductionError):
    code = DeductionErrorCode.RATE_LIMIT_EXCEEDED

    def __init__(self, message: str, retry_after: int, **context: Any):
        self.retry_after = retry_after
        super().__init__(message, retry_after=retry_after, **context)


class OrderNotDeductible(DeductionError):
    code = DeductionErrorCode.ORDER_NOT_DEDUCTIBLE


class InvalidBin(DeductionError):
    code = DeductionErrorCode.INVALID_BIN


class InvalidQuantity(DeductionError):
    code = DeductionErrorCode.INVALID_QUANTITY


class DuplicateDeduction(DeductionError):
    code = DeductionErrorCode.DUPLICATE_DEDUCTION


class InsufficientStock(DeductionError):
    code = DeductionErrorCode.INSUFFICIENT_STOCK


class RemoteLedgerUnavailable(DeductionError):
    code = DeductionErrorCode.REMOTE_LEDGER_UNAVAILABLE


class StorageFailure(DeductionError):
    code = DeductionErrorCode.STORAGE_FAILURE
