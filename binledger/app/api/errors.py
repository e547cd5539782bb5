"""Traduction des erreurs de déduction en réponses HTTP.

Corps uniforme : {"code", "message", "retryable"}.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from binledger.services.exceptions import DeductionError, DeductionErrorCode, RateLimitExceeded

logger = logging.getLogger(__name__)

STATUS_BY_CODE: dict[DeductionErrorCode, int] = {
    DeductionErrorCode.PAYMENT_NOT_VERIFIED: status.HTTP_402_PAYMENT_REQUIRED,
    DeductionErrorCode.PAYMENT_STALE: status.HTTP_402_PAYMENT_REQUIRED,
    DeductionErrorCode.OTP_MISSING: status.HTTP_401_UNAUTHORIZED,
    DeductionErrorCode.OTP_INVALID: status.HTTP_403_FORBIDDEN,
    DeductionErrorCode.RATE_LIMIT_EXCEEDED: status.HTTP_429_TOO_MANY_REQUESTS,
    DeductionErrorCode.ORDER_NOT_DEDUCTIBLE: status.HTTP_409_CONFLICT,
    DeductionErrorCode.INVALID_BIN: 422,
    DeductionErrorCode.INVALID_QUANTITY: 422,
    DeductionErrorCode.DUPLICATE_DEDUCTION: status.HTTP_409_CONFLICT,
    DeductionErrorCode.INSUFFICIENT_STOCK: status.HTTP_409_CONFLICT,
    DeductionErrorCode.REMOTE_LEDGER_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
    DeductionErrorCode.STORAGE_FAILURE: status.HTTP_503_SERVICE_UNAVAILABLE,
}


async def handle_deduction_error(request: Request, exc: DeductionError) -> JSONResponse:
    headers = None
    if isinstance(exc, RateLimitExceeded):
        headers = {"Retry-After": str(exc.retry_after)}
    if not exc.caller_fixable:
        logger.warning("%s at %s: %s", exc.code.value, request.url.path, exc.message)
    return JSONResponse(
        status_code=STATUS_BY_CODE.get(exc.code, status.HTTP_400_BAD_REQUEST),
        content=exc.as_dict(),
        headers=headers,
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(DeductionError, handle_deduction_error)
