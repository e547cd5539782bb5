from __future__ import annotations

from functools import lru_cache
from typing import Generator

from fastapi import Header, HTTPException, Request

from binledger.app.core.config import settings
from binledger.app.db.session import SessionLocal
from binledger.services.deduction import ClientMeta, DeductionOrchestrator
from binledger.services.ledger_client import ExternalLedgerClient


def get_db() -> Generator:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@lru_cache
def get_orchestrator() -> DeductionOrchestrator:
    return DeductionOrchestrator(
        SessionLocal,
        ExternalLedgerClient.from_settings(settings),
        settings=settings,
    )


def get_actor_id(x_actor_id: str | None = Header(default=None, alias="X-Actor-Id")) -> str:
    # posé par le proxy d'authentification
    if not x_actor_id or not x_actor_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-Actor-Id header")
    return x_actor_id.strip()


def get_client_meta(request: Request) -> ClientMeta:
    return ClientMeta(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
