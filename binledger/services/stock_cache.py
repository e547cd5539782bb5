"""Cache local du stock disponible par (item, BIN)."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from binledger.app.core.clock import as_utc, utcnow
from binledger.app.db.models.models_v1 import StockEntry
from binledger.services.exceptions import RemoteLedgerUnavailable
from binledger.services.ledger_client import ExternalLedgerClient, LedgerError

logger = logging.getLogger(__name__)


class StockCache:
    def __init__(self, ledger: ExternalLedgerClient, *, ttl_seconds: int = 30):
        self.ledger = ledger
        self.ttl = timedelta(seconds=ttl_seconds)

    def is_stale(self, entry: StockEntry, now: datetime) -> bool:
        return as_utc(entry.refreshed_at) + self.ttl <= now

    def lock(self, db: Session, item_id: str, bin_id: str, *, now: datetime | None = None) -> StockEntry:
        """
        Verrouille la ligne (FOR UPDATE) pour la durée de l'unité de travail.

        - ligne absente : peuplée depuis le ledger distant ;
        - ligne périmée (TTL) : relue depuis le ledger ; si le ledger est
          injoignable on garde la valeur locale (le posting passera lui aussi
          en fallback et la réconciliation corrigera).
        """
        now = now or utcnow()
        entry = (
            db.execute(
                select(StockEntry)
                .where(StockEntry.item_id == item_id)
                .where(StockEntry.bin_id == bin_id)
                .with_for_update()
            )
            .scalar_one_or_none()
        )

        if entry is None:
            try:
                available = self.ledger.get_available_stock(item_id, bin_id)
            except LedgerError as exc:
                raise RemoteLedgerUnavailable(
                    f"No cached stock for {item_id}@{bin_id} and remote ledger unreachable",
                    item_id=item_id,
                    bin_id=bin_id,
                ) from exc
            entry = StockEntry(item_id=item_id, bin_id=bin_id, available_stock=max(available, 0), refreshed_at=now)
            db.add(entry)
            db.flush()
            return entry

        if self.is_stale(entry, now):
            try:
                available = self.ledger.get_available_stock(item_id, bin_id)
            except LedgerError as exc:
                logger.warning(
                    "stale stock cache kept for %s@%s (ledger unreachable: %s)",
                    item_id,
                    bin_id,
                    exc,
                )
                return entry
            if available != entry.available_stock:
                logger.info(
                    "stock cache resynced %s@%s: %s -> %s",
                    item_id,
                    bin_id,
                    entry.available_stock,
                    available,
                )
            entry.available_stock = max(available, 0)
            entry.refreshed_at = now
            db.flush()

        return entry

    def decrement(self, db: Session, entry: StockEntry, quantity: int) -> int:
        if quantity > entry.available_stock:
            raise ValueError(f"Cannot decrement {quantity} from {entry.available_stock}")
        entry.available_stock -= quantity
        db.flush()
        return entry.available_stock
