"""Client du ledger d'inventaire distant (source de vérité).

Isole les échecs réseau / API : tout ce qui n'est pas une réponse 2xx
exploitable devient une `LedgerError`.
"""

from __future__ import annotations

import logging
from datetime import date

import requests

from binledger.app.core.config import Settings

logger = logging.getLogger(__name__)


class LedgerError(Exception):
    pass


class LedgerUnavailable(LedgerError):
    """Transport, timeout, 5xx ou corps de réponse inexploitable."""


class LedgerAuthError(LedgerError):
    """401 / 403 : jeton invalide ou expiré."""


class ExternalLedgerClient:
    def __init__(
        self,
        base_url: str,
        access_token: str,
        *,
        default_warehouse_id: str | None = None,
        timeout: float = 30.0,
        session: requests.Session | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.default_warehouse_id = default_warehouse_id
        self.timeout = timeout
        self.session = session or requests.Session()
        self.headers = {
            "Authorization": f"Zoho-oauthtoken {access_token}",
            "Content-Type": "application/json",
        }

    @classmethod
    def from_settings(cls, settings: Settings) -> "ExternalLedgerClient":
        return cls(
            settings.ledger_api_url,
            settings.ledger_access_token,
            default_warehouse_id=settings.ledger_default_warehouse_id,
            timeout=settings.ledger_timeout_seconds,
        )

    def _request(self, method: str, path: str, **kwargs) -> dict:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(method, url, headers=self.headers, timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            raise LedgerUnavailable(f"{method} {path} failed: {exc}") from exc

        if response.status_code in (401, 403):
            raise LedgerAuthError(f"{method} {path} rejected ({response.status_code})")
        if not response.ok:
            raise LedgerUnavailable(f"{method} {path} returned {response.status_code}: {response.text[:200]}")

        try:
            return response.json()
        except ValueError as exc:
            raise LedgerUnavailable(f"{method} {path} returned a non-JSON body") from exc

    def get_available_stock(self, item_id: str, bin_id: str) -> int:
        data = self._request("GET", f"/inventory/bins/{bin_id}/items/{item_id}")
        try:
            return int(data["bin"]["available_stock"])
        except (KeyError, TypeError, ValueError) as exc:
            raise LedgerUnavailable(f"Unexpected stock payload for {item_id}@{bin_id}") from exc

    def post_adjustment(
        self,
        *,
        item_id: str,
        bin_id: str,
        warehouse_id: str | None,
        delta_quantity: int,
        reason: str,
        reference_key: str,
    ) -> tuple[str, dict]:
        """
        Poste un ajustement (delta négatif = sortie de stock).
        `reference_key` (numéro de commande) sert de référence côté ledger.

        Retourne (correlation_id, réponse brute).
        """
        payload = {
            "date": date.today().isoformat(),
            "reason": reason,
            "reference_number": reference_key,
            "description": f"Verified deduction for order {reference_key}",
            "line_items": [
                {
                    "item_id": item_id,
                    "bin_id": bin_id,
                    "warehouse_id": warehouse_id or self.default_warehouse_id,
                    "quantity_adjusted": delta_quantity,
                }
            ],
        }
        data = self._request("POST", "/inventoryadjustments", json=payload)
        try:
            correlation_id = str(data["inventory_adjustment"]["inventory_adjustment_id"])
        except (KeyError, TypeError) as exc:
            raise LedgerUnavailable("Adjustment response without inventory_adjustment_id") from exc

        logger.info("ledger adjustment posted ref=%s id=%s delta=%s", reference_key, correlation_id, delta_quantity)
        return correlation_id, data
