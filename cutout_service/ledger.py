"""
Credit ledger client.

Balances live in the `profiles` table; the decrement goes through the
`update_user_credits` procedure, which performs the update atomically on
the server. Every paid operation also appends a row to `usage_stats`.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
import logging

import requests

from .errors import LedgerError
from .rest import RestClient, eq

logger = logging.getLogger(__name__)


class CreditLedger(ABC):
    @abstractmethod
    def get_balance(self, user_id: str) -> int:
        """Return the user's remaining credits."""

    @abstractmethod
    def decrement(self, user_id: str, amount: int) -> None:
        """Atomically subtract `amount` credits."""

    @abstractmethod
    def append_usage(self, user_id: str, action: str, amount: int) -> None:
        """Record one paid action."""


class RestCreditLedger(CreditLedger):
    def __init__(self, client: RestClient):
        self.client = client

    def get_balance(self, user_id: str) -> int:
        try:
            rows = self.client.select("profiles", {"select": "credits", "user_id": eq(user_id)})
        except (requests.RequestException, ValueError) as exc:
            raise LedgerError(f"Could not read balance for {user_id}") from exc
        if not rows:
            raise LedgerError(f"No profile found for {user_id}")
        return int(rows[0].get("credits") or 0)

    def decrement(self, user_id: str, amount: int) -> None:
        try:
            self.client.rpc(
                "update_user_credits",
                {"user_uuid": user_id, "credit_change": -amount},
            )
        except (requests.RequestException, ValueError) as exc:
            raise LedgerError(f"Could not debit {amount} credit(s) from {user_id}") from exc
        logger.info("Debited %d credit(s) from user %s", amount, user_id)

    def append_usage(self, user_id: str, action: str, amount: int) -> None:
        try:
            self.client.insert(
                "usage_stats",
                {"user_id": user_id, "action": action, "credits_used": amount},
            )
        except (requests.RequestException, ValueError) as exc:
            raise LedgerError(f"Could not record usage for {user_id}") from exc
