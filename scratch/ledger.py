"""
SCRATCHWORKS - Holder Ledger

Per-holder, per-currency balances with an append-only entry log. The
ledger works on the caller's connection, so a debit/credit is part of
whatever transaction the card service has open: a failed purchase or
claim rolls the balance change back with everything else.
"""

from __future__ import annotations

import logging
import uuid
from typing import Optional

from config.settings import ScratchConfig
from scratch.errors import InsufficientFunds
from scratch.models import iso, utc_now

logger = logging.getLogger("scratchworks.ledger")


class Ledger:

    def __init__(self, db):
        self.db = db

    def _check(self, currency: str, amount: int) -> None:
        if currency not in ScratchConfig.CURRENCIES:
            raise ValueError(f"Unknown currency: {currency}")
        if amount < 0:
            raise ValueError("Ledger amounts must be non-negative")

    def _entry(self, holder_id: str, currency: str, amount: int, kind: str,
               reference: Optional[str]) -> None:
        self.db.execute(
            """INSERT INTO ledger_entries (id, holder_id, currency, amount, kind, reference, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (uuid.uuid4().hex, holder_id, currency, amount, kind, reference, iso(utc_now())),
        )

    def balance(self, holder_id: str, currency: str) -> int:
        row = self.db.execute(
            "SELECT amount FROM balances WHERE holder_id = ? AND currency = ?",
            (holder_id, currency),
        ).fetchone()
        return row["amount"] if row else 0

    def balances(self, holder_id: str) -> dict[str, int]:
        return {c: self.balance(holder_id, c) for c in ScratchConfig.CURRENCIES}

    def debit(self, holder_id: str, currency: str, amount: int,
              reference: Optional[str] = None) -> None:
        """Take `amount` from the holder; InsufficientFunds leaves the balance untouched."""
        self._check(currency, amount)
        if amount == 0:
            return
        self.db.execute(
            """UPDATE balances SET amount = amount - ?
               WHERE holder_id = ? AND currency = ? AND amount >= ?""",
            (amount, holder_id, currency, amount),
        )
        if self.db.rowcount != 1:
            available = self.balance(holder_id, currency)
            logger.warning(f"Debit refused: {holder_id} {currency} {available} < {amount}")
            raise InsufficientFunds(holder_id, currency, amount, available)
        self._entry(holder_id, currency, -amount, "debit", reference)

    def credit(self, holder_id: str, currency: str, amount: int,
               reference: Optional[str] = None) -> None:
        self._check(currency, amount)
        if amount == 0:
            return
        self.db.execute(
            """INSERT INTO balances (holder_id, currency, amount) VALUES (?, ?, ?)
               ON CONFLICT (holder_id, currency)
               DO UPDATE SET amount = balances.amount + excluded.amount""",
            (holder_id, currency, amount),
        )
        self._entry(holder_id, currency, amount, "credit", reference)

    def deposit(self, holder_id: str, currency: str, amount: int,
                reference: Optional[str] = "deposit") -> int:
        """Fund a holder outside any game flow (stand-in for payment intake)."""
        self.credit(holder_id, currency, amount, reference)
        self.db.commit()
        return self.balance(holder_id, currency)

    def lock_holder(self, holder_id: str) -> None:
        """Row-lock the holder's balances until the transaction ends.

        Serialises a holder's purchases on PostgreSQL, where the limit
        re-check would otherwise race under READ COMMITTED. SQLite already
        holds the database write lock from BEGIN IMMEDIATE.
        """
        if self.db.is_pg:
            self.db.execute("SELECT amount FROM balances WHERE holder_id = ? FOR UPDATE",
                            (holder_id,))
