"""Per-org credit ledger and the metering gate in front of behaviors.

Each org has three pools, debited in order: a daily allowance (resets at the
UTC day boundary), a monthly allowance (resets at the month boundary, ``-1``
means unlimited) and purchased credits (never reset). Every debit writes a
transaction row with the balance after it. Debits are idempotent per
reference, so a redelivered step is never charged twice.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from enum import Enum

from pydantic import BaseModel

from layerflow.core.state import Database, safe_json_dumps, to_db_time
from layerflow.core.timers import Clock

logger = logging.getLogger(__name__)

UNLIMITED = -1


class ChargeStatus(str, Enum):
    OK = "ok"
    INSUFFICIENT_CREDIT = "insufficient_credit"


class ChargeResult(BaseModel):
    status: ChargeStatus
    amount: int
    available: int  # Credits available before the charge (-1 if unlimited)
    balance_after: int | None = None
    duplicate: bool = False  # Reference already charged earlier

    @property
    def ok(self) -> bool:
        return self.status == ChargeStatus.OK


class CreditBalance(BaseModel):
    org_id: str
    daily_total: int = 0
    daily_used: int = 0
    monthly_total: int = 0
    monthly_used: int = 0
    purchased: int = 0

    @property
    def unlimited(self) -> bool:
        return self.monthly_total == UNLIMITED

    @property
    def daily_remaining(self) -> int:
        return max(0, self.daily_total - self.daily_used)

    @property
    def monthly_remaining(self) -> int:
        if self.unlimited:
            return 0
        return max(0, self.monthly_total - self.monthly_used)

    @property
    def available(self) -> int:
        """Total spendable credits; -1 when the monthly pool is unlimited."""
        if self.unlimited:
            return UNLIMITED
        return self.daily_remaining + self.monthly_remaining + self.purchased


class CreditLedger:
    """Explicit credit ledger keyed by org id with atomic debits."""

    def __init__(self, db: Database, clock: Clock):
        self.db = db
        self.clock = clock

    def _periods(self) -> tuple[str, str]:
        now = self.clock.now()
        return now.strftime("%Y-%m-%d"), now.strftime("%Y-%m")

    def _load(self, conn: sqlite3.Connection, org_id: str) -> CreditBalance | None:
        """Load a balance row, rolling over expired daily/monthly periods."""
        row = conn.execute("SELECT * FROM credit_balances WHERE org_id = ?", (org_id,)).fetchone()
        if row is None:
            return None
        day, month = self._periods()
        daily_used = row["daily_used"] if row["daily_period"] == day else 0
        monthly_used = row["monthly_used"] if row["monthly_period"] == month else 0
        return CreditBalance(
            org_id=org_id,
            daily_total=row["daily_total"],
            daily_used=daily_used,
            monthly_total=row["monthly_total"],
            monthly_used=monthly_used,
            purchased=row["purchased"],
        )

    def _store(self, conn: sqlite3.Connection, balance: CreditBalance) -> None:
        day, month = self._periods()
        conn.execute(
            """
            INSERT INTO credit_balances (org_id, daily_total, daily_used, daily_period,
                                         monthly_total, monthly_used, monthly_period,
                                         purchased, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(org_id) DO UPDATE SET
                daily_total = excluded.daily_total,
                daily_used = excluded.daily_used,
                daily_period = excluded.daily_period,
                monthly_total = excluded.monthly_total,
                monthly_used = excluded.monthly_used,
                monthly_period = excluded.monthly_period,
                purchased = excluded.purchased,
                updated_at = excluded.updated_at
            """,
            (
                balance.org_id,
                balance.daily_total,
                balance.daily_used,
                day,
                balance.monthly_total,
                balance.monthly_used,
                month,
                balance.purchased,
                to_db_time(self.clock.now()),
            ),
        )

    def balance(self, org_id: str) -> CreditBalance:
        """Current balance; orgs without a ledger row have no credits."""
        with self.db._connect() as conn:
            return self._load(conn, org_id) or CreditBalance(org_id=org_id)

    def set_plan(self, org_id: str, *, daily: int | None = None, monthly: int | None = None) -> CreditBalance:
        """Set the daily and/or monthly allowance for an org."""
        if daily is not None and daily < 0:
            raise ValueError("Daily allowance cannot be negative")
        if monthly is not None and monthly < UNLIMITED:
            raise ValueError("Monthly allowance must be >= 0 or -1 (unlimited)")

        def apply(conn: sqlite3.Connection) -> CreditBalance:
            balance = self._load(conn, org_id) or CreditBalance(org_id=org_id)
            if daily is not None:
                balance.daily_total = daily
            if monthly is not None:
                balance.monthly_total = monthly
            self._store(conn, balance)
            self._record(conn, org_id, 0, "plan", None, {"daily": daily, "monthly": monthly}, balance)
            return balance

        return self.db.run_in_transaction(apply)

    def add_purchased(self, org_id: str, amount: int, reference: str | None = None) -> CreditBalance:
        """Add purchased credits (idempotent when a reference is given)."""
        if amount <= 0:
            raise ValueError("Purchased amount must be positive")

        def apply(conn: sqlite3.Connection) -> CreditBalance:
            if reference and self._seen(conn, org_id, reference):
                return self._load(conn, org_id) or CreditBalance(org_id=org_id)
            balance = self._load(conn, org_id) or CreditBalance(org_id=org_id)
            balance.purchased += amount
            self._store(conn, balance)
            self._record(conn, org_id, amount, "purchase", reference, {"purchased": amount}, balance)
            return balance

        return self.db.run_in_transaction(apply)

    def debit(self, org_id: str, amount: int, reference: str) -> ChargeResult:
        """Atomically debit ``amount`` credits, or refuse without touching the balance."""

        def apply(conn: sqlite3.Connection) -> ChargeResult:
            balance = self._load(conn, org_id) or CreditBalance(org_id=org_id)
            available = balance.available
            if self._seen(conn, org_id, reference):
                return ChargeResult(
                    status=ChargeStatus.OK, amount=amount, available=available, duplicate=True
                )
            if not balance.unlimited and available < amount:
                return ChargeResult(
                    status=ChargeStatus.INSUFFICIENT_CREDIT, amount=amount, available=available
                )

            remaining = amount
            breakdown: dict[str, int] = {}
            take = min(remaining, balance.daily_remaining)
            if take:
                balance.daily_used += take
                breakdown["daily"] = take
                remaining -= take
            if remaining and balance.unlimited:
                balance.monthly_used += remaining
                breakdown["monthly"] = remaining
                remaining = 0
            take = min(remaining, balance.monthly_remaining)
            if take:
                balance.monthly_used += take
                breakdown["monthly"] = take
                remaining -= take
            if remaining:
                balance.purchased -= remaining
                breakdown["purchased"] = remaining

            self._store(conn, balance)
            self._record(conn, org_id, -amount, "debit", reference, breakdown, balance)
            return ChargeResult(
                status=ChargeStatus.OK,
                amount=amount,
                available=available,
                balance_after=balance.available,
            )

        return self.db.run_in_transaction(apply)

    def transactions(self, org_id: str, limit: int = 50) -> list[dict]:
        with self.db._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM credit_transactions WHERE org_id = ? ORDER BY id DESC LIMIT ?",
                (org_id, limit),
            ).fetchall()
            return [dict(row) for row in rows]

    def _seen(self, conn: sqlite3.Connection, org_id: str, reference: str) -> bool:
        row = conn.execute(
            "SELECT 1 FROM credit_transactions WHERE org_id = ? AND reference = ?",
            (org_id, reference),
        ).fetchone()
        return row is not None

    def _record(
        self,
        conn: sqlite3.Connection,
        org_id: str,
        amount: int,
        kind: str,
        reference: str | None,
        breakdown: dict,
        balance: CreditBalance,
    ) -> None:
        conn.execute(
            """
            INSERT INTO credit_transactions (org_id, amount, kind, reference, breakdown,
                                             balance_after, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                org_id,
                amount,
                kind,
                reference,
                safe_json_dumps(breakdown),
                balance.available,
                to_db_time(self.clock.now()),
            ),
        )


@dataclass
class MeteringGate:
    """The only path through which steps spend credits."""

    ledger: CreditLedger
    enabled: bool = True
    default_cost: int = 1  # For behaviors registered without a cost

    def charge(self, org_id: str, amount: int, reference: str) -> ChargeResult:
        if not self.enabled or amount == 0:
            return ChargeResult(status=ChargeStatus.OK, amount=amount, available=UNLIMITED)
        result = self.ledger.debit(org_id, amount, reference)
        if not result.ok:
            logger.warning(
                f"Charge of {amount} credit(s) refused for org '{org_id}' "
                f"({result.available} available, ref {reference})"
            )
        return result
