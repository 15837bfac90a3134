"""
Norma - ledger construction layer.

Responsibility:
- Walk an account's transactions in (date, id) order and produce the running
  balance after each one.

Design notes:
- Penny precision: the balance is rounded half-up to 2 decimals after EVERY
  step, never accumulated as an unrounded float.
- Keep it deterministic: same inputs produce the same order and balances.
- PURE: the persistence side lives in services/ledger_service.py.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, List, Optional
import math


def penny(amount: Optional[float]) -> float:
    """
    Round half-up to 2 decimals.

    Goes through the float's shortest repr so penny(0.1 + 0.2) == 0.3 and
    penny(2.675) == 2.68.
    """
    if amount is None:
        return 0.0
    return float(Decimal(repr(float(amount))).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class LedgerInput:
    transaction_id: int
    date: date
    credit: float
    debit: float


@dataclass(frozen=True)
class LedgerEntry:
    """
    One line of a running ledger.

    Invariants:
    - balance == penny(previous balance + credit - debit)
    - entries are ordered by (date, transaction_id)
    """
    transaction_id: int
    date: date
    credit: float
    debit: float
    balance: float


def sort_key(row) -> tuple:
    return (row.date, row.transaction_id)


def apply_movement(balance: float, credit: Optional[float], debit: Optional[float]) -> float:
    return penny(balance + float(credit or 0.0) - float(debit or 0.0))


def build_running_balances(
    rows: Iterable[LedgerInput],
    seed: float = 0.0,
) -> List[LedgerEntry]:
    balance = penny(seed)
    ledger: List[LedgerEntry] = []
    for row in sorted(rows, key=sort_key):
        balance = apply_movement(balance, row.credit, row.debit)
        ledger.append(
            LedgerEntry(
                transaction_id=row.transaction_id,
                date=row.date,
                credit=float(row.credit or 0.0),
                debit=float(row.debit or 0.0),
                balance=balance,
            )
        )
    return ledger


def closing_balance(ledger: List[LedgerEntry], opening_balance: float) -> float:
    if not ledger:
        return penny(opening_balance)
    return ledger[-1].balance


class LedgerIntegrityError(ValueError):
    pass


def check_ledger_integrity(
    ledger: Iterable[LedgerEntry],
    *,
    opening_balance: float = 0.0,
) -> dict:
    """
    Side-effect-free ledger integrity check.

    Invariants:
    - Rows are ordered by (date, transaction_id).
    - Amounts are finite.
    - Each stored balance equals, exactly, the penny-rounded previous balance
      plus the movement.
    """
    rows = list(ledger)
    last_balance = penny(opening_balance)
    prev_key: tuple | None = None

    credits = 0.0
    debits = 0.0

    for idx, row in enumerate(rows):
        if not (math.isfinite(row.credit) and math.isfinite(row.debit)):
            raise LedgerIntegrityError(f"Invariant violation: non-finite amount at row {idx}.")

        key = sort_key(row)
        if prev_key and key < prev_key:
            raise LedgerIntegrityError(
                "Invariant violation: ledger rows are not ordered by (date, id)."
            )

        expected = apply_movement(last_balance, row.credit, row.debit)
        if row.balance != expected:
            raise LedgerIntegrityError(
                f"Invariant violation: running balance mismatch at row {idx}."
            )

        credits += row.credit
        debits += row.debit
        last_balance = expected
        prev_key = key

    return {
        "rows": len(rows),
        "credit_total": penny(credits),
        "debit_total": penny(debits),
        "closing_balance": last_balance,
    }
