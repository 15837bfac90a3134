from dataclasses import replace
from datetime import date
import os
from pathlib import Path
import sys

import pytest

sys.path.append(str(Path(__file__).resolve().parents[2]))
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

from backend.app.norma.ledger import (  # noqa: E402
    LedgerInput,
    LedgerIntegrityError,
    build_running_balances,
    check_ledger_integrity,
    closing_balance,
    penny,
)


def _row(transaction_id: int, day: date, credit: float = 0.0, debit: float = 0.0) -> LedgerInput:
    return LedgerInput(transaction_id=transaction_id, date=day, credit=credit, debit=debit)


def test_penny_rounds_half_up():
    assert penny(0.1 + 0.2) == 0.3
    assert penny(2.675) == 2.68
    assert penny(-1.005) == -1.01
    assert penny(None) == 0.0


def test_build_running_balances_orders_by_date_then_id():
    rows = [
        _row(3, date(2024, 3, 2), debit=40.0),
        _row(2, date(2024, 3, 1), credit=0.2),
        _row(1, date(2024, 3, 1), credit=0.1),
    ]

    ledger = build_running_balances(rows, seed=10.0)

    assert [e.transaction_id for e in ledger] == [1, 2, 3]
    assert [e.balance for e in ledger] == [10.1, 10.3, -29.7]
    assert closing_balance(ledger, 10.0) == -29.7
    assert closing_balance([], 10.004) == 10.0


def test_check_ledger_integrity_passes_known_good_ledger():
    ledger = build_running_balances(
        [_row(1, date(2024, 3, 1), credit=100.0), _row(2, date(2024, 3, 1), debit=40.0)],
        seed=10.0,
    )

    summary = check_ledger_integrity(ledger, opening_balance=10.0)

    assert summary == {"rows": 2, "credit_total": 100.0, "debit_total": 40.0, "closing_balance": 70.0}


def test_check_ledger_integrity_fails_on_discontinuous_balance():
    ledger = build_running_balances([_row(1, date(2024, 3, 2), credit=100.0)])
    bad = [replace(ledger[0], balance=999.0)]

    with pytest.raises(LedgerIntegrityError, match="running balance mismatch"):
        check_ledger_integrity(bad, opening_balance=0.0)


def test_check_ledger_integrity_fails_on_unordered_rows():
    ledger = build_running_balances(
        [_row(1, date(2024, 3, 1)), _row(2, date(2024, 3, 2))]
    )

    with pytest.raises(LedgerIntegrityError, match="not ordered"):
        check_ledger_integrity(list(reversed(ledger)), opening_balance=0.0)


def test_check_ledger_integrity_fails_on_non_finite_amounts():
    ledger = build_running_balances([_row(1, date(2024, 3, 1), credit=1.0)])
    bad = [replace(ledger[0], credit=float("nan"))]

    with pytest.raises(LedgerIntegrityError, match="non-finite amount"):
        check_ledger_integrity(bad, opening_balance=0.0)


def test_check_ledger_integrity_rejects_sub_penny_drift():
    ledger = build_running_balances([_row(1, date(2024, 3, 1), credit=1400.0)])
    drifted = [replace(ledger[0], balance=1400.004)]

    with pytest.raises(LedgerIntegrityError, match="running balance mismatch"):
        check_ledger_integrity(drifted, opening_balance=0.0)
