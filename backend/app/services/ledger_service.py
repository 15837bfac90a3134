from __future__ import annotations

from datetime import date, datetime, timezone
import logging
import re
from typing import Dict, List, Optional

from sqlalchemy import extract, func, select
from sqlalchemy.orm import Session

from backend.app.db import atomic
from backend.app.domain.errors import (
    AccountNotFoundError,
    InvalidMonthFormatError,
    RequiredFieldMissingError,
    TransactionNotFoundError,
)
from backend.app.models import Account, Transaction
from backend.app.norma.ledger import (
    LedgerEntry,
    LedgerInput,
    LedgerIntegrityError,
    build_running_balances,
    check_ledger_integrity,
    closing_balance,
    penny,
)
from backend.app.services import audit_service
from backend.app.services.category_resolver import other_category_id

logger = logging.getLogger(__name__)

_MONTH_RE = re.compile(r"^\d{4}-\d{2}$")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def require_account(db: Session, account_id: int) -> Account:
    account = db.get(Account, account_id)
    if not account:
        raise AccountNotFoundError(account_id)
    return account


def parse_month(month: Optional[str]) -> tuple[int, int]:
    if not month or not _MONTH_RE.match(month):
        raise InvalidMonthFormatError(month)
    year, mon = (int(part) for part in month.split("-"))
    if not 1 <= mon <= 12:
        raise InvalidMonthFormatError(month)
    return year, mon


def _ordered_transactions(db: Session, account_id: int) -> List[Transaction]:
    return list(
        db.execute(
            select(Transaction)
            .where(Transaction.account_id == account_id)
            .order_by(Transaction.transaction_date.asc(), Transaction.id.asc())
        ).scalars()
    )


def _ledger_input(txn: Transaction) -> LedgerInput:
    return LedgerInput(
        transaction_id=txn.id,
        date=txn.transaction_date,
        credit=float(txn.credit_amount or 0.0),
        debit=float(txn.debit_amount or 0.0),
    )


def _guard_movement(txn: Transaction) -> None:
    if (txn.debit_amount or 0) > 0 and (txn.credit_amount or 0) > 0:
        logger.warning(
            "Invariant guard: transaction %s carries both debit=%s and credit=%s",
            txn.id,
            txn.debit_amount,
            txn.credit_amount,
        )


def _recalculate(db: Session, account: Account, start_date: Optional[date] = None) -> float:
    """
    Walk the ledger and write balance_after + current_balance.

    Flushes but does not commit; callers own the unit of work.
    """
    opening = penny(account.opening_balance or 0.0)
    running = opening
    txns = _ordered_transactions(db, account.id)

    start_index = 0
    if start_date:
        start_index = len(txns)
        for idx, txn in enumerate(txns):
            if txn.transaction_date >= start_date:
                start_index = idx
                break
            # rows before the start keep their stored balance and seed the walk
            if txn.balance_after is not None:
                running = penny(txn.balance_after)

    tail = txns[start_index:]
    for txn in tail:
        _guard_movement(txn)
    entries = build_running_balances((_ledger_input(t) for t in tail), seed=running)
    for txn, entry in zip(tail, entries):
        txn.balance_after = entry.balance

    account.current_balance = closing_balance(entries, running)
    account.updated_at = _now()
    db.flush()

    logger.info(
        "[ledger] recalculated account=%s rows=%s from=%s balance=%s",
        account.id,
        len(txns) - start_index,
        start_date,
        account.current_balance,
    )
    return account.current_balance


def calculate_running_balances(
    db: Session,
    account_id: int,
    start_date: Optional[date] = None,
) -> float:
    """
    Recompute balance_after for every transaction of the account (or from
    start_date onwards) and refresh the account's current_balance.

    Safe to re-run; returns the resulting current balance.
    """
    with atomic(db):
        account = require_account(db, account_id)
        return _recalculate(db, account, start_date)


def verify_balance_accuracy(db: Session, account_id: int) -> bool:
    """
    Independent recomputation of the cumulative sequence. Never mutates.
    """
    account = require_account(db, account_id)
    txns = _ordered_transactions(db, account_id)
    if any(t.balance_after is None for t in txns):
        return False

    ledger = [
        LedgerEntry(
            transaction_id=t.id,
            date=t.transaction_date,
            credit=float(t.credit_amount or 0.0),
            debit=float(t.debit_amount or 0.0),
            balance=t.balance_after,
        )
        for t in txns
    ]
    try:
        summary = check_ledger_integrity(ledger, opening_balance=account.opening_balance or 0.0)
    except LedgerIntegrityError as exc:
        logger.warning("[ledger] account=%s failed verification: %s", account_id, exc)
        return False

    return float(account.current_balance or 0.0) == summary["closing_balance"]


def update_opening_balance(
    db: Session,
    account_id: int,
    amount: float,
    *,
    actor: str = "system",
) -> float:
    """
    Set the opening balance (penny-rounded) and recalculate, as one unit.
    """
    with atomic(db):
        account = require_account(db, account_id)
        before = {"opening_balance": account.opening_balance, "current_balance": account.current_balance}

        account.opening_balance = penny(amount)
        _recalculate(db, account)

        audit_service.log_audit_event(
            db,
            user_id=account.user_id,
            event_type="opening_balance_updated",
            actor=actor,
            entity_type="account",
            entity_id=account.id,
            before=before,
            after={"opening_balance": account.opening_balance, "current_balance": account.current_balance},
        )
        return account.current_balance


def _sum_movements(db: Session, account_id: int, month: Optional[str]) -> tuple[float, float]:
    stmt = select(
        func.coalesce(func.sum(Transaction.credit_amount), 0.0),
        func.coalesce(func.sum(Transaction.debit_amount), 0.0),
    ).where(
        Transaction.account_id == account_id,
        Transaction.is_transfer.is_(False),
    )
    if month is not None:
        year, mon = parse_month(month)
        stmt = stmt.where(
            extract("year", Transaction.transaction_date) == year,
            extract("month", Transaction.transaction_date) == mon,
        )
    credits, debits = db.execute(stmt).one()
    return penny(credits), penny(debits)


def get_account_summary(db: Session, account_id: int, month: Optional[str] = None) -> Dict[str, float]:
    """
    Income/expenses over the account (optionally one YYYY-MM month),
    excluding transfers, plus the cached current balance.
    """
    account = require_account(db, account_id)
    if month is not None:
        parse_month(month)
    income, expenses = _sum_movements(db, account_id, month)
    return {
        "income": income,
        "expenses": expenses,
        "net": penny(income - expenses),
        "balance": penny(account.current_balance or 0.0),
    }


def get_monthly_account_summary(db: Session, account_id: int, month: Optional[str]) -> Dict[str, float]:
    if month is None:
        raise RequiredFieldMissingError("month")
    require_account(db, account_id)
    parse_month(month)
    income, expenses = _sum_movements(db, account_id, month)
    return {
        "income": income,
        "expenses": expenses,
        "net": penny(income - expenses),
    }


def delete_transaction(db: Session, transaction_id: int, *, actor: str = "user") -> float:
    """
    Explicit user delete: drop the row, clear a transfer partner's link and
    recalculate the account from the deleted row's date. One unit of work.
    """
    with atomic(db):
        txn = db.get(Transaction, transaction_id)
        if not txn:
            raise TransactionNotFoundError(transaction_id)

        account = require_account(db, txn.account_id)
        from_date = txn.transaction_date
        snapshot = {
            "transaction_date": txn.transaction_date.isoformat(),
            "description": txn.description,
            "debit_amount": txn.debit_amount,
            "credit_amount": txn.credit_amount,
            "linked_transaction_id": txn.linked_transaction_id,
        }

        if txn.linked_transaction_id:
            partner = db.get(Transaction, txn.linked_transaction_id)
            if partner and partner.linked_transaction_id == txn.id:
                partner.linked_transaction_id = None
                partner.is_transfer = False
                partner.category_id = other_category_id(db, account.user_id)
                partner.updated_at = _now()

        db.delete(txn)
        db.flush()

        # the deleted row's predecessor seeds the walk
        _recalculate(db, account, from_date)

        audit_service.log_audit_event(
            db,
            user_id=account.user_id,
            event_type="transaction_deleted",
            actor=actor,
            entity_type="transaction",
            entity_id=transaction_id,
            before=snapshot,
            after=None,
        )
        return account.current_balance
