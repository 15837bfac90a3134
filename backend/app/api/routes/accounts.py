from __future__ import annotations

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from backend.app.api.deps import get_current_user, require_owned_account
from backend.app.db import get_db
from backend.app.domain.contracts import ErrorContract
from backend.app.domain.errors import TransactionNotFoundError
from backend.app.models import Transaction, User
from backend.app.services import ledger_service

router = APIRouter(
    prefix="/api/accounts",
    tags=["accounts"],
    responses={404: {"model": ErrorContract}, 400: {"model": ErrorContract}},
)


class BalanceOut(BaseModel):
    account_id: int
    current_balance: float


class VerifyOut(BaseModel):
    account_id: int
    accurate: bool


class AccountSummaryOut(BaseModel):
    income: float
    expenses: float
    net: float
    balance: Optional[float] = None


class OpeningBalanceIn(BaseModel):
    amount: float


class RecalculateIn(BaseModel):
    start_date: Optional[date] = None


@router.get("/{account_id}/summary", response_model=AccountSummaryOut)
def account_summary(
    account_id: int,
    month: Optional[str] = Query(None, description="YYYY-MM"),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    require_owned_account(db, account_id, user)
    return AccountSummaryOut(**ledger_service.get_account_summary(db, account_id, month))


@router.get("/{account_id}/summary/monthly", response_model=AccountSummaryOut)
def monthly_summary(
    account_id: int,
    month: Optional[str] = Query(None, description="YYYY-MM"),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    require_owned_account(db, account_id, user)
    return AccountSummaryOut(**ledger_service.get_monthly_account_summary(db, account_id, month))


@router.post("/{account_id}/recalculate", response_model=BalanceOut)
def recalculate(
    account_id: int,
    req: Optional[RecalculateIn] = None,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    require_owned_account(db, account_id, user)
    start_date = req.start_date if req else None
    balance = ledger_service.calculate_running_balances(db, account_id, start_date)
    return BalanceOut(account_id=account_id, current_balance=balance)


@router.get("/{account_id}/verify", response_model=VerifyOut)
def verify(
    account_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    require_owned_account(db, account_id, user)
    return VerifyOut(account_id=account_id, accurate=ledger_service.verify_balance_accuracy(db, account_id))


@router.put("/{account_id}/opening-balance", response_model=BalanceOut)
def set_opening_balance(
    account_id: int,
    req: OpeningBalanceIn,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    require_owned_account(db, account_id, user)
    balance = ledger_service.update_opening_balance(db, account_id, req.amount, actor=f"user:{user.id}")
    return BalanceOut(account_id=account_id, current_balance=balance)


@router.delete("/{account_id}/transactions/{transaction_id}", response_model=BalanceOut)
def delete_transaction(
    account_id: int,
    transaction_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    require_owned_account(db, account_id, user)
    txn = db.get(Transaction, transaction_id)
    if not txn or txn.account_id != account_id:
        raise TransactionNotFoundError(transaction_id)
    balance = ledger_service.delete_transaction(db, transaction_id, actor=f"user:{user.id}")
    return BalanceOut(account_id=account_id, current_balance=balance)
