from __future__ import annotations

from datetime import date
from typing import Optional

from pydantic import BaseModel


class TransactionContract(BaseModel):
    id: int
    account_id: int
    transaction_date: date
    description: str
    original_description: Optional[str] = None
    debit_amount: float
    credit_amount: float
    balance_after: Optional[float] = None
    category_id: Optional[int] = None
    is_transfer: bool
    linked_transaction_id: Optional[int] = None
    is_recurring: bool
    recurring_group_id: Optional[int] = None

    @classmethod
    def from_row(cls, txn) -> "TransactionContract":
        return cls(
            id=txn.id,
            account_id=txn.account_id,
            transaction_date=txn.transaction_date,
            description=txn.description,
            original_description=txn.original_description,
            debit_amount=txn.debit_amount,
            credit_amount=txn.credit_amount,
            balance_after=txn.balance_after,
            category_id=txn.category_id,
            is_transfer=txn.is_transfer,
            linked_transaction_id=txn.linked_transaction_id,
            is_recurring=txn.is_recurring,
            recurring_group_id=txn.recurring_group_id,
        )


class CountContract(BaseModel):
    count: int


class ErrorContract(BaseModel):
    detail: str
