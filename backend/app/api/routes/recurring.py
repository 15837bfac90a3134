from __future__ import annotations

from dataclasses import asdict
from datetime import date
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from backend.app.api.deps import get_current_user
from backend.app.db import get_db
from backend.app.domain.contracts import CountContract, TransactionContract
from backend.app.models import User
from backend.app.services import recurring_service
from backend.app.services.recurring_service import RecurrenceOptions

router = APIRouter(prefix="/api/recurring", tags=["recurring"])


class DetectIn(BaseModel):
    min_occurrences: int = Field(default=3, ge=2)
    max_amount_variance: float = Field(default=10.0, ge=0)
    lookback_months: int = Field(default=12, ge=0)


class DetectedPatternOut(BaseModel):
    id: int
    description_pattern: str
    merchant_name: str
    typical_amount: float
    typical_day: Optional[int] = None
    frequency: str
    category_id: Optional[int] = None
    last_seen: date
    is_subscription: bool
    occurrence_count: int
    transaction_ids: List[int]


class PatternOut(BaseModel):
    id: int
    description_pattern: str
    merchant_name: Optional[str] = None
    typical_amount: Optional[float] = None
    typical_day: Optional[int] = None
    frequency: Optional[str] = None
    category_id: Optional[int] = None
    category_name: Optional[str] = None
    last_seen: Optional[date] = None
    is_subscription: bool
    is_active: bool
    transaction_count: int


class PatternIn(BaseModel):
    description_pattern: str
    merchant_name: Optional[str] = None
    typical_amount: Optional[float] = None
    typical_day: Optional[int] = Field(default=None, ge=1, le=31)
    frequency: Optional[str] = None
    category_id: Optional[int] = None
    is_subscription: bool = False
    transaction_ids: List[int] = Field(default_factory=list)


class PatternUpdateIn(BaseModel):
    merchant_name: Optional[str] = None
    typical_amount: Optional[float] = None
    typical_day: Optional[int] = Field(default=None, ge=1, le=31)
    frequency: Optional[str] = None
    category_id: Optional[int] = None
    is_subscription: Optional[bool] = None
    is_active: Optional[bool] = None


class MarkIn(BaseModel):
    transaction_ids: List[int]


class DeletedPatternOut(BaseModel):
    deleted: bool
    pattern_id: int
    transactions_unlinked: int


@router.post("/detect", response_model=List[DetectedPatternOut])
def detect(
    req: Optional[DetectIn] = None,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    opts = RecurrenceOptions(**req.model_dump()) if req else None
    detected = recurring_service.detect_recurring_patterns(db, user.id, opts)
    return [DetectedPatternOut(**asdict(p)) for p in detected]


@router.get("", response_model=List[PatternOut])
def list_patterns(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return [PatternOut(**p) for p in recurring_service.get_all_patterns(db, user.id)]


@router.get("/regular", response_model=Dict[str, List[PatternOut]])
def regular_payments(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    grouped = recurring_service.get_regular_payments(db, user.id)
    return {bucket: [PatternOut(**p) for p in rows] for bucket, rows in grouped.items()}


@router.post("", response_model=PatternOut)
def create_pattern(req: PatternIn, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    data = req.model_dump(exclude={"transaction_ids"})
    return PatternOut(**recurring_service.create_pattern(db, user.id, data, req.transaction_ids))


@router.delete("/transactions/{transaction_id}", response_model=TransactionContract)
def unlink_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return TransactionContract.from_row(recurring_service.unlink_transaction(db, transaction_id, user.id))


@router.get("/{pattern_id}", response_model=PatternOut)
def get_pattern(pattern_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return PatternOut(**recurring_service.get_pattern_by_id(db, pattern_id, user.id))


@router.put("/{pattern_id}", response_model=PatternOut)
def update_pattern(
    pattern_id: int,
    req: PatternUpdateIn,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    data = req.model_dump(exclude_unset=True)
    return PatternOut(**recurring_service.update_pattern(db, pattern_id, data, user.id))


@router.delete("/{pattern_id}", response_model=DeletedPatternOut)
def delete_pattern(pattern_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return DeletedPatternOut(**recurring_service.delete_pattern(db, pattern_id, user.id))


@router.get("/{pattern_id}/transactions", response_model=List[TransactionContract])
def pattern_transactions(pattern_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    rows = recurring_service.get_recurring_transactions(db, pattern_id, user.id)
    return [TransactionContract.from_row(t) for t in rows]


@router.post("/{pattern_id}/transactions", response_model=CountContract)
def mark_transactions(
    pattern_id: int,
    req: MarkIn,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    count = recurring_service.mark_as_recurring(db, req.transaction_ids, pattern_id, user.id)
    return CountContract(count=count)
