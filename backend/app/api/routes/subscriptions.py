from __future__ import annotations

from dataclasses import asdict
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from backend.app.api.deps import get_current_user
from backend.app.db import get_db
from backend.app.models import User
from backend.app.services import subscription_service

router = APIRouter(prefix="/api/subscriptions", tags=["subscriptions"])


class DetectedSubscriptionOut(BaseModel):
    pattern: str
    merchant_name: str
    typical_amount: float
    frequency: str
    confidence: float
    last_date: date
    billing_day: Optional[int] = None
    occurrence_count: int
    type: str


class SubscriptionOut(BaseModel):
    id: int
    merchant_pattern: str
    display_name: str
    category_id: Optional[int] = None
    category_name: Optional[str] = None
    expected_amount: Optional[float] = None
    frequency: str
    billing_day: Optional[int] = None
    next_expected_date: Optional[date] = None
    last_charged_date: Optional[date] = None
    type: str
    is_active: bool


class SubscriptionIn(BaseModel):
    merchant_pattern: Optional[str] = None
    display_name: Optional[str] = None
    category_id: Optional[int] = None
    expected_amount: Optional[float] = None
    frequency: Optional[str] = None
    billing_day: Optional[int] = Field(default=None, ge=1, le=31)
    next_expected_date: Optional[date] = None
    last_charged_date: Optional[date] = None
    type: Optional[str] = None


class SubscriptionUpdateIn(SubscriptionIn):
    is_active: Optional[bool] = None


class TotalsOut(BaseModel):
    monthly: float
    yearly: float
    count: int
    upcoming_7_days: float


class NetOut(BaseModel):
    monthly: float
    yearly: float


class SummaryOut(BaseModel):
    active_count: int
    expenses: TotalsOut
    income: TotalsOut
    net: NetOut


@router.get("/detect", response_model=List[DetectedSubscriptionOut])
def detect(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return [DetectedSubscriptionOut(**asdict(d)) for d in subscription_service.detect_subscriptions(db, user.id)]


@router.get("/detect/income", response_model=List[DetectedSubscriptionOut])
def detect_income(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return [DetectedSubscriptionOut(**asdict(d)) for d in subscription_service.detect_recurring_income(db, user.id)]


@router.get("", response_model=List[SubscriptionOut])
def list_subscriptions(
    active_only: bool = Query(True),
    type: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return [SubscriptionOut(**s) for s in subscription_service.get_subscriptions(db, user.id, active_only, type)]


@router.get("/summary", response_model=SummaryOut)
def summary(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return SummaryOut(**subscription_service.get_subscription_summary(db, user.id))


@router.get("/upcoming", response_model=List[SubscriptionOut])
def upcoming(
    days: int = Query(30, ge=1, le=365),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return [SubscriptionOut(**s) for s in subscription_service.get_upcoming_charges(db, user.id, days)]


@router.post("", response_model=SubscriptionOut)
def create(req: SubscriptionIn, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return SubscriptionOut(**subscription_service.create_subscription(db, user.id, req.model_dump()))


@router.get("/{subscription_id}", response_model=SubscriptionOut)
def get_one(subscription_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return SubscriptionOut(**subscription_service.get_subscription_by_id(db, subscription_id, user.id))


@router.put("/{subscription_id}", response_model=SubscriptionOut)
def update(
    subscription_id: int,
    req: SubscriptionUpdateIn,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    data = req.model_dump(exclude_unset=True)
    return SubscriptionOut(**subscription_service.update_subscription(db, subscription_id, data, user.id))


@router.delete("/{subscription_id}", response_model=SubscriptionOut)
def delete(subscription_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    result = subscription_service.delete_subscription(db, subscription_id, user.id)
    result.pop("deleted", None)
    return SubscriptionOut(**result)
