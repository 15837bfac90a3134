from __future__ import annotations

from dataclasses import asdict
from datetime import date, datetime
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from backend.app.api.deps import get_current_user
from backend.app.db import get_db
from backend.app.models import User
from backend.app.services import anomaly_service
from backend.app.services.anomaly_service import AnomalyOptions

router = APIRouter(prefix="/api/anomalies", tags=["anomalies"])


class DetectIn(BaseModel):
    days: int = Field(default=30, ge=1, le=365)
    reference_date: Optional[date] = None
    baseline_months: Optional[int] = Field(default=None, ge=1)


class DetectedAnomalyOut(BaseModel):
    anomaly_type: str
    severity: str
    description: str
    transaction_id: Optional[int] = None
    category_id: Optional[int] = None
    period: Optional[str] = None
    amount: Optional[float] = None


class AnomalyOut(BaseModel):
    id: int
    transaction_id: Optional[int] = None
    category_id: Optional[int] = None
    period: Optional[str] = None
    anomaly_type: str
    severity: str
    description: Optional[str] = None
    is_dismissed: bool
    is_confirmed_fraud: bool
    detected_at: datetime
    transaction_description: Optional[str] = None
    transaction_amount: Optional[float] = None
    transaction_date: Optional[date] = None


class AnomalyStatsOut(BaseModel):
    by_type: Dict[str, int]
    by_severity: Dict[str, int]
    total: int
    dismissed: int
    confirmed_fraud: int
    pending: int


class ReviewOut(BaseModel):
    success: bool
    id: int
    dismissed: Optional[bool] = None
    confirmed_fraud: Optional[bool] = None


@router.post("/detect", response_model=List[DetectedAnomalyOut])
def detect(
    req: Optional[DetectIn] = None,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    opts = AnomalyOptions(**req.model_dump()) if req else None
    return [DetectedAnomalyOut(**asdict(a)) for a in anomaly_service.detect_anomalies(db, user.id, opts)]


@router.get("", response_model=List[AnomalyOut])
def list_anomalies(
    include_dismissed: bool = Query(False),
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    rows = anomaly_service.get_anomalies(db, user.id, include_dismissed=include_dismissed, limit=limit)
    return [AnomalyOut(**row) for row in rows]


@router.get("/stats", response_model=AnomalyStatsOut)
def stats(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return AnomalyStatsOut(**anomaly_service.get_anomaly_stats(db, user.id))


@router.post("/{anomaly_id}/dismiss", response_model=ReviewOut)
def dismiss(anomaly_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return ReviewOut(**anomaly_service.dismiss_anomaly(db, anomaly_id, user.id, actor=f"user:{user.id}"))


@router.post("/{anomaly_id}/confirm-fraud", response_model=ReviewOut)
def confirm_fraud(anomaly_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return ReviewOut(**anomaly_service.confirm_fraud(db, anomaly_id, user.id, actor=f"user:{user.id}"))
