from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from backend.app.api.deps import get_current_user
from backend.app.db import get_db
from backend.app.domain.contracts import CountContract
from backend.app.models import User
from backend.app.services import transfer_service

router = APIRouter(prefix="/api/transfers", tags=["transfers"])


class TransferPairOut(BaseModel):
    debit_txn_id: int
    credit_txn_id: int
    amount: float


class DetectedTransfersOut(BaseModel):
    detected: int
    pairs: List[TransferPairOut]


class LinkIn(BaseModel):
    txn1_id: int
    txn2_id: int


class LinkOut(BaseModel):
    success: bool
    linked_count: int


class UnlinkOut(BaseModel):
    success: bool
    unlinked_count: int


@router.get("/detect", response_model=DetectedTransfersOut)
def detect(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return DetectedTransfersOut(**transfer_service.detect_transfers(db, user.id))


@router.post("/link", response_model=LinkOut)
def link(req: LinkIn, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return LinkOut(
        **transfer_service.link_transfer_pair(db, req.txn1_id, req.txn2_id, user.id, actor=f"user:{user.id}")
    )


@router.post("/link-detected", response_model=CountContract)
def link_detected(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return CountContract(count=transfer_service.link_detected_transfers(db, user.id))


@router.post("/{txn_id}/unlink", response_model=UnlinkOut)
def unlink(txn_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return UnlinkOut(**transfer_service.unlink_transfer(db, txn_id, user.id, actor=f"user:{user.id}"))
