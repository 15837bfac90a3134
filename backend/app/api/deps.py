# backend/app/api/deps.py
from __future__ import annotations

from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session

from backend.app.db import get_db
from backend.app.domain.errors import AccountNotFoundError
from backend.app.models import Account, User


def get_current_user(
    request: Request,
    db: Session = Depends(get_db),
) -> User:
    """
    Owner identity from the X-User-Id header; the user must already exist.

    db must be injected via Depends(get_db) so FastAPI doesn't treat Session
    as a Pydantic field.
    """
    raw = request.headers.get("X-User-Id")
    if not raw:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    try:
        user_id = int(raw)
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid X-User-Id header")

    user = db.get(User, user_id)
    if not user:
        raise HTTPException(status_code=401, detail="Unknown X-User-Id")
    return user


def require_owned_account(db: Session, account_id: int, user: User) -> Account:
    """Foreign accounts look exactly like missing ones."""
    account = db.get(Account, account_id)
    if not account or account.user_id != user.id:
        raise AccountNotFoundError(account_id)
    return account
