from __future__ import annotations

import logging
from typing import Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from backend.app.config import category_defaults
from backend.app.domain.errors import CategoryNotFoundError
from backend.app.models import Category

logger = logging.getLogger(__name__)

TRANSFER = ("Transfer",)
OTHER = ("Other", "Uncategorized")
ENTERTAINMENT = ("Entertainment",)


def _find_by_names(db: Session, owner_id: Optional[int], names: Sequence[str]) -> Optional[Category]:
    lowered = [n.strip().lower() for n in names if n and n.strip()]
    if not lowered:
        return None

    rows = db.execute(
        select(Category).where(
            func.lower(Category.name).in_(lowered),
            (Category.user_id == owner_id) | (Category.user_id.is_(None)),
        )
    ).scalars().all()

    # owner rows beat global rows; earlier names beat later ones
    def _rank(c: Category) -> tuple:
        return (0 if c.user_id is not None else 1, lowered.index(c.name.strip().lower()), c.id)

    return min(rows, key=_rank) if rows else None


def resolve_category_id(
    db: Session,
    owner_id: Optional[int],
    names: Sequence[str],
    *,
    fallback_id: int,
) -> Optional[int]:
    """
    Resolve a category by name, falling back to a configured default id.

    The fallback is only used when that row exists; otherwise None (uncategorized)
    so a missing seed never violates the foreign key.
    """
    found = _find_by_names(db, owner_id, names)
    if found:
        return found.id

    if db.get(Category, fallback_id) is not None:
        logger.warning(
            "[categories] %s not found for owner=%s, using fallback id=%s",
            "/".join(names),
            owner_id,
            fallback_id,
        )
        return fallback_id

    logger.warning(
        "[categories] %s not found for owner=%s and fallback id=%s missing; leaving uncategorized",
        "/".join(names),
        owner_id,
        fallback_id,
    )
    return None


def transfer_category_id(db: Session, owner_id: Optional[int]) -> Optional[int]:
    return resolve_category_id(db, owner_id, TRANSFER, fallback_id=category_defaults().transfer_id)


def other_category_id(db: Session, owner_id: Optional[int]) -> Optional[int]:
    return resolve_category_id(db, owner_id, OTHER, fallback_id=category_defaults().other_id)


def entertainment_category_id(db: Session, owner_id: Optional[int]) -> Optional[int]:
    return resolve_category_id(
        db, owner_id, ENTERTAINMENT, fallback_id=category_defaults().entertainment_id
    )


def require_category(db: Session, category_id: Optional[int]) -> Optional[Category]:
    """Validate an optional category reference; None passes through."""
    if category_id is None:
        return None
    category = db.get(Category, category_id)
    if not category:
        raise CategoryNotFoundError(category_id)
    return category
