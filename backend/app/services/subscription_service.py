from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.app.db import atomic
from backend.app.domain.errors import (
    InvalidFrequencyError,
    InvalidTypeError,
    RequiredFieldMissingError,
    SubscriptionNotFoundError,
)
from backend.app.models import Account, Subscription, Transaction
from backend.app.norma.ledger import penny
from backend.app.norma.merchant import extract_merchant_name
from backend.app.norma.patterns import (
    EXPECTED_INTERVAL_DAYS,
    FREQUENCIES,
    MAX_INTERVAL_CV,
    classify_frequency,
    coefficient_of_variation,
    intervals_in_days,
    mean,
    normalize_description,
    typical_day,
)
from backend.app.services.category_resolver import require_category

logger = logging.getLogger(__name__)

VALID_TYPES = ("expense", "income")

MIN_OCCURRENCES = 2
MAX_AMOUNT_CV = 10.0

# allowed |interval - expected| in days, per frequency
EXPENSE_TOLERANCE_DAYS: Dict[str, int] = {
    "weekly": 3,
    "fortnightly": 5,
    "monthly": 5,
    "quarterly": 10,
    "yearly": 15,
}
# salaries drift more around weekends and bank holidays
INCOME_TOLERANCE_DAYS: Dict[str, int] = {**EXPENSE_TOLERANCE_DAYS, "monthly": 10}


@dataclass(frozen=True)
class DetectedSubscription:
    pattern: str
    merchant_name: str
    typical_amount: float
    frequency: str
    confidence: float
    last_date: date
    billing_day: Optional[int]
    occurrence_count: int
    type: str = "expense"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def calculate_confidence(amount_cv: float, interval_cv: float, occurrences: int) -> float:
    """
    Base 0.5, up to +0.25 for amount consistency, up to +0.15 for interval
    consistency and up to +0.10 for repetition.
    """
    score = 0.5
    score += 0.25 * max(0.0, 1 - amount_cv / MAX_AMOUNT_CV)
    score += 0.15 * max(0.0, 1 - interval_cv / MAX_INTERVAL_CV)
    score += min(0.10, 0.02 * (occurrences - 1))
    return round(min(1.0, max(0.0, score)), 2)


def _owner_movements(db: Session, owner_id: int, kind: str) -> List[Transaction]:
    column = Transaction.debit_amount if kind == "expense" else Transaction.credit_amount
    return list(
        db.execute(
            select(Transaction)
            .join(Account, Account.id == Transaction.account_id)
            .where(
                Account.user_id == owner_id,
                Transaction.is_transfer.is_(False),
                column > 0,
            )
            .order_by(Transaction.transaction_date.asc(), Transaction.id.asc())
        ).scalars()
    )


def _detect(db: Session, owner_id: int, kind: str) -> List[DetectedSubscription]:
    tolerances = INCOME_TOLERANCE_DAYS if kind == "income" else EXPENSE_TOLERANCE_DAYS
    groups: Dict[str, List[Transaction]] = {}
    for txn in _owner_movements(db, owner_id, kind):
        key = normalize_description(txn.original_description or txn.description)
        if len(key) < 3:
            continue
        groups.setdefault(key, []).append(txn)

    detected: List[DetectedSubscription] = []
    for key, txns in groups.items():
        if len(txns) < MIN_OCCURRENCES:
            continue

        amounts = [float(t.debit_amount if kind == "expense" else t.credit_amount) for t in txns]
        amount_cv = coefficient_of_variation(amounts)
        if amount_cv > MAX_AMOUNT_CV:
            continue

        dates = [t.transaction_date for t in txns]
        intervals = intervals_in_days(dates)
        frequency = classify_frequency(mean(intervals))
        if frequency is None:
            continue

        expected = EXPECTED_INTERVAL_DAYS[frequency]
        if max(abs(i - expected) for i in intervals) > tolerances[frequency]:
            continue

        first = txns[0]
        detected.append(
            DetectedSubscription(
                pattern=key,
                merchant_name=extract_merchant_name(first.original_description or first.description),
                typical_amount=penny(mean(amounts)),
                frequency=frequency,
                confidence=calculate_confidence(amount_cv, coefficient_of_variation(intervals), len(txns)),
                last_date=max(dates),
                billing_day=typical_day(dates),
                occurrence_count=len(txns),
                type=kind,
            )
        )

    detected.sort(key=lambda d: (-d.confidence, d.pattern))
    logger.info("[subscriptions] owner=%s kind=%s detected=%s", owner_id, kind, len(detected))
    return detected


def detect_subscriptions(db: Session, owner_id: int) -> List[DetectedSubscription]:
    """Regular debit charges of the owner, most confident first."""
    return _detect(db, owner_id, "expense")


def detect_recurring_income(db: Session, owner_id: int) -> List[DetectedSubscription]:
    """Regular credits (salary, rent received, ...), most confident first."""
    return _detect(db, owner_id, "income")


# -------------------------
# CRUD
# -------------------------

def _validate(db: Session, data: Dict[str, Any]) -> None:
    frequency = data.get("frequency")
    if frequency is not None and frequency not in FREQUENCIES:
        raise InvalidFrequencyError(frequency, FREQUENCIES)
    kind = data.get("type")
    if kind is not None and kind not in VALID_TYPES:
        raise InvalidTypeError(kind, VALID_TYPES)
    require_category(db, data.get("category_id"))


def serialize_subscription(sub: Subscription) -> Dict[str, Any]:
    return {
        "id": sub.id,
        "merchant_pattern": sub.merchant_pattern,
        "display_name": sub.display_name,
        "category_id": sub.category_id,
        "category_name": sub.category.name if sub.category else None,
        "expected_amount": sub.expected_amount,
        "frequency": sub.frequency,
        "billing_day": sub.billing_day,
        "next_expected_date": sub.next_expected_date,
        "last_charged_date": sub.last_charged_date,
        "type": sub.type,
        "is_active": sub.is_active,
    }


def require_subscription(db: Session, subscription_id: int, owner_id: Optional[int] = None) -> Subscription:
    sub = db.get(Subscription, subscription_id)
    if not sub or (owner_id is not None and sub.user_id != owner_id):
        raise SubscriptionNotFoundError(subscription_id)
    return sub


def get_subscription_by_id(db: Session, subscription_id: int, owner_id: Optional[int] = None) -> Dict[str, Any]:
    return serialize_subscription(require_subscription(db, subscription_id, owner_id))


def get_subscriptions(
    db: Session,
    owner_id: int,
    active_only: bool = True,
    type: Optional[str] = None,
) -> List[Dict[str, Any]]:
    stmt = select(Subscription).where(Subscription.user_id == owner_id)
    if active_only:
        stmt = stmt.where(Subscription.is_active.is_(True))
    if type in VALID_TYPES:
        stmt = stmt.where(Subscription.type == type)
    rows = db.execute(stmt.order_by(Subscription.display_name.asc(), Subscription.id.asc())).scalars().all()
    return [serialize_subscription(s) for s in rows]


def create_subscription(db: Session, owner_id: int, data: Dict[str, Any]) -> Dict[str, Any]:
    if not data.get("merchant_pattern"):
        raise RequiredFieldMissingError("merchant_pattern")
    if not data.get("display_name"):
        raise RequiredFieldMissingError("display_name")
    _validate(db, data)

    with atomic(db):
        sub = Subscription(
            user_id=owner_id,
            merchant_pattern=data["merchant_pattern"],
            display_name=data["display_name"],
            category_id=data.get("category_id"),
            expected_amount=data.get("expected_amount"),
            frequency=data.get("frequency") or "monthly",
            billing_day=data.get("billing_day"),
            next_expected_date=data.get("next_expected_date"),
            last_charged_date=data.get("last_charged_date"),
            type=data.get("type") or "expense",
        )
        db.add(sub)
        db.flush()

    logger.info("[subscriptions] created id=%s owner=%s", sub.id, owner_id)
    return serialize_subscription(sub)


_UPDATABLE_FIELDS = (
    "display_name",
    "merchant_pattern",
    "category_id",
    "expected_amount",
    "frequency",
    "billing_day",
    "next_expected_date",
    "last_charged_date",
    "is_active",
    "type",
)


def update_subscription(
    db: Session,
    subscription_id: int,
    data: Dict[str, Any],
    owner_id: Optional[int] = None,
) -> Dict[str, Any]:
    sub = require_subscription(db, subscription_id, owner_id)
    _validate(db, data)

    changes = {k: data[k] for k in _UPDATABLE_FIELDS if k in data}
    if not changes:
        return serialize_subscription(sub)

    with atomic(db):
        for key, value in changes.items():
            setattr(sub, key, bool(value) if key == "is_active" else value)
        sub.updated_at = _now()
        db.flush()

    return serialize_subscription(sub)


def delete_subscription(db: Session, subscription_id: int, owner_id: Optional[int] = None) -> Dict[str, Any]:
    """Soft delete: the row stays, flagged inactive."""
    with atomic(db):
        sub = require_subscription(db, subscription_id, owner_id)
        sub.is_active = False
        sub.updated_at = _now()
        db.flush()

    return {**serialize_subscription(sub), "deleted": True}


# -------------------------
# Summaries
# -------------------------

def to_monthly_amount(amount: Optional[float], frequency: Optional[str]) -> float:
    if not amount:
        return 0.0
    if frequency == "weekly":
        return penny(amount * 52 / 12)
    if frequency == "fortnightly":
        return penny(amount * 26 / 12)
    if frequency == "quarterly":
        return penny(amount / 3)
    if frequency == "yearly":
        return penny(amount / 12)
    return float(amount)


def get_upcoming_charges(
    db: Session,
    owner_id: int,
    days: int = 30,
    *,
    today: Optional[date] = None,
) -> List[Dict[str, Any]]:
    today = today or date.today()
    rows = db.execute(
        select(Subscription)
        .where(
            Subscription.user_id == owner_id,
            Subscription.is_active.is_(True),
            Subscription.next_expected_date >= today,
            Subscription.next_expected_date <= today + timedelta(days=days),
        )
        .order_by(Subscription.next_expected_date.asc(), Subscription.id.asc())
    ).scalars().all()
    return [serialize_subscription(s) for s in rows]


def get_subscription_summary(db: Session, owner_id: int, *, today: Optional[date] = None) -> Dict[str, Any]:
    """
    Monthly and yearly equivalents of all active subscriptions, split into
    expense and income, plus what falls due in the next 7 days.
    """
    active = db.execute(
        select(Subscription).where(
            Subscription.user_id == owner_id,
            Subscription.is_active.is_(True),
        )
    ).scalars().all()

    totals = {kind: 0.0 for kind in VALID_TYPES}
    counts = {kind: 0 for kind in VALID_TYPES}
    for sub in active:
        kind = "income" if sub.type == "income" else "expense"
        totals[kind] += to_monthly_amount(sub.expected_amount, sub.frequency)
        counts[kind] += 1

    upcoming = get_upcoming_charges(db, owner_id, 7, today=today)
    due = {kind: 0.0 for kind in VALID_TYPES}
    for sub in upcoming:
        kind = "income" if sub["type"] == "income" else "expense"
        due[kind] += sub["expected_amount"] or 0.0

    monthly_expenses = penny(totals["expense"])
    monthly_income = penny(totals["income"])
    monthly_net = penny(monthly_income - monthly_expenses)

    return {
        "active_count": len(active),
        "expenses": {
            "monthly": monthly_expenses,
            "yearly": penny(monthly_expenses * 12),
            "count": counts["expense"],
            "upcoming_7_days": penny(due["expense"]),
        },
        "income": {
            "monthly": monthly_income,
            "yearly": penny(monthly_income * 12),
            "count": counts["income"],
            "upcoming_7_days": penny(due["income"]),
        },
        "net": {
            "monthly": monthly_net,
            "yearly": penny(monthly_net * 12),
        },
    }
