from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from backend.app.db import atomic
from backend.app.domain.errors import (
    InvalidFrequencyError,
    PatternNotFoundError,
    RequiredFieldMissingError,
    TransactionNotFoundError,
)
from backend.app.models import Account, RecurringPattern, Transaction
from backend.app.norma.ledger import penny
from backend.app.norma.merchant import extract_merchant_name, has_subscription_keyword
from backend.app.norma.patterns import (
    FREQUENCIES,
    MAX_INTERVAL_CV,
    classify_frequency,
    coefficient_of_variation,
    intervals_in_days,
    mean,
    months_before,
    normalize_description,
    typical_day,
)
from backend.app.services.category_resolver import entertainment_category_id, require_category

logger = logging.getLogger(__name__)

MIN_PATTERN_KEY_LENGTH = 3


@dataclass(frozen=True)
class RecurrenceOptions:
    min_occurrences: int = 3
    # amount CV threshold, percent
    max_amount_variance: float = 10.0
    # 0 means all history
    lookback_months: int = 12


@dataclass(frozen=True)
class DetectedPattern:
    id: int
    description_pattern: str
    merchant_name: str
    typical_amount: float
    typical_day: Optional[int]
    frequency: str
    category_id: Optional[int]
    last_seen: date
    is_subscription: bool
    occurrence_count: int
    transaction_ids: List[int] = field(default_factory=list)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _amount(txn: Transaction) -> float:
    return float(txn.debit_amount) if (txn.debit_amount or 0) > 0 else float(txn.credit_amount or 0.0)


def _dominant_category(txns: Sequence[Transaction]) -> Optional[int]:
    counts = Counter(t.category_id for t in txns if t.category_id is not None)
    if not counts:
        return None
    best = max(counts.values())
    # ties go to the category seen first
    for txn in txns:
        if txn.category_id is not None and counts[txn.category_id] == best:
            return txn.category_id
    return None


def _group_by_pattern(txns: Iterable[Transaction]) -> Dict[str, List[Transaction]]:
    grouped: Dict[str, List[Transaction]] = {}
    for txn in txns:
        key = normalize_description(txn.original_description or txn.description)
        if len(key) < MIN_PATTERN_KEY_LENGTH:
            continue
        grouped.setdefault(key, []).append(txn)
    return grouped


def _candidate_transactions(
    db: Session,
    owner_id: int,
    lookback_months: int,
    today: date,
) -> List[Transaction]:
    stmt = (
        select(Transaction)
        .join(Account, Account.id == Transaction.account_id)
        .where(Account.user_id == owner_id, Transaction.is_transfer.is_(False))
        .order_by(Transaction.transaction_date.asc(), Transaction.id.asc())
    )
    if lookback_months > 0:
        stmt = stmt.where(Transaction.transaction_date >= months_before(today, lookback_months))
    return list(db.execute(stmt).scalars())


def _upsert_pattern(db: Session, owner_id: int, values: Dict[str, Any]) -> RecurringPattern:
    """
    Find-or-create keyed by the normalized description. An existing row is
    updated in place so its id never changes across runs.
    """
    pattern = db.execute(
        select(RecurringPattern).where(
            RecurringPattern.user_id == owner_id,
            RecurringPattern.description_pattern == values["description_pattern"],
        )
    ).scalars().first()

    if pattern is None:
        pattern = RecurringPattern(user_id=owner_id, **values)
        db.add(pattern)
    else:
        for key, value in values.items():
            setattr(pattern, key, value)
    db.flush()
    return pattern


def detect_recurring_patterns(
    db: Session,
    owner_id: int,
    options: Optional[RecurrenceOptions] = None,
    *,
    today: Optional[date] = None,
) -> List[DetectedPattern]:
    """
    Group non-transfer transactions by normalized description and keep the
    groups whose amounts and intervals are consistent. Survivors are upserted
    into the pattern catalog.

    Filters, in order:
      - at least min_occurrences members
      - amount CV <= max_amount_variance
      - interval CV <= 30 and the average interval maps to a frequency
    """
    opts = options or RecurrenceOptions()
    today = today or date.today()
    txns = _candidate_transactions(db, owner_id, opts.lookback_months, today)

    entertainment_id = entertainment_category_id(db, owner_id)
    detected: List[DetectedPattern] = []

    with atomic(db):
        for key, group in _group_by_pattern(txns).items():
            if len(group) < opts.min_occurrences:
                continue

            amounts = [_amount(t) for t in group]
            if coefficient_of_variation(amounts) > opts.max_amount_variance:
                continue

            dates = [t.transaction_date for t in group]
            intervals = intervals_in_days(dates)
            if not intervals or coefficient_of_variation(intervals) > MAX_INTERVAL_CV:
                continue

            frequency = classify_frequency(mean(intervals))
            if frequency is None:
                continue

            category_id = _dominant_category(group)
            first_description = group[0].original_description or group[0].description
            is_subscription = (
                frequency == "monthly"
                and category_id is not None
                and category_id == entertainment_id
                and has_subscription_keyword(key)
            )

            values = {
                "description_pattern": key,
                "merchant_name": extract_merchant_name(first_description),
                "typical_amount": penny(mean(amounts)),
                "typical_day": typical_day(dates),
                "frequency": frequency,
                "category_id": category_id,
                "last_seen": max(dates),
                "is_subscription": is_subscription,
            }
            pattern = _upsert_pattern(db, owner_id, values)

            detected.append(
                DetectedPattern(
                    id=pattern.id,
                    occurrence_count=len(group),
                    transaction_ids=[t.id for t in group],
                    **values,
                )
            )

    detected.sort(key=lambda p: (-p.occurrence_count, p.description_pattern))
    logger.info("[recurring] owner=%s scanned=%s patterns=%s", owner_id, len(txns), len(detected))
    return detected


# -------------------------
# Catalog management
# -------------------------

def require_pattern(db: Session, pattern_id: int, owner_id: Optional[int] = None) -> RecurringPattern:
    pattern = db.get(RecurringPattern, pattern_id)
    if not pattern or (owner_id is not None and pattern.user_id != owner_id):
        raise PatternNotFoundError(pattern_id)
    return pattern


def _validate_frequency(frequency: Optional[str]) -> None:
    if frequency is not None and frequency not in FREQUENCIES:
        raise InvalidFrequencyError(frequency, FREQUENCIES)


def _transaction_count(db: Session, pattern_id: int) -> int:
    return db.execute(
        select(func.count(Transaction.id)).where(Transaction.recurring_group_id == pattern_id)
    ).scalar_one()


def _serialize_pattern(db: Session, pattern: RecurringPattern) -> Dict[str, Any]:
    return {
        "id": pattern.id,
        "description_pattern": pattern.description_pattern,
        "merchant_name": pattern.merchant_name,
        "typical_amount": pattern.typical_amount,
        "typical_day": pattern.typical_day,
        "frequency": pattern.frequency,
        "category_id": pattern.category_id,
        "category_name": pattern.category.name if pattern.category else None,
        "last_seen": pattern.last_seen,
        "is_subscription": pattern.is_subscription,
        "is_active": pattern.is_active,
        "transaction_count": _transaction_count(db, pattern.id),
    }


def _refresh_last_seen(db: Session, pattern: RecurringPattern) -> None:
    last = db.execute(
        select(func.max(Transaction.transaction_date)).where(
            Transaction.recurring_group_id == pattern.id
        )
    ).scalar()
    if last:
        pattern.last_seen = last


def _owned_transactions(db: Session, transaction_ids: Sequence[int], owner_id: Optional[int]) -> List[Transaction]:
    stmt = select(Transaction).where(Transaction.id.in_(transaction_ids))
    if owner_id is not None:
        stmt = stmt.join(Account, Account.id == Transaction.account_id).where(Account.user_id == owner_id)
    return list(db.execute(stmt).scalars())


def mark_as_recurring(
    db: Session,
    transaction_ids: Optional[Sequence[int]],
    pattern_id: int,
    owner_id: Optional[int] = None,
) -> int:
    """
    Link explicit transactions to a pattern and refresh its last-seen date.

    Every id is validated before anything is written.
    """
    if not transaction_ids:
        raise RequiredFieldMissingError("transaction_ids")

    wanted = list(dict.fromkeys(transaction_ids))
    with atomic(db):
        pattern = require_pattern(db, pattern_id, owner_id)
        found = _owned_transactions(db, wanted, owner_id)
        missing = set(wanted) - {t.id for t in found}
        if missing:
            raise TransactionNotFoundError(
                sorted(missing)[0],
                message="One or more transactions not found",
            )

        now = _now()
        for txn in found:
            txn.is_recurring = True
            txn.recurring_group_id = pattern.id
            txn.updated_at = now
        db.flush()
        _refresh_last_seen(db, pattern)

    return len(found)


def get_all_patterns(db: Session, owner_id: int) -> List[Dict[str, Any]]:
    patterns = db.execute(
        select(RecurringPattern)
        .where(RecurringPattern.user_id == owner_id, RecurringPattern.is_active.is_(True))
        .order_by(RecurringPattern.last_seen.desc(), RecurringPattern.id.asc())
    ).scalars().all()
    return [_serialize_pattern(db, p) for p in patterns]


def get_pattern_by_id(db: Session, pattern_id: int, owner_id: Optional[int] = None) -> Dict[str, Any]:
    return _serialize_pattern(db, require_pattern(db, pattern_id, owner_id))


def get_recurring_transactions(db: Session, pattern_id: int, owner_id: Optional[int] = None) -> List[Transaction]:
    require_pattern(db, pattern_id, owner_id)
    return list(
        db.execute(
            select(Transaction)
            .where(Transaction.recurring_group_id == pattern_id)
            .order_by(Transaction.transaction_date.desc(), Transaction.id.desc())
        ).scalars()
    )


def create_pattern(
    db: Session,
    owner_id: int,
    data: Dict[str, Any],
    transaction_ids: Sequence[int] = (),
) -> Dict[str, Any]:
    description_pattern = (data.get("description_pattern") or "").strip()
    if not description_pattern:
        raise RequiredFieldMissingError("description_pattern")
    _validate_frequency(data.get("frequency"))
    require_category(db, data.get("category_id"))

    with atomic(db):
        pattern = RecurringPattern(
            user_id=owner_id,
            description_pattern=description_pattern,
            merchant_name=data.get("merchant_name"),
            typical_amount=data.get("typical_amount"),
            typical_day=data.get("typical_day"),
            frequency=data.get("frequency") or "monthly",
            category_id=data.get("category_id"),
            is_subscription=bool(data.get("is_subscription", False)),
            last_seen=date.today(),
        )
        db.add(pattern)
        db.flush()

        if transaction_ids:
            found = _owned_transactions(db, list(transaction_ids), owner_id)
            if len(found) != len(set(transaction_ids)):
                raise TransactionNotFoundError(message="One or more transactions not found")
            for txn in found:
                txn.is_recurring = True
                txn.recurring_group_id = pattern.id
            db.flush()
            _refresh_last_seen(db, pattern)

    return _serialize_pattern(db, pattern)


_UPDATABLE_PATTERN_FIELDS = (
    "merchant_name",
    "typical_amount",
    "typical_day",
    "frequency",
    "category_id",
    "is_subscription",
    "is_active",
)


def update_pattern(db: Session, pattern_id: int, data: Dict[str, Any], owner_id: Optional[int] = None) -> Dict[str, Any]:
    """
    Update catalog fields. A changed category is pushed down to every linked
    transaction.
    """
    pattern = require_pattern(db, pattern_id, owner_id)
    _validate_frequency(data.get("frequency"))
    if "category_id" in data:
        require_category(db, data["category_id"])

    with atomic(db):
        for key in _UPDATABLE_PATTERN_FIELDS:
            if key in data:
                setattr(pattern, key, data[key])

        if "category_id" in data:
            now = _now()
            for txn in get_recurring_transactions(db, pattern.id):
                txn.category_id = data["category_id"]
                txn.updated_at = now
        db.flush()

    return _serialize_pattern(db, pattern)


def _unlink_all(db: Session, pattern_id: int) -> int:
    linked = get_recurring_transactions(db, pattern_id)
    now = _now()
    for txn in linked:
        txn.is_recurring = False
        txn.recurring_group_id = None
        txn.updated_at = now
    return len(linked)


def delete_pattern(db: Session, pattern_id: int, owner_id: Optional[int] = None) -> Dict[str, Any]:
    with atomic(db):
        pattern = require_pattern(db, pattern_id, owner_id)
        unlinked = _unlink_all(db, pattern.id)
        db.flush()
        db.delete(pattern)

    return {"deleted": True, "pattern_id": pattern_id, "transactions_unlinked": unlinked}


def unlink_transaction(db: Session, transaction_id: int, owner_id: Optional[int] = None) -> Transaction:
    with atomic(db):
        found = _owned_transactions(db, [transaction_id], owner_id)
        if not found:
            raise TransactionNotFoundError(transaction_id)
        txn = found[0]
        txn.is_recurring = False
        txn.recurring_group_id = None
        txn.updated_at = _now()
    return txn


def get_regular_payments(db: Session, owner_id: int) -> Dict[str, List[Dict[str, Any]]]:
    """
    Active patterns bucketed for display: fortnightly rolls into weekly,
    quarterly into monthly.
    """
    patterns = db.execute(
        select(RecurringPattern)
        .where(RecurringPattern.user_id == owner_id, RecurringPattern.is_active.is_(True))
        .order_by(RecurringPattern.typical_amount.desc())
    ).scalars().all()

    buckets = {"weekly": "weekly", "fortnightly": "weekly", "monthly": "monthly", "quarterly": "monthly", "yearly": "annual"}
    result: Dict[str, List[Dict[str, Any]]] = {"weekly": [], "monthly": [], "annual": []}
    for pattern in patterns:
        bucket = buckets.get(pattern.frequency or "")
        if bucket:
            result[bucket].append(_serialize_pattern(db, pattern))
    return result
