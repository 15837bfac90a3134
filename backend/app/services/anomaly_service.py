"""
Anomaly detection over recent debits.

Rules:
- unusual_amount (medium): more than 3 standard deviations above the
  category's other debits
- new_merchant_large (low): large first purchase from a merchant
- potential_duplicate (high): same day, description and amount
- category_spike (medium): month-to-date category spend at least 3x the
  historical monthly average

Detection is idempotent: re-running over the same data persists nothing new.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import date, timedelta
import logging
from statistics import pstdev
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from backend.app.config import new_merchant_threshold
from backend.app.db import atomic
from backend.app.domain.errors import AnomalyNotFoundError
from backend.app.models import Account, Anomaly, Category, Transaction
from backend.app.norma.ledger import penny
from backend.app.norma.merchant import merchant_key
from backend.app.norma.patterns import mean, months_before
from backend.app.services import audit_service

logger = logging.getLogger(__name__)

UNUSUAL_AMOUNT = "unusual_amount"
NEW_MERCHANT_LARGE = "new_merchant_large"
POTENTIAL_DUPLICATE = "potential_duplicate"
CATEGORY_SPIKE = "category_spike"

SEVERITY = {
    UNUSUAL_AMOUNT: "medium",
    NEW_MERCHANT_LARGE: "low",
    POTENTIAL_DUPLICATE: "high",
    CATEGORY_SPIKE: "medium",
}

MIN_REFERENCE_POINTS = 4
STDDEV_THRESHOLD = 3.0
MIN_SPIKE_HISTORY_MONTHS = 2
SPIKE_RATIO = 3.0


@dataclass(frozen=True)
class AnomalyOptions:
    days: int = 30
    reference_date: Optional[date] = None
    # None means all history
    baseline_months: Optional[int] = None


@dataclass(frozen=True)
class DetectedAnomaly:
    anomaly_type: str
    severity: str
    description: str
    transaction_id: Optional[int] = None
    category_id: Optional[int] = None
    period: Optional[str] = None
    amount: Optional[float] = None


def _owner_debits(owner_id: int):
    return (
        select(Transaction)
        .join(Account, Account.id == Transaction.account_id)
        .where(
            Account.user_id == owner_id,
            Transaction.is_transfer.is_(False),
            Transaction.debit_amount > 0,
        )
    )


def _baseline_start(reference: date, baseline_months: Optional[int]) -> Optional[date]:
    if baseline_months is None:
        return None
    return months_before(reference, baseline_months)


def _unusual_amounts(
    db: Session,
    owner_id: int,
    window: Sequence[Transaction],
    reference: date,
    baseline_months: Optional[int],
) -> List[DetectedAnomaly]:
    by_category: Dict[int, List[Transaction]] = defaultdict(list)
    for txn in window:
        if txn.category_id is not None:
            by_category[txn.category_id].append(txn)

    start = _baseline_start(reference, baseline_months)
    found: List[DetectedAnomaly] = []
    for category_id, candidates in by_category.items():
        stmt = _owner_debits(owner_id).where(
            Transaction.category_id == category_id,
            Transaction.transaction_date <= reference,
        )
        if start is not None:
            stmt = stmt.where(Transaction.transaction_date >= start)
        history = list(db.execute(stmt).scalars())

        for txn in candidates:
            # leave-one-out: the candidate never shifts its own baseline
            others = [float(h.debit_amount) for h in history if h.id != txn.id]
            if len(others) < MIN_REFERENCE_POINTS:
                continue
            avg, spread = mean(others), pstdev(others)
            if spread == 0:
                continue
            amount = float(txn.debit_amount)
            if amount > avg + STDDEV_THRESHOLD * spread:
                deviation = (amount - avg) / spread
                found.append(
                    DetectedAnomaly(
                        anomaly_type=UNUSUAL_AMOUNT,
                        severity=SEVERITY[UNUSUAL_AMOUNT],
                        description=(
                            f"Amount {penny(amount)} is {penny(deviation)} standard deviations "
                            f"above category average of {penny(avg)}"
                        ),
                        transaction_id=txn.id,
                        category_id=category_id,
                        amount=penny(amount),
                    )
                )
    return found


def _new_merchants(
    db: Session,
    owner_id: int,
    window: Sequence[Transaction],
    window_start: date,
) -> List[DetectedAnomaly]:
    threshold = new_merchant_threshold()
    large = [t for t in window if float(t.debit_amount) > threshold]
    if not large:
        return []

    earlier = db.execute(
        select(Transaction.description, Transaction.original_description)
        .join(Account, Account.id == Transaction.account_id)
        .where(Account.user_id == owner_id, Transaction.transaction_date < window_start)
    ).all()
    known = {merchant_key(orig or desc) for desc, orig in earlier}

    found: List[DetectedAnomaly] = []
    for txn in large:
        key = merchant_key(txn.original_description or txn.description)
        if key in known:
            continue
        found.append(
            DetectedAnomaly(
                anomaly_type=NEW_MERCHANT_LARGE,
                severity=SEVERITY[NEW_MERCHANT_LARGE],
                description=f'First transaction from new merchant "{key}" with amount {penny(txn.debit_amount)}',
                transaction_id=txn.id,
                category_id=txn.category_id,
                amount=penny(txn.debit_amount),
            )
        )
    return found


def _duplicates(window: Sequence[Transaction]) -> List[DetectedAnomaly]:
    groups: Dict[Tuple[date, str, float], List[Transaction]] = defaultdict(list)
    for txn in window:
        groups[(txn.transaction_date, txn.description, penny(txn.debit_amount))].append(txn)

    found: List[DetectedAnomaly] = []
    for (_, _, amount), members in groups.items():
        # the first row by id is the original
        for txn in sorted(members, key=lambda t: t.id)[1:]:
            found.append(
                DetectedAnomaly(
                    anomaly_type=POTENTIAL_DUPLICATE,
                    severity=SEVERITY[POTENTIAL_DUPLICATE],
                    description=f"Potential duplicate transaction: same amount ({amount}), same day, same description",
                    transaction_id=txn.id,
                    category_id=txn.category_id,
                    amount=amount,
                )
            )
    return found


def _category_spikes(
    db: Session,
    owner_id: int,
    reference: date,
    baseline_months: Optional[int],
) -> List[DetectedAnomaly]:
    month_start = reference.replace(day=1)
    period = reference.strftime("%Y-%m")

    stmt = _owner_debits(owner_id).where(
        Transaction.category_id.is_not(None),
        Transaction.transaction_date <= reference,
    )
    start = _baseline_start(month_start, baseline_months)
    if start is not None:
        stmt = stmt.where(Transaction.transaction_date >= start)

    history: Dict[int, Dict[str, float]] = defaultdict(lambda: defaultdict(float))
    current: Dict[int, float] = defaultdict(float)
    for txn in db.execute(stmt).scalars():
        if txn.transaction_date >= month_start:
            current[txn.category_id] += float(txn.debit_amount)
        else:
            history[txn.category_id][txn.transaction_date.strftime("%Y-%m")] += float(txn.debit_amount)

    names = dict(db.execute(select(Category.id, Category.name).where(Category.id.in_(list(current)))).all()) if current else {}

    found: List[DetectedAnomaly] = []
    for category_id, total in current.items():
        months = history.get(category_id, {})
        if len(months) < MIN_SPIKE_HISTORY_MONTHS:
            continue
        average = mean(list(months.values()))
        if average <= 0 or total < SPIKE_RATIO * average:
            continue
        increase = (total / average - 1) * 100
        found.append(
            DetectedAnomaly(
                anomaly_type=CATEGORY_SPIKE,
                severity=SEVERITY[CATEGORY_SPIKE],
                description=(
                    f"{names.get(category_id, 'Category')} spending is {penny(increase)}% above monthly "
                    f"average ({penny(total)} vs avg {penny(average)})"
                ),
                category_id=category_id,
                period=period,
                amount=penny(total),
            )
        )
    return found


def _already_recorded(db: Session, owner_id: int, anomaly: DetectedAnomaly) -> bool:
    stmt = select(Anomaly.id).where(
        Anomaly.user_id == owner_id,
        Anomaly.anomaly_type == anomaly.anomaly_type,
    )
    if anomaly.transaction_id is not None:
        stmt = stmt.where(Anomaly.transaction_id == anomaly.transaction_id)
    else:
        stmt = stmt.where(
            Anomaly.transaction_id.is_(None),
            Anomaly.category_id == anomaly.category_id,
            Anomaly.period == anomaly.period,
        )
    return db.execute(stmt.limit(1)).first() is not None


def detect_anomalies(
    db: Session,
    owner_id: int,
    options: Optional[AnomalyOptions] = None,
) -> List[DetectedAnomaly]:
    opts = options or AnomalyOptions()
    reference = opts.reference_date or date.today()
    window_start = reference - timedelta(days=opts.days)

    window = list(
        db.execute(
            _owner_debits(owner_id)
            .where(
                Transaction.transaction_date >= window_start,
                Transaction.transaction_date <= reference,
            )
            .order_by(Transaction.transaction_date.desc(), Transaction.id.asc())
        ).scalars()
    )

    detected: List[DetectedAnomaly] = []
    detected += _unusual_amounts(db, owner_id, window, reference, opts.baseline_months)
    detected += _new_merchants(db, owner_id, window, window_start)
    detected += _duplicates(window)
    detected += _category_spikes(db, owner_id, reference, opts.baseline_months)

    inserted = 0
    with atomic(db):
        for anomaly in detected:
            if _already_recorded(db, owner_id, anomaly):
                continue
            db.add(
                Anomaly(
                    user_id=owner_id,
                    transaction_id=anomaly.transaction_id,
                    category_id=anomaly.category_id,
                    period=anomaly.period,
                    anomaly_type=anomaly.anomaly_type,
                    severity=anomaly.severity,
                    description=anomaly.description,
                )
            )
            db.flush()
            inserted += 1

    logger.info(
        "[anomalies] owner=%s window=%s..%s detected=%s inserted=%s",
        owner_id,
        window_start,
        reference,
        len(detected),
        inserted,
    )
    return detected


def _serialize(anomaly: Anomaly) -> Dict[str, Any]:
    txn = anomaly.transaction
    return {
        "id": anomaly.id,
        "transaction_id": anomaly.transaction_id,
        "category_id": anomaly.category_id,
        "period": anomaly.period,
        "anomaly_type": anomaly.anomaly_type,
        "severity": anomaly.severity,
        "description": anomaly.description,
        "is_dismissed": anomaly.is_dismissed,
        "is_confirmed_fraud": anomaly.is_confirmed_fraud,
        "detected_at": anomaly.detected_at,
        "transaction_description": txn.description if txn else None,
        "transaction_amount": txn.debit_amount if txn else None,
        "transaction_date": txn.transaction_date if txn else None,
    }


def get_anomalies(
    db: Session,
    owner_id: int,
    include_dismissed: bool = False,
    limit: int = 50,
) -> List[Dict[str, Any]]:
    stmt = select(Anomaly).where(Anomaly.user_id == owner_id)
    if not include_dismissed:
        stmt = stmt.where(Anomaly.is_dismissed.is_(False))
    rows = db.execute(stmt.order_by(Anomaly.detected_at.desc(), Anomaly.id.desc()).limit(limit)).scalars().all()
    return [_serialize(a) for a in rows]


def _require_owned(db: Session, anomaly_id: int, owner_id: int) -> Anomaly:
    anomaly = db.get(Anomaly, anomaly_id)
    if not anomaly or anomaly.user_id != owner_id:
        raise AnomalyNotFoundError(anomaly_id)
    return anomaly


def dismiss_anomaly(db: Session, anomaly_id: int, owner_id: int, *, actor: str = "user") -> Dict[str, Any]:
    with atomic(db):
        anomaly = _require_owned(db, anomaly_id, owner_id)
        anomaly.is_dismissed = True
        audit_service.log_audit_event(
            db,
            user_id=owner_id,
            event_type="anomaly_dismissed",
            actor=actor,
            entity_type="anomaly",
            entity_id=anomaly.id,
            after={"is_dismissed": True},
        )
    return {"success": True, "id": anomaly_id, "dismissed": True}


def confirm_fraud(db: Session, anomaly_id: int, owner_id: int, *, actor: str = "user") -> Dict[str, Any]:
    with atomic(db):
        anomaly = _require_owned(db, anomaly_id, owner_id)
        anomaly.is_confirmed_fraud = True
        audit_service.log_audit_event(
            db,
            user_id=owner_id,
            event_type="anomaly_confirmed_fraud",
            actor=actor,
            entity_type="anomaly",
            entity_id=anomaly.id,
            after={"is_confirmed_fraud": True},
        )
    logger.warning("[anomalies] fraud confirmed owner=%s anomaly=%s", owner_id, anomaly_id)
    return {"success": True, "id": anomaly_id, "confirmed_fraud": True}


def get_anomaly_stats(db: Session, owner_id: int) -> Dict[str, Any]:
    by_type = dict(
        db.execute(
            select(Anomaly.anomaly_type, func.count(Anomaly.id))
            .where(Anomaly.user_id == owner_id)
            .group_by(Anomaly.anomaly_type)
        ).all()
    )
    by_severity = dict(
        db.execute(
            select(Anomaly.severity, func.count(Anomaly.id))
            .where(Anomaly.user_id == owner_id)
            .group_by(Anomaly.severity)
        ).all()
    )

    rows = db.execute(
        select(Anomaly.is_dismissed, Anomaly.is_confirmed_fraud).where(Anomaly.user_id == owner_id)
    ).all()
    dismissed = sum(1 for d, _ in rows if d)
    fraud = sum(1 for _, f in rows if f)
    pending = sum(1 for d, f in rows if not d and not f)

    return {
        "by_type": by_type,
        "by_severity": by_severity,
        "total": len(rows),
        "dismissed": dismissed,
        "confirmed_fraud": fraud,
        "pending": pending,
    }
