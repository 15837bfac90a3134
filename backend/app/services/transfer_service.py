from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timezone
import logging
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.app.config import transfer_window_days
from backend.app.db import atomic
from backend.app.domain.errors import TransactionNotFoundError, ValidationError
from backend.app.models import Account, Transaction
from backend.app.norma.ledger import penny
from backend.app.services import audit_service
from backend.app.services.category_resolver import other_category_id, transfer_category_id

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransferCandidate:
    debit_txn_id: int
    credit_txn_id: int
    amount: float


def _now() -> datetime:
    return datetime.now(timezone.utc)


def is_internal_transfer(txn: Optional[Transaction]) -> bool:
    if txn is None:
        return False
    return bool(txn.is_transfer)


def _owned_transaction(db: Session, txn_id: int, owner_id: int) -> Optional[Transaction]:
    return db.execute(
        select(Transaction)
        .join(Account, Account.id == Transaction.account_id)
        .where(Transaction.id == txn_id, Account.user_id == owner_id)
    ).scalars().first()


def _unlinked_owner_transactions(db: Session, owner_id: int) -> List[Transaction]:
    return list(
        db.execute(
            select(Transaction)
            .join(Account, Account.id == Transaction.account_id)
            .where(
                Account.user_id == owner_id,
                Transaction.is_transfer.is_(False),
                Transaction.linked_transaction_id.is_(None),
            )
            .order_by(Transaction.transaction_date.asc(), Transaction.id.asc())
        ).scalars()
    )


def find_transfer_candidates(db: Session, owner_id: int) -> List[TransferCandidate]:
    """
    Pair debits with credits of the same penny amount on a different account of
    the same owner, at most `TRANSFER_WINDOW_DAYS` apart.

    Tie-break: debits are scanned in (date, id) order and each claims the
    earliest unclaimed qualifying credit in (date, id) order, so every
    transaction appears in at most one pair.
    """
    window = transfer_window_days()
    txns = _unlinked_owner_transactions(db, owner_id)

    debits = [t for t in txns if penny(t.debit_amount) > 0]
    credits = [t for t in txns if penny(t.credit_amount) > 0]

    credits_by_amount: Dict[float, List[Transaction]] = {}
    for credit in credits:
        credits_by_amount.setdefault(penny(credit.credit_amount), []).append(credit)

    claimed: set[int] = set()
    pairs: List[TransferCandidate] = []

    for debit in debits:
        if debit.id in claimed:
            continue
        amount = penny(debit.debit_amount)
        for credit in credits_by_amount.get(amount, []):
            if credit.id in claimed or credit.id == debit.id:
                continue
            if credit.account_id == debit.account_id:
                continue
            if abs((credit.transaction_date - debit.transaction_date).days) > window:
                continue
            claimed.add(debit.id)
            claimed.add(credit.id)
            pairs.append(TransferCandidate(debit_txn_id=debit.id, credit_txn_id=credit.id, amount=amount))
            break

    return pairs


def detect_transfers(db: Session, owner_id: int) -> Dict[str, object]:
    pairs = find_transfer_candidates(db, owner_id)
    logger.info("[transfers] owner=%s detected=%s", owner_id, len(pairs))
    return {
        "detected": len(pairs),
        "pairs": [asdict(p) for p in pairs],
    }


def _link(db: Session, txn1: Transaction, txn2: Transaction, category_id: Optional[int]) -> None:
    now = _now()
    txn1.is_transfer = True
    txn1.linked_transaction_id = txn2.id
    txn1.category_id = category_id
    txn1.updated_at = now

    txn2.is_transfer = True
    txn2.linked_transaction_id = txn1.id
    txn2.category_id = category_id
    txn2.updated_at = now


def _release_partner(db: Session, txn: Transaction, pair_ids: set, category_id: Optional[int]) -> Optional[int]:
    """Break an existing link of `txn` to a row outside the new pair."""
    if not txn.linked_transaction_id or txn.linked_transaction_id in pair_ids:
        return None
    old = db.get(Transaction, txn.linked_transaction_id)
    if old is None or old.linked_transaction_id != txn.id:
        return None
    old.is_transfer = False
    old.linked_transaction_id = None
    old.category_id = category_id
    old.updated_at = _now()
    return old.id


def link_transfer_pair(
    db: Session,
    txn1_id: int,
    txn2_id: int,
    owner_id: int,
    *,
    actor: str = "user",
) -> Dict[str, object]:
    """
    Mark two transactions as a transfer pair: symmetric link, transfer flag and
    the "Transfer" category on both, or nothing at all.

    A side already linked elsewhere is relinked; its former partner is
    released and reset to "Other" in the same unit of work.
    """
    if txn1_id == txn2_id:
        raise ValidationError("A transaction cannot be linked to itself")

    with atomic(db):
        txn1 = _owned_transaction(db, txn1_id, owner_id)
        txn2 = _owned_transaction(db, txn2_id, owner_id)
        if not txn1:
            raise TransactionNotFoundError(txn1_id)
        if not txn2:
            raise TransactionNotFoundError(txn2_id)

        pair_ids = {txn1.id, txn2.id}
        other_id = other_category_id(db, owner_id)
        released = [
            old_id
            for old_id in (
                _release_partner(db, txn1, pair_ids, other_id),
                _release_partner(db, txn2, pair_ids, other_id),
            )
            if old_id is not None
        ]

        _link(db, txn1, txn2, transfer_category_id(db, owner_id))
        db.flush()

        audit_service.log_audit_event(
            db,
            user_id=owner_id,
            event_type="transfer_linked",
            actor=actor,
            entity_type="transaction",
            entity_id=txn1.id,
            before={"released_transaction_ids": released} if released else None,
            after={"transaction_ids": [txn1.id, txn2.id]},
        )

    logger.info("[transfers] linked owner=%s pair=(%s, %s)", owner_id, txn1_id, txn2_id)
    return {"success": True, "linked_count": 2}


def link_detected_transfers(db: Session, owner_id: int, *, actor: str = "system") -> int:
    """Detect and link every candidate pair in one unit of work."""
    with atomic(db):
        pairs = find_transfer_candidates(db, owner_id)
        category_id = transfer_category_id(db, owner_id)
        for pair in pairs:
            debit = db.get(Transaction, pair.debit_txn_id)
            credit = db.get(Transaction, pair.credit_txn_id)
            _link(db, debit, credit, category_id)
            audit_service.log_audit_event(
                db,
                user_id=owner_id,
                event_type="transfer_linked",
                actor=actor,
                entity_type="transaction",
                entity_id=debit.id,
                after={"transaction_ids": [debit.id, credit.id], "amount": pair.amount},
            )
        db.flush()

    logger.info("[transfers] auto-linked owner=%s pairs=%s", owner_id, len(pairs))
    return len(pairs)


def unlink_transfer(
    db: Session,
    txn_id: int,
    owner_id: int,
    *,
    actor: str = "user",
) -> Dict[str, object]:
    """
    Undo a transfer link on both sides and reset them to the "Other" category.

    A transaction that is not currently linked is a no-op (unlinked_count=0).
    """
    with atomic(db):
        txn = _owned_transaction(db, txn_id, owner_id)
        if not txn:
            raise TransactionNotFoundError(txn_id)

        if not txn.is_transfer or not txn.linked_transaction_id:
            return {"success": True, "unlinked_count": 0}

        partner = db.get(Transaction, txn.linked_transaction_id)
        category_id = other_category_id(db, owner_id)
        now = _now()

        # a partner that no longer points back is left alone
        sides = [txn] + ([partner] if partner and partner.linked_transaction_id == txn.id else [])
        for side in sides:
            side.is_transfer = False
            side.linked_transaction_id = None
            side.category_id = category_id
            side.updated_at = now
        db.flush()

        audit_service.log_audit_event(
            db,
            user_id=owner_id,
            event_type="transfer_unlinked",
            actor=actor,
            entity_type="transaction",
            entity_id=txn.id,
            before={"transaction_ids": [s.id for s in sides]},
        )

    logger.info("[transfers] unlinked owner=%s txn=%s", owner_id, txn_id)
    return {"success": True, "unlinked_count": len(sides)}
