from datetime import date, datetime
import os
import sys
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[2]))
os.environ.setdefault("DATABASE_URL", "sqlite:///./test_audit_logs.db")

from backend.app.db import Base, SessionLocal, engine
from backend.app.domain.errors import ValidationError
from backend.app.models import Account, AuditLog, Transaction, User
from backend.app.services import audit_service, transfer_service


@pytest.fixture()
def db_session():
    engine.dispose()
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


def _create_user(db_session, email="audit@example.com"):
    user = User(email=email)
    db_session.add(user)
    db_session.commit()
    return user


def _create_audit_log(db_session, user_id, *, created_at, event_type="transfer_linked", entity_id=None):
    row = AuditLog(
        user_id=user_id,
        event_type=event_type,
        actor="system",
        entity_type="transaction",
        entity_id=entity_id,
        created_at=created_at,
    )
    db_session.add(row)
    db_session.commit()
    return row


def test_audit_logs_for_transfer_mutations(db_session):
    user = _create_user(db_session)
    a = Account(user_id=user.id, account_name="Current", account_number="A")
    b = Account(user_id=user.id, account_name="Savings", account_number="B")
    db_session.add_all([a, b])
    db_session.flush()
    out = Transaction(account_id=a.id, transaction_date=date(2025, 1, 1), description="TO SAVINGS", debit_amount=50.0)
    incoming = Transaction(account_id=b.id, transaction_date=date(2025, 1, 1), description="FROM CURRENT", credit_amount=50.0)
    db_session.add_all([out, incoming])
    db_session.commit()

    transfer_service.link_transfer_pair(db_session, out.id, incoming.id, user.id, actor="user:7")
    transfer_service.unlink_transfer(db_session, incoming.id, user.id)

    result = audit_service.list_audit_events(db_session, user.id)
    assert {item["event_type"] for item in result["items"]} == {"transfer_linked", "transfer_unlinked"}
    linked = next(item for item in result["items"] if item["event_type"] == "transfer_linked")
    assert linked["actor"] == "user:7"
    assert linked["after_state"] == {"transaction_ids": [out.id, incoming.id]}


def test_audit_log_ordering_and_owner_scope(db_session):
    user = _create_user(db_session)
    stranger = _create_user(db_session, email="stranger@example.com")
    _create_audit_log(db_session, user.id, created_at=datetime(2024, 1, 1, 12), event_type="transfer_linked")
    _create_audit_log(db_session, user.id, created_at=datetime(2024, 1, 2, 12), event_type="transfer_unlinked")
    _create_audit_log(db_session, user.id, created_at=datetime(2024, 1, 3, 12), event_type="anomaly_dismissed")
    _create_audit_log(db_session, stranger.id, created_at=datetime(2024, 1, 4, 12), event_type="transaction_deleted")

    result = audit_service.list_audit_events(db_session, user.id, limit=10)

    assert [item["event_type"] for item in result["items"]] == [
        "anomaly_dismissed",
        "transfer_unlinked",
        "transfer_linked",
    ]


def test_audit_log_filters(db_session):
    user = _create_user(db_session)
    _create_audit_log(db_session, user.id, created_at=datetime(2024, 2, 1, 9), event_type="transfer_linked", entity_id=1)
    _create_audit_log(db_session, user.id, created_at=datetime(2024, 2, 2, 9), event_type="anomaly_dismissed", entity_id=2)

    by_type = audit_service.list_audit_events(db_session, user.id, event_type="anomaly_dismissed")
    by_entity = audit_service.list_audit_events(db_session, user.id, entity_type="transaction", entity_id=1)

    assert [item["event_type"] for item in by_type["items"]] == ["anomaly_dismissed"]
    assert [item["entity_id"] for item in by_entity["items"]] == [1]


def test_audit_log_cursor_pagination(db_session):
    user = _create_user(db_session)
    rows = [
        _create_audit_log(db_session, user.id, created_at=datetime(2024, 3, day, 12))
        for day in (1, 2, 3, 4)
    ]
    ids = [row.id for row in rows]

    first_page = audit_service.list_audit_events(db_session, user.id, limit=2)
    assert [item["id"] for item in first_page["items"]] == [ids[3], ids[2]]
    assert first_page["next_cursor"] is not None

    second_page = audit_service.list_audit_events(
        db_session,
        user.id,
        limit=2,
        cursor=first_page["next_cursor"],
    )
    assert [item["id"] for item in second_page["items"]] == [ids[1], ids[0]]
    assert second_page["next_cursor"] is None


def test_audit_log_rejects_bad_cursor(db_session):
    user = _create_user(db_session)
    with pytest.raises(ValidationError):
        audit_service.list_audit_events(db_session, user.id, cursor="not-a-cursor")
