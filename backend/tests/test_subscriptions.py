from datetime import date, timedelta
import os
import sys
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[2]))
os.environ.setdefault("DATABASE_URL", "sqlite:///./test_subscriptions.db")

from backend.app.db import Base, SessionLocal, engine
from backend.app.domain.errors import (
    CategoryNotFoundError,
    InvalidFrequencyError,
    InvalidTypeError,
    RequiredFieldMissingError,
    SubscriptionNotFoundError,
)
from backend.app.models import Account, Category, Subscription, Transaction, User
from backend.app.services import subscription_service
from backend.app.services.subscription_service import calculate_confidence, to_monthly_amount


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


def _create_account(db_session, email="subs@example.com"):
    user = User(email=email)
    db_session.add(user)
    db_session.flush()
    account = Account(user_id=user.id, account_name="Current", account_number=email)
    db_session.add(account)
    db_session.commit()
    return user, account


def _add(db_session, account, dates, description, *, debit=0.0, credit=0.0):
    for day in dates:
        db_session.add(
            Transaction(
                account_id=account.id,
                transaction_date=day,
                description=description,
                debit_amount=debit,
                credit_amount=credit,
            )
        )
    db_session.commit()


def test_regular_monthly_charge_has_high_confidence(db_session):
    user, account = _create_account(db_session)
    dates = [date(2025, m, 5) for m in (1, 2, 3)]
    _add(db_session, account, dates, "CARD PAYMENT TO SPOTIFY.COM", debit=9.99)

    detected = subscription_service.detect_subscriptions(db_session, user.id)

    assert len(detected) == 1
    sub = detected[0]
    assert sub.frequency == "monthly"
    assert sub.merchant_name == "Spotify"
    assert sub.typical_amount == 9.99
    assert sub.billing_day == 5
    assert sub.last_date == date(2025, 3, 5)
    assert sub.type == "expense"
    assert 0.8 <= sub.confidence <= 1.0


def test_confidence_formula_and_bounds():
    assert calculate_confidence(0.0, 0.0, 6) == 1.0
    assert calculate_confidence(0.0, 0.0, 2) == 0.92
    assert calculate_confidence(10.0, 30.0, 2) == 0.52
    assert calculate_confidence(50.0, 90.0, 1) == 0.5
    for amount_cv in (0.0, 5.0, 10.0, 40.0):
        for interval_cv in (0.0, 15.0, 60.0):
            for count in (2, 5, 50):
                assert 0.0 <= calculate_confidence(amount_cv, interval_cv, count) <= 1.0


def test_monthly_outside_tolerance_is_rejected(db_session):
    user, account = _create_account(db_session)
    _add(db_session, account, [date(2025, 1, 1), date(2025, 1, 26), date(2025, 3, 5)], "MAGAZINE CLUB", debit=5.0)

    assert subscription_service.detect_subscriptions(db_session, user.id) == []


def test_income_uses_looser_monthly_tolerance(db_session):
    user, account = _create_account(db_session)
    # 38 and 22 day gaps average 30 but sit 8 days off the expected interval
    dates = [date(2025, 1, 1), date(2025, 2, 8), date(2025, 3, 2)]
    _add(db_session, account, dates, "ACME LTD SALARY", credit=2500.0)
    _add(db_session, account, dates, "ACME LTD EXPENSES", debit=2500.0)

    income = subscription_service.detect_recurring_income(db_session, user.id)
    expenses = subscription_service.detect_subscriptions(db_session, user.id)

    assert [d.pattern for d in income] == ["ACME LTD SALARY"]
    assert income[0].type == "income"
    assert expenses == []


def test_single_occurrence_and_transfers_are_ignored(db_session):
    user, account = _create_account(db_session)
    _add(db_session, account, [date(2025, 1, 5)], "ONE OFF", debit=9.0)
    _add(db_session, account, [date(2025, 1, 5), date(2025, 2, 5)], "MOVE TO SAVINGS", debit=100.0)
    for txn in db_session.query(Transaction).filter(Transaction.description == "MOVE TO SAVINGS"):
        txn.is_transfer = True
    db_session.commit()

    assert subscription_service.detect_subscriptions(db_session, user.id) == []


def test_results_sorted_by_confidence(db_session):
    user, account = _create_account(db_session)
    _add(db_session, account, [date(2025, m, 1) for m in range(1, 7)], "STREAMING PLUS", debit=7.99)
    _add(db_session, account, [date(2025, 1, 10), date(2025, 2, 10)], "CLOUD STORAGE", debit=2.49)

    detected = subscription_service.detect_subscriptions(db_session, user.id)

    assert [d.pattern for d in detected] == ["STREAMING PLUS", "CLOUD STORAGE"]
    assert detected[0].confidence >= detected[1].confidence


def test_detection_is_owner_scoped(db_session):
    user, _ = _create_account(db_session)
    _, stranger_account = _create_account(db_session, email="stranger@example.com")
    _add(db_session, stranger_account, [date(2025, m, 5) for m in (1, 2, 3)], "NETFLIX", debit=10.99)

    assert subscription_service.detect_subscriptions(db_session, user.id) == []


def test_create_validates_input(db_session):
    user, _ = _create_account(db_session)

    with pytest.raises(RequiredFieldMissingError, match="merchant_pattern is required"):
        subscription_service.create_subscription(db_session, user.id, {"display_name": "Netflix"})
    with pytest.raises(RequiredFieldMissingError, match="display_name is required"):
        subscription_service.create_subscription(db_session, user.id, {"merchant_pattern": "NETFLIX"})
    with pytest.raises(InvalidFrequencyError, match="Must be one of"):
        subscription_service.create_subscription(
            db_session, user.id, {"merchant_pattern": "NETFLIX", "display_name": "Netflix", "frequency": "daily"}
        )
    with pytest.raises(InvalidTypeError):
        subscription_service.create_subscription(
            db_session, user.id, {"merchant_pattern": "NETFLIX", "display_name": "Netflix", "type": "gift"}
        )
    with pytest.raises(CategoryNotFoundError):
        subscription_service.create_subscription(
            db_session, user.id, {"merchant_pattern": "NETFLIX", "display_name": "Netflix", "category_id": 404}
        )
    assert db_session.query(Subscription).count() == 0


def test_crud_round_trip(db_session):
    user, _ = _create_account(db_session)
    fun = Category(name="Entertainment", type="expense")
    db_session.add(fun)
    db_session.commit()

    created = subscription_service.create_subscription(
        db_session,
        user.id,
        {"merchant_pattern": "NETFLIX", "display_name": "Netflix", "expected_amount": 10.99, "category_id": fun.id},
    )
    assert created["frequency"] == "monthly"
    assert created["type"] == "expense"
    assert created["category_name"] == "Entertainment"

    updated = subscription_service.update_subscription(
        db_session, created["id"], {"expected_amount": 12.99, "frequency": "yearly"}, user.id
    )
    assert updated["expected_amount"] == 12.99
    assert updated["frequency"] == "yearly"

    deleted = subscription_service.delete_subscription(db_session, created["id"], user.id)
    assert deleted["deleted"] is True
    assert deleted["is_active"] is False
    assert subscription_service.get_subscriptions(db_session, user.id) == []
    assert len(subscription_service.get_subscriptions(db_session, user.id, active_only=False)) == 1


def test_unknown_or_foreign_subscription(db_session):
    user, _ = _create_account(db_session)
    stranger, _ = _create_account(db_session, email="stranger@example.com")
    theirs = subscription_service.create_subscription(
        db_session, stranger.id, {"merchant_pattern": "GYM", "display_name": "Gym"}
    )

    with pytest.raises(SubscriptionNotFoundError):
        subscription_service.get_subscription_by_id(db_session, 999, user.id)
    with pytest.raises(SubscriptionNotFoundError):
        subscription_service.update_subscription(db_session, theirs["id"], {"display_name": "Mine"}, user.id)


def test_to_monthly_amount():
    assert to_monthly_amount(12.0, "weekly") == 52.0
    assert to_monthly_amount(12.0, "fortnightly") == 26.0
    assert to_monthly_amount(9.99, "monthly") == 9.99
    assert to_monthly_amount(30.0, "quarterly") == 10.0
    assert to_monthly_amount(120.0, "yearly") == 10.0
    assert to_monthly_amount(None, "monthly") == 0.0


def test_summary_and_upcoming(db_session):
    user, _ = _create_account(db_session)
    today = date(2025, 6, 1)
    for data in (
        {"merchant_pattern": "NETFLIX", "display_name": "Netflix", "expected_amount": 10.0,
         "next_expected_date": today + timedelta(days=3)},
        {"merchant_pattern": "INSURER", "display_name": "Insurance", "expected_amount": 120.0,
         "frequency": "yearly", "next_expected_date": today + timedelta(days=20)},
        {"merchant_pattern": "ACME", "display_name": "Salary", "expected_amount": 2000.0,
         "type": "income", "next_expected_date": today + timedelta(days=5)},
    ):
        subscription_service.create_subscription(db_session, user.id, data)

    summary = subscription_service.get_subscription_summary(db_session, user.id, today=today)
    upcoming = subscription_service.get_upcoming_charges(db_session, user.id, 30, today=today)

    assert summary["active_count"] == 3
    assert summary["expenses"] == {"monthly": 20.0, "yearly": 240.0, "count": 2, "upcoming_7_days": 10.0}
    assert summary["income"] == {"monthly": 2000.0, "yearly": 24000.0, "count": 1, "upcoming_7_days": 2000.0}
    assert summary["net"] == {"monthly": 1980.0, "yearly": 23760.0}
    assert [s["display_name"] for s in upcoming] == ["Netflix", "Salary", "Insurance"]
