import pytest

pytest.importorskip("httpx")

from datetime import date
from uuid import uuid4

from backend.app.models import Account, Transaction



def test_requests_without_owner_are_rejected(api_client):
    assert api_client.get("/api/anomalies/stats").status_code == 401
    assert api_client.get("/api/anomalies/stats", headers={"X-User-Id": "abc"}).status_code == 401
    assert api_client.get("/api/anomalies/stats", headers={"X-User-Id": "999999"}).status_code == 401


def test_health(api_client):
    resp = api_client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"ok": True}


def test_account_summary_and_recalculate(api_client, sqlite_session, make_owner, owner_headers):
    user, account = make_owner(opening_balance=1000.0)
    sqlite_session.add_all(
        [
            Transaction(account_id=account.id, transaction_date=date(2024, 1, 10), description="SALARY", credit_amount=2500.0),
            Transaction(account_id=account.id, transaction_date=date(2024, 1, 15), description="RENT", debit_amount=900.0),
            Transaction(account_id=account.id, transaction_date=date(2024, 2, 1), description="GROCER", debit_amount=120.5),
        ]
    )
    sqlite_session.commit()

    recalculated = api_client.post(f"/api/accounts/{account.id}/recalculate", headers=owner_headers(user))
    assert recalculated.status_code == 200
    assert recalculated.json() == {"account_id": account.id, "current_balance": 2479.5}

    january = api_client.get(f"/api/accounts/{account.id}/summary", params={"month": "2024-01"}, headers=owner_headers(user))
    assert january.status_code == 200
    assert january.json() == {"income": 2500.0, "expenses": 900.0, "net": 1600.0, "balance": 2479.5}

    verify = api_client.get(f"/api/accounts/{account.id}/verify", headers=owner_headers(user))
    assert verify.json() == {"account_id": account.id, "accurate": True}


def test_account_errors_map_to_status_codes(api_client, make_owner, owner_headers):
    user, account = make_owner()
    stranger, _ = make_owner()

    bad_month = api_client.get(
        f"/api/accounts/{account.id}/summary", params={"month": "2024-13"}, headers=owner_headers(user)
    )
    assert bad_month.status_code == 400
    assert "detail" in bad_month.json()

    missing = api_client.get("/api/accounts/987654/summary", headers=owner_headers(user))
    assert missing.status_code == 404

    foreign = api_client.get(f"/api/accounts/{account.id}/summary", headers=owner_headers(stranger))
    assert foreign.status_code == 404


def test_transfer_detect_and_link(api_client, sqlite_session, make_owner, owner_headers):
    user, current = make_owner()
    savings = Account(user_id=user.id, account_name="Savings", account_number=uuid4().hex[:8])
    sqlite_session.add(savings)
    sqlite_session.flush()
    out = Transaction(account_id=current.id, transaction_date=date(2024, 5, 1), description="TO SAVINGS", debit_amount=250.0)
    incoming = Transaction(account_id=savings.id, transaction_date=date(2024, 5, 2), description="FROM CURRENT", credit_amount=250.0)
    sqlite_session.add_all([out, incoming])
    sqlite_session.commit()

    detected = api_client.get("/api/transfers/detect", headers=owner_headers(user))
    assert detected.status_code == 200
    assert detected.json() == {
        "detected": 1,
        "pairs": [{"debit_txn_id": out.id, "credit_txn_id": incoming.id, "amount": 250.0}],
    }

    linked = api_client.post(
        "/api/transfers/link", json={"txn1_id": out.id, "txn2_id": incoming.id}, headers=owner_headers(user)
    )
    assert linked.json() == {"success": True, "linked_count": 2}

    audit = api_client.get("/api/audit", params={"event_type": "transfer_linked"}, headers=owner_headers(user))
    assert [item["entity_id"] for item in audit.json()["items"]] == [out.id]

    missing = api_client.post(
        "/api/transfers/link", json={"txn1_id": out.id, "txn2_id": 987654}, headers=owner_headers(user)
    )
    assert missing.status_code == 404


def test_subscription_create_validation(api_client, make_owner, owner_headers):
    user, _ = make_owner()

    missing = api_client.post("/api/subscriptions", json={"display_name": "Netflix"}, headers=owner_headers(user))
    assert missing.status_code == 400

    bad_frequency = api_client.post(
        "/api/subscriptions",
        json={"merchant_pattern": "NETFLIX", "display_name": "Netflix", "frequency": "daily"},
        headers=owner_headers(user),
    )
    assert bad_frequency.status_code == 400

    created = api_client.post(
        "/api/subscriptions",
        json={"merchant_pattern": "NETFLIX", "display_name": "Netflix", "expected_amount": 10.99},
        headers=owner_headers(user),
    )
    assert created.status_code == 200
    body = created.json()
    assert body["frequency"] == "monthly"
    assert body["type"] == "expense"

    fetched = api_client.get(f"/api/subscriptions/{body['id']}", headers=owner_headers(user))
    assert fetched.json()["display_name"] == "Netflix"
    assert api_client.get("/api/subscriptions/987654", headers=owner_headers(user)).status_code == 404


def test_anomaly_detect_and_stats(api_client, sqlite_session, make_owner, owner_headers):
    user, account = make_owner()
    sqlite_session.add_all(
        [
            Transaction(account_id=account.id, transaction_date=date(2025, 6, 1), description="COFFEE HOUSE", debit_amount=3.2),
            Transaction(account_id=account.id, transaction_date=date(2025, 6, 1), description="COFFEE HOUSE", debit_amount=3.2),
        ]
    )
    sqlite_session.commit()

    detected = api_client.post(
        "/api/anomalies/detect", json={"days": 30, "reference_date": "2025-06-20"}, headers=owner_headers(user)
    )
    assert detected.status_code == 200
    assert [a["anomaly_type"] for a in detected.json()] == ["potential_duplicate"]

    stats = api_client.get("/api/anomalies/stats", headers=owner_headers(user))
    assert stats.json()["total"] == 1
    assert stats.json()["pending"] == 1

    anomaly_id = api_client.get("/api/anomalies", headers=owner_headers(user)).json()[0]["id"]
    dismissed = api_client.post(f"/api/anomalies/{anomaly_id}/dismiss", headers=owner_headers(user))
    assert dismissed.json()["dismissed"] is True
    assert api_client.post("/api/anomalies/987654/dismiss", headers=owner_headers(user)).status_code == 404


def test_self_link_is_rejected(api_client, sqlite_session, make_owner, owner_headers):
    user, account = make_owner()
    txn = Transaction(account_id=account.id, transaction_date=date(2024, 5, 1), description="ODD", debit_amount=5.0)
    sqlite_session.add(txn)
    sqlite_session.commit()

    resp = api_client.post(
        "/api/transfers/link", json={"txn1_id": txn.id, "txn2_id": txn.id}, headers=owner_headers(user)
    )

    assert resp.status_code == 400
    assert resp.json() == {"detail": "A transaction cannot be linked to itself"}
