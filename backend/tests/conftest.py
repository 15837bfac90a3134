import os
import pathlib
import sys
import tempfile
from uuid import uuid4

import pytest


REPO_ROOT = pathlib.Path(__file__).resolve().parents[2]
sys.path.append(str(REPO_ROOT))


def pytest_configure():
    # an explicit database wins; otherwise every run gets a throwaway SQLite file
    if os.getenv("DATABASE_URL") or os.getenv("SQLALCHEMY_DATABASE_URL"):
        return
    scratch = pathlib.Path(tempfile.mkdtemp(prefix="txn-intel-tests-"))
    os.environ["DATABASE_URL"] = f"sqlite:///{scratch / 'engine.db'}"


@pytest.fixture(scope="session")
def sqlite_engine():
    from backend.app.db import Base, engine

    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture()
def sqlite_session(sqlite_engine):
    from backend.app.db import Base, SessionLocal

    # modules with their own fixtures may have dropped the schema
    Base.metadata.create_all(bind=sqlite_engine)
    with SessionLocal() as session:
        yield session


@pytest.fixture()
def make_owner(sqlite_session):
    """Factory for a user plus one current account; emails are unique per call."""
    from backend.app.models import Account, User

    def _make(opening_balance: float = 0.0, account_name: str = "Current"):
        user = User(email=f"{uuid4().hex}@example.com", name="Owner")
        sqlite_session.add(user)
        sqlite_session.flush()
        account = Account(
            user_id=user.id,
            account_name=account_name,
            account_number=uuid4().hex[:8],
            opening_balance=opening_balance,
            current_balance=opening_balance,
        )
        sqlite_session.add(account)
        sqlite_session.commit()
        return user, account

    return _make


@pytest.fixture()
def owner_headers():
    def _headers(user):
        return {"X-User-Id": str(user.id)}

    return _headers


@pytest.fixture()
def api_client(sqlite_session):
    from fastapi.testclient import TestClient

    from backend.app.db import get_db
    from backend.app.main import app

    def _shared_session():
        yield sqlite_session

    app.dependency_overrides[get_db] = _shared_session
    with TestClient(app) as client:
        yield client
    app.dependency_overrides.clear()
