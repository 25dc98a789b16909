import sys
from pathlib import Path
from typing import Dict, Optional

# Ensure project root is on sys.path so `import trade_ledger` works when running the tests directly
ROOT_DIR = Path(__file__).resolve().parents[2]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine, select

from trade_ledger.app import StaffContext, app, get_session, require_staff_context
from trade_ledger.models import User, UserRole
from trade_ledger.permissions import ALL_PERMISSION_KEYS


def build_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    return engine


def get_test_client(
    role: UserRole = UserRole.ADMIN,
    permissions: Optional[Dict[str, bool]] = None,
) -> TestClient:
    engine = build_engine()

    def override_session():
        with Session(engine) as session:
            yield session

    app.dependency_overrides[get_session] = override_session

    granted = permissions if permissions is not None else {key: True for key in ALL_PERMISSION_KEYS}

    def override_staff():
        with Session(engine) as session:
            user = session.exec(select(User).where(User.username == "tester")).first()
            if not user:
                user = User(username="tester", password_hash="test", role=role, is_active=True)
                session.add(user)
                session.commit()
                session.refresh(user)
            yield StaffContext(session=session, user=user, permissions=dict(granted))

    app.dependency_overrides[require_staff_context] = override_staff
    client = TestClient(app)
    client._engine = engine  # type: ignore[attr-defined]
    return client


def get_auth_client() -> TestClient:
    """Client that goes through the real cookie session dependency."""
    engine = build_engine()

    def override_session():
        with Session(engine) as session:
            yield session

    app.dependency_overrides.clear()
    app.dependency_overrides[get_session] = override_session
    client = TestClient(app)
    client._engine = engine  # type: ignore[attr-defined]
    return client


@pytest.fixture
def client():
    test_client = get_test_client()
    yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def auth_client():
    test_client = get_auth_client()
    yield test_client
    app.dependency_overrides.clear()


def create_customer(client: TestClient, name: str = "Test Customer") -> int:
    response = client.post("/api/customers", json={"name": name, "email": f"{name.lower().replace(' ', '.')}@example.com"})
    assert response.status_code == 201, response.text
    return response.json()["id"]


def create_agent(client: TestClient, name: str = "Test Agent", agent_type: str = "usdt") -> int:
    response = client.post("/api/agents", json={"name": name, "type": agent_type})
    assert response.status_code == 201, response.text
    return response.json()["id"]


def create_supplier(client: TestClient, name: str = "Test Supplier") -> int:
    response = client.post("/api/suppliers", json={"name": name, "contact_person": "Mr. Chen"})
    assert response.status_code == 201, response.text
    return response.json()["id"]


def create_bank_account(client: TestClient, name: str = "Main AED", balance: float = 1000, currency: str = "AED") -> int:
    response = client.post(
        "/api/bank-accounts",
        json={"account_name": name, "bank_name": "Emirates NBD", "currency": currency, "balance": balance},
    )
    assert response.status_code == 201, response.text
    return response.json()["id"]


def account_balance(client: TestClient, account_id: int) -> float:
    response = client.get(f"/api/bank-accounts/{account_id}")
    assert response.status_code == 200, response.text
    return response.json()["bank_account"]["balance"]
