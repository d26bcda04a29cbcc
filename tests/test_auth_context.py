from __future__ import annotations

import logging
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from bizsuite.core.config import get_settings
from bizsuite.core.database import Base, get_db
from bizsuite.main import app


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("JWT_SECRET", "test-secret")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _bearer(**claims) -> dict[str, str]:  # type: ignore[no-untyped-def]
    settings = get_settings()
    token = jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)
    return {"Authorization": f"Bearer {token}"}


def test_me_returns_tenant_claims(client: TestClient) -> None:
    response = client.get("/me", headers=_bearer(sub="user-7", roles=["crm.leads.read"], org_id="org-a", company_id="co-1"))
    assert response.status_code == 200
    assert response.json() == {
        "sub": "user-7",
        "roles": ["crm.leads.read"],
        "org_id": "org-a",
        "company_id": "co-1",
    }


def test_invalid_token_falls_back_to_anonymous(client: TestClient) -> None:
    response = client.get("/me", headers={"Authorization": "Bearer not-a-token"})
    assert response.json()["sub"] == "anonymous"
    assert response.json()["roles"] == ["guest"]


def test_token_claims_scope_crm_requests(client: TestClient) -> None:
    org_a = _bearer(sub="user-a", roles=["crm.leads.create", "crm.leads.read"], org_id="org-a")
    org_b = _bearer(sub="user-b", roles=["crm.leads.create", "crm.leads.read"], org_id="org-b")

    created = client.post("/api/crm/leads", json={"first_name": "Ada"}, headers=org_a)
    assert created.status_code == 201
    assert created.json()["org_id"] == "org-a"
    assert created.json()["created_by"] == "user-a"

    assert client.get(f"/api/crm/leads/{created.json()['id']}", headers=org_b).status_code == 404
    assert [lead["id"] for lead in client.get("/api/crm/leads", headers=org_a).json()] == [created.json()["id"]]


def test_anonymous_caller_lacks_permissions(client: TestClient) -> None:
    response = client.get("/api/crm/leads")
    assert response.status_code == 403
    assert response.json()["message"] == "Missing permission: crm.leads.read"


def test_admin_role_bypasses_permissions_and_scope(client: TestClient) -> None:
    member = _bearer(sub="user-a", roles=["crm.leads.create"], org_id="org-a")
    admin = _bearer(sub="root", roles=["admin"])

    created = client.post("/api/crm/leads", json={"company_name": "Acme"}, headers=member)
    assert created.status_code == 201

    listed = client.get("/api/crm/leads", headers=admin)
    assert listed.status_code == 200
    assert [lead["id"] for lead in listed.json()] == [created.json()["id"]]


def test_request_log_carries_token_tenant(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO, logger="bizsuite.request")
    headers = _bearer(sub="user-c1", roles=["crm.leads.read"], org_id="org-a", company_id="co-1")

    assert client.get("/api/crm/leads", headers=headers).status_code == 200

    records = [record for record in caplog.records if record.name == "bizsuite.request" and record.msg == "http.request"]
    assert records
    assert records[-1].path == "/api/crm/leads"
    assert records[-1].user_id == "user-c1"
    assert records[-1].org_id == "org-a"
    assert records[-1].company_id == "co-1"
