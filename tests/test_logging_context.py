from __future__ import annotations

import logging
import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from bizsuite.core.config import get_settings
from bizsuite.core.database import Base, get_db
from bizsuite.crm.api import get_tenant_context
from bizsuite.main import app
from bizsuite.platform.security.context import TenantContext


ALL_PERMISSIONS = [
    "crm.leads.read",
    "crm.leads.create",
    "crm.opportunities.read",
    "crm.opportunities.create",
    "crm.opportunities.update",
]


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
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_tenant_context(request: Request) -> TenantContext:
        return TenantContext(
            user_id="user-1",
            org_id="org-a",
            correlation_id=getattr(request.state, "correlation_id", None),
            roles=ALL_PERMISSIONS,
            permissions=ALL_PERMISSIONS,
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_tenant_context] = override_tenant_context
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    lead_id = uuid.uuid4()
    response = client.get(f"/api/crm/leads/{lead_id}", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404

    records = [
        record for record in caplog.records if record.name == "bizsuite.request" and record.getMessage() == "http.request"
    ]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/api/crm/leads/{id}"
        and getattr(record, "status_code", None) == 404
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_logs_include_aggregate_context_and_correlation_id(
    client: TestClient,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)

    response = client.post(
        "/api/crm/opportunities",
        json={"customer_name": "Log Opp", "items": [{"qty": "2", "rate": "7.50"}]},
        headers={"X-Correlation-Id": "abc-456"},
    )
    assert response.status_code == 201
    opportunity_id = response.json()["id"]

    aggregate_records = [record for record in caplog.records if record.name == "bizsuite.crm.aggregates"]
    assert aggregate_records
    assert any(
        getattr(record, "aggregate", None) == "opportunity_totals"
        and getattr(record, "parent_id", None) == opportunity_id
        and getattr(record, "item_count", None) == 1
        and getattr(record, "org_id", None) == "org-a"
        and getattr(record, "correlation_id", None) == "abc-456"
        and record.getMessage() == "aggregate.recalculated"
        for record in aggregate_records
    )


def test_tenant_denial_is_logged(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    response = client.post("/api/crm/leads", json={"first_name": "Ada", "org_id": "org-z"})
    assert response.status_code == 403

    denials = [record for record in caplog.records if record.name == "bizsuite.security.tenancy"]
    assert any(
        record.getMessage() == "tenant.scope_denied"
        and getattr(record, "resource", None) == "crm.lead"
        and getattr(record, "action", None) == "create"
        and getattr(record, "org_id", None) == "org-a"
        for record in denials
    )
