from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from bizsuite import audit, events
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
def clear_state() -> Generator[None, None, None]:
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()
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


def test_generated_correlation_id_returned_in_header_and_error_envelope(client: TestClient) -> None:
    response = client.get(f"/api/crm/leads/{uuid.uuid4()}")
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    body = response.json()
    assert body["code"] == "crm_lead_get_failed"
    assert body["correlation_id"] == header_value


def test_correlation_id_respected_when_provided(client: TestClient) -> None:
    response = client.get(f"/api/crm/opportunities/{uuid.uuid4()}", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.json()["correlation_id"] == "abc-123"


@pytest.mark.parametrize("inbound", ["has spaces in it", "x" * 129, "semi;colon"])
def test_malformed_correlation_id_is_replaced(client: TestClient, inbound: str) -> None:
    response = client.get(f"/api/crm/opportunities/{uuid.uuid4()}", headers={"X-Correlation-Id": inbound})
    header_value = response.headers.get("x-correlation-id")
    assert header_value != inbound
    assert uuid.UUID(header_value)
    assert response.json()["correlation_id"] == header_value


def test_audit_and_events_use_request_correlation_id(client: TestClient) -> None:
    response = client.post(
        "/api/crm/leads",
        json={"company_name": "Corr Lead"},
        headers={"X-Correlation-Id": "corr-event-1"},
    )
    assert response.status_code == 201

    lead_audits = audit.entries_for("crm.lead", response.json()["id"])
    assert lead_audits
    assert lead_audits[-1]["correlation_id"] == "corr-event-1"

    created_events = [item for item in events.published_events if item.get("event_type") == "crm.lead.created"]
    assert created_events
    assert created_events[-1].get("correlation_id") == "corr-event-1"


def test_aggregate_events_carry_request_correlation_id(client: TestClient) -> None:
    response = client.post(
        "/api/crm/opportunities",
        json={"customer_name": "Corr Opp", "items": [{"qty": "1", "rate": "5"}]},
        headers={"X-Correlation-Id": "corr-agg-1"},
    )
    assert response.status_code == 201

    recalculated = [
        item for item in events.published_events if item.get("event_type") == "crm.opportunity.totals_recalculated"
    ]
    assert recalculated
    assert all(item.get("correlation_id") == "corr-agg-1" for item in recalculated)
