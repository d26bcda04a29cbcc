from __future__ import annotations

from collections.abc import Generator
from typing import Any

import pytest
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


LEAD_PERMISSIONS = [
    "crm.leads.read",
    "crm.leads.create",
    "crm.leads.update",
    "crm.leads.delete",
    "crm.opportunities.create",
    "crm.opportunities.read",
    "crm.sales_stages.create",
]


def _ctx(user_id: str, org_id: str | None, company_id: str | None = None, **kwargs: Any) -> TenantContext:
    permissions = kwargs.pop("permissions", LEAD_PERMISSIONS)
    return TenantContext(
        user_id=user_id,
        org_id=org_id,
        company_id=company_id,
        roles=list(permissions),
        permissions=list(permissions),
        **kwargs,
    )


@pytest.fixture(autouse=True)
def clear_state() -> Generator[None, None, None]:
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    testing_session_local = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = testing_session_local()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def actor() -> dict[str, TenantContext]:
    return {"current": _ctx("user-a", "org-a")}


@pytest.fixture
def client(db_session: Session, actor: dict[str, TenantContext]) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_tenant_context() -> TenantContext:
        return actor["current"]

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_tenant_context] = override_tenant_context
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_create_lead_derives_name_and_stamps_tenant(client: TestClient) -> None:
    response = client.post(
        "/api/crm/leads",
        json={"salutation": "Ms.", "first_name": "Ada", "last_name": "King", "email": "ada@example.com"},
    )
    assert response.status_code == 201
    body = response.json()
    assert body["lead_name"] == "Ms. Ada King"
    assert body["title"] == "Ms. Ada King"
    assert body["org_id"] == "org-a"
    assert body["company_id"] is None
    assert body["status"] == "Lead"
    assert body["created_by"] == "user-a"

    created = [event for event in events.published_events if event["event_type"] == "crm.lead.created"]
    assert len(created) == 1
    assert created[0]["org_id"] == "org-a"
    assert audit.entries_for("crm.lead", body["id"])[0]["action"] == "create"


def test_company_only_lead_uses_company_name(client: TestClient) -> None:
    response = client.post("/api/crm/leads", json={"company_name": "Acme Corp"})
    assert response.status_code == 201
    assert response.json()["lead_name"] == "Acme Corp"
    assert response.json()["title"] == "Acme Corp"


def test_email_only_lead_uses_local_part(client: TestClient) -> None:
    response = client.post("/api/crm/leads", json={"email": "a@b.com"})
    assert response.status_code == 201
    assert response.json()["lead_name"] == "a"


def test_update_rederives_names_and_keeps_name_when_first_name_cleared(client: TestClient) -> None:
    lead = client.post("/api/crm/leads", json={"first_name": "Ada", "company_name": "Acme"}).json()
    assert lead["lead_name"] == "Ada"
    assert lead["title"] == "Acme"

    renamed = client.patch(f"/api/crm/leads/{lead['id']}", json={"last_name": "King"})
    assert renamed.status_code == 200
    assert renamed.json()["lead_name"] == "Ada King"

    cleared = client.patch(f"/api/crm/leads/{lead['id']}", json={"first_name": None, "last_name": None})
    assert cleared.status_code == 200
    assert cleared.json()["lead_name"] == "Ada King"
    assert cleared.json()["title"] == "Acme"


def test_duplicate_email_rejected_within_org_only(client: TestClient, actor: dict[str, TenantContext]) -> None:
    first = client.post("/api/crm/leads", json={"email": "dup@example.com"})
    assert first.status_code == 201

    duplicate = client.post("/api/crm/leads", json={"email": "dup@example.com"})
    assert duplicate.status_code == 422
    assert duplicate.json()["code"] == "crm_lead_create_failed"
    assert duplicate.json()["message"] == "lead email already exists"

    actor["current"] = _ctx("user-b", "org-b")
    other_org = client.post("/api/crm/leads", json={"email": "dup@example.com"})
    assert other_org.status_code == 201


def test_invalid_lead_status_is_rejected(client: TestClient) -> None:
    response = client.post("/api/crm/leads", json={"first_name": "Ada", "status": "Sleeping"})
    assert response.status_code == 422
    assert response.json()["message"] == "invalid lead status"


def test_list_filters_by_status_and_search(client: TestClient) -> None:
    client.post("/api/crm/leads", json={"first_name": "Ada", "status": "Open", "territory": "EU"})
    client.post("/api/crm/leads", json={"company_name": "Globex", "status": "Replied"})

    by_status = client.get("/api/crm/leads", params={"status": "Replied"})
    assert [lead["lead_name"] for lead in by_status.json()] == ["Globex"]

    by_search = client.get("/api/crm/leads", params={"q": "ada"})
    assert [lead["lead_name"] for lead in by_search.json()] == ["Ada"]


def test_create_into_foreign_org_is_forbidden(client: TestClient) -> None:
    response = client.post("/api/crm/leads", json={"first_name": "Ada", "org_id": "org-b"})
    assert response.status_code == 403
    assert "Out-of-tenant org_id" in response.json()["message"]

    denials = [entry for entry in audit.audit_entries if entry["action"] == "tenancy.denied"]
    assert len(denials) == 1
    assert denials[0]["after"]["resource"] == "crm.lead"


def test_superadmin_may_create_for_another_org(client: TestClient, actor: dict[str, TenantContext]) -> None:
    actor["current"] = _ctx("root", "org-a", permissions=["system.admin"])
    response = client.post("/api/crm/leads", json={"first_name": "Ada", "org_id": "org-b", "company_id": "co-9"})
    assert response.status_code == 201
    assert response.json()["org_id"] == "org-b"
    assert response.json()["company_id"] == "co-9"


def test_caller_without_org_cannot_create_or_see_leads(client: TestClient, actor: dict[str, TenantContext]) -> None:
    client.post("/api/crm/leads", json={"first_name": "Ada"})

    actor["current"] = _ctx("drifter", None)
    assert client.post("/api/crm/leads", json={"first_name": "Bob"}).status_code == 403
    assert client.get("/api/crm/leads").json() == []


def test_missing_permission_returns_403(client: TestClient, actor: dict[str, TenantContext]) -> None:
    actor["current"] = _ctx("reader", "org-a", permissions=["crm.leads.read"])
    response = client.post("/api/crm/leads", json={"first_name": "Ada"})
    assert response.status_code == 403
    assert response.json()["message"] == "Missing permission: crm.leads.create"


def test_foreign_org_lead_is_indistinguishable_from_missing(
    client: TestClient,
    actor: dict[str, TenantContext],
) -> None:
    lead = client.post("/api/crm/leads", json={"first_name": "Ada", "email": "ada@example.com"}).json()

    actor["current"] = _ctx("user-b", "org-b")
    missing_id = "00000000-0000-4000-8000-000000000000"
    assert client.get("/api/crm/leads").json() == []

    foreign = client.get(f"/api/crm/leads/{lead['id']}")
    missing = client.get(f"/api/crm/leads/{missing_id}")
    assert foreign.status_code == missing.status_code == 404
    assert foreign.json()["message"] == missing.json()["message"] == "lead not found"

    assert client.patch(f"/api/crm/leads/{lead['id']}", json={"first_name": "Eve"}).status_code == 404
    assert client.delete(f"/api/crm/leads/{lead['id']}").status_code == 404
    assert client.post(f"/api/crm/leads/{lead['id']}/convert", json={}).status_code == 404

    actor["current"] = _ctx("user-a", "org-a")
    still_there = client.get(f"/api/crm/leads/{lead['id']}")
    assert still_there.status_code == 200
    assert still_there.json()["first_name"] == "Ada"


def test_company_scoped_callers_only_see_their_company(client: TestClient, actor: dict[str, TenantContext]) -> None:
    actor["current"] = _ctx("user-c1", "org-a", "co-1")
    lead = client.post("/api/crm/leads", json={"first_name": "Ada"}).json()
    assert lead["company_id"] == "co-1"

    actor["current"] = _ctx("user-c2", "org-a", "co-2")
    assert client.get(f"/api/crm/leads/{lead['id']}").status_code == 404
    assert client.post("/api/crm/leads", json={"first_name": "Bob", "company_id": "co-1"}).status_code == 403

    actor["current"] = _ctx("org-wide", "org-a")
    assert client.get(f"/api/crm/leads/{lead['id']}").status_code == 200


def test_email_conflict_in_sibling_company_does_not_name_the_lead(
    client: TestClient,
    actor: dict[str, TenantContext],
) -> None:
    actor["current"] = _ctx("user-c1", "org-a", "co-1")
    assert client.post("/api/crm/leads", json={"email": "shared@example.com"}).status_code == 201

    actor["current"] = _ctx("user-c2", "org-a", "co-2")
    hidden = client.post("/api/crm/leads", json={"email": "shared@example.com"})
    assert hidden.status_code == 422
    assert hidden.json()["message"] == "lead email is not available"

    own = client.post("/api/crm/leads", json={"email": "mine@example.com"}).json()
    renamed = client.patch(f"/api/crm/leads/{own['id']}", json={"email": "shared@example.com"})
    assert renamed.status_code == 422
    assert renamed.json()["message"] == "lead email is not available"

    actor["current"] = _ctx("org-wide", "org-a")
    visible = client.post("/api/crm/leads", json={"email": "shared@example.com"})
    assert visible.json()["message"] == "lead email already exists"


def test_delete_lead(client: TestClient) -> None:
    lead = client.post("/api/crm/leads", json={"first_name": "Ada"}).json()

    deleted = client.delete(f"/api/crm/leads/{lead['id']}")
    assert deleted.status_code == 200
    assert deleted.json() == {"status": "deleted"}
    assert client.get(f"/api/crm/leads/{lead['id']}").status_code == 404
    assert any(event["event_type"] == "crm.lead.deleted" for event in events.published_events)


def test_convert_lead_creates_open_opportunity(client: TestClient) -> None:
    lead = client.post(
        "/api/crm/leads",
        json={"first_name": "Ada", "company_name": "Acme", "email": "ada@acme.com", "lead_owner_id": "rep-1"},
    ).json()
    stage = client.post("/api/crm/sales-stages", json={"stage_name": "Prospecting"}).json()

    converted = client.post(
        f"/api/crm/leads/{lead['id']}/convert",
        json={"sales_stage_id": stage["id"]},
    )
    assert converted.status_code == 201
    opportunity = converted.json()
    assert opportunity["lead_id"] == lead["id"]
    assert opportunity["opportunity_from"] == "Lead"
    assert opportunity["status"] == "Open"
    assert opportunity["customer_name"] == "Acme"
    assert opportunity["contact_email"] == "ada@acme.com"
    assert opportunity["opportunity_owner_id"] == "rep-1"
    assert opportunity["sales_stage_id"] == stage["id"]
    assert opportunity["org_id"] == "org-a"
    assert opportunity["items"] == []

    assert client.get(f"/api/crm/leads/{lead['id']}").json()["status"] == "Opportunity"
    assert any(event["event_type"] == "crm.lead.converted" for event in events.published_events)

    again = client.post(f"/api/crm/leads/{lead['id']}/convert", json={})
    assert again.status_code == 409
    assert again.json()["code"] == "crm_lead_convert_failed"
