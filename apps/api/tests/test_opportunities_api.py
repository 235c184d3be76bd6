from __future__ import annotations

import uuid
from collections.abc import Callable, Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.api import get_current_user
from app.crm.service import ActorUser
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter


WRITE_PERMISSIONS = {
    "crm.opportunities.read",
    "crm.opportunities.write",
    "crm.tasks.read",
    "crm.conversations.read",
    "crm.clients.read",
}


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
def clear_stubs() -> Generator[None, None, None]:
    audit.audit_entries.clear()
    events.published_events.clear()
    reset_rate_limiter()
    get_settings.cache_clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()
    reset_rate_limiter()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[tuple[TestClient, Callable[[str], None]], None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    actors = {
        "rep": ActorUser(user_id="rep-1", permissions=WRITE_PERMISSIONS, correlation_id="corr-opp"),
        "viewer": ActorUser(user_id="viewer-1", permissions={"crm.opportunities.read"}, correlation_id="corr-opp"),
    }
    state = {"current": "rep"}

    def override_get_current_user() -> ActorUser:
        return actors[state["current"]]

    def set_actor(name: str) -> None:
        state["current"] = name

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client, set_actor
    app.dependency_overrides.clear()


def _create_opportunity(client: TestClient, **overrides: object) -> dict:
    payload: dict[str, object] = {
        "company_name": "Northside Auto",
        "contact_name": "Jordan Blake",
        "contact_email": "jordan@northside.example",
        "deal_name": "Northside Auto - Website Project",
        "deal_value": 2500,
        "schedule_date": "2026-03-02",
    }
    payload.update(overrides)
    response = client.post("/api/crm/opportunities", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


def test_create_opportunity_seeds_entry_stage(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client

    body = _create_opportunity(test_client)

    assert body["changed"] is True
    assert body["from_stage"] is None
    assert body["opportunity"]["stage"] == "gift_sent"
    assert body["opportunity"]["probability"] == 20
    assert float(body["opportunity"]["deal_value"]) == 2500
    assert [task["due_date"] for task in body["created_tasks"]] == ["2026-03-04", "2026-03-05", "2026-03-09"]
    assert len(events.events_of_type("crm.opportunity.created")) == 1


def test_change_stage_generates_tasks_and_note(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    opportunity_id = _create_opportunity(test_client)["opportunity"]["id"]

    response = test_client.post(
        f"/api/crm/opportunities/{opportunity_id}/stage",
        json={"stage": "responded", "base_date": "2026-03-02"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["from_stage"] == "gift_sent"
    assert body["changed"] is True
    assert body["opportunity"]["probability"] == 40
    assert [task["title"] for task in body["created_tasks"]] == [
        "Reply to contact",
        "Research company needs",
        "Propose meeting times",
    ]
    assert [task["due_date"] for task in body["created_tasks"]] == ["2026-03-02", "2026-03-03", "2026-03-03"]

    tasks = test_client.get("/api/crm/tasks", params={"opportunity_id": opportunity_id})
    assert tasks.status_code == 200
    assert len(tasks.json()) == 6

    notes = test_client.get("/api/crm/conversations", params={"opportunity_id": opportunity_id})
    assert notes.status_code == 200
    assert notes.json()["total"] == 2


def test_same_stage_request_is_a_no_op(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    created = _create_opportunity(test_client)["opportunity"]

    response = test_client.post(f"/api/crm/opportunities/{created['id']}/stage", json={"stage": "gift_sent"})

    assert response.status_code == 200
    body = response.json()
    assert body["changed"] is False
    assert body["created_tasks"] == []
    assert body["opportunity"]["row_version"] == created["row_version"]


def test_stage_request_applies_field_changes(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    opportunity_id = _create_opportunity(test_client)["opportunity"]["id"]

    response = test_client.post(
        f"/api/crm/opportunities/{opportunity_id}/stage",
        json={"stage": "meeting", "probability": 55, "changes": {"notes": "Met at the expo"}},
    )

    assert response.status_code == 200
    opportunity = response.json()["opportunity"]
    assert opportunity["stage"] == "meeting"
    assert opportunity["probability"] == 55
    assert opportunity["notes"] == "Met at the expo"


def test_closing_deal_won_sets_closed_at(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    opportunity_id = _create_opportunity(test_client, stage="closing")["opportunity"]["id"]

    response = test_client.post(f"/api/crm/opportunities/{opportunity_id}/stage", json={"stage": "closed_won"})

    assert response.status_code == 200
    body = response.json()
    assert body["opportunity"]["probability"] == 100
    assert body["opportunity"]["closed_at"] is not None
    assert body["created_tasks"] == []
    assert len(events.events_of_type("crm.opportunity.closed_won")) == 1


def test_unknown_stage_with_task_generation_is_rejected(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    opportunity_id = _create_opportunity(test_client)["opportunity"]["id"]

    response = test_client.post(
        f"/api/crm/opportunities/{opportunity_id}/stage",
        json={"stage": "discovery", "generate_tasks": True},
    )

    assert response.status_code == 422
    body = response.json()
    assert body["code"] == "invalid_argument"
    assert body["details"] == {"stage": "discovery"}

    current = test_client.get(f"/api/crm/opportunities/{opportunity_id}")
    assert current.json()["stage"] == "gift_sent"


def test_unknown_stage_without_flag_is_tolerated(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    opportunity_id = _create_opportunity(test_client)["opportunity"]["id"]

    response = test_client.post(f"/api/crm/opportunities/{opportunity_id}/stage", json={"stage": "discovery"})

    assert response.status_code == 200
    assert response.json()["opportunity"]["probability"] == 20
    assert response.json()["created_tasks"] == []


def test_stage_change_for_missing_opportunity_is_404(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client

    response = test_client.post(f"/api/crm/opportunities/{uuid.uuid4()}/stage", json={"stage": "responded"})

    assert response.status_code == 404
    body = response.json()
    assert body["code"] == "not_found"
    assert body["details"]["entity"] == "opportunity"
    assert body["correlation_id"] is not None


def test_probability_out_of_range_fails_validation(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    opportunity_id = _create_opportunity(test_client)["opportunity"]["id"]

    response = test_client.post(
        f"/api/crm/opportunities/{opportunity_id}/stage",
        json={"stage": "meeting", "probability": 150},
    )

    assert response.status_code == 422


def test_patch_uses_optimistic_row_version(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    created = _create_opportunity(test_client)["opportunity"]

    updated = test_client.patch(
        f"/api/crm/opportunities/{created['id']}",
        json={"row_version": created["row_version"], "deal_value": 4200},
    )
    assert updated.status_code == 200
    assert updated.json()["row_version"] == created["row_version"] + 1
    assert float(updated.json()["deal_value"]) == 4200

    stale = test_client.patch(
        f"/api/crm/opportunities/{created['id']}",
        json={"row_version": created["row_version"], "notes": "late"},
    )
    assert stale.status_code == 409
    assert stale.json()["code"] == "conflict"


def test_convert_to_client(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    opportunity_id = _create_opportunity(test_client, stage="closing")["opportunity"]["id"]

    response = test_client.post(f"/api/crm/opportunities/{opportunity_id}/convert", json={"notes": "Paid deposit"})

    assert response.status_code == 201
    body = response.json()
    assert body["client"]["first_name"] == "Jordan"
    assert body["client"]["last_name"] == "Blake"
    assert body["client"]["is_primary_contact"] is True
    assert body["company"]["name"] == "Northside Auto"
    assert body["opportunity"]["stage"] == "closed_won"
    assert body["opportunity"]["client_id"] == body["client"]["id"]

    client_record = test_client.get(f"/api/crm/clients/{body['client']['id']}")
    assert client_record.status_code == 200

    again = test_client.post(f"/api/crm/opportunities/{opportunity_id}/convert", json={})
    assert again.status_code == 409


def test_pipeline_stage_summary(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    _create_opportunity(test_client, deal_value=1000)
    _create_opportunity(test_client, deal_value=1500)
    _create_opportunity(test_client, stage="proposal", deal_value=800)

    response = test_client.get("/api/crm/pipeline/stages")

    assert response.status_code == 200
    stages = {item["id"]: item for item in response.json()}
    assert stages["gift_sent"]["count"] == 2
    assert stages["gift_sent"]["total_value"] == 2500.0
    assert stages["gift_sent"]["has_task_template"] is True
    assert stages["closed_won"]["count"] == 0
    assert stages["closed_won"]["is_closed"] is True
    assert stages["proposal"]["is_legacy"] is True
    assert stages["proposal"]["count"] == 1
    assert "negotiation" not in stages


def test_list_filters_by_stage(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    _create_opportunity(test_client)
    _create_opportunity(test_client, stage="meeting", company_name="Lakeside Vet")

    response = test_client.get("/api/crm/opportunities", params={"stage": "meeting"})

    assert response.status_code == 200
    assert [item["company_name"] for item in response.json()] == ["Lakeside Vet"]


def test_missing_permission_is_forbidden(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    opportunity_id = _create_opportunity(test_client)["opportunity"]["id"]
    set_actor("viewer")

    response = test_client.post(f"/api/crm/opportunities/{opportunity_id}/stage", json={"stage": "responded"})

    assert response.status_code == 403
    assert response.json()["code"] == "crm_opportunity_stage_failed"
    assert test_client.get(f"/api/crm/opportunities/{opportunity_id}").status_code == 200


@pytest.mark.parametrize("field", ["deal_name", "company_name", "deal_value"])
def test_patch_rejects_null_for_required_fields(client: tuple[TestClient, Callable[[str], None]], field: str) -> None:
    test_client, _ = client
    created = _create_opportunity(test_client)["opportunity"]

    response = test_client.patch(
        f"/api/crm/opportunities/{created['id']}",
        json={"row_version": created["row_version"], field: None},
    )

    assert response.status_code == 422
    stored = test_client.get(f"/api/crm/opportunities/{created['id']}").json()
    assert stored[field] is not None
    assert stored["row_version"] == created["row_version"]


def test_patch_can_clear_optional_fields(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    created = _create_opportunity(test_client)["opportunity"]

    response = test_client.patch(
        f"/api/crm/opportunities/{created['id']}",
        json={"row_version": created["row_version"], "contact_email": None},
    )

    assert response.status_code == 200
    assert response.json()["contact_email"] is None


def test_stage_changes_reject_null_for_required_fields(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    created = _create_opportunity(test_client)["opportunity"]
    tasks_before = len(test_client.get("/api/crm/tasks", params={"opportunity_id": created["id"]}).json())

    response = test_client.post(
        f"/api/crm/opportunities/{created['id']}/stage",
        json={"stage": "responded", "changes": {"company_name": None}},
    )

    assert response.status_code == 422
    stored = test_client.get(f"/api/crm/opportunities/{created['id']}").json()
    assert stored["stage"] == "gift_sent"
    assert stored["company_name"] == "Northside Auto"
    tasks = test_client.get("/api/crm/tasks", params={"opportunity_id": created["id"]}).json()
    assert len(tasks) == tasks_before
