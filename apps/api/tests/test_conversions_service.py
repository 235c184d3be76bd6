from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from app import audit, events
from app.core.config import get_settings
from app.crm.actor import ActorUser
from app.crm.conversions import ConversionWorkflows, split_contact_name
from app.crm.errors import ConflictError, InvalidArgumentError, NotFoundError
from app.crm.lifecycle import OpportunityLocks
from app.crm.lineage import LineageLinker
from app.crm.memory import InMemoryUnitOfWork
from app.crm.repositories import ConversationSelector


FIXED_NOW = datetime(2026, 4, 6, 14, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def clean_state(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("DEFAULT_CONVERSION_STAGE", raising=False)
    monkeypatch.delenv("DEFAULT_DEAL_VALUE", raising=False)
    get_settings.cache_clear()
    audit.audit_entries.clear()
    events.published_events.clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()


@pytest.fixture()
def uow() -> InMemoryUnitOfWork:
    return InMemoryUnitOfWork()


@pytest.fixture()
def workflows(uow: InMemoryUnitOfWork) -> ConversionWorkflows:
    return ConversionWorkflows(uow, clock=lambda: FIXED_NOW, locks=OpportunityLocks(), lock_timeout=0.05)


@pytest.fixture()
def actor() -> ActorUser:
    return ActorUser(user_id="rep-7", permissions={"*"}, correlation_id="corr-convert")


def _seed_lead(uow: InMemoryUnitOfWork, **overrides):
    fields = {
        "company_name": "Bright Dental",
        "contact_name": "Dana Reyes",
        "email": "dana@brightdental.example",
        "phone": "555-0100",
        "source": "referral",
    }
    fields.update(overrides)
    lead = uow.leads.create(fields)
    uow.commit()
    return lead


def test_promote_lead_creates_opportunity_with_gift_sent_tasks(uow, workflows, actor) -> None:
    lead = _seed_lead(uow)
    schedule = date(2026, 4, 6)

    promotion = workflows.promote_lead_to_opportunity(lead.id, actor, schedule_date=schedule)

    opportunity = promotion.opportunity
    assert opportunity.stage == "gift_sent"
    assert opportunity.probability == 20
    assert opportunity.lead_id == lead.id
    assert opportunity.deal_name == "Bright Dental - Website Project"
    assert opportunity.deal_value == Decimal("5000")
    assert opportunity.contact_email == "dana@brightdental.example"
    assert [task.due_date for task in promotion.tasks] == [date(2026, 4, 8), date(2026, 4, 9), date(2026, 4, 13)]
    assert all(task.lead_id == lead.id for task in promotion.tasks)

    assert promotion.lead.status == "qualified"
    assert promotion.lead.converted_opportunity_id == opportunity.id
    assert promotion.lead.converted_at == FIXED_NOW

    titles = {row.title for row in uow.conversations.list_by_selector(ConversationSelector(opportunity_id=opportunity.id))}
    assert titles == {"Stage changed", "Lead promoted"}
    assert len(events.events_of_type("crm.lead.promoted")) == 1
    assert audit.entries_for("crm.lead", str(lead.id))[0]["action"] == "promote"
    assert uow.commits == 2


def test_promote_lead_prefers_estimated_value_and_explicit_overrides(uow, workflows, actor) -> None:
    lead = _seed_lead(uow, estimated_value=Decimal("12000"))

    promotion = workflows.promote_lead_to_opportunity(
        lead.id,
        actor,
        stage="meeting",
        deal_name="Bright Dental - Booking System",
    )

    assert promotion.opportunity.deal_value == Decimal("12000")
    assert promotion.opportunity.deal_name == "Bright Dental - Booking System"
    assert promotion.opportunity.stage == "meeting"
    assert promotion.opportunity.probability == 60
    assert [task.title for task in promotion.tasks][0] == "Prepare meeting agenda"


def test_promote_lead_then_relink_history(uow, workflows, actor) -> None:
    lead = _seed_lead(uow)
    for content in ("Intro call", "Sent portfolio"):
        uow.conversations.create({"lead_id": lead.id, "activity_type": "call", "content": content})
    uow.commit()

    promotion = workflows.promote_lead_to_opportunity(lead.id, actor)
    matching = uow.conversations.count_by_selector(ConversationSelector(lead_id=lead.id))

    relinked = LineageLinker(uow).relink_all(from_lead_id=lead.id, to_opportunity_id=promotion.opportunity.id)
    uow.commit()

    assert relinked == matching == 3
    linked = uow.conversations.list_by_selector(ConversationSelector(opportunity_id=promotion.opportunity.id))
    assert {row.content for row in linked} >= {"Intro call", "Sent portfolio"}
    history = [row for row in linked if row.content in {"Intro call", "Sent portfolio"}]
    assert len(history) == 2
    assert all(row.lead_id == lead.id for row in history)
    assert uow.conversations.count_by_selector(ConversationSelector(lead_id=lead.id)) == 3


def test_promote_missing_lead_is_not_found(uow, workflows, actor) -> None:
    with pytest.raises(NotFoundError):
        workflows.promote_lead_to_opportunity(uuid.uuid4(), actor)
    assert uow.rollbacks == 1


def test_promote_lead_twice_is_a_conflict(uow, workflows, actor) -> None:
    lead = _seed_lead(uow)
    workflows.promote_lead_to_opportunity(lead.id, actor)

    with pytest.raises(ConflictError):
        workflows.promote_lead_to_opportunity(lead.id, actor)

    assert len(uow.opportunities.rows) == 1


def test_promote_lead_with_unknown_stage_leaves_no_partial_state(uow, workflows, actor) -> None:
    lead = _seed_lead(uow)

    with pytest.raises(InvalidArgumentError):
        workflows.promote_lead_to_opportunity(lead.id, actor, stage="discovery")

    assert uow.opportunities.rows == {}
    assert uow.tasks.rows == {}
    assert uow.conversations.rows == {}
    assert uow.leads.get(lead.id).status == "new"


def test_promote_opportunity_to_client(uow, workflows, actor) -> None:
    lead = _seed_lead(uow)
    promotion = workflows.promote_lead_to_opportunity(lead.id, actor)
    tasks_before = len(uow.tasks.rows)

    conversion = workflows.promote_opportunity_to_client(promotion.opportunity.id, actor, notes="Signed in person")

    assert conversion.client.first_name == "Dana"
    assert conversion.client.last_name == "Reyes"
    assert conversion.client.is_primary_contact is True
    assert conversion.client.email == "dana@brightdental.example"
    assert conversion.client.notes == "Signed in person"
    assert conversion.company is not None
    assert conversion.company.name == "Bright Dental"
    assert conversion.client.company_id == conversion.company.id

    assert conversion.opportunity.stage == "closed_won"
    assert conversion.opportunity.probability == 100
    assert conversion.opportunity.closed_at == FIXED_NOW
    assert conversion.opportunity.client_id == conversion.client.id
    assert len(uow.tasks.rows) == tasks_before
    assert conversion.lead is not None
    assert conversion.lead.status == "won"

    client_notes = uow.conversations.list_by_selector(ConversationSelector(client_id=conversion.client.id))
    assert [row.title for row in client_notes] == ["Converted to client"]
    assert len(events.events_of_type("crm.opportunity.closed_won")) == 1
    assert len(events.events_of_type("crm.opportunity.converted")) == 1


def test_converting_twice_is_a_conflict(uow, workflows, actor) -> None:
    lead = _seed_lead(uow)
    promotion = workflows.promote_lead_to_opportunity(lead.id, actor)
    workflows.promote_opportunity_to_client(promotion.opportunity.id, actor)

    with pytest.raises(ConflictError):
        workflows.promote_opportunity_to_client(promotion.opportunity.id, actor)

    assert len(uow.clients.rows) == 1


def test_placeholder_company_is_not_materialized(uow, workflows, actor) -> None:
    lead = _seed_lead(uow, company_name=None, contact_name="Prince")
    promotion = workflows.promote_lead_to_opportunity(lead.id, actor)
    assert promotion.opportunity.company_name == "Unknown Company"
    assert promotion.opportunity.deal_name == "Prince - Website Project"

    conversion = workflows.promote_opportunity_to_client(promotion.opportunity.id, actor)

    assert conversion.company is None
    assert uow.companies.rows == {}
    assert conversion.client.first_name == "Prince"
    assert conversion.client.last_name == ""


def test_convert_missing_opportunity_is_not_found(workflows, actor) -> None:
    with pytest.raises(NotFoundError):
        workflows.promote_opportunity_to_client(uuid.uuid4(), actor)


@pytest.mark.parametrize(
    ("name", "expected"),
    [
        ("Dana Reyes", ("Dana", "Reyes")),
        ("Mary Ann van Dyke", ("Mary", "Ann van Dyke")),
        ("  Cher  ", ("Cher", "")),
        ("", ("", "")),
        (None, ("", "")),
    ],
)
def test_split_contact_name(name, expected) -> None:
    assert split_contact_name(name) == expected
