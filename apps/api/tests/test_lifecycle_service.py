from __future__ import annotations

import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from app import audit, events
from app.crm.actor import ActorUser
from app.crm.errors import ConflictError, InvalidArgumentError, NotFoundError
from app.crm.lifecycle import OpportunityLocks, TransitionOrchestrator
from app.crm.memory import InMemoryUnitOfWork
from app.crm.repositories import ConversationSelector
from app.crm.stages import STAGE_DEFINITIONS, probability_for


FIXED_NOW = datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def clear_side_effects():
    audit.audit_entries.clear()
    events.published_events.clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()


@pytest.fixture()
def uow() -> InMemoryUnitOfWork:
    return InMemoryUnitOfWork()


@pytest.fixture()
def locks() -> OpportunityLocks:
    return OpportunityLocks()


@pytest.fixture()
def actor() -> ActorUser:
    return ActorUser(user_id="user-1", permissions={"*"}, correlation_id="corr-lifecycle")


def _orchestrator(uow: InMemoryUnitOfWork, locks: OpportunityLocks) -> TransitionOrchestrator:
    return TransitionOrchestrator(uow, clock=lambda: FIXED_NOW, locks=locks, lock_timeout=0.05)


def _seed_opportunity(
    uow: InMemoryUnitOfWork,
    *,
    stage: str | None = "gift_sent",
    owner_user_id: uuid.UUID | None = None,
    lead_id: uuid.UUID | None = None,
):
    opportunity = uow.opportunities.create(
        {
            "company_name": "Acme Bakery",
            "contact_name": "Sam Ortiz",
            "deal_name": "Acme Bakery - Website Project",
            "deal_value": Decimal("5000"),
            "stage": stage,
            "probability": probability_for(stage),
            "owner_user_id": owner_user_id,
            "lead_id": lead_id,
        }
    )
    uow.commit()
    return opportunity


def _notes_for(uow: InMemoryUnitOfWork, opportunity_id: uuid.UUID):
    return uow.conversations.list_by_selector(ConversationSelector(opportunity_id=opportunity_id))


def test_responded_transition_creates_tasks_and_single_note(uow, locks, actor) -> None:
    owner = uuid.uuid4()
    lead_id = uuid.uuid4()
    opportunity = _seed_opportunity(uow, owner_user_id=owner, lead_id=lead_id)
    base = date(2026, 3, 2)

    result = _orchestrator(uow, locks).transition(opportunity.id, "responded", actor, base_date=base)

    assert result.changed is True
    assert result.from_stage == "gift_sent"
    assert result.opportunity.stage == "responded"
    assert result.opportunity.probability == 40
    assert result.opportunity.row_version == 2
    assert result.opportunity.updated_at == FIXED_NOW
    assert [task.due_date for task in result.created_tasks] == [base, base + timedelta(days=1), base + timedelta(days=1)]
    assert [task.priority for task in result.created_tasks] == ["high", "medium", "high"]
    assert all(task.status == "pending" for task in result.created_tasks)
    assert all(task.opportunity_id == opportunity.id for task in result.created_tasks)
    assert all(task.lead_id == lead_id for task in result.created_tasks)
    assert all(task.owner_user_id == owner for task in result.created_tasks)

    notes = _notes_for(uow, opportunity.id)
    assert len(notes) == 1
    assert notes[0].title == "Stage changed"
    assert notes[0].content == "Stage changed from Gift Sent to Responded. Follow-up tasks created: 3."
    assert uow.commits == 2


def test_closing_to_closed_won_stamps_closed_at_without_tasks(uow, locks, actor) -> None:
    opportunity = _seed_opportunity(uow, stage="closing")

    result = _orchestrator(uow, locks).transition(opportunity.id, "closed_won", actor)

    assert result.opportunity.probability == 100
    assert result.opportunity.closed_at == FIXED_NOW
    assert result.created_tasks == []
    assert uow.tasks.rows == {}
    notes = _notes_for(uow, opportunity.id)
    assert len(notes) == 1
    assert notes[0].content.endswith("Follow-up tasks created: 0.")
    assert len(events.events_of_type("crm.opportunity.stage_changed")) == 1
    assert len(events.events_of_type("crm.opportunity.closed_won")) == 1
    assert events.events_of_type("crm.opportunity.closed_lost") == []


def test_closed_lost_never_generates_tasks(uow, locks, actor) -> None:
    opportunity = _seed_opportunity(uow, stage="meeting")

    result = _orchestrator(uow, locks).transition(opportunity.id, "closed_lost", actor, generate_tasks=True)

    assert result.opportunity.probability == 0
    assert result.created_tasks == []
    assert len(events.events_of_type("crm.opportunity.closed_lost")) == 1


def test_reopening_a_closed_opportunity_clears_closed_at(uow, locks, actor) -> None:
    opportunity = _seed_opportunity(uow, stage="closing")
    orchestrator = _orchestrator(uow, locks)
    orchestrator.transition(opportunity.id, "closed_won", actor)

    result = orchestrator.transition(opportunity.id, "meeting", actor, base_date=date(2026, 3, 9))

    assert result.opportunity.closed_at is None
    assert result.opportunity.probability == 60
    assert len(result.created_tasks) == 3


def test_same_stage_is_a_no_op(uow, locks, actor) -> None:
    opportunity = _seed_opportunity(uow, stage="meeting")
    before_updated_at = opportunity.updated_at

    result = _orchestrator(uow, locks).transition(opportunity.id, "meeting", actor)

    assert result.changed is False
    assert result.created_tasks == []
    assert result.opportunity.row_version == 1
    assert result.opportunity.updated_at == before_updated_at
    assert _notes_for(uow, opportunity.id) == []
    assert uow.tasks.rows == {}
    assert events.published_events == []
    assert audit.audit_entries == []


def test_same_stage_still_persists_field_edits(uow, locks, actor) -> None:
    opportunity = _seed_opportunity(uow, stage="meeting")

    result = _orchestrator(uow, locks).transition(
        opportunity.id,
        "meeting",
        actor,
        explicit_probability=65,
        fields={"notes": "Asked for a second quote"},
    )

    assert result.changed is False
    assert result.opportunity.notes == "Asked for a second quote"
    assert result.opportunity.probability == 65
    assert result.opportunity.row_version == 2
    assert result.opportunity.updated_at == FIXED_NOW
    assert _notes_for(uow, opportunity.id) == []


def test_explicit_zero_probability_is_honored(uow, locks, actor) -> None:
    opportunity = _seed_opportunity(uow)

    result = _orchestrator(uow, locks).transition(opportunity.id, "meeting", actor, explicit_probability=0)

    assert result.opportunity.probability == 0


def test_out_of_range_probability_is_rejected(uow, locks, actor) -> None:
    opportunity = _seed_opportunity(uow)

    with pytest.raises(InvalidArgumentError):
        _orchestrator(uow, locks).transition(opportunity.id, "meeting", actor, explicit_probability=101)

    assert uow.opportunities.get(opportunity.id).stage == "gift_sent"


def test_default_base_date_comes_from_clock(uow, locks, actor) -> None:
    opportunity = _seed_opportunity(uow, stage=None)

    result = _orchestrator(uow, locks).transition(opportunity.id, "gift_sent", actor)

    assert [task.due_date for task in result.created_tasks] == [
        date(2026, 3, 4),
        date(2026, 3, 5),
        date(2026, 3, 9),
    ]
    assert _notes_for(uow, opportunity.id)[0].content == "Stage set to Gift Sent. Follow-up tasks created: 3."


def test_unknown_stage_without_task_flag_defaults_probability(uow, locks, actor) -> None:
    opportunity = _seed_opportunity(uow, stage="responded")

    result = _orchestrator(uow, locks).transition(opportunity.id, "discovery", actor)

    assert result.changed is True
    assert result.opportunity.stage == "discovery"
    assert result.opportunity.probability == 20
    assert result.created_tasks == []
    assert len(_notes_for(uow, opportunity.id)) == 1


def test_unknown_stage_with_explicit_task_generation_is_invalid(uow, locks, actor) -> None:
    opportunity = _seed_opportunity(uow)

    with pytest.raises(InvalidArgumentError) as exc_info:
        _orchestrator(uow, locks).transition(opportunity.id, "discovery", actor, generate_tasks=True)

    assert exc_info.value.details == {"stage": "discovery"}
    assert uow.rollbacks == 1
    assert uow.opportunities.get(opportunity.id).stage == "gift_sent"
    assert uow.tasks.rows == {}
    assert uow.conversations.rows == {}


def test_legacy_stage_transitions_without_tasks(uow, locks, actor) -> None:
    opportunity = _seed_opportunity(uow)

    result = _orchestrator(uow, locks).transition(opportunity.id, "negotiation", actor, generate_tasks=True)

    assert result.opportunity.probability == 80
    assert result.created_tasks == []


def test_missing_opportunity_raises_not_found(uow, locks, actor) -> None:
    missing_id = uuid.uuid4()

    with pytest.raises(NotFoundError) as exc_info:
        _orchestrator(uow, locks).transition(missing_id, "responded", actor)

    assert exc_info.value.details == {"entity": "opportunity", "id": str(missing_id)}
    assert uow.rollbacks == 1


def test_protected_fields_cannot_be_edited(uow, locks, actor) -> None:
    opportunity = _seed_opportunity(uow)

    with pytest.raises(InvalidArgumentError):
        _orchestrator(uow, locks).transition(opportunity.id, "responded", actor, fields={"row_version": 7})


@pytest.mark.parametrize("stage", ["gift_sent", "responded"])
def test_required_fields_cannot_be_nulled(uow, locks, actor, stage) -> None:
    opportunity = _seed_opportunity(uow)

    with pytest.raises(InvalidArgumentError) as exc_info:
        _orchestrator(uow, locks).transition(
            opportunity.id, stage, actor, fields={"deal_name": None, "notes": None}
        )

    assert exc_info.value.details == {"fields": ["deal_name"]}
    stored = uow.opportunities.get(opportunity.id)
    assert stored.deal_name == "Acme Bakery - Website Project"
    assert stored.stage == "gift_sent"
    assert uow.tasks.rows == {}


def test_tasks_fall_back_to_actor_when_opportunity_has_no_owner(uow, locks, actor) -> None:
    opportunity = _seed_opportunity(uow, owner_user_id=None)

    result = _orchestrator(uow, locks).transition(opportunity.id, "meeting", actor)

    assert {task.owner_user_id for task in result.created_tasks} == {actor.user_uuid}
    assert {task.created_by_user_id for task in result.created_tasks} == {"user-1"}


def test_generate_tasks_false_suppresses_templates(uow, locks, actor) -> None:
    opportunity = _seed_opportunity(uow)

    result = _orchestrator(uow, locks).transition(opportunity.id, "closing", actor, generate_tasks=False)

    assert result.created_tasks == []
    assert _notes_for(uow, opportunity.id)[0].content.endswith("Follow-up tasks created: 0.")


@contextmanager
def _held_elsewhere(locks: OpportunityLocks, opportunity_id: uuid.UUID) -> Iterator[None]:
    acquired = threading.Event()
    release = threading.Event()

    def _hold() -> None:
        with locks.hold(opportunity_id, timeout=1):
            acquired.set()
            release.wait(timeout=5)

    worker = threading.Thread(target=_hold)
    worker.start()
    assert acquired.wait(timeout=1)
    try:
        yield
    finally:
        release.set()
        worker.join(timeout=5)


def test_held_lock_is_reported_as_conflict(uow, locks, actor) -> None:
    opportunity = _seed_opportunity(uow)
    with _held_elsewhere(locks, opportunity.id):
        assert locks.is_held(opportunity.id)
        with pytest.raises(ConflictError) as exc_info:
            _orchestrator(uow, locks).transition(opportunity.id, "responded", actor)

    assert exc_info.value.details["reason"] == "lock_timeout"
    assert uow.tasks.rows == {}
    assert uow.opportunities.get(opportunity.id).stage == "gift_sent"


def test_released_locks_are_dropped_from_the_registry(uow, locks, actor) -> None:
    opportunity_ids = [_seed_opportunity(uow).id for _ in range(5)]
    orchestrator = _orchestrator(uow, locks)

    for opportunity_id in opportunity_ids:
        orchestrator.transition(opportunity_id, "responded", actor)
    with pytest.raises(NotFoundError):
        orchestrator.transition(uuid.uuid4(), "responded", actor)

    assert locks.tracked() == 0
    assert not any(locks.is_held(opportunity_id) for opportunity_id in opportunity_ids)


def test_lock_timeout_does_not_leak_registry_entries(uow, locks, actor) -> None:
    opportunity = _seed_opportunity(uow)
    with _held_elsewhere(locks, opportunity.id):
        with pytest.raises(ConflictError):
            _orchestrator(uow, locks).transition(opportunity.id, "responded", actor)
        assert locks.tracked() == 1

    assert locks.tracked() == 0


def test_racing_threads_materialize_the_stage_once(uow, locks, actor) -> None:
    opportunity = _seed_opportunity(uow)
    orchestrator = TransitionOrchestrator(uow, clock=lambda: FIXED_NOW, locks=locks, lock_timeout=5)
    start = threading.Barrier(6)
    results: list = []
    failures: list[Exception] = []

    def _move() -> None:
        start.wait(timeout=5)
        try:
            results.append(orchestrator.transition(opportunity.id, "responded", actor))
        except Exception as exc:
            failures.append(exc)

    workers = [threading.Thread(target=_move) for _ in range(6)]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join(timeout=10)

    assert failures == []
    assert len(results) == 6
    assert sum(1 for result in results if result.changed) == 1
    assert len(uow.tasks.list_by_opportunity(opportunity.id)) == 3
    notes = [row for row in _notes_for(uow, opportunity.id) if row.title == "Stage changed"]
    assert len(notes) == 1
    assert uow.opportunities.get(opportunity.id).row_version == 2
    assert locks.tracked() == 0


def test_sequential_transitions_each_materialize_their_stage(uow, locks, actor) -> None:
    opportunity = _seed_opportunity(uow)
    orchestrator = _orchestrator(uow, locks)

    orchestrator.transition(opportunity.id, "responded", actor)
    orchestrator.transition(opportunity.id, "meeting", actor)

    stored = uow.opportunities.get(opportunity.id)
    assert stored.stage == "meeting"
    assert stored.row_version == 3
    assert len(uow.tasks.list_by_opportunity(opportunity.id)) == 6
    assert len(_notes_for(uow, opportunity.id)) == 2


def test_stale_row_version_is_a_conflict(uow) -> None:
    opportunity = _seed_opportunity(uow)

    with pytest.raises(ConflictError):
        uow.opportunities.update(opportunity.id, {"notes": "late write"}, expected_row_version=9)


def test_transition_records_audit_and_event(uow, locks, actor) -> None:
    opportunity = _seed_opportunity(uow)

    _orchestrator(uow, locks).transition(opportunity.id, "responded", actor)

    entries = audit.entries_for("crm.opportunity", str(opportunity.id))
    assert len(entries) == 1
    assert entries[0]["action"] == "change_stage"
    assert entries[0]["before"]["stage"] == "gift_sent"
    assert entries[0]["after"]["stage"] == "responded"
    assert entries[0]["correlation_id"] == "corr-lifecycle"

    payload = events.events_of_type("crm.opportunity.stage_changed")[0]["payload"]
    assert payload == {
        "opportunity_id": str(opportunity.id),
        "from_stage": "gift_sent",
        "to_stage": "responded",
        "probability": 40,
        "tasks_created": 3,
    }


def test_every_stage_keeps_probability_in_bounds(uow, locks, actor) -> None:
    opportunity = _seed_opportunity(uow, stage=None)
    orchestrator = _orchestrator(uow, locks)

    for stage in STAGE_DEFINITIONS:
        result = orchestrator.transition(opportunity.id, stage.value, actor, generate_tasks=False)
        assert 0 <= result.opportunity.probability <= 100


def test_stage_history_follows_audit_trail(uow, locks, actor) -> None:
    opportunity = _seed_opportunity(uow)
    orchestrator = _orchestrator(uow, locks)

    orchestrator.transition(opportunity.id, "responded", actor)
    orchestrator.transition(opportunity.id, "responded", actor)
    orchestrator.transition(opportunity.id, "closed_lost", actor)

    assert audit.stage_history(opportunity.id) == [("gift_sent", "responded"), ("responded", "closed_lost")]
    changed = audit.entries_for("crm.opportunity", str(opportunity.id))[0]["changed_fields"]
    assert {"stage", "probability"} <= set(changed)
    assert "closed_at" not in changed
