from __future__ import annotations

import logging
import threading
import time
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

from app import audit, events
from app.context import actor_scope
from app.core.config import get_settings
from app.crm.actor import ActorUser
from app.crm.errors import ConflictError, CRMError, InvalidArgumentError, NotFoundError
from app.crm.models import CRMOpportunity, CRMTask, utcnow
from app.crm.repositories import UnitOfWork
from app.crm.stages import Stage, is_closed, is_known, label_for, probability_for
from app.crm.task_templates import tasks_for
from app.metrics import observe_generated_tasks, observe_transition, observe_transition_conflict
from app.otel import lifecycle_span, set_span_attributes


logger = logging.getLogger("app.crm.lifecycle")

Clock = Callable[[], datetime]

# managed by the orchestrator itself, never accepted as plain field edits
_PROTECTED_FIELDS = frozenset({"id", "stage", "probability", "row_version", "closed_at", "created_at", "updated_at"})
_REQUIRED_FIELDS = frozenset({"company_name", "deal_name", "deal_value"})


@dataclass
class TransitionResult:
    opportunity: CRMOpportunity
    created_tasks: list[CRMTask] = field(default_factory=list)
    from_stage: str | None = None
    changed: bool = False


@dataclass
class _LockEntry:
    mutex: threading.Lock = field(default_factory=threading.Lock)
    users: int = 0


class OpportunityLocks:
    """Per-opportunity mutexes serializing the read-modify-write of a transition.

    An entry lives only while some caller holds or waits on it; the last one out
    drops it from the registry.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: dict[uuid.UUID, _LockEntry] = {}

    def _checkout(self, opportunity_id: uuid.UUID) -> _LockEntry:
        with self._guard:
            entry = self._entries.get(opportunity_id)
            if entry is None:
                entry = _LockEntry()
                self._entries[opportunity_id] = entry
            entry.users += 1
            return entry

    def _checkin(self, opportunity_id: uuid.UUID, entry: _LockEntry) -> None:
        with self._guard:
            entry.users -= 1
            if entry.users == 0 and self._entries.get(opportunity_id) is entry:
                del self._entries[opportunity_id]

    @contextmanager
    def hold(self, opportunity_id: uuid.UUID, timeout: float) -> Iterator[None]:
        entry = self._checkout(opportunity_id)
        try:
            if not entry.mutex.acquire(timeout=timeout):
                raise ConflictError(
                    "another transition of this opportunity is in progress",
                    details={"opportunity_id": str(opportunity_id), "reason": "lock_timeout"},
                )
            try:
                yield
            finally:
                entry.mutex.release()
        finally:
            self._checkin(opportunity_id, entry)

    def is_held(self, opportunity_id: uuid.UUID) -> bool:
        with self._guard:
            entry = self._entries.get(opportunity_id)
            return entry is not None and entry.mutex.locked()

    def tracked(self) -> int:
        with self._guard:
            return len(self._entries)

    def clear(self) -> None:
        with self._guard:
            self._entries.clear()


opportunity_locks = OpportunityLocks()


def _stage_label(stage: str | None) -> str:
    return stage if is_known(stage) else "unknown"


def _stage_snapshot(opportunity: CRMOpportunity) -> dict[str, Any]:
    return {
        "stage": opportunity.stage,
        "probability": opportunity.probability,
        "closed_at": opportunity.closed_at.isoformat() if opportunity.closed_at else None,
        "row_version": opportunity.row_version,
    }


def _transition_note(from_stage: str | None, to_stage: str, task_count: int) -> str:
    if from_stage is None:
        text = f"Stage set to {label_for(to_stage)}."
    else:
        text = f"Stage changed from {label_for(from_stage)} to {label_for(to_stage)}."
    return f"{text} Follow-up tasks created: {task_count}."


class TransitionOrchestrator:
    """Moves opportunities between stages and materializes the stage-entry side effects.

    ``apply`` works inside the caller's unit of work and never commits, so conversion
    workflows can compose it with their own writes. ``transition`` is the standalone
    entry point: it serializes on the opportunity id, applies, and commits or rolls back.
    """

    def __init__(
        self,
        uow: UnitOfWork,
        *,
        clock: Clock = utcnow,
        locks: OpportunityLocks | None = None,
        lock_timeout: float | None = None,
    ) -> None:
        self.uow = uow
        self.clock = clock
        self.locks = locks or opportunity_locks
        self.lock_timeout = (
            lock_timeout if lock_timeout is not None else get_settings().transition_lock_timeout_seconds
        )

    def transition(
        self,
        opportunity_id: uuid.UUID,
        target_stage: str,
        actor: ActorUser,
        *,
        explicit_probability: int | None = None,
        base_date: date | None = None,
        generate_tasks: bool | None = None,
        fields: dict[str, Any] | None = None,
    ) -> TransitionResult:
        started = time.perf_counter()
        with actor_scope(actor.user_id), lifecycle_span(
            "crm.opportunity.transition",
            actor.correlation_id,
            opportunity_id=opportunity_id,
            to_stage=target_stage,
        ) as span:
            try:
                with self.locks.hold(opportunity_id, self.lock_timeout):
                    result = self.apply(
                        opportunity_id,
                        target_stage,
                        actor,
                        explicit_probability=explicit_probability,
                        base_date=base_date,
                        generate_tasks=generate_tasks,
                        fields=fields,
                    )
                    self.uow.commit()
            except CRMError as exc:
                self.uow.rollback()
                if isinstance(exc, ConflictError):
                    details = exc.details if isinstance(exc.details, dict) else {}
                    observe_transition_conflict(str(details.get("reason", "row_version")))
                observe_transition(_stage_label(target_stage), exc.code, time.perf_counter() - started)
                logger.warning(
                    "opportunity.transition_failed",
                    extra={"opportunity_id": str(opportunity_id), "to_stage": target_stage, "error": exc.message},
                )
                raise
            except Exception:
                self.uow.rollback()
                observe_transition(_stage_label(target_stage), "error", time.perf_counter() - started)
                raise

            set_span_attributes(
                span,
                from_stage=result.from_stage or "",
                changed=result.changed,
                tasks_created=len(result.created_tasks),
            )
            observe_transition(
                _stage_label(target_stage),
                "changed" if result.changed else "unchanged",
                time.perf_counter() - started,
            )
            return result

    def apply(
        self,
        opportunity_id: uuid.UUID,
        target_stage: str,
        actor: ActorUser,
        *,
        explicit_probability: int | None = None,
        base_date: date | None = None,
        generate_tasks: bool | None = None,
        fields: dict[str, Any] | None = None,
    ) -> TransitionResult:
        opportunity = self.uow.opportunities.get(opportunity_id)
        if opportunity is None:
            raise NotFoundError("opportunity", opportunity_id)

        if generate_tasks is True and not is_known(target_stage):
            raise InvalidArgumentError(
                f"unknown stage '{target_stage}' for task generation",
                details={"stage": target_stage},
            )
        if explicit_probability is not None and not 0 <= explicit_probability <= 100:
            raise InvalidArgumentError(
                "probability must be between 0 and 100",
                details={"probability": explicit_probability},
            )

        edits = dict(fields or {})
        protected = sorted(_PROTECTED_FIELDS.intersection(edits))
        if protected:
            raise InvalidArgumentError("fields cannot be edited directly", details={"fields": protected})
        cleared = sorted(name for name in _REQUIRED_FIELDS.intersection(edits) if edits[name] is None)
        if cleared:
            raise InvalidArgumentError("fields cannot be set to null", details={"fields": cleared})

        expected_row_version = opportunity.row_version
        from_stage = opportunity.stage
        now = self.clock()

        if target_stage == from_stage:
            if explicit_probability is not None:
                edits["probability"] = explicit_probability
            if edits:
                edits["updated_at"] = now
                opportunity = self.uow.opportunities.update(
                    opportunity_id, edits, expected_row_version=expected_row_version
                )
            return TransitionResult(opportunity=opportunity, from_stage=from_stage, changed=False)

        probability = explicit_probability if explicit_probability is not None else probability_for(target_stage)
        before = _stage_snapshot(opportunity)
        edits.update(stage=target_stage, probability=probability, updated_at=now)
        if is_closed(target_stage):
            edits["closed_at"] = now
        elif opportunity.closed_at is not None:
            edits["closed_at"] = None

        opportunity = self.uow.opportunities.update(opportunity_id, edits, expected_row_version=expected_row_version)

        created_tasks: list[CRMTask] = []
        if generate_tasks is not False and not is_closed(target_stage):
            created_tasks = self._create_stage_tasks(opportunity, target_stage, base_date or now.date(), actor)

        self.uow.conversations.create(
            {
                "opportunity_id": opportunity.id,
                "activity_type": "note",
                "title": "Stage changed",
                "content": _transition_note(from_stage, target_stage, len(created_tasks)),
                "created_by_user_id": actor.user_id,
                "created_at": now,
                "updated_at": now,
            }
        )

        self._record_side_effects(actor, opportunity, before, from_stage, target_stage, created_tasks)
        return TransitionResult(
            opportunity=opportunity,
            created_tasks=created_tasks,
            from_stage=from_stage,
            changed=True,
        )

    def _create_stage_tasks(
        self,
        opportunity: CRMOpportunity,
        stage: str,
        base_date: date,
        actor: ActorUser,
    ) -> list[CRMTask]:
        owner_user_id = opportunity.owner_user_id or actor.user_uuid
        created: list[CRMTask] = []
        for spec in tasks_for(stage):
            created.append(
                self.uow.tasks.create(
                    {
                        "opportunity_id": opportunity.id,
                        "lead_id": opportunity.lead_id,
                        "title": spec.title,
                        "description": spec.description,
                        "priority": spec.priority.value,
                        "status": "pending",
                        "due_date": spec.due_on(base_date),
                        "owner_user_id": owner_user_id,
                        "created_by_user_id": actor.user_id,
                    }
                )
            )
        observe_generated_tasks(_stage_label(stage), len(created))
        return created

    def _record_side_effects(
        self,
        actor: ActorUser,
        opportunity: CRMOpportunity,
        before: dict[str, Any],
        from_stage: str | None,
        to_stage: str,
        created_tasks: list[CRMTask],
    ) -> None:
        audit.record_for(
            actor,
            "crm.opportunity",
            opportunity.id,
            "change_stage",
            before=before,
            after=_stage_snapshot(opportunity),
        )
        payload = {
            "opportunity_id": str(opportunity.id),
            "from_stage": from_stage,
            "to_stage": to_stage,
            "probability": opportunity.probability,
            "tasks_created": len(created_tasks),
        }
        events.emit("crm.opportunity.stage_changed", actor, payload)
        if to_stage == Stage.CLOSED_WON:
            events.emit("crm.opportunity.closed_won", actor, payload)
        elif to_stage == Stage.CLOSED_LOST:
            events.emit("crm.opportunity.closed_lost", actor, payload)

        logger.info(
            "opportunity.stage_changed",
            extra={
                "opportunity_id": str(opportunity.id),
                "from_stage": from_stage,
                "to_stage": to_stage,
                "tasks_created": len(created_tasks),
            },
        )
