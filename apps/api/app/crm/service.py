from __future__ import annotations

import uuid
from collections import Counter
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

from pydantic import BaseModel

from app import audit, events
from app.crm.actor import ActorUser
from app.crm.conversions import ConversionWorkflows
from app.crm.errors import ConflictError, InvalidArgumentError, NotFoundError
from app.crm.lifecycle import TransitionOrchestrator, opportunity_locks
from app.crm.lineage import LineageLinker
from app.crm.models import CRMClient, CRMCompany, CRMLead, CRMOpportunity, CRMTask, utcnow
from app.crm.repositories import CLOSED_TASK_STATUSES, ConversationSelector, UnitOfWork
from app.crm.schemas import (
    ActivityType,
    ClientConversionRead,
    ClientCreate,
    ClientRead,
    ClientUpdate,
    CompanyCreate,
    CompanyRead,
    CompanyUpdate,
    ContactMethod,
    ConversationBulkLinkRead,
    ConversationBulkLinkRequest,
    ConversationCreate,
    ConversationLinkRequest,
    ConversationOptionsRead,
    ConversationOutcome,
    ConversationPage,
    ConversationRead,
    ConversationUpdate,
    JourneyAnalyticsRead,
    JourneyRead,
    JourneyStageRead,
    LeadCreate,
    LeadPromoteRequest,
    LeadPromotionRead,
    LeadRead,
    LeadStatsRead,
    LeadStatusCountRead,
    LeadUpdate,
    OpportunityConvertRequest,
    OpportunityCreate,
    OpportunityRead,
    OpportunityStageRequest,
    OpportunityUpdate,
    StageDurationRead,
    StageSummaryRead,
    TaskCreate,
    TaskRead,
    TaskStatsRead,
    TaskUpdate,
    TransitionRead,
)
from app.crm.stages import STAGE_DEFINITIONS
from app.crm.task_templates import TASK_TEMPLATES


# follow-ups and due dates within this many days count as upcoming
UPCOMING_WINDOW_DAYS = 7


__all__ = [
    "ActorUser",
    "ClientService",
    "CompanyService",
    "ConversationService",
    "LeadService",
    "OpportunityService",
    "TaskService",
]


def _as_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _snapshot(schema: type[BaseModel], record: Any) -> dict[str, Any]:
    return schema.model_validate(record).model_dump(mode="json")


class LeadService:
    entity_type = "crm.lead"

    def create_lead(self, uow: UnitOfWork, actor: ActorUser, dto: LeadCreate) -> LeadRead:
        fields = dto.model_dump()
        if fields["owner_user_id"] is None:
            fields["owner_user_id"] = actor.user_uuid
        lead = uow.leads.create(fields)
        created = LeadRead.model_validate(lead)
        audit.record_for(actor, self.entity_type, lead.id, "create", None, created.model_dump(mode="json"))
        events.emit("crm.lead.created", actor, {"lead_id": str(lead.id)})
        uow.commit()
        return created

    def list_leads(self, uow: UnitOfWork, filters: dict[str, Any], offset: int, limit: int) -> list[LeadRead]:
        return [LeadRead.model_validate(row) for row in uow.leads.list(filters, offset, limit)]

    def get_lead(self, uow: UnitOfWork, lead_id: uuid.UUID) -> LeadRead:
        return LeadRead.model_validate(self._require(uow, lead_id))

    def update_lead(self, uow: UnitOfWork, actor: ActorUser, lead_id: uuid.UUID, dto: LeadUpdate) -> LeadRead:
        lead = self._require(uow, lead_id)
        if lead.row_version != dto.row_version:
            raise ConflictError(
                "row_version conflict",
                details={"lead_id": str(lead_id), "row_version": lead.row_version},
            )
        before = _snapshot(LeadRead, lead)
        changes = dto.model_dump(exclude_unset=True, exclude={"row_version"})
        changes["updated_at"] = utcnow()
        updated = LeadRead.model_validate(uow.leads.update(lead_id, changes))
        audit.record_for(actor, self.entity_type, lead_id, "update", before, updated.model_dump(mode="json"))
        uow.commit()
        return updated

    def promote_lead(
        self,
        uow: UnitOfWork,
        actor: ActorUser,
        lead_id: uuid.UUID,
        dto: LeadPromoteRequest,
    ) -> LeadPromotionRead:
        promotion = ConversionWorkflows(uow).promote_lead_to_opportunity(
            lead_id,
            actor,
            stage=dto.stage,
            schedule_date=dto.schedule_date,
            deal_name=dto.deal_name,
            deal_value=dto.deal_value,
            expected_close_date=dto.expected_close_date,
            owner_user_id=dto.owner_user_id,
            notes=dto.notes,
        )
        return LeadPromotionRead(
            lead=LeadRead.model_validate(promotion.lead),
            opportunity=OpportunityRead.model_validate(promotion.opportunity),
            tasks=[TaskRead.model_validate(task) for task in promotion.tasks],
        )

    def delete_lead(self, uow: UnitOfWork, actor: ActorUser, lead_id: uuid.UUID) -> None:
        lead = self._require(uow, lead_id)
        # promoted leads anchor an opportunity's lineage
        if lead.converted_opportunity_id is not None:
            raise ConflictError(
                "promoted leads cannot be deleted",
                details={"lead_id": str(lead_id), "opportunity_id": str(lead.converted_opportunity_id)},
            )
        before = _snapshot(LeadRead, lead)
        try:
            removed_tasks = uow.tasks.delete_by_lead(lead_id)
            uow.leads.delete(lead_id)
            audit.record_for(actor, self.entity_type, lead_id, "delete", before, {"tasks_removed": removed_tasks})
            uow.commit()
        except Exception:
            uow.rollback()
            raise

    def lead_stats(self, uow: UnitOfWork, today: date | None = None) -> LeadStatsRead:
        today = today or utcnow().date()
        by_status = uow.leads.summarize_by_status()
        return LeadStatsRead(
            by_status=[
                LeadStatusCountRead(status=status, count=count, total_value=total)
                for status, (count, total) in sorted(by_status.items())
            ],
            by_source=uow.leads.count_by_source(),
            total_leads=sum(count for count, _ in by_status.values()),
            total_value=sum((total for _, total in by_status.values()), Decimal("0")),
            upcoming_follow_ups=uow.leads.count_open_follow_ups(
                on_or_after=today, before=today + timedelta(days=UPCOMING_WINDOW_DAYS + 1)
            ),
            overdue_follow_ups=uow.leads.count_open_follow_ups(before=today),
        )

    def _require(self, uow: UnitOfWork, lead_id: uuid.UUID) -> CRMLead:
        lead = uow.leads.get(lead_id)
        if lead is None:
            raise NotFoundError("lead", lead_id)
        return lead


class OpportunityService:
    entity_type = "crm.opportunity"

    def create_opportunity(self, uow: UnitOfWork, actor: ActorUser, dto: OpportunityCreate) -> TransitionRead:
        if dto.lead_id is not None and uow.leads.get(dto.lead_id) is None:
            raise NotFoundError("lead", dto.lead_id)

        now = utcnow()
        fields = dto.model_dump(exclude={"stage", "probability", "generate_tasks", "schedule_date"})
        fields.update(
            stage=None,
            owner_user_id=dto.owner_user_id or actor.user_uuid,
            created_at=now,
            updated_at=now,
        )
        try:
            opportunity = uow.opportunities.create(fields)
            result = TransitionOrchestrator(uow).apply(
                opportunity.id,
                dto.stage,
                actor,
                explicit_probability=dto.probability,
                base_date=dto.schedule_date,
                generate_tasks=dto.generate_tasks,
            )
            created = OpportunityRead.model_validate(result.opportunity)
            audit.record_for(actor, self.entity_type, opportunity.id, "create", None, created.model_dump(mode="json"))
            events.emit("crm.opportunity.created", actor, {"opportunity_id": str(opportunity.id), "stage": dto.stage})
            uow.commit()
        except Exception:
            uow.rollback()
            raise
        return TransitionRead(
            opportunity=created,
            created_tasks=[TaskRead.model_validate(task) for task in result.created_tasks],
            from_stage=None,
            changed=True,
        )

    def list_opportunities(
        self,
        uow: UnitOfWork,
        filters: dict[str, Any],
        offset: int,
        limit: int,
    ) -> list[OpportunityRead]:
        return [OpportunityRead.model_validate(row) for row in uow.opportunities.list(filters, offset, limit)]

    def get_opportunity(self, uow: UnitOfWork, opportunity_id: uuid.UUID) -> OpportunityRead:
        opportunity = uow.opportunities.get(opportunity_id)
        if opportunity is None:
            raise NotFoundError("opportunity", opportunity_id)
        return OpportunityRead.model_validate(opportunity)

    def update_opportunity(
        self,
        uow: UnitOfWork,
        actor: ActorUser,
        opportunity_id: uuid.UUID,
        dto: OpportunityUpdate,
    ) -> OpportunityRead:
        orchestrator = TransitionOrchestrator(uow)
        with opportunity_locks.hold(opportunity_id, orchestrator.lock_timeout):
            current = uow.opportunities.get(opportunity_id)
            if current is None:
                raise NotFoundError("opportunity", opportunity_id)
            before = _snapshot(OpportunityRead, current)
            changes = dto.model_dump(exclude_unset=True, exclude={"row_version"})
            changes["updated_at"] = utcnow()
            try:
                updated = OpportunityRead.model_validate(
                    uow.opportunities.update(opportunity_id, changes, expected_row_version=dto.row_version)
                )
                audit.record_for(
                    actor, self.entity_type, opportunity_id, "update", before, updated.model_dump(mode="json")
                )
                uow.commit()
            except Exception:
                uow.rollback()
                raise
        return updated

    def change_stage(
        self,
        uow: UnitOfWork,
        actor: ActorUser,
        opportunity_id: uuid.UUID,
        dto: OpportunityStageRequest,
    ) -> TransitionRead:
        result = TransitionOrchestrator(uow).transition(
            opportunity_id,
            dto.stage,
            actor,
            explicit_probability=dto.probability,
            base_date=dto.base_date,
            generate_tasks=dto.generate_tasks,
            fields=dto.changes.model_dump(exclude_unset=True) if dto.changes is not None else None,
        )
        return TransitionRead(
            opportunity=OpportunityRead.model_validate(result.opportunity),
            created_tasks=[TaskRead.model_validate(task) for task in result.created_tasks],
            from_stage=result.from_stage,
            changed=result.changed,
        )

    def convert_to_client(
        self,
        uow: UnitOfWork,
        actor: ActorUser,
        opportunity_id: uuid.UUID,
        dto: OpportunityConvertRequest,
    ) -> ClientConversionRead:
        conversion = ConversionWorkflows(uow).promote_opportunity_to_client(opportunity_id, actor, notes=dto.notes)
        return ClientConversionRead(
            opportunity=OpportunityRead.model_validate(conversion.opportunity),
            client=ClientRead.model_validate(conversion.client),
            company=CompanyRead.model_validate(conversion.company) if conversion.company else None,
            lead=LeadRead.model_validate(conversion.lead) if conversion.lead else None,
        )

    def stage_summary(self, uow: UnitOfWork) -> list[StageSummaryRead]:
        totals = uow.opportunities.summarize_by_stage()
        summary: list[StageSummaryRead] = []
        for definition in STAGE_DEFINITIONS.values():
            count, total_value = totals.get(definition.id.value, (0, 0.0))
            # legacy stages only show up while deals still sit in them
            if definition.is_legacy and count == 0:
                continue
            summary.append(
                StageSummaryRead(
                    id=definition.id.value,
                    label=definition.label,
                    default_probability=definition.default_probability,
                    is_closed=definition.is_closed,
                    is_legacy=definition.is_legacy,
                    has_task_template=definition.id in TASK_TEMPLATES,
                    count=count,
                    total_value=total_value,
                )
            )
        return summary


class TaskService:
    entity_type = "crm.task"

    def create_task(self, uow: UnitOfWork, actor: ActorUser, dto: TaskCreate) -> TaskRead:
        if dto.opportunity_id is not None and uow.opportunities.get(dto.opportunity_id) is None:
            raise NotFoundError("opportunity", dto.opportunity_id)
        if dto.lead_id is not None and uow.leads.get(dto.lead_id) is None:
            raise NotFoundError("lead", dto.lead_id)
        if dto.client_id is not None and uow.clients.get(dto.client_id) is None:
            raise NotFoundError("client", dto.client_id)

        fields = dto.model_dump()
        fields["owner_user_id"] = dto.owner_user_id or actor.user_uuid
        fields["created_by_user_id"] = actor.user_id
        if dto.status == "completed":
            fields["completed_at"] = utcnow()
        task = TaskRead.model_validate(uow.tasks.create(fields))
        audit.record_for(actor, self.entity_type, task.id, "create", None, task.model_dump(mode="json"))
        uow.commit()
        return task

    def list_tasks(self, uow: UnitOfWork, filters: dict[str, Any], offset: int, limit: int) -> list[TaskRead]:
        return [TaskRead.model_validate(row) for row in uow.tasks.list(filters, offset, limit)]

    def update_task(self, uow: UnitOfWork, actor: ActorUser, task_id: uuid.UUID, dto: TaskUpdate) -> TaskRead:
        task = uow.tasks.get(task_id)
        if task is None:
            raise NotFoundError("task", task_id)
        before = _snapshot(TaskRead, task)
        changes = dto.model_dump(exclude_unset=True)
        if "status" in changes:
            if changes["status"] == "completed" and task.status != "completed":
                changes["completed_at"] = utcnow()
            elif changes["status"] != "completed":
                changes["completed_at"] = None
        changes["updated_at"] = utcnow()
        updated = TaskRead.model_validate(uow.tasks.update(task_id, changes))
        audit.record_for(actor, self.entity_type, task_id, "update", before, updated.model_dump(mode="json"))
        uow.commit()
        return updated

    def complete_task(self, uow: UnitOfWork, actor: ActorUser, task_id: uuid.UUID) -> TaskRead:
        task = self._require(uow, task_id)
        if task.status == "completed":
            return TaskRead.model_validate(task)
        before = _snapshot(TaskRead, task)
        now = utcnow()
        updated = TaskRead.model_validate(
            uow.tasks.update(task_id, {"status": "completed", "completed_at": now, "updated_at": now})
        )
        audit.record_for(actor, self.entity_type, task_id, "complete", before, updated.model_dump(mode="json"))
        events.emit(
            "crm.task.completed",
            actor,
            {
                "task_id": str(task_id),
                "opportunity_id": str(updated.opportunity_id) if updated.opportunity_id else None,
                "lead_id": str(updated.lead_id) if updated.lead_id else None,
            },
        )
        uow.commit()
        return updated

    def delete_task(self, uow: UnitOfWork, actor: ActorUser, task_id: uuid.UUID) -> None:
        before = _snapshot(TaskRead, self._require(uow, task_id))
        uow.tasks.delete(task_id)
        audit.record_for(actor, self.entity_type, task_id, "delete", before, None)
        uow.commit()

    def my_tasks(self, uow: UnitOfWork, actor: ActorUser) -> list[TaskRead]:
        return [TaskRead.model_validate(row) for row in uow.tasks.list_open_for_owner(actor.user_uuid)]

    def task_stats(self, uow: UnitOfWork, today: date | None = None) -> TaskStatsRead:
        today = today or utcnow().date()
        by_status = uow.tasks.count_by_status()
        total = sum(by_status.values())
        open_count = total - sum(by_status.get(status, 0) for status in CLOSED_TASK_STATUSES)
        return TaskStatsRead(
            by_status=by_status,
            open_by_priority=uow.tasks.count_open_by_priority(),
            total_tasks=total,
            completed_tasks=by_status.get("completed", 0),
            open_tasks=open_count,
            overdue_tasks=uow.tasks.count_open_due(before=today),
            due_today=uow.tasks.count_open_due(on_or_after=today, before=today + timedelta(days=1)),
            due_this_week=uow.tasks.count_open_due(
                on_or_after=today, before=today + timedelta(days=UPCOMING_WINDOW_DAYS + 1)
            ),
        )

    def _require(self, uow: UnitOfWork, task_id: uuid.UUID) -> CRMTask:
        task = uow.tasks.get(task_id)
        if task is None:
            raise NotFoundError("task", task_id)
        return task


class ConversationService:
    entity_type = "crm.conversation"

    def create_conversation(self, uow: UnitOfWork, actor: ActorUser, dto: ConversationCreate) -> ConversationRead:
        fields = dto.model_dump()
        fields["created_by_user_id"] = actor.user_id
        conversation = ConversationRead.model_validate(uow.conversations.create(fields))
        audit.record_for(actor, self.entity_type, conversation.id, "create", None, conversation.model_dump(mode="json"))
        uow.commit()
        return conversation

    def list_conversations(
        self,
        uow: UnitOfWork,
        selector: ConversationSelector,
        offset: int,
        limit: int,
    ) -> ConversationPage:
        rows = uow.conversations.list_by_selector(selector, offset=offset, limit=limit)
        return ConversationPage(
            conversations=[ConversationRead.model_validate(row) for row in rows],
            total=uow.conversations.count_by_selector(selector),
        )

    def update_conversation(
        self,
        uow: UnitOfWork,
        actor: ActorUser,
        conversation_id: uuid.UUID,
        dto: ConversationUpdate,
    ) -> ConversationRead:
        conversation = uow.conversations.get(conversation_id)
        if conversation is None:
            raise NotFoundError("conversation", conversation_id)
        before = _snapshot(ConversationRead, conversation)
        changes = dto.model_dump(exclude_unset=True)
        changes["updated_at"] = utcnow()
        updated = ConversationRead.model_validate(uow.conversations.update(conversation_id, changes))
        audit.record_for(actor, self.entity_type, conversation_id, "update", before, updated.model_dump(mode="json"))
        uow.commit()
        return updated

    def delete_conversation(self, uow: UnitOfWork, actor: ActorUser, conversation_id: uuid.UUID) -> None:
        conversation = uow.conversations.get(conversation_id)
        if conversation is None:
            raise NotFoundError("conversation", conversation_id)
        before = _snapshot(ConversationRead, conversation)
        uow.conversations.delete(conversation_id)
        audit.record_for(actor, self.entity_type, conversation_id, "delete", before, None)
        uow.commit()

    def link_conversation(
        self,
        uow: UnitOfWork,
        actor: ActorUser,
        conversation_id: uuid.UUID,
        dto: ConversationLinkRequest,
    ) -> ConversationRead:
        try:
            linked = LineageLinker(uow).relink_one(
                conversation_id,
                opportunity_id=dto.opportunity_id,
                client_id=dto.client_id,
                company_id=dto.company_id,
            )
            result = ConversationRead.model_validate(linked)
            audit.record_for(actor, self.entity_type, conversation_id, "link", None, result.model_dump(mode="json"))
            uow.commit()
        except Exception:
            uow.rollback()
            raise
        return result

    def bulk_link(
        self,
        uow: UnitOfWork,
        actor: ActorUser,
        dto: ConversationBulkLinkRequest,
    ) -> ConversationBulkLinkRead:
        try:
            relinked = LineageLinker(uow).relink_all(**dto.model_dump())
            source_id = dto.from_lead_id or dto.from_opportunity_id
            audit.record_for(
                actor,
                self.entity_type,
                source_id,
                "bulk_link",
                None,
                {**dto.model_dump(mode="json"), "relinked": relinked},
            )
            uow.commit()
        except Exception:
            uow.rollback()
            raise
        return ConversationBulkLinkRead(relinked=relinked)

    def history(
        self,
        uow: UnitOfWork,
        *,
        lead_id: uuid.UUID | None = None,
        opportunity_id: uuid.UUID | None = None,
        client_id: uuid.UUID | None = None,
        company_id: uuid.UUID | None = None,
    ) -> list[ConversationRead]:
        lead_ids = [lead_id] if lead_id else []
        if opportunity_id is not None:
            opportunity = uow.opportunities.get(opportunity_id)
            if opportunity is not None and opportunity.lead_id is not None:
                lead_ids.append(opportunity.lead_id)
        rows = uow.conversations.list_related(
            lead_ids=lead_ids,
            opportunity_ids=[opportunity_id] if opportunity_id else [],
            client_ids=[client_id] if client_id else [],
            company_ids=[company_id] if company_id else [],
        )
        return [ConversationRead.model_validate(row) for row in reversed(rows)]

    def options(self) -> ConversationOptionsRead:
        return ConversationOptionsRead(
            activity_types=list(ActivityType.__args__),
            contact_methods=list(ContactMethod.__args__),
            outcomes=list(ConversationOutcome.__args__),
        )

    def journey(self, uow: UnitOfWork, entity_type: str, entity_id: uuid.UUID) -> JourneyRead:
        lead, opportunity, client = self._trace_lineage(uow, entity_type, entity_id)

        stages: list[JourneyStageRead] = []
        if lead is not None:
            stages.append(
                JourneyStageRead(
                    entity_type="lead",
                    entity_id=lead.id,
                    name=lead.company_name or lead.contact_name,
                    status=lead.status,
                    created_at=_as_aware(lead.created_at),
                    updated_at=_as_aware(lead.updated_at),
                )
            )
        if opportunity is not None:
            stages.append(
                JourneyStageRead(
                    entity_type="opportunity",
                    entity_id=opportunity.id,
                    name=opportunity.deal_name,
                    stage=opportunity.stage,
                    probability=opportunity.probability,
                    deal_value=opportunity.deal_value,
                    created_at=_as_aware(opportunity.created_at),
                    updated_at=_as_aware(opportunity.updated_at),
                )
            )
        if client is not None:
            stages.append(
                JourneyStageRead(
                    entity_type="client",
                    entity_id=client.id,
                    name=f"{client.first_name} {client.last_name}".strip(),
                    created_at=_as_aware(client.created_at),
                    updated_at=_as_aware(client.updated_at),
                )
            )

        rows = uow.conversations.list_related(
            lead_ids=[lead.id] if lead else [],
            opportunity_ids=[opportunity.id] if opportunity else [],
            client_ids=[client.id] if client else [],
        )
        conversations = [ConversationRead.model_validate(row) for row in rows]
        now = utcnow()
        analytics = JourneyAnalyticsRead(
            total_interactions=len(conversations),
            interaction_types=dict(Counter(item.activity_type for item in conversations)),
            outcomes=dict(Counter(item.outcome for item in conversations if item.outcome)),
            time_in_each_stage=[
                StageDurationRead(entity_type=stage.entity_type, days=(stage.updated_at - stage.created_at).days)
                for stage in stages
            ],
            total_journey_days=(now - stages[0].created_at).days if stages else 0,
        )
        return JourneyRead(stages=stages, conversations=conversations, analytics=analytics)

    def _trace_lineage(
        self,
        uow: UnitOfWork,
        entity_type: str,
        entity_id: uuid.UUID,
    ) -> tuple[CRMLead | None, CRMOpportunity | None, CRMClient | None]:
        lead: CRMLead | None = None
        opportunity: CRMOpportunity | None = None
        client: CRMClient | None = None

        if entity_type == "lead":
            lead = uow.leads.get(entity_id)
            if lead is None:
                raise NotFoundError("lead", entity_id)
            if lead.converted_opportunity_id is not None:
                opportunity = uow.opportunities.get(lead.converted_opportunity_id)
            else:
                matches = uow.opportunities.list({"lead_id": lead.id}, 0, 1)
                opportunity = matches[0] if matches else None
            if opportunity is not None and opportunity.client_id is not None:
                client = uow.clients.get(opportunity.client_id)
        elif entity_type == "opportunity":
            opportunity = uow.opportunities.get(entity_id)
            if opportunity is None:
                raise NotFoundError("opportunity", entity_id)
            if opportunity.lead_id is not None:
                lead = uow.leads.get(opportunity.lead_id)
            if opportunity.client_id is not None:
                client = uow.clients.get(opportunity.client_id)
        elif entity_type == "client":
            client = uow.clients.get(entity_id)
            if client is None:
                raise NotFoundError("client", entity_id)
            matches = uow.opportunities.list({"client_id": client.id}, 0, 1)
            opportunity = matches[0] if matches else None
            if opportunity is not None and opportunity.lead_id is not None:
                lead = uow.leads.get(opportunity.lead_id)
        else:
            raise InvalidArgumentError(
                f"unsupported journey entity type '{entity_type}'",
                details={"entity_type": entity_type},
            )
        return lead, opportunity, client


class ClientService:
    entity_type = "crm.client"

    def create_client(self, uow: UnitOfWork, actor: ActorUser, dto: ClientCreate) -> ClientRead:
        if dto.company_id is not None and uow.companies.get(dto.company_id) is None:
            raise NotFoundError("company", dto.company_id)
        client = ClientRead.model_validate(uow.clients.create(dto.model_dump()))
        audit.record_for(actor, self.entity_type, client.id, "create", None, client.model_dump(mode="json"))
        uow.commit()
        return client

    def update_client(self, uow: UnitOfWork, actor: ActorUser, client_id: uuid.UUID, dto: ClientUpdate) -> ClientRead:
        client = uow.clients.get(client_id)
        if client is None:
            raise NotFoundError("client", client_id)
        changes = dto.model_dump(exclude_unset=True)
        if changes.get("company_id") is not None and uow.companies.get(changes["company_id"]) is None:
            raise NotFoundError("company", changes["company_id"])
        before = _snapshot(ClientRead, client)
        changes["updated_at"] = utcnow()
        updated = ClientRead.model_validate(uow.clients.update(client_id, changes))
        audit.record_for(actor, self.entity_type, client_id, "update", before, updated.model_dump(mode="json"))
        uow.commit()
        return updated

    def get_client(self, uow: UnitOfWork, client_id: uuid.UUID) -> ClientRead:
        client = uow.clients.get(client_id)
        if client is None:
            raise NotFoundError("client", client_id)
        return ClientRead.model_validate(client)

    def list_clients(self, uow: UnitOfWork, filters: dict[str, Any], offset: int, limit: int) -> list[ClientRead]:
        return [ClientRead.model_validate(row) for row in uow.clients.list(filters, offset, limit)]


class CompanyService:
    entity_type = "crm.company"

    def create_company(self, uow: UnitOfWork, actor: ActorUser, dto: CompanyCreate) -> CompanyRead:
        company = CompanyRead.model_validate(uow.companies.create(dto.model_dump()))
        audit.record_for(actor, self.entity_type, company.id, "create", None, company.model_dump(mode="json"))
        uow.commit()
        return company

    def update_company(
        self,
        uow: UnitOfWork,
        actor: ActorUser,
        company_id: uuid.UUID,
        dto: CompanyUpdate,
    ) -> CompanyRead:
        company = uow.companies.get(company_id)
        if company is None:
            raise NotFoundError("company", company_id)
        before = _snapshot(CompanyRead, company)
        changes = dto.model_dump(exclude_unset=True)
        changes["updated_at"] = utcnow()
        updated = CompanyRead.model_validate(uow.companies.update(company_id, changes))
        audit.record_for(actor, self.entity_type, company_id, "update", before, updated.model_dump(mode="json"))
        uow.commit()
        return updated

    def get_company(self, uow: UnitOfWork, company_id: uuid.UUID) -> CompanyRead:
        company: CRMCompany | None = uow.companies.get(company_id)
        if company is None:
            raise NotFoundError("company", company_id)
        return CompanyRead.model_validate(company)

    def list_companies(self, uow: UnitOfWork, filters: dict[str, Any], offset: int, limit: int) -> list[CompanyRead]:
        return [CompanyRead.model_validate(row) for row in uow.companies.list(filters, offset, limit)]
