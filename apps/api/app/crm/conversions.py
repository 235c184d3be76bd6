from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any

from app import audit, events
from app.context import actor_scope
from app.core.config import get_settings
from app.crm.actor import ActorUser
from app.crm.errors import ConflictError, NotFoundError
from app.crm.lifecycle import Clock, OpportunityLocks, TransitionOrchestrator, opportunity_locks
from app.crm.models import CRMClient, CRMCompany, CRMLead, CRMOpportunity, CRMTask, utcnow
from app.crm.repositories import UnitOfWork
from app.crm.stages import Stage, label_for
from app.metrics import observe_conversion
from app.otel import lifecycle_span, set_span_attributes


logger = logging.getLogger("app.crm.lifecycle")

UNKNOWN_COMPANY = "Unknown Company"


@dataclass
class LeadPromotion:
    lead: CRMLead
    opportunity: CRMOpportunity
    tasks: list[CRMTask] = field(default_factory=list)


@dataclass
class ClientConversion:
    opportunity: CRMOpportunity
    client: CRMClient
    company: CRMCompany | None = None
    lead: CRMLead | None = None


def split_contact_name(name: str | None) -> tuple[str, str]:
    cleaned = (name or "").strip()
    if not cleaned:
        return "", ""
    first, _, last = cleaned.partition(" ")
    return first, last.strip()


def _default_deal_name(lead: CRMLead) -> str:
    return f"{lead.company_name or lead.contact_name} - Website Project"


class ConversionWorkflows:
    """Lead -> opportunity -> client promotions.

    Each workflow runs in a single unit of work and commits once. Conversation
    history stays on the retired record; callers move it with ``LineageLinker.relink_all``.
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
        self.orchestrator = TransitionOrchestrator(uow, clock=clock, locks=self.locks, lock_timeout=lock_timeout)

    def promote_lead_to_opportunity(
        self,
        lead_id: uuid.UUID,
        actor: ActorUser,
        *,
        stage: str | None = None,
        schedule_date: date | None = None,
        deal_name: str | None = None,
        deal_value: Decimal | None = None,
        expected_close_date: date | None = None,
        owner_user_id: uuid.UUID | None = None,
        notes: str | None = None,
    ) -> LeadPromotion:
        settings = get_settings()
        target_stage = stage or settings.default_conversion_stage

        with actor_scope(actor.user_id), lifecycle_span(
            "crm.lead.promote", actor.correlation_id, lead_id=lead_id, to_stage=target_stage
        ) as span:
            try:
                lead = self.uow.leads.get(lead_id)
                if lead is None:
                    raise NotFoundError("lead", lead_id)
                if lead.converted_opportunity_id is not None:
                    raise ConflictError(
                        "lead has already been promoted",
                        details={
                            "lead_id": str(lead_id),
                            "opportunity_id": str(lead.converted_opportunity_id),
                        },
                    )

                now = self.clock()
                resolved_value = deal_value
                if resolved_value is None:
                    resolved_value = lead.estimated_value or settings.default_deal_value
                opportunity = self.uow.opportunities.create(
                    {
                        "lead_id": lead.id,
                        "company_name": lead.company_name or UNKNOWN_COMPANY,
                        "contact_name": lead.contact_name,
                        "contact_email": lead.email,
                        "contact_phone": lead.phone,
                        "deal_name": deal_name or _default_deal_name(lead),
                        "deal_value": resolved_value,
                        "stage": None,
                        "expected_close_date": expected_close_date,
                        "source": lead.source,
                        "notes": notes if notes is not None else lead.notes,
                        "owner_user_id": owner_user_id or lead.owner_user_id or actor.user_uuid,
                        "created_at": now,
                        "updated_at": now,
                    }
                )

                result = self.orchestrator.apply(
                    opportunity.id,
                    target_stage,
                    actor,
                    base_date=schedule_date or now.date(),
                    generate_tasks=True,
                )

                lead = self.uow.leads.update(
                    lead.id,
                    {
                        "status": "qualified",
                        "converted_opportunity_id": opportunity.id,
                        "converted_at": now,
                        "updated_at": now,
                    },
                )
                self.uow.conversations.create(
                    {
                        "lead_id": lead.id,
                        "opportunity_id": opportunity.id,
                        "activity_type": "note",
                        "title": "Lead promoted",
                        "content": (
                            f"Lead promoted to opportunity '{result.opportunity.deal_name}' "
                            f"at stage {label_for(target_stage)}."
                        ),
                        "created_by_user_id": actor.user_id,
                        "created_at": now,
                        "updated_at": now,
                    }
                )

                audit.record_for(
                    actor,
                    "crm.lead",
                    lead.id,
                    "promote",
                    after={"status": lead.status, "opportunity_id": str(opportunity.id)},
                )
                events.emit(
                    "crm.lead.promoted",
                    actor,
                    {
                        "lead_id": str(lead.id),
                        "opportunity_id": str(opportunity.id),
                        "stage": target_stage,
                        "tasks_created": len(result.created_tasks),
                    },
                )
                self.uow.commit()
            except Exception:
                self.uow.rollback()
                raise
            set_span_attributes(span, opportunity_id=opportunity.id, tasks_created=len(result.created_tasks))

        observe_conversion("lead_to_opportunity")
        logger.info(
            "lead.promoted",
            extra={
                "lead_id": str(lead_id),
                "opportunity_id": str(result.opportunity.id),
                "to_stage": target_stage,
                "tasks_created": len(result.created_tasks),
            },
        )
        return LeadPromotion(lead=lead, opportunity=result.opportunity, tasks=result.created_tasks)

    def promote_opportunity_to_client(
        self,
        opportunity_id: uuid.UUID,
        actor: ActorUser,
        *,
        notes: str | None = None,
    ) -> ClientConversion:
        with actor_scope(actor.user_id), lifecycle_span(
            "crm.opportunity.convert", actor.correlation_id, opportunity_id=opportunity_id
        ) as span:
            try:
                with self.locks.hold(opportunity_id, self.orchestrator.lock_timeout):
                    conversion = self._convert(opportunity_id, actor, notes)
                    self.uow.commit()
            except Exception:
                self.uow.rollback()
                raise
            set_span_attributes(span, client_id=conversion.client.id)

        observe_conversion("opportunity_to_client")
        logger.info(
            "opportunity.converted",
            extra={
                "opportunity_id": str(opportunity_id),
                "client_id": str(conversion.client.id),
                "lead_id": str(conversion.lead.id) if conversion.lead else None,
            },
        )
        return conversion

    def _convert(self, opportunity_id: uuid.UUID, actor: ActorUser, notes: str | None) -> ClientConversion:
        opportunity = self.uow.opportunities.get(opportunity_id)
        if opportunity is None:
            raise NotFoundError("opportunity", opportunity_id)
        if opportunity.client_id is not None:
            raise ConflictError(
                "opportunity has already been converted",
                details={"opportunity_id": str(opportunity_id), "client_id": str(opportunity.client_id)},
            )

        now = self.clock()
        company: CRMCompany | None = None
        if opportunity.company_name and opportunity.company_name != UNKNOWN_COMPANY:
            company = self.uow.companies.create(
                {"name": opportunity.company_name, "phone": opportunity.contact_phone, "created_at": now, "updated_at": now}
            )

        first_name, last_name = split_contact_name(opportunity.contact_name)
        client_fields: dict[str, Any] = {
            "company_id": company.id if company else None,
            "first_name": first_name or opportunity.company_name,
            "last_name": last_name,
            "email": opportunity.contact_email,
            "phone": opportunity.contact_phone,
            "is_primary_contact": True,
            "notes": notes,
            "created_at": now,
            "updated_at": now,
        }
        client = self.uow.clients.create(client_fields)

        result = self.orchestrator.apply(
            opportunity.id,
            Stage.CLOSED_WON.value,
            actor,
            generate_tasks=False,
            fields={"client_id": client.id},
        )

        lead: CRMLead | None = None
        if opportunity.lead_id is not None:
            lead = self.uow.leads.get(opportunity.lead_id)
            if lead is not None:
                lead = self.uow.leads.update(lead.id, {"status": "won", "updated_at": now})

        self.uow.conversations.create(
            {
                "opportunity_id": opportunity.id,
                "client_id": client.id,
                "company_id": company.id if company else None,
                "activity_type": "note",
                "title": "Converted to client",
                "content": f"Opportunity '{result.opportunity.deal_name}' won and converted to a client.",
                "created_by_user_id": actor.user_id,
                "created_at": now,
                "updated_at": now,
            }
        )

        audit.record_for(
            actor,
            "crm.opportunity",
            opportunity.id,
            "convert_to_client",
            after={"client_id": str(client.id), "company_id": str(company.id) if company else None},
        )
        events.emit(
            "crm.opportunity.converted",
            actor,
            {
                "opportunity_id": str(opportunity.id),
                "client_id": str(client.id),
                "company_id": str(company.id) if company else None,
                "lead_id": str(lead.id) if lead else None,
            },
        )
        return ClientConversion(opportunity=result.opportunity, client=client, company=company, lead=lead)
