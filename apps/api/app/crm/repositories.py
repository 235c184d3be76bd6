from __future__ import annotations

import uuid
from collections.abc import Sequence
from dataclasses import dataclass, fields as dataclass_fields
from datetime import date
from decimal import Decimal
from typing import Any, Protocol

from sqlalchemy import Select, and_, case, delete, func, or_, select, update
from sqlalchemy.orm import Session

from app.crm.errors import ConflictError, NotFoundError
from app.crm.models import (
    CRMClient,
    CRMCompany,
    CRMConversation,
    CRMLead,
    CRMOpportunity,
    CRMTask,
    utcnow,
)

# statuses that take a record out of open follow-up and task queues
CLOSED_LEAD_STATUSES = ("won", "lost")
CLOSED_TASK_STATUSES = ("completed", "cancelled")
TASK_PRIORITY_RANK = {"urgent": 0, "high": 1, "medium": 2, "low": 3}


@dataclass(frozen=True, slots=True)
class ConversationSelector:
    """Conjunction of entity references; only the supplied keys take part in matching."""

    lead_id: uuid.UUID | None = None
    opportunity_id: uuid.UUID | None = None
    client_id: uuid.UUID | None = None
    company_id: uuid.UUID | None = None

    def as_filters(self) -> dict[str, uuid.UUID]:
        return {
            item.name: getattr(self, item.name)
            for item in dataclass_fields(self)
            if getattr(self, item.name) is not None
        }

    def is_empty(self) -> bool:
        return not self.as_filters()

    def matches(self, record: Any) -> bool:
        return all(getattr(record, key) == value for key, value in self.as_filters().items())


class OpportunityRepository(Protocol):
    def get(self, opportunity_id: uuid.UUID) -> CRMOpportunity | None: ...

    def create(self, fields: dict[str, Any]) -> CRMOpportunity: ...

    def update(
        self,
        opportunity_id: uuid.UUID,
        fields: dict[str, Any],
        *,
        expected_row_version: int | None = None,
    ) -> CRMOpportunity: ...

    def list(self, filters: dict[str, Any], offset: int, limit: int) -> list[CRMOpportunity]: ...

    def summarize_by_stage(self) -> dict[str | None, tuple[int, float]]: ...


class TaskRepository(Protocol):
    def get(self, task_id: uuid.UUID) -> CRMTask | None: ...

    def create(self, fields: dict[str, Any]) -> CRMTask: ...

    def update(self, task_id: uuid.UUID, fields: dict[str, Any]) -> CRMTask: ...

    def list_by_opportunity(self, opportunity_id: uuid.UUID) -> list[CRMTask]: ...

    def list_by_lead(self, lead_id: uuid.UUID) -> list[CRMTask]: ...

    def list(self, filters: dict[str, Any], offset: int, limit: int) -> list[CRMTask]: ...

    def list_open_for_owner(self, owner_user_id: uuid.UUID) -> list[CRMTask]: ...

    def delete(self, task_id: uuid.UUID) -> None: ...

    def delete_by_lead(self, lead_id: uuid.UUID) -> int: ...

    def count_by_status(self) -> dict[str, int]: ...

    def count_open_by_priority(self) -> dict[str, int]: ...

    def count_open_due(self, *, on_or_after: date | None = None, before: date | None = None) -> int: ...


class ConversationRepository(Protocol):
    def get(self, conversation_id: uuid.UUID) -> CRMConversation | None: ...

    def create(self, fields: dict[str, Any]) -> CRMConversation: ...

    def update(self, conversation_id: uuid.UUID, fields: dict[str, Any]) -> CRMConversation: ...

    def list_by_selector(
        self,
        selector: ConversationSelector,
        *,
        offset: int = 0,
        limit: int | None = None,
    ) -> list[CRMConversation]: ...

    def count_by_selector(self, selector: ConversationSelector) -> int: ...

    def list_related(
        self,
        *,
        lead_ids: Sequence[uuid.UUID] = (),
        opportunity_ids: Sequence[uuid.UUID] = (),
        client_ids: Sequence[uuid.UUID] = (),
        company_ids: Sequence[uuid.UUID] = (),
    ) -> list[CRMConversation]: ...

    def bulk_update(self, selector: ConversationSelector, fields: dict[str, Any]) -> int: ...

    def delete(self, conversation_id: uuid.UUID) -> None: ...


class LeadRepository(Protocol):
    def get(self, lead_id: uuid.UUID) -> CRMLead | None: ...

    def create(self, fields: dict[str, Any]) -> CRMLead: ...

    def update(self, lead_id: uuid.UUID, fields: dict[str, Any]) -> CRMLead: ...

    def list(self, filters: dict[str, Any], offset: int, limit: int) -> list[CRMLead]: ...

    def delete(self, lead_id: uuid.UUID) -> None: ...

    def summarize_by_status(self) -> dict[str, tuple[int, Decimal]]: ...

    def count_by_source(self) -> dict[str, int]: ...

    def count_open_follow_ups(self, *, on_or_after: date | None = None, before: date | None = None) -> int: ...


class ClientRepository(Protocol):
    def get(self, client_id: uuid.UUID) -> CRMClient | None: ...

    def create(self, fields: dict[str, Any]) -> CRMClient: ...

    def update(self, client_id: uuid.UUID, fields: dict[str, Any]) -> CRMClient: ...

    def list(self, filters: dict[str, Any], offset: int, limit: int) -> list[CRMClient]: ...


class CompanyRepository(Protocol):
    def get(self, company_id: uuid.UUID) -> CRMCompany | None: ...

    def create(self, fields: dict[str, Any]) -> CRMCompany: ...

    def update(self, company_id: uuid.UUID, fields: dict[str, Any]) -> CRMCompany: ...

    def list(self, filters: dict[str, Any], offset: int, limit: int) -> list[CRMCompany]: ...


class UnitOfWork(Protocol):
    opportunities: OpportunityRepository
    tasks: TaskRepository
    conversations: ConversationRepository
    leads: LeadRepository
    clients: ClientRepository
    companies: CompanyRepository

    def commit(self) -> None: ...

    def rollback(self) -> None: ...


class _SqlRepository:
    model: Any = None
    entity = ""

    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, entity_id: uuid.UUID) -> Any:
        return self.session.scalar(select(self.model).where(self.model.id == entity_id))

    def create(self, fields: dict[str, Any]) -> Any:
        record = self.model(**fields)
        self.session.add(record)
        self.session.flush()
        return record

    def update(self, entity_id: uuid.UUID, fields: dict[str, Any]) -> Any:
        record = self.get(entity_id)
        if record is None:
            raise NotFoundError(self.entity, entity_id)
        for key, value in fields.items():
            setattr(record, key, value)
        self.session.flush()
        return record

    def delete(self, entity_id: uuid.UUID) -> None:
        record = self.get(entity_id)
        if record is None:
            raise NotFoundError(self.entity, entity_id)
        self.session.delete(record)
        self.session.flush()

    def _page(self, stmt: Select[Any], offset: int, limit: int) -> list[Any]:
        return list(self.session.scalars(stmt.offset(offset).limit(limit)).all())


class SqlOpportunityRepository(_SqlRepository):
    model = CRMOpportunity
    entity = "opportunity"

    def update(
        self,
        opportunity_id: uuid.UUID,
        fields: dict[str, Any],
        *,
        expected_row_version: int | None = None,
    ) -> CRMOpportunity:
        payload = dict(fields)
        payload.setdefault("updated_at", utcnow())
        payload["row_version"] = CRMOpportunity.row_version + 1

        conditions = [CRMOpportunity.id == opportunity_id]
        if expected_row_version is not None:
            conditions.append(CRMOpportunity.row_version == expected_row_version)

        result = self.session.execute(
            update(CRMOpportunity)
            .where(and_(*conditions))
            .values(**payload)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            if self.session.scalar(select(CRMOpportunity.id).where(CRMOpportunity.id == opportunity_id)) is None:
                raise NotFoundError(self.entity, opportunity_id)
            raise ConflictError(
                "opportunity was modified concurrently",
                details={"opportunity_id": str(opportunity_id), "expected_row_version": expected_row_version},
            )

        updated = self.session.scalar(
            select(CRMOpportunity)
            .where(CRMOpportunity.id == opportunity_id)
            .execution_options(populate_existing=True)
        )
        if updated is None:
            raise NotFoundError(self.entity, opportunity_id)
        return updated

    def list(self, filters: dict[str, Any], offset: int, limit: int) -> list[CRMOpportunity]:
        stmt: Select[tuple[CRMOpportunity]] = select(CRMOpportunity)
        if filters.get("stage"):
            stmt = stmt.where(CRMOpportunity.stage == filters["stage"])
        if filters.get("owner_user_id"):
            stmt = stmt.where(CRMOpportunity.owner_user_id == filters["owner_user_id"])
        if filters.get("lead_id"):
            stmt = stmt.where(CRMOpportunity.lead_id == filters["lead_id"])
        if filters.get("client_id"):
            stmt = stmt.where(CRMOpportunity.client_id == filters["client_id"])
        if filters.get("search"):
            term = f"%{filters['search']}%"
            stmt = stmt.where(
                or_(
                    CRMOpportunity.company_name.ilike(term),
                    CRMOpportunity.contact_name.ilike(term),
                    CRMOpportunity.deal_name.ilike(term),
                )
            )
        return self._page(stmt.order_by(CRMOpportunity.deal_value.desc(), CRMOpportunity.created_at.desc()), offset, limit)

    def summarize_by_stage(self) -> dict[str | None, tuple[int, float]]:
        rows = self.session.execute(
            select(
                CRMOpportunity.stage,
                func.count(CRMOpportunity.id),
                func.coalesce(func.sum(CRMOpportunity.deal_value), 0),
            ).group_by(CRMOpportunity.stage)
        ).all()
        return {stage: (int(count), float(total)) for stage, count, total in rows}


class SqlTaskRepository(_SqlRepository):
    model = CRMTask
    entity = "task"

    def list_by_opportunity(self, opportunity_id: uuid.UUID) -> list[CRMTask]:
        stmt = select(CRMTask).where(CRMTask.opportunity_id == opportunity_id)
        return list(self.session.scalars(stmt.order_by(CRMTask.due_date.asc(), CRMTask.created_at.asc())).all())

    def list_by_lead(self, lead_id: uuid.UUID) -> list[CRMTask]:
        stmt = select(CRMTask).where(CRMTask.lead_id == lead_id)
        return list(self.session.scalars(stmt.order_by(CRMTask.due_date.asc(), CRMTask.created_at.asc())).all())

    def list(self, filters: dict[str, Any], offset: int, limit: int) -> list[CRMTask]:
        stmt: Select[tuple[CRMTask]] = select(CRMTask)
        for key in ("status", "priority", "opportunity_id", "lead_id", "client_id", "owner_user_id"):
            if filters.get(key):
                stmt = stmt.where(getattr(CRMTask, key) == filters[key])
        if filters.get("due_before"):
            stmt = stmt.where(CRMTask.due_date <= filters["due_before"])
        return self._page(stmt.order_by(CRMTask.due_date.asc(), CRMTask.created_at.asc()), offset, limit)

    def list_open_for_owner(self, owner_user_id: uuid.UUID) -> list[CRMTask]:
        rank = case(TASK_PRIORITY_RANK, value=CRMTask.priority, else_=len(TASK_PRIORITY_RANK))
        stmt = (
            select(CRMTask)
            .where(CRMTask.owner_user_id == owner_user_id, CRMTask.status.not_in(CLOSED_TASK_STATUSES))
            .order_by(CRMTask.due_date.is_(None), CRMTask.due_date.asc(), rank, CRMTask.created_at.asc())
        )
        return list(self.session.scalars(stmt).all())

    def delete_by_lead(self, lead_id: uuid.UUID) -> int:
        result = self.session.execute(
            delete(CRMTask).where(CRMTask.lead_id == lead_id).execution_options(synchronize_session="fetch")
        )
        return int(result.rowcount or 0)

    def count_by_status(self) -> dict[str, int]:
        rows = self.session.execute(select(CRMTask.status, func.count(CRMTask.id)).group_by(CRMTask.status)).all()
        return {status: int(count) for status, count in rows}

    def count_open_by_priority(self) -> dict[str, int]:
        rows = self.session.execute(
            select(CRMTask.priority, func.count(CRMTask.id))
            .where(CRMTask.status.not_in(CLOSED_TASK_STATUSES))
            .group_by(CRMTask.priority)
        ).all()
        return {priority: int(count) for priority, count in rows}

    def count_open_due(self, *, on_or_after: date | None = None, before: date | None = None) -> int:
        stmt = select(func.count(CRMTask.id)).where(
            CRMTask.status.not_in(CLOSED_TASK_STATUSES),
            CRMTask.due_date.is_not(None),
        )
        if on_or_after is not None:
            stmt = stmt.where(CRMTask.due_date >= on_or_after)
        if before is not None:
            stmt = stmt.where(CRMTask.due_date < before)
        return int(self.session.scalar(stmt) or 0)


class SqlConversationRepository(_SqlRepository):
    model = CRMConversation
    entity = "conversation"

    def _selector_conditions(self, selector: ConversationSelector) -> list[Any]:
        return [getattr(CRMConversation, key) == value for key, value in selector.as_filters().items()]

    def list_by_selector(
        self,
        selector: ConversationSelector,
        *,
        offset: int = 0,
        limit: int | None = None,
    ) -> list[CRMConversation]:
        stmt = (
            select(CRMConversation)
            .where(*self._selector_conditions(selector))
            .order_by(CRMConversation.created_at.desc())
            .offset(offset)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(self.session.scalars(stmt).all())

    def count_by_selector(self, selector: ConversationSelector) -> int:
        stmt = select(func.count(CRMConversation.id)).where(*self._selector_conditions(selector))
        return int(self.session.scalar(stmt) or 0)

    def list_related(
        self,
        *,
        lead_ids: Sequence[uuid.UUID] = (),
        opportunity_ids: Sequence[uuid.UUID] = (),
        client_ids: Sequence[uuid.UUID] = (),
        company_ids: Sequence[uuid.UUID] = (),
    ) -> list[CRMConversation]:
        conditions = []
        if lead_ids:
            conditions.append(CRMConversation.lead_id.in_(list(lead_ids)))
        if opportunity_ids:
            conditions.append(CRMConversation.opportunity_id.in_(list(opportunity_ids)))
        if client_ids:
            conditions.append(CRMConversation.client_id.in_(list(client_ids)))
        if company_ids:
            conditions.append(CRMConversation.company_id.in_(list(company_ids)))
        if not conditions:
            return []
        stmt = select(CRMConversation).where(or_(*conditions)).order_by(CRMConversation.created_at.asc())
        return list(self.session.scalars(stmt).all())

    def bulk_update(self, selector: ConversationSelector, fields: dict[str, Any]) -> int:
        result = self.session.execute(
            update(CRMConversation)
            .where(*self._selector_conditions(selector))
            .values(**fields, updated_at=utcnow())
            .execution_options(synchronize_session="fetch")
        )
        return int(result.rowcount or 0)


class SqlLeadRepository(_SqlRepository):
    model = CRMLead
    entity = "lead"

    def update(self, lead_id: uuid.UUID, fields: dict[str, Any]) -> CRMLead:
        payload = dict(fields)
        record = self.get(lead_id)
        if record is None:
            raise NotFoundError(self.entity, lead_id)
        payload["row_version"] = record.row_version + 1
        return super().update(lead_id, payload)

    def list(self, filters: dict[str, Any], offset: int, limit: int) -> list[CRMLead]:
        stmt: Select[tuple[CRMLead]] = select(CRMLead)
        if filters.get("status"):
            stmt = stmt.where(CRMLead.status == filters["status"])
        if filters.get("source"):
            stmt = stmt.where(CRMLead.source == filters["source"])
        if filters.get("search"):
            term = f"%{filters['search']}%"
            stmt = stmt.where(
                or_(
                    CRMLead.company_name.ilike(term),
                    CRMLead.contact_name.ilike(term),
                    CRMLead.email.ilike(term),
                )
            )
        return self._page(stmt.order_by(CRMLead.created_at.desc()), offset, limit)

    def summarize_by_status(self) -> dict[str, tuple[int, Decimal]]:
        rows = self.session.execute(
            select(
                CRMLead.status,
                func.count(CRMLead.id),
                func.coalesce(func.sum(CRMLead.estimated_value), 0),
            ).group_by(CRMLead.status)
        ).all()
        return {status: (int(count), Decimal(str(total))) for status, count, total in rows}

    def count_by_source(self) -> dict[str, int]:
        rows = self.session.execute(
            select(CRMLead.source, func.count(CRMLead.id)).where(CRMLead.source.is_not(None)).group_by(CRMLead.source)
        ).all()
        return {source: int(count) for source, count in rows}

    def count_open_follow_ups(self, *, on_or_after: date | None = None, before: date | None = None) -> int:
        stmt = select(func.count(CRMLead.id)).where(
            CRMLead.status.not_in(CLOSED_LEAD_STATUSES),
            CRMLead.next_follow_up.is_not(None),
        )
        if on_or_after is not None:
            stmt = stmt.where(CRMLead.next_follow_up >= on_or_after)
        if before is not None:
            stmt = stmt.where(CRMLead.next_follow_up < before)
        return int(self.session.scalar(stmt) or 0)


class SqlClientRepository(_SqlRepository):
    model = CRMClient
    entity = "client"

    def list(self, filters: dict[str, Any], offset: int, limit: int) -> list[CRMClient]:
        stmt: Select[tuple[CRMClient]] = select(CRMClient)
        if filters.get("company_id"):
            stmt = stmt.where(CRMClient.company_id == filters["company_id"])
        if filters.get("search"):
            term = f"%{filters['search']}%"
            stmt = stmt.where(
                or_(CRMClient.first_name.ilike(term), CRMClient.last_name.ilike(term), CRMClient.email.ilike(term))
            )
        return self._page(stmt.order_by(CRMClient.last_name.asc(), CRMClient.first_name.asc()), offset, limit)


class SqlCompanyRepository(_SqlRepository):
    model = CRMCompany
    entity = "company"

    def list(self, filters: dict[str, Any], offset: int, limit: int) -> list[CRMCompany]:
        stmt: Select[tuple[CRMCompany]] = select(CRMCompany)
        if filters.get("search"):
            stmt = stmt.where(CRMCompany.name.ilike(f"%{filters['search']}%"))
        return self._page(stmt.order_by(CRMCompany.name.asc()), offset, limit)


class SqlUnitOfWork:
    """All CRM repositories bound to one SQLAlchemy session and transaction."""

    def __init__(self, session: Session) -> None:
        self.session = session
        self.opportunities = SqlOpportunityRepository(session)
        self.tasks = SqlTaskRepository(session)
        self.conversations = SqlConversationRepository(session)
        self.leads = SqlLeadRepository(session)
        self.clients = SqlClientRepository(session)
        self.companies = SqlCompanyRepository(session)

    def commit(self) -> None:
        self.session.commit()

    def rollback(self) -> None:
        self.session.rollback()
