"""Dictionary-backed unit of work for exercising CRM workflows without a database."""

from __future__ import annotations

import uuid
from collections import Counter
from collections.abc import Sequence
from datetime import date
from decimal import Decimal
from typing import Any

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
from app.crm.repositories import (
    CLOSED_LEAD_STATUSES,
    CLOSED_TASK_STATUSES,
    TASK_PRIORITY_RANK,
    ConversationSelector,
)


def _apply_column_defaults(record: Any) -> None:
    for column in record.__table__.columns:
        if getattr(record, column.key) is not None or column.default is None:
            continue
        if column.default.is_callable:
            setattr(record, column.key, column.default.arg(None))
        elif column.default.is_scalar:
            setattr(record, column.key, column.default.arg)


def _snapshot(record: Any) -> dict[str, Any]:
    return {column.key: getattr(record, column.key) for column in record.__table__.columns}


def _in_window(value: date | None, on_or_after: date | None, before: date | None) -> bool:
    if value is None:
        return False
    if on_or_after is not None and value < on_or_after:
        return False
    return before is None or value < before


class _InMemoryRepository:
    model: Any = None
    entity = ""

    def __init__(self) -> None:
        self.rows: dict[uuid.UUID, Any] = {}

    def get(self, entity_id: uuid.UUID) -> Any:
        return self.rows.get(entity_id)

    def create(self, fields: dict[str, Any]) -> Any:
        record = self.model(**fields)
        _apply_column_defaults(record)
        self.rows[record.id] = record
        return record

    def update(self, entity_id: uuid.UUID, fields: dict[str, Any]) -> Any:
        record = self._require(entity_id)
        for key, value in fields.items():
            setattr(record, key, value)
        if "updated_at" not in fields and hasattr(record, "updated_at"):
            record.updated_at = utcnow()
        return record

    def list(self, filters: dict[str, Any], offset: int, limit: int) -> list[Any]:
        rows = [
            row
            for row in self.rows.values()
            if all(getattr(row, key, None) == value for key, value in filters.items() if value is not None)
        ]
        rows.sort(key=lambda row: row.created_at)
        return rows[offset : offset + limit]

    def delete(self, entity_id: uuid.UUID) -> None:
        self._require(entity_id)
        del self.rows[entity_id]

    def _require(self, entity_id: uuid.UUID) -> Any:
        record = self.rows.get(entity_id)
        if record is None:
            raise NotFoundError(self.entity, entity_id)
        return record


class InMemoryOpportunityRepository(_InMemoryRepository):
    model = CRMOpportunity
    entity = "opportunity"

    def update(
        self,
        opportunity_id: uuid.UUID,
        fields: dict[str, Any],
        *,
        expected_row_version: int | None = None,
    ) -> CRMOpportunity:
        record = self._require(opportunity_id)
        if expected_row_version is not None and record.row_version != expected_row_version:
            raise ConflictError(
                "opportunity was modified concurrently",
                details={"opportunity_id": str(opportunity_id), "expected_row_version": expected_row_version},
            )
        payload = dict(fields)
        payload["row_version"] = record.row_version + 1
        return super().update(opportunity_id, payload)

    def summarize_by_stage(self) -> dict[str | None, tuple[int, float]]:
        summary: dict[str | None, tuple[int, float]] = {}
        for row in self.rows.values():
            count, total = summary.get(row.stage, (0, 0.0))
            summary[row.stage] = (count + 1, total + float(row.deal_value or Decimal("0")))
        return summary


class InMemoryTaskRepository(_InMemoryRepository):
    model = CRMTask
    entity = "task"

    def list_by_opportunity(self, opportunity_id: uuid.UUID) -> list[CRMTask]:
        return sorted(
            (row for row in self.rows.values() if row.opportunity_id == opportunity_id),
            key=lambda row: (row.due_date, row.created_at),
        )

    def list_by_lead(self, lead_id: uuid.UUID) -> list[CRMTask]:
        return sorted(
            (row for row in self.rows.values() if row.lead_id == lead_id),
            key=lambda row: (row.due_date, row.created_at),
        )

    def _open(self) -> list[CRMTask]:
        return [row for row in self.rows.values() if row.status not in CLOSED_TASK_STATUSES]

    def list_open_for_owner(self, owner_user_id: uuid.UUID) -> list[CRMTask]:
        return sorted(
            (row for row in self._open() if row.owner_user_id == owner_user_id),
            key=lambda row: (
                row.due_date is None,
                row.due_date or date.min,
                TASK_PRIORITY_RANK.get(row.priority, len(TASK_PRIORITY_RANK)),
                row.created_at,
            ),
        )

    def delete_by_lead(self, lead_id: uuid.UUID) -> int:
        doomed = [task_id for task_id, row in self.rows.items() if row.lead_id == lead_id]
        for task_id in doomed:
            del self.rows[task_id]
        return len(doomed)

    def count_by_status(self) -> dict[str, int]:
        return dict(Counter(row.status for row in self.rows.values()))

    def count_open_by_priority(self) -> dict[str, int]:
        return dict(Counter(row.priority for row in self._open()))

    def count_open_due(self, *, on_or_after: date | None = None, before: date | None = None) -> int:
        return sum(1 for row in self._open() if _in_window(row.due_date, on_or_after, before))


class InMemoryConversationRepository(_InMemoryRepository):
    model = CRMConversation
    entity = "conversation"

    def list_by_selector(
        self,
        selector: ConversationSelector,
        *,
        offset: int = 0,
        limit: int | None = None,
    ) -> list[CRMConversation]:
        rows = sorted(
            (row for row in self.rows.values() if selector.matches(row)),
            key=lambda row: row.created_at,
            reverse=True,
        )
        end = None if limit is None else offset + limit
        return rows[offset:end]

    def count_by_selector(self, selector: ConversationSelector) -> int:
        return sum(1 for row in self.rows.values() if selector.matches(row))

    def list_related(
        self,
        *,
        lead_ids: Sequence[uuid.UUID] = (),
        opportunity_ids: Sequence[uuid.UUID] = (),
        client_ids: Sequence[uuid.UUID] = (),
        company_ids: Sequence[uuid.UUID] = (),
    ) -> list[CRMConversation]:
        wanted = {
            "lead_id": set(lead_ids),
            "opportunity_id": set(opportunity_ids),
            "client_id": set(client_ids),
            "company_id": set(company_ids),
        }
        rows = [
            row
            for row in self.rows.values()
            if any(getattr(row, key) in values for key, values in wanted.items() if values)
        ]
        return sorted(rows, key=lambda row: row.created_at)

    def bulk_update(self, selector: ConversationSelector, fields: dict[str, Any]) -> int:
        matched = [row for row in self.rows.values() if selector.matches(row)]
        now = utcnow()
        for row in matched:
            for key, value in fields.items():
                setattr(row, key, value)
            row.updated_at = now
        return len(matched)


class InMemoryLeadRepository(_InMemoryRepository):
    model = CRMLead
    entity = "lead"

    def update(self, lead_id: uuid.UUID, fields: dict[str, Any]) -> CRMLead:
        record = self._require(lead_id)
        payload = dict(fields)
        payload["row_version"] = record.row_version + 1
        return super().update(lead_id, payload)

    def summarize_by_status(self) -> dict[str, tuple[int, Decimal]]:
        summary: dict[str, tuple[int, Decimal]] = {}
        for row in self.rows.values():
            count, total = summary.get(row.status, (0, Decimal("0")))
            summary[row.status] = (count + 1, total + (row.estimated_value or Decimal("0")))
        return summary

    def count_by_source(self) -> dict[str, int]:
        return dict(Counter(row.source for row in self.rows.values() if row.source is not None))

    def count_open_follow_ups(self, *, on_or_after: date | None = None, before: date | None = None) -> int:
        return sum(
            1
            for row in self.rows.values()
            if row.status not in CLOSED_LEAD_STATUSES and _in_window(row.next_follow_up, on_or_after, before)
        )


class InMemoryClientRepository(_InMemoryRepository):
    model = CRMClient
    entity = "client"


class InMemoryCompanyRepository(_InMemoryRepository):
    model = CRMCompany
    entity = "company"


class InMemoryUnitOfWork:
    """Mirrors SqlUnitOfWork; rollback restores the state captured at the last commit."""

    def __init__(self) -> None:
        self.opportunities = InMemoryOpportunityRepository()
        self.tasks = InMemoryTaskRepository()
        self.conversations = InMemoryConversationRepository()
        self.leads = InMemoryLeadRepository()
        self.clients = InMemoryClientRepository()
        self.companies = InMemoryCompanyRepository()
        self.commits = 0
        self.rollbacks = 0
        self._committed: dict[str, dict[uuid.UUID, dict[str, Any]]] = {}
        self._capture()

    def _repositories(self) -> dict[str, _InMemoryRepository]:
        return {
            "opportunities": self.opportunities,
            "tasks": self.tasks,
            "conversations": self.conversations,
            "leads": self.leads,
            "clients": self.clients,
            "companies": self.companies,
        }

    def _capture(self) -> None:
        self._committed = {
            name: {entity_id: _snapshot(row) for entity_id, row in repository.rows.items()}
            for name, repository in self._repositories().items()
        }

    def commit(self) -> None:
        self.commits += 1
        self._capture()

    def rollback(self) -> None:
        self.rollbacks += 1
        for name, repository in self._repositories().items():
            repository.rows = {
                entity_id: repository.model(**values) for entity_id, values in self._committed[name].items()
            }
