from __future__ import annotations

import logging
import uuid

from app.crm.errors import InvalidArgumentError, NotFoundError
from app.crm.models import CRMConversation
from app.crm.repositories import ConversationSelector, UnitOfWork
from app.metrics import observe_relinked


logger = logging.getLogger("app.crm.lifecycle")


def _targets(
    opportunity_id: uuid.UUID | None,
    client_id: uuid.UUID | None,
    company_id: uuid.UUID | None,
) -> dict[str, uuid.UUID]:
    candidates = {"opportunity_id": opportunity_id, "client_id": client_id, "company_id": company_id}
    return {key: value for key, value in candidates.items() if value is not None}


class LineageLinker:
    """Rewrites conversation entity references so history follows a contact across conversions.

    Neither operation commits; callers own the unit of work.
    """

    def __init__(self, uow: UnitOfWork) -> None:
        self.uow = uow

    def relink_one(
        self,
        conversation_id: uuid.UUID,
        *,
        opportunity_id: uuid.UUID | None = None,
        client_id: uuid.UUID | None = None,
        company_id: uuid.UUID | None = None,
    ) -> CRMConversation:
        targets = _targets(opportunity_id, client_id, company_id)
        if not targets:
            raise InvalidArgumentError("at least one link target is required")
        if self.uow.conversations.get(conversation_id) is None:
            raise NotFoundError("conversation", conversation_id)

        conversation = self.uow.conversations.update(conversation_id, targets)
        logger.info(
            "conversation.relinked",
            extra={
                "opportunity_id": str(opportunity_id) if opportunity_id else None,
                "client_id": str(client_id) if client_id else None,
                "relinked": 1,
            },
        )
        return conversation

    def relink_all(
        self,
        *,
        from_lead_id: uuid.UUID | None = None,
        from_opportunity_id: uuid.UUID | None = None,
        to_opportunity_id: uuid.UUID | None = None,
        to_client_id: uuid.UUID | None = None,
        to_company_id: uuid.UUID | None = None,
    ) -> int:
        if (from_lead_id is None) == (from_opportunity_id is None):
            raise InvalidArgumentError(
                "exactly one of from_lead_id or from_opportunity_id is required",
                details={
                    "from_lead_id": str(from_lead_id) if from_lead_id else None,
                    "from_opportunity_id": str(from_opportunity_id) if from_opportunity_id else None,
                },
            )
        targets = _targets(to_opportunity_id, to_client_id, to_company_id)
        if not targets:
            raise InvalidArgumentError("at least one link target is required")

        if from_lead_id is not None:
            source = "lead"
            selector = ConversationSelector(lead_id=from_lead_id)
        else:
            source = "opportunity"
            selector = ConversationSelector(opportunity_id=from_opportunity_id)

        relinked = self.uow.conversations.bulk_update(selector, targets)
        observe_relinked(source, relinked)
        logger.info(
            "conversation.bulk_relinked",
            extra={
                "lead_id": str(from_lead_id) if from_lead_id else None,
                "opportunity_id": str(from_opportunity_id or to_opportunity_id or "") or None,
                "client_id": str(to_client_id) if to_client_id else None,
                "relinked": relinked,
            },
        )
        return relinked
