from __future__ import annotations

from typing import Any


class CRMError(Exception):
    """Base error for CRM domain failures; ``code`` is surfaced in the API error envelope."""

    code = "crm_error"

    def __init__(self, message: str, *, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class NotFoundError(CRMError):
    """Raised when an opportunity, lead, client, company or conversation id does not exist."""

    code = "not_found"

    def __init__(self, entity: str, entity_id: Any) -> None:
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found", details={"entity": entity, "id": str(entity_id)})


class InvalidArgumentError(CRMError):
    """Raised when a request is missing a required selector or target, or names an unknown stage."""

    code = "invalid_argument"


class ConflictError(CRMError):
    """Raised when a concurrent writer holds or has already changed the same record."""

    code = "conflict"
