from __future__ import annotations

import uuid
from dataclasses import dataclass, field


def _coerce_user_uuid(value: str) -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except ValueError:
        return uuid.uuid5(uuid.NAMESPACE_URL, f"dealflow-actor:{value}")


@dataclass
class ActorUser:
    user_id: str
    permissions: set[str] = field(default_factory=set)
    correlation_id: str | None = None

    @property
    def user_uuid(self) -> uuid.UUID:
        return _coerce_user_uuid(self.user_id)

    def has_permission(self, permission: str) -> bool:
        return "*" in self.permissions or permission in self.permissions
