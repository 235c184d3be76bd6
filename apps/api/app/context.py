from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar

from starlette.requests import Request

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
actor_user_id_var: ContextVar[str | None] = ContextVar("actor_user_id", default=None)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


def get_actor_user_id() -> str | None:
    return actor_user_id_var.get()


@contextmanager
def correlation_scope(value: str) -> Iterator[str]:
    token = correlation_id_var.set(value)
    try:
        yield value
    finally:
        correlation_id_var.reset(token)


@contextmanager
def actor_scope(user_id: str | None) -> Iterator[None]:
    """Bind the acting CRM user for log records emitted inside a lifecycle operation."""
    token = actor_user_id_var.set(user_id)
    try:
        yield
    finally:
        actor_user_id_var.reset(token)


def resolve_correlation_id(request: Request | None = None) -> str | None:
    current = get_correlation_id()
    if current or request is None:
        return current
    context = getattr(request.state, "context", None)
    if context is not None and context.correlation_id:
        return context.correlation_id
    return getattr(request.state, "correlation_id", None)
