from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar, Token

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
organization_id_var: ContextVar[str | None] = ContextVar("organization_id", default=None)


def set_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


def get_organization_id() -> str | None:
    return organization_id_var.get()


@contextmanager
def request_scope(correlation_id: str, organization_id: str | None = None) -> Iterator[None]:
    """Bind the correlation id and tenant of the current request for logs, audit and events."""
    correlation_token = correlation_id_var.set(correlation_id)
    organization_token = organization_id_var.set(organization_id)
    try:
        yield
    finally:
        organization_id_var.reset(organization_token)
        correlation_id_var.reset(correlation_token)
