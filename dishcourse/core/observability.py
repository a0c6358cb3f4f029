from __future__ import annotations

from contextlib import AbstractContextManager
from contextvars import ContextVar, Token
from datetime import datetime, timezone
import uuid
from typing import Any

_CORRELATION_ID: ContextVar[str | None] = ContextVar("correlation_id", default=None)
_SCOPE_ID: ContextVar[str | None] = ContextVar("scope_id", default=None)


def generate_correlation_id() -> str:
    return str(uuid.uuid4())


def get_correlation_id() -> str | None:
    return _CORRELATION_ID.get()


def get_scope_id() -> str | None:
    return _SCOPE_ID.get()


def set_correlation_id(correlation_id: str | None) -> Token[str | None]:
    return _CORRELATION_ID.set(correlation_id)


def reset_correlation_id(token: Token[str | None]) -> None:
    _CORRELATION_ID.reset(token)


class OperationContext(AbstractContextManager["OperationContext"]):
    """Asigna un correlation_id a una operación de sync (push, full sync, resolución...).

    Si ya existe un correlation_id activo se reutiliza, así un push disparado
    dentro de una resolución de conflicto queda trazado bajo el mismo id.
    """

    def __init__(self, operation_name: str, *, scope_id: str | None = None) -> None:
        self.operation_name = operation_name
        self.scope_id = scope_id
        self.correlation_id = get_correlation_id() or generate_correlation_id()
        self._correlation_token: Token[str | None] | None = None
        self._scope_token: Token[str | None] | None = None

    def __enter__(self) -> "OperationContext":
        self._correlation_token = set_correlation_id(self.correlation_id)
        self._scope_token = _SCOPE_ID.set(self.scope_id or _SCOPE_ID.get())
        return self

    def __exit__(self, exc_type: object, exc: object, exc_tb: object) -> None:
        if self._scope_token is not None:
            _SCOPE_ID.reset(self._scope_token)
        if self._correlation_token is not None:
            reset_correlation_id(self._correlation_token)
        return None


def log_event(logger: Any, event_name: str, payload: dict[str, Any], correlation_id: str | None = None) -> dict[str, Any]:
    resolved_correlation_id = correlation_id or get_correlation_id()
    event = {
        "event": event_name,
        "correlation_id": resolved_correlation_id,
        "scope_id": get_scope_id(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "payload": payload,
    }
    logger.info(
        event_name,
        extra={
            "correlation_id": resolved_correlation_id,
            "extra": event,
        },
    )
    return event
