from __future__ import annotations

import logging
from typing import Any

from dishcourse.core.errors import TransientExternalError
from dishcourse.core.observability import get_correlation_id, get_scope_id

operational_logger = logging.getLogger("dishcourse.operational_error")


def operational_metadata(exc: BaseException, extra: dict[str, Any] | None = None) -> dict[str, Any]:
    """Metadatos de un fallo de sync: entidad afectada, ámbito activo y si la cola lo reintentará."""
    metadata = {key: value for key, value in (extra or {}).items() if value is not None}
    metadata.setdefault("error_type", type(exc).__name__)
    metadata["reintentable"] = isinstance(exc, TransientExternalError)
    scope_id = get_scope_id()
    if scope_id:
        metadata.setdefault("scope_id", scope_id)
    correlation_id = metadata.get("correlation_id") or get_correlation_id()
    if correlation_id:
        metadata["correlation_id"] = correlation_id
    return metadata


def log_operational_error(
    message: str,
    *,
    exc: BaseException,
    extra: dict[str, Any] | None = None,
) -> dict[str, Any]:
    metadata = operational_metadata(exc, extra)
    operational_logger.error(
        message,
        exc_info=(type(exc), exc, exc.__traceback__),
        extra={"correlation_id": metadata.get("correlation_id"), "extra": metadata},
    )
    return metadata
