from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional

from dishcourse.bootstrap.settings import safe_int_env
from dishcourse.core.observability import get_correlation_id, get_scope_id

DEFAULT_LOG_MAX_BYTES = 1_048_576
DEFAULT_LOG_BACKUP_COUNT = 10
MAIN_LOG_NAME = "seguimiento.log"
ERROR_OPERATIVO_LOG_NAME = "error_operativo.log"
CRASH_LOG_NAME = "crash.log"


class JsonLinesFormatter(logging.Formatter):
    """Una línea JSON por evento.

    Incluye el hilo porque el listener de tiempo real y el heartbeat de
    bloqueos escriben desde hilos propios, y el ámbito (hogar) activo si lo hay.
    """

    def format(self, record: logging.LogRecord) -> str:
        event: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "hilo": record.threadName,
            "funcion": record.funcName,
            "mensaje": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None) or get_correlation_id(),
        }
        scope_id = get_scope_id()
        if scope_id:
            event["scope_id"] = scope_id
        payload_extra = getattr(record, "extra", None)
        if isinstance(payload_extra, dict) and payload_extra:
            event["extra"] = payload_extra
        if record.exc_info:
            event["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(event, ensure_ascii=False, default=str)


class LevelOnlyFilter(logging.Filter):
    def __init__(self, level: int) -> None:
        super().__init__()
        self._level = level

    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno == self._level


def _rotating_handler(log_path: Path, *, max_bytes: int, backup_count: int, level: int) -> RotatingFileHandler:
    handler = RotatingFileHandler(log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(JsonLinesFormatter())
    return handler


def configure_logging(
    log_dir: Path,
    *,
    max_bytes: int | None = None,
    backup_count: int = DEFAULT_LOG_BACKUP_COUNT,
    level: int = logging.INFO,
    console_level: Optional[int] = None,
) -> None:
    """Configura el logger raíz con tres ficheros rotativos JSONL.

    - `seguimiento.log`: todo desde `level`.
    - `error_operativo.log`: solo ERROR (fallos de push, de lectura remota...).
    - `crash.log`: solo CRITICAL (excepciones no controladas).

    Con `console_level` se añade además una salida legible por stderr; stdout
    queda libre para la salida JSON de la CLI.
    """
    log_dir.mkdir(parents=True, exist_ok=True)
    resolved_max_bytes = max_bytes or safe_int_env("DISHCOURSE_LOG_MAX_BYTES", DEFAULT_LOG_MAX_BYTES)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(level)

    root_logger.addHandler(
        _rotating_handler(log_dir / MAIN_LOG_NAME, max_bytes=resolved_max_bytes, backup_count=backup_count, level=level)
    )
    operational = _rotating_handler(
        log_dir / ERROR_OPERATIVO_LOG_NAME,
        max_bytes=resolved_max_bytes,
        backup_count=backup_count,
        level=logging.ERROR,
    )
    operational.addFilter(LevelOnlyFilter(logging.ERROR))
    root_logger.addHandler(operational)
    root_logger.addHandler(
        _rotating_handler(
            log_dir / CRASH_LOG_NAME,
            max_bytes=resolved_max_bytes,
            backup_count=backup_count,
            level=logging.CRITICAL,
        )
    )

    if console_level is not None:
        console = logging.StreamHandler(sys.stderr)
        console.setLevel(console_level)
        console.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
        root_logger.addHandler(console)
