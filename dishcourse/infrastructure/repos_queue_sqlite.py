from __future__ import annotations

import logging
import sqlite3
import uuid
from typing import Optional

from dishcourse.domain.ports import MutationQueuePort
from dishcourse.domain.queue_rules import MAX_QUEUE_RETRIES, merge_operation
from dishcourse.domain.sync_models import DrainResult, OperationType, QueuedOperation
from dishcourse.domain.time_utils import Clock, now_iso, utc_now
from dishcourse.infrastructure.sqlite_uow import execute_with_validation, run_with_locked_retry, transaccion

logger = logging.getLogger(__name__)

_COLUMNS = "id, operation_type, entity_type, entity_id, created_at, retry_count, last_error, last_attempt_at"


def new_operation_id() -> str:
    return f"q_{uuid.uuid4().hex}"


class SQLiteMutationQueue(MutationQueuePort):
    """Cola durable de operaciones locales pendientes de enviar al remoto.

    Mantiene como mucho una entrada por entidad (índice UNIQUE sobre entity_id);
    `enqueue` aplica la tabla de fusión de `merge_operation`.
    """

    def __init__(
        self,
        connection: sqlite3.Connection,
        *,
        max_retries: int = MAX_QUEUE_RETRIES,
        clock: Clock = utc_now,
    ) -> None:
        self._connection = connection
        self._max_retries = max_retries
        self._clock = clock

    @property
    def max_retries(self) -> int:
        return self._max_retries

    def enqueue(self, operation_type: OperationType, entity_type: str, entity_id: str) -> Optional[QueuedOperation]:
        def _write() -> Optional[QueuedOperation]:
            with transaccion(self._connection):
                existing = self.get_for_entity(entity_id)
                decision = merge_operation(existing.operation_type if existing else None, operation_type)
                if decision.action == "keep":
                    return existing
                if decision.action == "remove":
                    self._connection.execute("DELETE FROM offline_queue WHERE entity_id = ?", (entity_id,))
                    return None
                if existing is not None:
                    self._connection.execute("DELETE FROM offline_queue WHERE entity_id = ?", (entity_id,))
                operation = QueuedOperation(
                    id=new_operation_id(),
                    operation_type=decision.operation_type or operation_type,
                    entity_type=entity_type,  # type: ignore[arg-type]
                    entity_id=entity_id,
                    created_at=now_iso(self._clock),
                )
                execute_with_validation(
                    self._connection.cursor(),
                    f"INSERT INTO offline_queue ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        operation.id,
                        operation.operation_type,
                        operation.entity_type,
                        operation.entity_id,
                        operation.created_at,
                        operation.retry_count,
                        operation.last_error,
                        operation.last_attempt_at,
                    ),
                    "offline_queue.enqueue",
                )
                return operation

        result = run_with_locked_retry(_write, context="offline_queue.enqueue")
        logger.debug(
            "Operación %s encolada para %s:%s -> %s",
            operation_type,
            entity_type,
            entity_id,
            result.operation_type if result else "descartada",
        )
        return result

    def drain(self) -> DrainResult:
        """Devuelve la cola en orden FIFO separando entradas agotadas.

        Las agotadas permanecen en la cola hasta un reintento explícito
        (`reset_retries`) o hasta que una nueva edición las reemplace.
        """
        ready: list[QueuedOperation] = []
        exhausted: list[QueuedOperation] = []
        for operation in self.list_all():
            if operation.retry_count >= self._max_retries:
                exhausted.append(operation)
            else:
                ready.append(operation)
        return DrainResult(ready=tuple(ready), exhausted=tuple(exhausted))

    def record_attempt(self, operation_id: str, error: Optional[str] = None) -> None:
        with transaccion(self._connection):
            self._connection.execute(
                """
                UPDATE offline_queue
                SET retry_count = retry_count + 1, last_error = ?, last_attempt_at = ?
                WHERE id = ?
                """,
                (error, now_iso(self._clock), operation_id),
            )

    def dequeue(self, operation_id: str, *, expected_created_at: Optional[str] = None) -> bool:
        sql = "DELETE FROM offline_queue WHERE id = ?"
        params: list[object] = [operation_id]
        if expected_created_at is not None:
            sql += " AND created_at = ?"
            params.append(expected_created_at)
        with transaccion(self._connection):
            cursor = self._connection.cursor()
            execute_with_validation(cursor, sql, params, "offline_queue.dequeue")
            return cursor.rowcount > 0

    def get_for_entity(self, entity_id: str) -> Optional[QueuedOperation]:
        row = self._connection.execute(
            f"SELECT {_COLUMNS} FROM offline_queue WHERE entity_id = ?",
            (entity_id,),
        ).fetchone()
        return self._row_to_operation(row) if row else None

    def list_all(self) -> list[QueuedOperation]:
        cursor = self._connection.execute(f"SELECT {_COLUMNS} FROM offline_queue ORDER BY created_at ASC, rowid ASC")
        return [self._row_to_operation(row) for row in cursor.fetchall()]

    def count(self) -> int:
        row = self._connection.execute("SELECT COUNT(*) AS total FROM offline_queue").fetchone()
        return int(row["total"] if row else 0)

    def reset_retries(self, operation_id: Optional[str] = None) -> int:
        sql = "UPDATE offline_queue SET retry_count = 0, last_error = NULL"
        params: tuple[object, ...] = ()
        if operation_id is not None:
            sql += " WHERE id = ?"
            params = (operation_id,)
        with transaccion(self._connection):
            cursor = self._connection.execute(sql, params)
            reset = cursor.rowcount
        logger.info("Reintentos reiniciados en %s entradas de la cola", reset)
        return reset

    def clear_for_entity(self, entity_id: str) -> None:
        with transaccion(self._connection):
            self._connection.execute("DELETE FROM offline_queue WHERE entity_id = ?", (entity_id,))

    def clear(self) -> None:
        with transaccion(self._connection):
            self._connection.execute("DELETE FROM offline_queue")

    @staticmethod
    def _row_to_operation(row: sqlite3.Row) -> QueuedOperation:
        return QueuedOperation(
            id=row["id"],
            operation_type=row["operation_type"],
            entity_type=row["entity_type"],
            entity_id=row["entity_id"],
            created_at=row["created_at"],
            retry_count=int(row["retry_count"] or 0),
            last_error=row["last_error"],
            last_attempt_at=row["last_attempt_at"],
        )
