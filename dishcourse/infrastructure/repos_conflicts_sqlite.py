from __future__ import annotations

import json
import logging
import sqlite3
from typing import Optional

from dishcourse.domain.models import entity_from_dict
from dishcourse.domain.ports import ConflictStorePort
from dishcourse.domain.sync_models import ConflictRecord
from dishcourse.infrastructure.sqlite_uow import execute_with_validation, transaccion

logger = logging.getLogger(__name__)


class SQLiteConflictStore(ConflictStorePort):
    def __init__(self, connection: sqlite3.Connection) -> None:
        self._connection = connection

    def add(self, conflict: ConflictRecord) -> None:
        """Guarda el conflicto; una nueva detección sobre la misma entidad reemplaza la anterior."""
        with transaccion(self._connection):
            execute_with_validation(
                self._connection.cursor(),
                """
                INSERT OR REPLACE INTO conflicts (
                    entity_id, entity_type, local_version_json, server_version_json,
                    detected_at, local_changed_by, server_changed_by
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    conflict.entity_id,
                    conflict.entity_type,
                    json.dumps(conflict.local_version.to_dict(), ensure_ascii=False),
                    json.dumps(conflict.server_version.to_dict(), ensure_ascii=False),
                    conflict.detected_at,
                    conflict.local_changed_by,
                    conflict.server_changed_by,
                ),
                "conflicts.add",
            )
        logger.info("Conflicto registrado para %s:%s", conflict.entity_type, conflict.entity_id)

    def get(self, entity_id: str) -> Optional[ConflictRecord]:
        row = self._connection.execute("SELECT * FROM conflicts WHERE entity_id = ?", (entity_id,)).fetchone()
        return self._row_to_conflict(row) if row else None

    def list_conflicts(self) -> list[ConflictRecord]:
        cursor = self._connection.execute("SELECT * FROM conflicts ORDER BY detected_at ASC")
        return [self._row_to_conflict(row) for row in cursor.fetchall()]

    def count(self) -> int:
        row = self._connection.execute("SELECT COUNT(*) AS total FROM conflicts").fetchone()
        return int(row["total"] if row else 0)

    def remove(self, entity_id: str) -> bool:
        with transaccion(self._connection):
            cursor = self._connection.execute("DELETE FROM conflicts WHERE entity_id = ?", (entity_id,))
            return cursor.rowcount > 0

    def clear(self) -> None:
        with transaccion(self._connection):
            self._connection.execute("DELETE FROM conflicts")

    @staticmethod
    def _row_to_conflict(row: sqlite3.Row) -> ConflictRecord:
        entity_type = row["entity_type"]
        return ConflictRecord(
            entity_type=entity_type,
            entity_id=row["entity_id"],
            local_version=entity_from_dict(entity_type, json.loads(row["local_version_json"])),
            server_version=entity_from_dict(entity_type, json.loads(row["server_version_json"])),
            detected_at=row["detected_at"],
            local_changed_by=row["local_changed_by"],
            server_changed_by=row["server_changed_by"],
        )
