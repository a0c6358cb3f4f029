from __future__ import annotations

import json
import logging
import sqlite3
from typing import Iterable, Mapping, Optional

from dishcourse.core.errors import PersistenceError
from dishcourse.domain.events import EventPublisher, RecordChanged
from dishcourse.domain.models import (
    CONFLICT,
    DISH,
    ENTITY_TYPES,
    MEAL_PLAN,
    PENDING,
    SYNCED,
    CacheRecord,
    Entity,
    MealPlan,
    SyncStatus,
    entity_from_dict,
)
from dishcourse.domain.ports import LocalStorePort
from dishcourse.domain.time_utils import Clock, now_iso, utc_now
from dishcourse.infrastructure.sqlite_uow import execute_with_validation, run_with_locked_retry, transaccion

logger = logging.getLogger(__name__)

CACHE_TABLES: dict[str, str] = {DISH: "dishes", MEAL_PLAN: "meal_plans"}

_COLUMNS = "id, household_id, payload_json, sync_status, local_updated_at, server_updated_at, deleted_at, version"


def cache_table(entity_type: str) -> str:
    try:
        return CACHE_TABLES[entity_type]
    except KeyError as exc:
        raise ValueError(f"Tipo de entidad sin tabla de caché: {entity_type}") from exc


class SQLiteLocalStore(LocalStorePort):
    """Caché local clave/valor con estado de sync por registro.

    No reintenta ni decide nada: solo persiste y publica `RecordChanged` en cada
    mutación para que la UI pueda refrescarse.
    """

    def __init__(
        self,
        connection: sqlite3.Connection,
        publisher: EventPublisher | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._connection = connection
        self._publisher = publisher
        self._clock = clock

    def get(self, entity_type: str, entity_id: str) -> Optional[CacheRecord]:
        cursor = self._connection.cursor()
        cursor.execute(f"SELECT {_COLUMNS} FROM {cache_table(entity_type)} WHERE id = ?", (entity_id,))
        row = cursor.fetchone()
        return self._row_to_record(entity_type, row) if row else None

    def put(self, record: CacheRecord) -> CacheRecord:
        """Inserta o reemplaza el registro; el store asigna el siguiente `version`."""
        table = cache_table(record.entity_type)

        def _write() -> CacheRecord:
            with transaccion(self._connection):
                cursor = self._connection.cursor()
                stored = self._upsert_row(cursor, table, record)
            return stored

        stored = run_with_locked_retry(_write, context=f"{table}.put")
        self._notify(stored.entity_type, stored.entity_id, stored.sync_status)
        return stored

    def write_local(self, entity: Entity, *, sync_status: SyncStatus = PENDING) -> CacheRecord:
        current = self.get(entity.entity_type, entity.id)
        record = CacheRecord(
            entity=entity,
            sync_status=sync_status,
            local_updated_at=now_iso(self._clock),
            server_updated_at=current.server_updated_at if current else None,
        )
        return self.put(record)

    def delete(self, entity_type: str, entity_id: str) -> bool:
        table = cache_table(entity_type)
        with transaccion(self._connection):
            cursor = self._connection.cursor()
            cursor.execute(f"DELETE FROM {table} WHERE id = ?", (entity_id,))
            deleted = cursor.rowcount > 0
        if deleted:
            self._notify(entity_type, entity_id, None)
        return deleted

    def query_by_parent(self, entity_type: str, parent_id: str, include_deleted: bool = False) -> list[CacheRecord]:
        sql = f"SELECT {_COLUMNS} FROM {cache_table(entity_type)} WHERE household_id = ?"
        if not include_deleted:
            sql += " AND deleted_at IS NULL"
        sql += " ORDER BY local_updated_at ASC"
        cursor = self._connection.cursor()
        cursor.execute(sql, (parent_id,))
        return [self._row_to_record(entity_type, row) for row in cursor.fetchall()]

    def list_pending(self, entity_type: Optional[str] = None) -> list[CacheRecord]:
        entity_types = (entity_type,) if entity_type else ENTITY_TYPES
        pending: list[CacheRecord] = []
        for current_type in entity_types:
            cursor = self._connection.cursor()
            cursor.execute(
                f"SELECT {_COLUMNS} FROM {cache_table(current_type)} WHERE sync_status = ? ORDER BY local_updated_at ASC",
                (PENDING,),
            )
            pending.extend(self._row_to_record(current_type, row) for row in cursor.fetchall())
        return pending

    def count_pending(self) -> int:
        total = 0
        for entity_type in ENTITY_TYPES:
            row = self._connection.execute(
                f"SELECT COUNT(*) AS total FROM {cache_table(entity_type)} WHERE sync_status = ?",
                (PENDING,),
            ).fetchone()
            total += int(row["total"] if row else 0)
        return total

    def mark_synced(
        self,
        entity_type: str,
        entity_id: str,
        server_updated_at: Optional[str] = None,
        *,
        expected_version: Optional[int] = None,
    ) -> bool:
        """Check-then-set: solo marca `synced` si la versión no cambió y no hay conflicto.

        Es idempotente: repetir la llamada deja el mismo estado.
        """
        sql = (
            f"UPDATE {cache_table(entity_type)} "
            "SET sync_status = ?, server_updated_at = COALESCE(?, server_updated_at) "
            "WHERE id = ? AND sync_status != ?"
        )
        params: list[object] = [SYNCED, server_updated_at, entity_id, CONFLICT]
        if expected_version is not None:
            sql += " AND version = ?"
            params.append(expected_version)
        with transaccion(self._connection):
            cursor = self._connection.cursor()
            execute_with_validation(cursor, sql, params, f"{entity_type}.mark_synced")
            updated = cursor.rowcount > 0
        if updated:
            self._notify(entity_type, entity_id, SYNCED)
        else:
            logger.debug("mark_synced sin efecto para %s:%s (version=%s)", entity_type, entity_id, expected_version)
        return updated

    def mark_conflict(self, entity_type: str, entity_id: str) -> bool:
        with transaccion(self._connection):
            cursor = self._connection.cursor()
            cursor.execute(
                f"UPDATE {cache_table(entity_type)} SET sync_status = ? WHERE id = ?",
                (CONFLICT, entity_id),
            )
            updated = cursor.rowcount > 0
        if updated:
            self._notify(entity_type, entity_id, CONFLICT)
        return updated

    def update_lock_fields(self, plan_id: str, locked_by: Optional[str], locked_at: Optional[str]) -> Optional[CacheRecord]:
        """Actualiza solo los campos de bloqueo; no cambia estado de sync ni versión.

        La lectura y la escritura van en la misma transacción y la escritura
        exige la `version` leída: una edición concurrente no se pisa.
        """
        with transaccion(self._connection):
            current = self.get(MEAL_PLAN, plan_id)
            if current is None:
                return None
            plan: MealPlan = current.entity.with_lock(locked_by, locked_at)
            cursor = self._connection.cursor()
            cursor.execute(
                f"UPDATE {cache_table(MEAL_PLAN)} SET payload_json = ? WHERE id = ? AND version = ?",
                (json.dumps(plan.to_dict(), ensure_ascii=False), plan_id, current.version),
            )
            if cursor.rowcount == 0:
                raise PersistenceError(f"El plan {plan_id} cambió durante la actualización del bloqueo")
        self._notify(MEAL_PLAN, plan_id, current.sync_status)
        return CacheRecord(
            entity=plan,
            sync_status=current.sync_status,
            local_updated_at=current.local_updated_at,
            server_updated_at=current.server_updated_at,
            version=current.version,
        )

    def replace_scope(self, entity_type: str, parent_id: str, entities: Iterable[Entity]) -> int:
        """Reemplaza el ámbito completo por la descarga remota en una sola transacción.

        Los registros `pending` o `conflict` se conservan: tienen ediciones locales
        sin confirmar que la cola todavía debe enviar o el usuario resolver.
        """
        return self.replace_scopes(parent_id, {entity_type: entities})

    def replace_scopes(self, parent_id: str, batches: Mapping[str, Iterable[Entity]]) -> int:
        """Varios tipos de entidad en una única transacción.

        Las notificaciones salen tras el commit: si un lote falla no se anuncia
        ningún registro.
        """
        timestamp = now_iso(self._clock)
        replaced: list[tuple[str, str]] = []
        with transaccion(self._connection):
            cursor = self._connection.cursor()
            for entity_type, entities in batches.items():
                replaced.extend(
                    (entity_type, entity_id)
                    for entity_id in self._replace_scope_rows(cursor, entity_type, parent_id, entities, timestamp)
                )
        for entity_type, entity_id in replaced:
            self._notify(entity_type, entity_id, SYNCED)
        return len(replaced)

    def _replace_scope_rows(
        self,
        cursor: sqlite3.Cursor,
        entity_type: str,
        parent_id: str,
        entities: Iterable[Entity],
        timestamp: str,
    ) -> list[str]:
        table = cache_table(entity_type)
        cursor.execute(
            f"SELECT id FROM {table} WHERE household_id = ? AND sync_status IN (?, ?)",
            (parent_id, PENDING, CONFLICT),
        )
        protected = {row["id"] for row in cursor.fetchall()}
        cursor.execute(
            f"DELETE FROM {table} WHERE household_id = ? AND sync_status = ?",
            (parent_id, SYNCED),
        )
        replaced: list[str] = []
        for entity in entities:
            if entity.id in protected:
                continue
            record = CacheRecord(
                entity=entity,
                sync_status=SYNCED,
                local_updated_at=timestamp,
                server_updated_at=entity.updated_at or None,
            )
            self._upsert_row(cursor, table, record)
            replaced.append(entity.id)
        return replaced

    def clear_scope(self, parent_id: str) -> list[str]:
        removed: list[tuple[str, str]] = []
        with transaccion(self._connection):
            cursor = self._connection.cursor()
            for entity_type in ENTITY_TYPES:
                table = cache_table(entity_type)
                cursor.execute(f"SELECT id FROM {table} WHERE household_id = ?", (parent_id,))
                removed.extend((entity_type, row["id"]) for row in cursor.fetchall())
                cursor.execute(f"DELETE FROM {table} WHERE household_id = ?", (parent_id,))
        for entity_type, entity_id in removed:
            self._notify(entity_type, entity_id, None)
        return [entity_id for _, entity_id in removed]

    def _upsert_row(self, cursor: sqlite3.Cursor, table: str, record: CacheRecord) -> CacheRecord:
        cursor.execute(f"SELECT version FROM {table} WHERE id = ?", (record.entity_id,))
        row = cursor.fetchone()
        version = (int(row["version"]) + 1) if row else 1
        execute_with_validation(
            cursor,
            f"""
            INSERT INTO {table} ({_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                household_id = excluded.household_id,
                payload_json = excluded.payload_json,
                sync_status = excluded.sync_status,
                local_updated_at = excluded.local_updated_at,
                server_updated_at = excluded.server_updated_at,
                deleted_at = excluded.deleted_at,
                version = excluded.version
            """,
            (
                record.entity_id,
                record.parent_id,
                json.dumps(record.entity.to_dict(), ensure_ascii=False),
                record.sync_status,
                record.local_updated_at,
                record.server_updated_at,
                record.entity.deleted_at,
                version,
            ),
            f"{table}.upsert",
        )
        return CacheRecord(
            entity=record.entity,
            sync_status=record.sync_status,
            local_updated_at=record.local_updated_at,
            server_updated_at=record.server_updated_at,
            version=version,
        )

    def _notify(self, entity_type: str, entity_id: str, sync_status: Optional[str]) -> None:
        if self._publisher is None:
            return
        self._publisher.publish(RecordChanged(entity_type=entity_type, entity_id=entity_id, sync_status=sync_status))

    @staticmethod
    def _row_to_record(entity_type: str, row: sqlite3.Row) -> CacheRecord:
        entity = entity_from_dict(entity_type, json.loads(row["payload_json"] or "{}"))
        return CacheRecord(
            entity=entity,
            sync_status=row["sync_status"],
            local_updated_at=row["local_updated_at"],
            server_updated_at=row["server_updated_at"],
            version=int(row["version"]),
        )
