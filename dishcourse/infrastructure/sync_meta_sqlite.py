from __future__ import annotations

import json
import sqlite3
from typing import Any

from dishcourse.domain.ports import SyncMetaPort
from dishcourse.infrastructure.sqlite_uow import transaccion


class SQLiteSyncMetaStore(SyncMetaPort):
    """Pares clave/valor de metadatos de sync (p. ej. `last_sync:<hogar>`)."""

    def __init__(self, connection: sqlite3.Connection) -> None:
        self._connection = connection

    def get(self, key: str) -> Any:
        row = self._connection.execute("SELECT value_json FROM sync_meta WHERE key = ?", (key,)).fetchone()
        if row is None or row["value_json"] is None:
            return None
        return json.loads(row["value_json"])

    def set(self, key: str, value: Any) -> None:
        with transaccion(self._connection):
            self._connection.execute(
                """
                INSERT INTO sync_meta (key, value_json) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET value_json = excluded.value_json
                """,
                (key, json.dumps(value, ensure_ascii=False)),
            )

    def delete(self, key: str) -> None:
        with transaccion(self._connection):
            self._connection.execute("DELETE FROM sync_meta WHERE key = ?", (key,))
