from __future__ import annotations

import hashlib
import logging
import sqlite3
from dataclasses import dataclass
from pathlib import Path

from dishcourse.domain.time_utils import now_iso

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).resolve().parents[1] / "migrations"


@dataclass(frozen=True)
class MigrationDefinition:
    version: int
    name: str
    up_sql: Path
    down_sql: Path


class MigrationRunner:
    """Aplica migraciones SQL versionadas (`NNN_nombre.up.sql` / `.down.sql`).

    El esquema de la caché solo crece de forma aditiva; `rollback` existe para
    desarrollo y tests, no para instalaciones en uso.
    """

    def __init__(self, connection: sqlite3.Connection, migrations_dir: Path | None = None) -> None:
        self.connection = connection
        self.connection.row_factory = sqlite3.Row
        self.migrations_dir = migrations_dir or MIGRATIONS_DIR
        self.migrations = self._discover_migrations()

    def apply_all(self) -> list[int]:
        self._ensure_history_table()
        applied_versions = self._applied_versions()
        applied_now: list[int] = []
        for migration in self.migrations:
            if migration.version in applied_versions:
                continue
            self._apply_migration(migration)
            applied_now.append(migration.version)
        if applied_now:
            logger.info("Migraciones aplicadas: %s", applied_now)
        return applied_now

    def rollback(self, steps: int = 1) -> list[int]:
        self._ensure_history_table()
        cursor = self.connection.cursor()
        cursor.execute("SELECT version FROM schema_migrations ORDER BY version DESC LIMIT ?", (steps,))
        versions_to_rollback = [row["version"] for row in cursor.fetchall()]
        version_map = {migration.version: migration for migration in self.migrations}
        rolled_back: list[int] = []
        for version in versions_to_rollback:
            self._rollback_migration(version_map[version])
            rolled_back.append(version)
        return rolled_back

    def status(self) -> list[dict[str, object]]:
        self._ensure_history_table()
        applied_versions = self._applied_versions()
        return [
            {
                "version": migration.version,
                "name": migration.name,
                "applied": migration.version in applied_versions,
            }
            for migration in self.migrations
        ]

    def _ensure_history_table(self) -> None:
        self.connection.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version INTEGER PRIMARY KEY,
                name TEXT NOT NULL,
                checksum TEXT NOT NULL,
                applied_at TEXT NOT NULL
            )
            """
        )
        self.connection.commit()

    def _applied_versions(self) -> set[int]:
        cursor = self.connection.cursor()
        cursor.execute("SELECT version FROM schema_migrations")
        return {row["version"] for row in cursor.fetchall()}

    def _apply_migration(self, migration: MigrationDefinition) -> None:
        sql_script = migration.up_sql.read_text(encoding="utf-8")
        checksum = hashlib.sha256(sql_script.encode("utf-8")).hexdigest()
        with self.connection:
            if sql_script.strip():
                self.connection.executescript(sql_script)
            self.connection.execute(
                """
                INSERT INTO schema_migrations (version, name, checksum, applied_at)
                VALUES (?, ?, ?, ?)
                """,
                (migration.version, migration.name, checksum, now_iso()),
            )
            self.connection.execute(f"PRAGMA user_version = {migration.version}")

    def _rollback_migration(self, migration: MigrationDefinition) -> None:
        sql_script = migration.down_sql.read_text(encoding="utf-8")
        with self.connection:
            if sql_script.strip():
                self.connection.executescript(sql_script)
            self.connection.execute("DELETE FROM schema_migrations WHERE version = ?", (migration.version,))
            previous = self.connection.execute(
                "SELECT COALESCE(MAX(version), 0) AS version FROM schema_migrations"
            ).fetchone()["version"]
            self.connection.execute(f"PRAGMA user_version = {previous}")

    def _discover_migrations(self) -> list[MigrationDefinition]:
        definitions: list[MigrationDefinition] = []
        for up_file in sorted(self.migrations_dir.glob("*.up.sql")):
            stem = up_file.name[: -len(".up.sql")]
            version_text, name = stem.split("_", maxsplit=1)
            down_file = self.migrations_dir / f"{stem}.down.sql"
            if not down_file.exists():
                raise FileNotFoundError(f"Missing down migration for {up_file.name}: {down_file}")
            definitions.append(
                MigrationDefinition(version=int(version_text), name=name, up_sql=up_file, down_sql=down_file)
            )
        return definitions


def run_migrations(connection: sqlite3.Connection) -> list[int]:
    return MigrationRunner(connection).apply_all()
