from __future__ import annotations

import sqlite3

import pytest

from dishcourse.infrastructure.migrations import MigrationRunner, run_migrations


def _tables(conn: sqlite3.Connection) -> set[str]:
    rows = conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'").fetchall()
    return {row["name"] for row in rows}


def test_migraciones_crean_el_esquema_de_cache(connection: sqlite3.Connection) -> None:
    assert {"dishes", "meal_plans", "offline_queue", "conflicts", "sync_meta", "schema_migrations"} <= _tables(connection)
    assert connection.execute("PRAGMA user_version").fetchone()[0] == 3


def test_run_migrations_es_idempotente(connection: sqlite3.Connection) -> None:
    assert run_migrations(connection) == []


def test_status_y_rollback() -> None:
    conn = sqlite3.connect(":memory:")
    runner = MigrationRunner(conn)

    assert runner.apply_all() == [1, 2, 3]
    assert all(entry["applied"] for entry in runner.status())

    assert runner.rollback(1) == [3]
    assert "conflicts" not in _tables(conn)
    assert conn.execute("PRAGMA user_version").fetchone()[0] == 2
    assert runner.apply_all() == [3]
    conn.close()


def test_cola_rechaza_dos_entradas_para_la_misma_entidad(connection: sqlite3.Connection) -> None:
    insert = (
        "INSERT INTO offline_queue (id, operation_type, entity_type, entity_id, created_at) "
        "VALUES (?, 'add', 'dish', 'dish-1', '2026-03-02')"
    )
    connection.execute(insert, ("q_1",))

    with pytest.raises(sqlite3.IntegrityError):
        connection.execute(insert, ("q_2",))
