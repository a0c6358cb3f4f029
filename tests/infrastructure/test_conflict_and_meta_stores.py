from __future__ import annotations

from dishcourse.domain.sync_models import ConflictRecord
from dishcourse.infrastructure.repos_conflicts_sqlite import SQLiteConflictStore
from dishcourse.infrastructure.sync_meta_sqlite import SQLiteSyncMetaStore
from tests.e2e_sync.fakes import make_dish, make_plan


def _conflict(entity_id: str = "plan-7", server_name: str = "Remoto", detected_at: str = "2026-03-02T12:00:00Z") -> ConflictRecord:
    return ConflictRecord(
        entity_type="meal_plan",
        entity_id=entity_id,
        local_version=make_plan(entity_id, name="Local"),
        server_version=make_plan(entity_id, name=server_name, created_by="user-b"),
        detected_at=detected_at,
        local_changed_by="user-a",
        server_changed_by="user-b",
    )


def test_add_y_get_reconstruyen_las_versiones(conflict_store: SQLiteConflictStore) -> None:
    conflict_store.add(_conflict())

    loaded = conflict_store.get("plan-7")

    assert loaded == _conflict()
    assert loaded.id == "plan-7"


def test_nueva_deteccion_reemplaza_la_anterior(conflict_store: SQLiteConflictStore) -> None:
    conflict_store.add(_conflict(server_name="Primera"))
    conflict_store.add(_conflict(server_name="Segunda"))

    assert conflict_store.count() == 1
    assert conflict_store.get("plan-7").server_version.name == "Segunda"


def test_list_remove_y_clear(conflict_store: SQLiteConflictStore) -> None:
    conflict_store.add(_conflict("plan-2", detected_at="2026-03-02T12:05:00Z"))
    conflict_store.add(_conflict("plan-1", detected_at="2026-03-02T12:01:00Z"))
    conflict_store.add(
        ConflictRecord("dish", "dish-1", make_dish(name="A"), make_dish(name="B"), "2026-03-02T12:10:00Z")
    )

    assert [conflict.entity_id for conflict in conflict_store.list_conflicts()] == ["plan-1", "plan-2", "dish-1"]
    assert conflict_store.remove("plan-1") is True
    assert conflict_store.remove("plan-1") is False

    conflict_store.clear()
    assert conflict_store.count() == 0


def test_sync_meta_guarda_json(meta_store: SQLiteSyncMetaStore) -> None:
    assert meta_store.get("last_sync:house-1") is None

    meta_store.set("last_sync:house-1", "2026-03-02T12:00:00Z")
    meta_store.set("cursor", {"page": 2})
    meta_store.set("last_sync:house-1", "2026-03-02T13:00:00Z")

    assert meta_store.get("last_sync:house-1") == "2026-03-02T13:00:00Z"
    assert meta_store.get("cursor") == {"page": 2}

    meta_store.delete("cursor")
    assert meta_store.get("cursor") is None
