from __future__ import annotations

import sqlite3
from dataclasses import replace
from datetime import timedelta

import pytest

from dishcourse.application.conflicts_service import ConflictsService
from dishcourse.application.local_writes import LocalWriteService
from dishcourse.application.lock_manager import LockManager
from dishcourse.domain.models import DISH, MEAL_PLAN, SYNCED, CacheRecord
from dishcourse.domain.replication import dish_to_wire, meal_plan_to_wire
from dishcourse.domain.sync_models import ChangeEvent
from dishcourse.infrastructure.migrations import run_migrations
from dishcourse.infrastructure.repos_cache_sqlite import SQLiteLocalStore
from tests.e2e_sync.fakes import make_plan


@pytest.fixture
def writes(engine, local_store, queue, clock) -> LocalWriteService:
    return LocalWriteService(local_store, queue, engine, user_id="user-a", mutation_lock=engine.mutation_lock, clock=clock)


def test_alta_y_edicion_sin_conexion_se_envian_como_un_solo_upsert(engine, writes, local_store, queue, remote, clock) -> None:
    engine.set_online(False)
    dish = writes.add_dish("house-1", "Lentejas", dish_id="dish-1")
    clock.advance(minutes=3)
    edited = writes.update_dish(replace(dish, name="Lentejas con chorizo", cook_time_minutes=45))
    assert remote.calls == []

    engine.set_online(True)

    assert remote.calls_of("upsert") == [("upsert", "dishes", dish_to_wire(edited))]
    assert queue.count() == 0
    assert local_store.get(DISH, "dish-1").sync_status == SYNCED
    assert engine.pending_changes_count() == 0


def test_conflicto_con_evento_remoto_resuelto_con_la_version_del_servidor(
    engine, writes, local_store, queue, conflict_store, event_bus, clock
) -> None:
    local_store.put(CacheRecord(entity=make_plan(), sync_status=SYNCED, local_updated_at=clock.iso()))
    engine.set_online(False)
    writes.update_plan(make_plan(name="Semana 10 (mía)"))
    server_plan = make_plan(name="Semana 10 (suya)", created_by="user-b", updated_at="2026-03-02T12:05:00.000000Z")

    engine.apply_remote_event(ChangeEvent("update", "meal_plans", meal_plan_to_wire(server_plan)))
    assert conflict_store.count() == 1

    service = ConflictsService(local_store, queue, conflict_store, event_bus, engine, mutation_lock=engine.mutation_lock, clock=clock)
    assert service.resolve("plan-7", "server") is True

    record = local_store.get(MEAL_PLAN, "plan-7")
    assert conflict_store.count() == 0
    assert record.sync_status == SYNCED
    assert record.entity == server_plan
    assert queue.get_for_entity("plan-7") is None


def test_bloqueo_entre_dos_dispositivos_con_expiracion(local_store, remote, clock) -> None:
    plan = make_plan()
    remote.seed("meal_plans", meal_plan_to_wire(plan))
    local_store.put(CacheRecord(entity=plan, sync_status=SYNCED, local_updated_at=clock.iso()))
    other_connection = sqlite3.connect(":memory:")
    other_connection.row_factory = sqlite3.Row
    run_migrations(other_connection)
    timeout = timedelta(minutes=5)
    device_a = LockManager(local_store, remote, timeout=timeout, clock=clock)
    device_b = LockManager(SQLiteLocalStore(other_connection, clock=clock), remote, timeout=timeout, clock=clock)

    try:
        assert device_a.acquire("plan-7", "user-a").success is True
        blocked = device_b.acquire("plan-7", "user-b")
        assert blocked.success is False
        assert blocked.locked_by == "user-a"

        clock.advance(minutes=5, seconds=1)
        taken = device_b.acquire("plan-7", "user-b")
        assert taken.success is True
        assert remote.row("meal_plans", "plan-7")["locked_by"] == "user-b"
        assert device_a.check("plan-7", "user-a").locked_by == "user-b"
    finally:
        other_connection.close()


def test_alta_y_baja_sin_conexion_no_llegan_al_remoto(engine, writes, local_store, queue, remote) -> None:
    engine.set_online(False)
    writes.add_dish("house-1", "Lentejas", dish_id="dish-9")
    assert writes.delete_dish("dish-9") is True

    engine.set_online(True)

    assert remote.calls == []
    assert queue.count() == 0
    assert local_store.get(DISH, "dish-9") is None
    assert engine.pending_changes_count() == 0
