from __future__ import annotations

from dataclasses import replace

from dishcourse.core import metrics
from dishcourse.core.errors import RemoteUnavailableError
from dishcourse.core.metrics import metrics_registry
from dishcourse.domain.events import SyncStateChanged
from dishcourse.domain.models import DISH, MEAL_PLAN, PENDING, SYNCED
from dishcourse.domain.replication import dish_to_wire
from dishcourse.domain.sync_models import ADD, DELETE, UPDATE
from tests.e2e_sync.fakes import make_dish, make_plan


def _write_pending(local_store, queue, entity, operation_type=ADD):
    record = local_store.write_local(entity)
    queue.enqueue(operation_type, entity.entity_type, entity.id)
    return record


def test_push_vacia_la_cola_y_marca_synced(engine, local_store, queue, remote) -> None:
    dish = make_dish()
    _write_pending(local_store, queue, dish)

    result = engine.push()

    assert result.success is True
    assert result.synced_count == 1
    assert remote.calls_of("upsert") == [("upsert", "dishes", dish_to_wire(dish))]
    assert queue.count() == 0
    record = local_store.get(DISH, "dish-1")
    assert record.sync_status == SYNCED
    assert record.server_updated_at == dish.updated_at
    assert metrics_registry.counter(metrics.PUSH_SUCCEEDED) == 1


def test_push_respeta_el_orden_fifo(engine, local_store, queue, remote, clock) -> None:
    _write_pending(local_store, queue, make_dish("dish-2"))
    clock.advance(seconds=1)
    _write_pending(local_store, queue, make_plan())
    clock.advance(seconds=1)
    _write_pending(local_store, queue, make_dish("dish-1"))

    engine.push()

    assert [call[2]["id"] for call in remote.calls_of("upsert")] == ["dish-2", "plan-7", "dish-1"]


def test_borrado_se_envia_como_update_de_deleted_at(engine, local_store, queue, remote) -> None:
    remote.seed("dishes", dish_to_wire(make_dish()))
    tombstone = make_dish(deleted_at="2026-03-02T11:00:00.000000Z")
    _write_pending(local_store, queue, tombstone, DELETE)

    engine.push()

    assert remote.calls_of("upsert") == []
    assert remote.calls_of("update") == [
        ("update", "dishes", {"deleted_at": "2026-03-02T11:00:00.000000Z"}, {"id": "dish-1"})
    ]
    assert remote.row("dishes", "dish-1")["deleted_at"] == "2026-03-02T11:00:00.000000Z"
    assert local_store.get(DISH, "dish-1").sync_status == SYNCED


def test_un_fallo_no_detiene_el_resto(engine, local_store, queue, remote) -> None:
    _write_pending(local_store, queue, make_dish("dish-1"))
    _write_pending(local_store, queue, make_dish("dish-2"))
    remote.fail("upsert", RemoteUnavailableError("servidor caído"), entity_id="dish-1")

    result = engine.push()

    assert result.success is False
    assert result.synced_count == 1
    [failure] = result.failed
    assert (failure.entity_id, failure.error, failure.retry_count, failure.exhausted) == ("dish-1", "servidor caído", 1, False)
    entry = queue.get_for_entity("dish-1")
    assert entry.retry_count == 1
    assert entry.last_error == "servidor caído"
    assert local_store.get(DISH, "dish-1").sync_status == PENDING
    assert local_store.get(DISH, "dish-2").sync_status == SYNCED
    assert metrics_registry.counter(metrics.PUSH_FAILED) == 1


def test_entradas_agotadas_no_se_reintentan_hasta_reset(engine, local_store, queue, remote) -> None:
    _write_pending(local_store, queue, make_dish())
    remote.fail("upsert", RemoteUnavailableError("caído"), times=3)

    results = [engine.push() for _ in range(3)]
    upserts_before = len(remote.calls_of("upsert"))
    exhausted = engine.push()

    assert results[-1].failed[0].exhausted is True
    assert exhausted.failed[0].exhausted is True
    assert exhausted.failed[0].retry_count == 3
    assert len(remote.calls_of("upsert")) == upserts_before == 0

    queue.reset_retries()
    assert engine.push().success is True
    assert queue.count() == 0


def test_barrido_de_registros_pending_sin_entrada(engine, local_store, queue, remote) -> None:
    local_store.write_local(make_dish())

    result = engine.push()

    assert result.synced_count == 1
    assert remote.row("dishes", "dish-1")["name"] == "Lentejas"
    assert local_store.get(DISH, "dish-1").sync_status == SYNCED


def test_push_salta_registros_en_conflicto(engine, local_store, queue, remote) -> None:
    _write_pending(local_store, queue, make_plan(), UPDATE)
    local_store.mark_conflict(MEAL_PLAN, "plan-7")

    result = engine.push()

    assert result.success is True
    assert remote.calls_of("upsert") == []
    assert queue.get_for_entity("plan-7") is not None


def test_reedicion_durante_el_push_no_se_pierde(engine, local_store, queue, remote) -> None:
    _write_pending(local_store, queue, make_dish())

    def _edit_while_in_flight(table, record) -> None:
        remote.on_upsert = None
        _write_pending(local_store, queue, make_dish(name="Lentejas con arroz"), UPDATE)

    remote.on_upsert = _edit_while_in_flight

    engine.push()

    assert [call[2]["name"] for call in remote.calls_of("upsert")] == ["Lentejas", "Lentejas con arroz"]
    assert remote.row("dishes", "dish-1")["name"] == "Lentejas con arroz"
    assert local_store.get(DISH, "dish-1").sync_status == SYNCED


def test_registro_borrado_en_local_descarta_la_entrada(engine, local_store, queue, remote) -> None:
    _write_pending(local_store, queue, make_dish())
    local_store.delete(DISH, "dish-1")

    result = engine.push()

    assert result.synced_count == 1
    assert queue.count() == 0
    assert remote.calls == []


def test_push_sin_conexion_no_toca_el_remoto(engine, local_store, queue, remote) -> None:
    _write_pending(local_store, queue, make_dish())
    engine.set_online(False)

    result = engine.push()

    assert result.success is False
    assert result.error == "Sin conexión"
    assert remote.calls == []
    assert queue.count() == 1


def test_push_publica_estados(engine, local_store, queue, event_bus) -> None:
    states: list[SyncStateChanged] = []
    event_bus.subscribe(SyncStateChanged, states.append)
    _write_pending(local_store, queue, replace(make_dish(), name="Sopa"))

    engine.push()

    assert [(event.state, event.pending_count) for event in states] == [("syncing", 1), ("idle", 0)]
