from __future__ import annotations

from datetime import timedelta

import pytest

from dishcourse.application.lock_manager import LockManager
from dishcourse.core.errors import RemoteUnavailableError
from dishcourse.domain.lock_rules import LOCKED_BY_ME, LOCKED_BY_OTHER_FRESH, LOCKED_BY_OTHER_STALE, UNLOCKED
from dishcourse.domain.models import MEAL_PLAN, SYNCED, CacheRecord
from dishcourse.domain.replication import meal_plan_to_wire
from tests.e2e_sync.fakes import make_plan


@pytest.fixture
def seeded(local_store, remote):
    plan = make_plan()
    local_store.put(CacheRecord(entity=plan, sync_status=SYNCED, local_updated_at="2026-03-01T10:00:00.000000Z"))
    remote.seed("meal_plans", meal_plan_to_wire(plan))
    return plan


@pytest.fixture
def manager(local_store, remote, clock) -> LockManager:
    return LockManager(local_store, remote, timeout=timedelta(minutes=5), clock=clock)


def test_exclusion_mutua_entre_usuarios(manager, seeded, remote, local_store, clock) -> None:
    first = manager.acquire("plan-7", "user-a")
    second = manager.acquire("plan-7", "user-b")

    assert first.success is True
    assert first.locked_at == clock.iso()
    assert second.success is False
    assert second.locked_by == "user-a"
    assert remote.row("meal_plans", "plan-7")["locked_by"] == "user-a"
    assert local_store.get(MEAL_PLAN, "plan-7").entity.locked_by == "user-a"


def test_bloqueo_obsoleto_se_puede_tomar(manager, seeded, remote, clock) -> None:
    manager.acquire("plan-7", "user-a")
    clock.advance(minutes=5, seconds=1)

    result = manager.acquire("plan-7", "user-b")

    assert result.success is True
    assert remote.row("meal_plans", "plan-7")["locked_by"] == "user-b"


def test_carrera_de_compare_and_set_la_gana_otro(manager, seeded, remote, local_store, clock) -> None:
    def _other_device_wins(table, patch, filters) -> None:
        remote.tables[table]["plan-7"].update({"locked_by": "user-c", "locked_at": clock.iso()})

    remote.before_update = _other_device_wins

    result = manager.acquire("plan-7", "user-a")

    assert result.success is False
    assert result.locked_by == "user-c"
    assert remote.row("meal_plans", "plan-7")["locked_by"] == "user-c"
    assert local_store.get(MEAL_PLAN, "plan-7").entity.locked_by == "user-c"


def test_sin_conexion_usa_la_cache(local_store, remote, clock, seeded) -> None:
    manager = LockManager(local_store, remote, is_online=lambda: False, clock=clock)

    assert manager.acquire("plan-7", "user-a").success is True
    assert manager.acquire("plan-7", "user-b").success is False

    assert remote.calls == []
    assert local_store.get(MEAL_PLAN, "plan-7").entity.locked_by == "user-a"


def test_error_remoto_al_adquirir_devuelve_fallo(manager, seeded, remote, local_store) -> None:
    remote.fail("select_all", RemoteUnavailableError("servidor caído"))

    result = manager.acquire("plan-7", "user-a")

    assert result.success is False
    assert result.error == "servidor caído"
    assert local_store.get(MEAL_PLAN, "plan-7").entity.locked_by is None


def test_check_cae_a_la_cache_si_falla_el_remoto(manager, seeded, remote, local_store, clock) -> None:
    local_store.update_lock_fields("plan-7", "user-a", clock.iso())
    remote.fail("select_all", RemoteUnavailableError("sin red"))

    status = manager.check("plan-7", "user-a")

    assert status.is_locked is True
    assert status.is_locked_by_current_user is True


def test_check_reconcilia_la_cache_con_el_remoto(manager, seeded, remote, local_store, clock) -> None:
    remote.tables["meal_plans"]["plan-7"].update({"locked_by": "user-b", "locked_at": clock.iso()})

    status = manager.check("plan-7", "user-a")

    assert status.locked_by == "user-b"
    cached = local_store.get(MEAL_PLAN, "plan-7")
    assert cached.entity.locked_by == "user-b"
    assert cached.sync_status == SYNCED


def test_release_solo_por_el_titular(manager, seeded, remote) -> None:
    manager.acquire("plan-7", "user-a")

    denied = manager.release("plan-7", "user-b")
    released = manager.release("plan-7", "user-a")

    assert denied.success is False
    assert denied.locked_by == "user-a"
    assert released.success is True
    assert remote.row("meal_plans", "plan-7")["locked_by"] is None


def test_release_sin_bloqueo_es_exito(manager, seeded) -> None:
    assert manager.release("plan-7", "user-b").success is True


def test_force_unlock_respeta_bloqueos_vigentes(manager, seeded, remote, clock) -> None:
    assert manager.force_unlock("plan-7").success is True

    manager.acquire("plan-7", "user-a")
    fresh = manager.force_unlock("plan-7")
    clock.advance(minutes=6)
    stale = manager.force_unlock("plan-7")

    assert fresh.success is False
    assert fresh.locked_by == "user-a"
    assert stale.success is True
    assert remote.row("meal_plans", "plan-7")["locked_by"] is None


def test_refresh_solo_para_el_titular(manager, seeded, remote, clock) -> None:
    manager.acquire("plan-7", "user-a")
    clock.advance(minutes=2)

    denied = manager.refresh("plan-7", "user-b")
    refreshed = manager.refresh("plan-7", "user-a")

    assert denied.success is False
    assert refreshed.success is True
    assert remote.row("meal_plans", "plan-7")["locked_at"] == clock.iso()


def test_state_of_cubre_los_cuatro_estados(manager, seeded, clock) -> None:
    assert manager.state_of("plan-7", "user-a") == UNLOCKED

    manager.acquire("plan-7", "user-a")
    assert manager.state_of("plan-7", "user-a") == LOCKED_BY_ME
    assert manager.state_of("plan-7", "user-b") == LOCKED_BY_OTHER_FRESH

    clock.advance(minutes=10)
    assert manager.state_of("plan-7", "user-b") == LOCKED_BY_OTHER_STALE
    assert manager.lock_age(manager.check("plan-7").locked_at) == "10 min ago"


def test_plan_solo_local_se_bloquea_en_cache(manager, local_store, remote) -> None:
    plan = make_plan("plan-local")
    local_store.write_local(plan)

    result = manager.acquire("plan-local", "user-a")

    assert result.success is True
    assert remote.calls_of("update") == []
    assert local_store.get(MEAL_PLAN, "plan-local").entity.locked_by == "user-a"


def test_plan_inexistente(manager) -> None:
    result = manager.acquire("plan-x", "user-a")

    assert result.success is False
    assert result.error == "Plan no encontrado"
    assert manager.check("plan-x").is_locked is False
