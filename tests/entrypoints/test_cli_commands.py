from __future__ import annotations

import json
from pathlib import Path

import pytest

from dishcourse.bootstrap.container import build_container
from dishcourse.bootstrap.settings import Settings
from dishcourse.core.errors import RemoteUnavailableError
from dishcourse.domain.models import LocalConfig
from dishcourse.domain.replication import dish_to_wire, meal_plan_to_wire
from dishcourse.entrypoints import cli
from dishcourse.infrastructure.local_config import CONFIG_DIR_ENV, LocalConfigStore
from tests.e2e_sync.fakes import FakeRemoteStore, make_dish, make_plan


class _Harness:
    def __init__(self, tmp_path: Path) -> None:
        self.settings = Settings(db_path=tmp_path / "cache.db", log_dir=tmp_path / "logs")
        self.config_store = LocalConfigStore(tmp_path / "config")
        self.remote = FakeRemoteStore()
        self.online = True

    def build(self):
        return build_container(
            self.settings,
            config_store=self.config_store,
            remote_factory=lambda config, settings: self.remote if self.online else None,
        )

    def run(self, capsys, *argv: str) -> tuple[int, list]:
        code = cli.main(list(argv), container_factory=self.build)
        lines = capsys.readouterr().out.splitlines()
        return code, [json.loads(line) for line in lines]


@pytest.fixture
def harness(tmp_path: Path, monkeypatch) -> _Harness:
    monkeypatch.setattr(cli, "configure_logging", lambda log_dir, **kwargs: None)
    return _Harness(tmp_path)


def test_status_muestra_el_estado_del_motor(harness, capsys) -> None:
    code, [payload] = harness.run(capsys, "status")

    assert code == cli.EXIT_OK
    assert payload["state"] == "idle"
    assert payload["online"] is True
    assert payload["pending_changes"] == 0
    assert payload["household_id"] is None


def test_push_envia_lo_escrito_sin_conexion(harness, capsys) -> None:
    harness.online = False
    container = harness.build()
    try:
        container.writes.add_dish("house-1", "Lentejas", dish_id="dish-1")
    finally:
        container.close()
    harness.online = True

    code, [payload] = harness.run(capsys, "push")

    assert code == cli.EXIT_OK
    assert payload["success"] is True
    assert payload["synced_count"] == 1
    assert harness.remote.row("dishes", "dish-1")["name"] == "Lentejas"


def test_push_offline_devuelve_fallo(harness, capsys) -> None:
    harness.online = False

    code, [payload] = harness.run(capsys, "push")

    assert code == cli.EXIT_FAILED
    assert payload["error"] == "Sin conexión"


def test_full_sync_exige_hogar(harness, capsys) -> None:
    code, [payload] = harness.run(capsys, "full-sync")

    assert code == cli.EXIT_USAGE
    assert "error" in payload


def test_full_sync_descarga_el_hogar(harness, capsys) -> None:
    harness.remote.seed("dishes", dish_to_wire(make_dish()))
    harness.remote.seed("meal_plans", meal_plan_to_wire(make_plan()))

    code, [payload] = harness.run(capsys, "full-sync", "--household", "house-1")

    assert code == cli.EXIT_OK
    assert payload["synced_count"] == 2


def test_conflicts_list_y_resolve_desconocido(harness, capsys) -> None:
    code, [listing] = harness.run(capsys, "conflicts", "list")
    assert (code, listing) == (cli.EXIT_OK, [])

    code, [payload] = harness.run(capsys, "conflicts", "resolve", "plan-x", "--keep", "server")
    assert code == cli.EXIT_FAILED
    assert payload == {"entity_id": "plan-x", "resolved": False}

    code, [payload] = harness.run(capsys, "conflicts", "resolve", "--all", "--keep", "local")
    assert (code, payload) == (cli.EXIT_OK, {"resolved": 0})


def test_queue_list_y_retry(harness, capsys) -> None:
    harness.online = False
    container = harness.build()
    try:
        container.writes.add_dish("house-1", "Lentejas", dish_id="dish-1")
    finally:
        container.close()

    code, [entries] = harness.run(capsys, "queue", "list")
    assert code == cli.EXIT_OK
    assert [(entry["entity_id"], entry["operation_type"]) for entry in entries] == [("dish-1", "add")]

    harness.online = True
    code, [payload] = harness.run(capsys, "queue", "retry")
    assert code == cli.EXIT_OK
    assert payload == {"reset": 1, "remaining": 0}


def test_lock_acquire_check_y_release(harness, capsys) -> None:
    harness.remote.seed("meal_plans", meal_plan_to_wire(make_plan()))

    code, [acquired] = harness.run(capsys, "lock", "acquire", "plan-7", "--user", "user-a")
    assert code == cli.EXIT_OK
    assert acquired["locked_by"] == "user-a"

    code, [denied] = harness.run(capsys, "lock", "acquire", "plan-7", "--user", "user-b")
    assert code == cli.EXIT_FAILED
    assert denied["locked_by"] == "user-a"

    code, [status] = harness.run(capsys, "lock", "check", "plan-7", "--user", "user-b")
    assert status["state"] == "locked-by-other-fresh"
    assert status["is_locked"] is True

    code, [released] = harness.run(capsys, "lock", "release", "plan-7", "--user", "user-a")
    assert code == cli.EXIT_OK
    assert released["success"] is True


def test_migrate_status(harness, capsys) -> None:
    code, [payload] = harness.run(capsys, "migrate", "--status")

    assert code == cli.EXIT_OK
    assert payload["status"]
    assert all(item["applied"] for item in payload["status"])


def test_config_guarda_los_campos(tmp_path: Path, monkeypatch, capsys) -> None:
    monkeypatch.setenv(CONFIG_DIR_ENV, str(tmp_path / "cfg"))

    code = cli.main(["config", "--spreadsheet-id", "sheet-1", "--user-id", "user-a", "--household", "house-1"])
    payload = json.loads(capsys.readouterr().out)

    assert code == cli.EXIT_OK
    assert payload["config_path"] == str(tmp_path / "cfg" / "config.json")
    assert LocalConfigStore(tmp_path / "cfg").load() == LocalConfig(
        spreadsheet_id="sheet-1",
        credentials_path="",
        device_id=payload["device_id"],
        user_id="user-a",
        household_id="house-1",
    )


def test_metrics_no_necesita_contenedor(capsys) -> None:
    def _unexpected_container():
        raise AssertionError("metrics no debe construir el contenedor")

    code = cli.main(["metrics"], container_factory=_unexpected_container)

    assert code == cli.EXIT_OK
    assert json.loads(capsys.readouterr().out) == {"counters": {}, "timings_ms": {}}


def test_app_error_se_convierte_en_salida_de_error(harness, capsys) -> None:
    def _failing_container():
        container = harness.build()

        def _push():
            raise RemoteUnavailableError("servidor caído")

        container.engine.push = _push
        return container

    code = cli.main(["push"], container_factory=_failing_container)
    payload = json.loads(capsys.readouterr().out)

    assert code == cli.EXIT_FAILED
    assert payload == {"error": "servidor caído", "error_type": "RemoteUnavailableError"}
