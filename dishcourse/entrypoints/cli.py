from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import asdict, is_dataclass, replace
from typing import Any, Callable

from dishcourse.bootstrap.container import SyncContainer, build_container
from dishcourse.bootstrap.logging import configure_logging
from dishcourse.core.errors import AppError
from dishcourse.core.metrics import metrics_registry
from dishcourse.domain.models import LocalConfig
from dishcourse.infrastructure.local_config import LocalConfigStore
from dishcourse.infrastructure.migrations import MigrationRunner

logger = logging.getLogger("dishcourse.cli")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2

ContainerFactory = Callable[[], SyncContainer]


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="dishcourse", description="Sincronización local-first de platos y planes")
    parser.add_argument("-v", "--verbose", action="store_true", help="Muestra también los logs INFO por stderr")
    sub = parser.add_subparsers(dest="command", required=True)

    migrate = sub.add_parser("migrate", help="Aplica o revierte migraciones de la caché local")
    migrate.add_argument("--rollback", type=int, default=0, metavar="N", help="Revierte las N últimas migraciones")
    migrate.add_argument("--status", action="store_true", help="Solo muestra el estado")

    sub.add_parser("status", help="Estado del motor, cola y conflictos")
    sub.add_parser("push", help="Envía los cambios pendientes al remoto")

    full_sync = sub.add_parser("full-sync", help="Descarga el hogar completo y reemplaza la caché")
    full_sync.add_argument("--household", help="Hogar a sincronizar (por defecto el configurado)")

    conflicts = sub.add_parser("conflicts", help="Gestión de conflictos")
    conflicts_sub = conflicts.add_subparsers(dest="conflicts_command", required=True)
    conflicts_sub.add_parser("list")
    resolve = conflicts_sub.add_parser("resolve")
    target = resolve.add_mutually_exclusive_group(required=True)
    target.add_argument("entity_id", nargs="?")
    target.add_argument("--all", action="store_true")
    resolve.add_argument("--keep", choices=("local", "server"), required=True)

    queue = sub.add_parser("queue", help="Cola de operaciones pendientes")
    queue_sub = queue.add_subparsers(dest="queue_command", required=True)
    queue_sub.add_parser("list")
    retry = queue_sub.add_parser("retry", help="Reinicia los reintentos y lanza un push")
    retry.add_argument("--id", dest="operation_id")

    lock = sub.add_parser("lock", help="Bloqueo de edición de planes")
    lock.add_argument("action", choices=("check", "acquire", "release", "force-unlock"))
    lock.add_argument("plan_id")
    lock.add_argument("--user", help="Usuario (por defecto el del dispositivo)")

    config = sub.add_parser("config", help="Configuración del dispositivo")
    config.add_argument("--spreadsheet-id")
    config.add_argument("--credentials")
    config.add_argument("--user-id")
    config.add_argument("--household")

    sub.add_parser("metrics", help="Contadores y tiempos del proceso")
    return parser


def _to_json(value: Any) -> Any:
    if is_dataclass(value) and not isinstance(value, type):
        return asdict(value)
    if isinstance(value, (list, tuple)):
        return [_to_json(item) for item in value]
    return value


def _emit(payload: Any) -> None:
    sys.stdout.write(json.dumps(_to_json(payload), ensure_ascii=False, default=str) + "\n")


def _run_migrate(container: SyncContainer, args: argparse.Namespace) -> int:
    runner = MigrationRunner(container.connection)
    if args.rollback:
        _emit({"rolled_back": runner.rollback(args.rollback)})
    elif not args.status:
        _emit({"applied": runner.apply_all()})
    _emit({"status": runner.status()})
    return EXIT_OK


def _run_status(container: SyncContainer, args: argparse.Namespace) -> int:
    engine = container.engine
    household = container.config.household_id
    _emit(
        {
            "state": engine.state,
            "online": engine.is_online,
            "pending_changes": engine.pending_changes_count(),
            "queued": container.queue.count(),
            "conflicts": container.conflict_store.count(),
            "household_id": household or None,
            "last_sync": engine.last_sync_time(household) if household else None,
        }
    )
    return EXIT_OK


def _run_push(container: SyncContainer, args: argparse.Namespace) -> int:
    result = container.engine.push()
    _emit(result)
    return EXIT_OK if result.success else EXIT_FAILED


def _run_full_sync(container: SyncContainer, args: argparse.Namespace) -> int:
    household = args.household or container.config.household_id
    if not household:
        _emit({"error": "No hay hogar configurado; usa --household"})
        return EXIT_USAGE
    result = container.engine.full_sync(household)
    _emit(result)
    return EXIT_OK if result.success else EXIT_FAILED


def _run_conflicts(container: SyncContainer, args: argparse.Namespace) -> int:
    service = container.conflicts_service
    if args.conflicts_command == "list":
        _emit(service.list_conflicts())
        return EXIT_OK
    if args.all:
        _emit({"resolved": service.resolve_all(args.keep)})
        return EXIT_OK
    resolved = service.resolve(args.entity_id, args.keep)
    _emit({"entity_id": args.entity_id, "resolved": resolved})
    return EXIT_OK if resolved else EXIT_FAILED


def _run_queue(container: SyncContainer, args: argparse.Namespace) -> int:
    if args.queue_command == "list":
        _emit(container.queue.list_all())
        return EXIT_OK
    reset = container.queue.reset_retries(args.operation_id)
    container.engine.schedule_push()
    _emit({"reset": reset, "remaining": container.queue.count()})
    return EXIT_OK


def _run_lock(container: SyncContainer, args: argparse.Namespace) -> int:
    manager = container.lock_manager
    user_id = args.user or container.user_id
    if args.action == "check":
        status = manager.check(args.plan_id, user_id)
        _emit({**asdict(status), "state": manager.state_of(args.plan_id, user_id), "age": manager.lock_age(status.locked_at)})
        return EXIT_OK
    if args.action == "acquire":
        result = manager.acquire(args.plan_id, user_id)
    elif args.action == "release":
        result = manager.release(args.plan_id, user_id)
    else:
        result = manager.force_unlock(args.plan_id)
    _emit(result)
    return EXIT_OK if result.success else EXIT_FAILED


def _run_config(args: argparse.Namespace) -> int:
    store = LocalConfigStore()
    current = store.load() or store.save(LocalConfig(spreadsheet_id="", credentials_path="", device_id=""))
    changes = {
        "spreadsheet_id": args.spreadsheet_id,
        "credentials_path": args.credentials,
        "user_id": args.user_id,
        "household_id": args.household,
    }
    updates = {key: value for key, value in changes.items() if value is not None}
    if updates:
        current = store.save(replace(current, **updates))
    _emit({**asdict(current), "config_path": str(store.config_path)})
    return EXIT_OK


_HANDLERS: dict[str, Callable[[SyncContainer, argparse.Namespace], int]] = {
    "migrate": _run_migrate,
    "status": _run_status,
    "push": _run_push,
    "full-sync": _run_full_sync,
    "conflicts": _run_conflicts,
    "queue": _run_queue,
    "lock": _run_lock,
}


def main(argv: list[str] | None = None, *, container_factory: ContainerFactory = build_container) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.command == "config":
        return _run_config(args)
    if args.command == "metrics":
        _emit(metrics_registry.snapshot())
        return EXIT_OK

    container = container_factory()
    configure_logging(container.settings.log_dir, console_level=logging.INFO if args.verbose else logging.WARNING)
    try:
        return _HANDLERS[args.command](container, args)
    except AppError as exc:
        logger.exception("Comando %s fallido", args.command)
        _emit({"error": str(exc), "error_type": exc.__class__.__name__})
        return EXIT_FAILED
    finally:
        container.close()


if __name__ == "__main__":
    raise SystemExit(main())
