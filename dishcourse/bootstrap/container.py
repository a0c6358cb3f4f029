from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Callable, Optional

from dishcourse.application.conflicts_service import ConflictsService
from dishcourse.application.event_bus import EventBus
from dishcourse.application.local_writes import LocalWriteService
from dishcourse.application.lock_manager import LockManager
from dishcourse.application.sync_engine import SyncEngine
from dishcourse.bootstrap.settings import Settings
from dishcourse.core.errors import InfraError
from dishcourse.core.operational_logging import log_operational_error
from dishcourse.domain.models import LocalConfig
from dishcourse.domain.ports import LocalConfigStorePort, RemoteStorePort
from dishcourse.infrastructure.db import get_connection
from dishcourse.infrastructure.local_config import LocalConfigStore
from dishcourse.infrastructure.migrations import run_migrations
from dishcourse.infrastructure.repos_cache_sqlite import SQLiteLocalStore
from dishcourse.infrastructure.repos_conflicts_sqlite import SQLiteConflictStore
from dishcourse.infrastructure.repos_queue_sqlite import SQLiteMutationQueue
from dishcourse.infrastructure.sheets_client import SheetsClient
from dishcourse.infrastructure.sheets_remote_store import SheetsRemoteStore
from dishcourse.infrastructure.sync_meta_sqlite import SQLiteSyncMetaStore

logger = logging.getLogger(__name__)

RemoteFactory = Callable[[LocalConfig, Settings], Optional[RemoteStorePort]]
ConnectionFactory = Callable[[Path], sqlite3.Connection]


def build_sheets_remote(config: LocalConfig, settings: Settings) -> Optional[RemoteStorePort]:
    if not config.spreadsheet_id or not config.credentials_path:
        logger.info("Sin spreadsheet configurado: el motor trabajará solo en local")
        return None
    client = SheetsClient()
    try:
        client.open_spreadsheet(Path(config.credentials_path), config.spreadsheet_id)
    except InfraError as exc:
        log_operational_error(
            "No se pudo abrir el almacén remoto; se arranca sin conexión",
            exc=exc,
            extra={"spreadsheet_id": config.spreadsheet_id},
        )
        return None
    return SheetsRemoteStore(client, poll_seconds=settings.poll_seconds)


@dataclass
class SyncContainer:
    settings: Settings
    config: LocalConfig
    connection: sqlite3.Connection
    event_bus: EventBus
    local_store: SQLiteLocalStore
    queue: SQLiteMutationQueue
    conflict_store: SQLiteConflictStore
    meta_store: SQLiteSyncMetaStore
    remote: Optional[RemoteStorePort]
    engine: SyncEngine
    writes: LocalWriteService
    conflicts_service: ConflictsService
    lock_manager: LockManager

    @property
    def user_id(self) -> str:
        return self.config.user_id or self.config.device_id

    def close(self) -> None:
        self.engine.close()
        self.connection.close()


def build_container(
    settings: Optional[Settings] = None,
    *,
    connection_factory: ConnectionFactory = get_connection,
    config_store: Optional[LocalConfigStorePort] = None,
    remote_factory: RemoteFactory = build_sheets_remote,
) -> SyncContainer:
    settings = settings or Settings.from_env()
    store = config_store or LocalConfigStore()
    config = store.load() or store.save(LocalConfig(spreadsheet_id="", credentials_path="", device_id=""))

    connection = connection_factory(settings.db_path)
    run_migrations(connection)

    event_bus = EventBus()
    local_store = SQLiteLocalStore(connection, event_bus)
    queue = SQLiteMutationQueue(connection, max_retries=settings.max_queue_retries)
    conflict_store = SQLiteConflictStore(connection)
    meta_store = SQLiteSyncMetaStore(connection)
    remote = remote_factory(config, settings)

    engine = SyncEngine(
        local_store,
        queue,
        conflict_store,
        meta_store,
        remote,
        event_bus=event_bus,
        online=remote is not None,
    )
    lock_timeout = timedelta(seconds=settings.lock_timeout_seconds)
    writes = LocalWriteService(
        local_store,
        queue,
        engine,
        user_id=config.user_id or config.device_id,
        mutation_lock=engine.mutation_lock,
        lock_timeout=lock_timeout,
    )
    conflicts_service = ConflictsService(
        local_store,
        queue,
        conflict_store,
        event_bus,
        engine,
        mutation_lock=engine.mutation_lock,
    )
    lock_manager = LockManager(
        local_store,
        remote,
        is_online=lambda: engine.is_online,
        timeout=lock_timeout,
        refresh_seconds=settings.lock_refresh_seconds,
        mutation_lock=engine.mutation_lock,
    )
    return SyncContainer(
        settings=settings,
        config=config,
        connection=connection,
        event_bus=event_bus,
        local_store=local_store,
        queue=queue,
        conflict_store=conflict_store,
        meta_store=meta_store,
        remote=remote,
        engine=engine,
        writes=writes,
        conflicts_service=conflicts_service,
        lock_manager=lock_manager,
    )
