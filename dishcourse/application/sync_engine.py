from __future__ import annotations

import logging
import threading
from dataclasses import replace
from typing import Callable, Optional

from dishcourse.application.event_bus import EventBus, Unsubscribe
from dishcourse.core import metrics
from dishcourse.core.metrics import measure_time, metrics_registry
from dishcourse.core.observability import OperationContext, log_event
from dishcourse.core.operational_logging import log_operational_error
from dishcourse.domain.conflict_rules import is_conflict, same_content
from dishcourse.domain.events import ConflictDetected, DataChanged, SyncStateChanged
from dishcourse.domain.models import CONFLICT, DISH, MEAL_PLAN, PENDING, SYNCED, CacheRecord, Entity
from dishcourse.domain.ports import (
    ChangeFeedPort,
    ConflictStorePort,
    LocalStorePort,
    MutationQueuePort,
    RemoteStorePort,
    SyncMetaPort,
)
from dishcourse.domain.replication import REPLICATED_TABLES, table_by_name, table_for_entity
from dishcourse.domain.sync_models import (
    ERROR,
    IDLE,
    OFFLINE,
    SYNCING,
    ChangeEvent,
    ConflictRecord,
    FailedOperation,
    QueuedOperation,
    SyncResult,
    SyncState,
)
from dishcourse.domain.time_utils import Clock, now_iso, utc_now

logger = logging.getLogger(__name__)

LOCAL_SCOPE = "local"
_OFFLINE_ERROR = "Sin conexión"


def last_sync_key(scope_id: str) -> str:
    return f"last_sync:{scope_id}"


class SyncEngine:
    """Orquesta la sincronización entre la caché local y el almacén remoto.

    Todas las mutaciones de caché, cola y conflictos se serializan con
    `mutation_lock` (reentrante): el hilo del listener en tiempo real y el
    llamante nunca intercalan escrituras sobre el mismo registro. Las llamadas
    de red se hacen fuera del lock.
    """

    def __init__(
        self,
        local_store: LocalStorePort,
        queue: MutationQueuePort,
        conflict_store: ConflictStorePort,
        meta_store: SyncMetaPort,
        remote: Optional[RemoteStorePort],
        *,
        event_bus: Optional[EventBus] = None,
        mutation_lock: Optional[threading.RLock] = None,
        online: bool = True,
        clock: Clock = utc_now,
    ) -> None:
        self._local = local_store
        self._queue = queue
        self._conflicts = conflict_store
        self._meta = meta_store
        self._remote = remote
        self._bus = event_bus or EventBus()
        self._mutation_lock = mutation_lock or threading.RLock()
        self._online = online
        self._clock = clock
        self._state: SyncState = IDLE if online else OFFLINE
        self._push_guard = threading.Lock()
        self._push_in_flight = False
        self._push_requested = False
        self._listeners: list[RealtimeListener] = []
        self._closed = False

    @property
    def event_bus(self) -> EventBus:
        return self._bus

    @property
    def mutation_lock(self) -> threading.RLock:
        return self._mutation_lock

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def is_online(self) -> bool:
        return self._online and self._remote is not None

    # -- suscripciones -----------------------------------------------------

    def on_sync_state_change(self, callback: Callable[[SyncState, int], None]) -> Unsubscribe:
        return self._bus.subscribe(SyncStateChanged, lambda event: callback(event.state, event.pending_count))

    def on_data_change(self, callback: Callable[[], None]) -> Unsubscribe:
        return self._bus.subscribe(DataChanged, lambda event: callback())

    def on_conflict(self, callback: Callable[[int], None]) -> Unsubscribe:
        return self._bus.subscribe(ConflictDetected, lambda event: callback(event.conflict_count))

    # -- estado ------------------------------------------------------------

    def set_online(self, online: bool) -> None:
        if online == self._online:
            return
        self._online = online
        logger.info("Conectividad: %s", "online" if online else "offline")
        if online:
            self._set_state(IDLE)
            self.schedule_push()
        else:
            self._set_state(OFFLINE)

    def pending_changes_count(self) -> int:
        """Entidades con trabajo sin confirmar: registros `pending` más entradas de cola."""
        with self._mutation_lock:
            entity_ids = {record.entity_id for record in self._local.list_pending()}
            entity_ids.update(operation.entity_id for operation in self._queue.list_all())
        return len(entity_ids)

    def last_sync_time(self, scope_id: str) -> Optional[str]:
        value = self._meta.get(last_sync_key(scope_id))
        return str(value) if value else None

    # -- full sync ---------------------------------------------------------

    @measure_time("sync.full_sync")
    def full_sync(self, scope_id: str) -> SyncResult:
        """Descarga el ámbito completo y reemplaza la caché local.

        Primero se leen todas las tablas; solo si todas las lecturas van bien se
        reemplaza la caché en una transacción. Un fallo deja la caché intacta.
        """
        if not self.is_online:
            return SyncResult(success=False, error=_OFFLINE_ERROR)
        with OperationContext("full_sync", scope_id=scope_id):
            self._set_state(SYNCING)
            try:
                batches: dict[str, list[Entity]] = {}
                for table in REPLICATED_TABLES:
                    rows = self._remote.select_all(table.table, {table.scope_field: scope_id, "deleted_at": None})
                    batches[table.entity_type] = [table.from_wire(row) for row in rows]
            except Exception as exc:  # noqa: BLE001
                metrics_registry.increment(metrics.FULL_SYNC_FAILED)
                log_operational_error("Full sync fallido", exc=exc, extra={"scope_id": scope_id})
                self._set_state(ERROR)
                return SyncResult(success=False, error=str(exc) or exc.__class__.__name__)

            with self._mutation_lock:
                synced_count = self._local.replace_scopes(scope_id, batches)
                self._meta.set(last_sync_key(scope_id), now_iso(self._clock))
            log_event(logger, "full_sync_completed", {"scope_id": scope_id, "synced_count": synced_count})
            self._set_state(IDLE)
            self._bus.publish(DataChanged())
            return SyncResult(success=True, synced_count=synced_count)

    # -- push --------------------------------------------------------------

    def schedule_push(self) -> None:
        """Agrupa peticiones de push: como mucho un vaciado de cola en curso.

        Una petición que llega durante un vaciado provoca exactamente un vaciado
        más al terminar el actual, sin importar cuántas lleguen.
        """
        if not self.is_online or self._closed:
            return
        with self._push_guard:
            if self._push_in_flight:
                self._push_requested = True
                return
            self._push_in_flight = True
        try:
            while True:
                self.push()
                with self._push_guard:
                    if not self._push_requested or not self.is_online:
                        self._push_requested = False
                        self._push_in_flight = False
                        return
                    self._push_requested = False
        except BaseException:
            with self._push_guard:
                self._push_in_flight = False
                self._push_requested = False
            raise

    @measure_time("sync.push")
    def push(self) -> SyncResult:
        """Vacía la cola en orden FIFO y después barre registros `pending` sin entrada.

        El fallo de una entrada se registra como intento y no detiene el resto.
        """
        if not self.is_online:
            return SyncResult(success=False, error=_OFFLINE_ERROR)
        with OperationContext("sync_push"):
            self._set_state(SYNCING)
            synced = 0
            failed: list[FailedOperation] = []
            with self._mutation_lock:
                drain = self._queue.drain()
            for operation in drain.exhausted:
                failed.append(
                    FailedOperation(
                        entity_type=operation.entity_type,
                        entity_id=operation.entity_id,
                        error=operation.last_error or "Reintentos agotados",
                        retry_count=operation.retry_count,
                        exhausted=True,
                    )
                )
            for operation in drain.ready:
                outcome = self._push_operation(operation)
                if outcome is True:
                    synced += 1
                elif isinstance(outcome, FailedOperation):
                    failed.append(outcome)
            for record in self._orphan_pending_records():
                error = self._push_record(record)
                if error is None:
                    synced += 1
                else:
                    failed.append(FailedOperation(record.entity_type, record.entity_id, error))

            log_event(logger, "push_completed", {"synced": synced, "failed": len(failed)})
            self._set_state(IDLE)
            if synced:
                self._bus.publish(DataChanged())
            return SyncResult(
                success=not failed,
                synced_count=synced,
                failed=tuple(failed),
                error=f"{len(failed)} operaciones fallidas" if failed else None,
            )

    def _push_operation(self, operation: QueuedOperation) -> bool | FailedOperation | None:
        with self._mutation_lock:
            record = self._local.get(operation.entity_type, operation.entity_id)
            if record is None:
                # Borrado local completo: no queda nada que enviar.
                self._queue.dequeue(operation.id, expected_created_at=operation.created_at)
                return True
            if record.sync_status == CONFLICT:
                return None
        try:
            self._send(record)
        except Exception as exc:  # noqa: BLE001
            message = str(exc) or exc.__class__.__name__
            metrics_registry.increment(metrics.PUSH_FAILED)
            log_operational_error(
                "Push fallido para una operación en cola",
                exc=exc,
                extra={"entity_type": operation.entity_type, "entity_id": operation.entity_id, "operation_id": operation.id},
            )
            with self._mutation_lock:
                self._queue.record_attempt(operation.id, message)
            retry_count = operation.retry_count + 1
            return FailedOperation(
                entity_type=operation.entity_type,
                entity_id=operation.entity_id,
                error=message,
                retry_count=retry_count,
                exhausted=retry_count >= self._queue.max_retries,
            )
        with self._mutation_lock:
            self._queue.dequeue(operation.id, expected_created_at=operation.created_at)
            self._local.mark_synced(
                record.entity_type,
                record.entity_id,
                record.entity.updated_at or None,
                expected_version=record.version,
            )
        metrics_registry.increment(metrics.PUSH_SUCCEEDED)
        return True

    def _orphan_pending_records(self) -> list[CacheRecord]:
        with self._mutation_lock:
            return [
                record
                for record in self._local.list_pending()
                if self._queue.get_for_entity(record.entity_id) is None
            ]

    def _push_record(self, record: CacheRecord) -> Optional[str]:
        try:
            self._send(record)
        except Exception as exc:  # noqa: BLE001
            metrics_registry.increment(metrics.PUSH_FAILED)
            log_operational_error(
                "Push fallido para un registro pendiente",
                exc=exc,
                extra={"entity_type": record.entity_type, "entity_id": record.entity_id},
            )
            return str(exc) or exc.__class__.__name__
        with self._mutation_lock:
            self._local.mark_synced(
                record.entity_type,
                record.entity_id,
                record.entity.updated_at or None,
                expected_version=record.version,
            )
        metrics_registry.increment(metrics.PUSH_SUCCEEDED)
        return None

    def _send(self, record: CacheRecord) -> None:
        table = table_for_entity(record.entity_type)
        if record.is_deleted:
            self._remote.update(table.table, {"deleted_at": record.entity.deleted_at}, {"id": record.entity_id})
            return
        self._remote.upsert(table.table, table.to_wire(record.entity), conflict_key="id")

    # -- tiempo real -------------------------------------------------------

    def apply_remote_event(self, event: ChangeEvent) -> None:
        """Aplica un cambio remoto detectando conflictos con escrituras locales pendientes.

        Idempotente: el feed puede entregar el mismo evento más de una vez.
        """
        try:
            table = table_by_name(event.table)
        except ValueError:
            logger.warning("Evento remoto de tabla desconocida ignorado: %s", event.table)
            return
        entity_id = event.record_id
        if not entity_id:
            logger.warning("Evento remoto sin id ignorado en %s", event.table)
            return
        incoming = table.from_wire(event.record)
        if event.event_type == "delete" and not incoming.deleted_at:
            incoming = replace(incoming, deleted_at=now_iso(self._clock))

        conflict_count: Optional[int] = None
        with OperationContext("remote_event"), self._mutation_lock:
            local = self._local.get(table.entity_type, entity_id)
            if local is not None and local.sync_status == CONFLICT:
                self._refresh_conflict(local, incoming)
                conflict_count = self._conflicts.count()
            elif is_conflict(local, incoming):
                self._register_conflict(local, incoming)
                conflict_count = self._conflicts.count()
            elif local is not None and local.sync_status == PENDING:
                # Eco de nuestro propio push o cambio solo de bloqueo: se conserva la edición local.
                if table.entity_type == MEAL_PLAN and same_content(local.entity, incoming):
                    self._local.update_lock_fields(entity_id, incoming.locked_by, incoming.locked_at)
            elif incoming.deleted_at:
                if local is not None:
                    self._local.delete(table.entity_type, entity_id)
            else:
                self._local.put(
                    CacheRecord(
                        entity=incoming,
                        sync_status=SYNCED,
                        local_updated_at=now_iso(self._clock),
                        server_updated_at=incoming.updated_at or None,
                    )
                )
        metrics_registry.increment(metrics.REMOTE_EVENTS_APPLIED)
        if conflict_count is not None:
            self._bus.publish(ConflictDetected(conflict_count=conflict_count, entity_id=entity_id))
        self._bus.publish(DataChanged(entity_type=table.entity_type, entity_ids=(entity_id,)))

    def _register_conflict(self, local: CacheRecord, incoming: Entity) -> None:
        conflict = ConflictRecord(
            entity_type=local.entity_type,
            entity_id=local.entity_id,
            local_version=local.entity,
            server_version=incoming,
            detected_at=now_iso(self._clock),
            local_changed_by=local.entity.changed_by or None,
            server_changed_by=incoming.changed_by or None,
        )
        self._conflicts.add(conflict)
        self._local.mark_conflict(local.entity_type, local.entity_id)
        metrics_registry.increment(metrics.CONFLICTS_DETECTED)
        log_event(logger, "conflict_detected", {"entity_type": local.entity_type, "entity_id": local.entity_id})

    def _refresh_conflict(self, local: CacheRecord, incoming: Entity) -> None:
        existing = self._conflicts.get(local.entity_id)
        local_version = existing.local_version if existing else local.entity
        self._conflicts.add(
            ConflictRecord(
                entity_type=local.entity_type,
                entity_id=local.entity_id,
                local_version=local_version,
                server_version=incoming,
                detected_at=existing.detected_at if existing else now_iso(self._clock),
                local_changed_by=existing.local_changed_by if existing else local.entity.changed_by or None,
                server_changed_by=incoming.changed_by or None,
            )
        )

    def start_realtime(self, scope_id: str) -> None:
        self.stop_realtime()
        if self._remote is None:
            logger.warning("Sin almacén remoto: no se inicia el tiempo real")
            return
        for table in REPLICATED_TABLES:
            feed = self._remote.subscribe(table.table, {table.scope_field: scope_id})
            listener = RealtimeListener(self, feed, name=f"realtime-{table.table}")
            listener.start()
            self._listeners.append(listener)
        logger.info("Suscrito a cambios en tiempo real del ámbito %s", scope_id)

    def stop_realtime(self) -> None:
        listeners, self._listeners = self._listeners, []
        for listener in listeners:
            listener.stop()

    # -- utilidades --------------------------------------------------------

    def clear_scope_data(self, scope_id: str) -> int:
        """Limpia caché, cola y conflictos de un ámbito (p. ej. al abandonar un hogar)."""
        with self._mutation_lock:
            entity_ids = self._local.clear_scope(scope_id)
            for entity_id in entity_ids:
                self._queue.clear_for_entity(entity_id)
                self._conflicts.remove(entity_id)
            self._meta.delete(last_sync_key(scope_id))
            remaining = self._conflicts.count()
        logger.info("Datos locales del ámbito %s eliminados (%s registros)", scope_id, len(entity_ids))
        self._bus.publish(ConflictDetected(conflict_count=remaining))
        self._bus.publish(DataChanged())
        return len(entity_ids)

    def migrate_local_dishes(self, household_id: str, user_id: str, *, source_scope: str = LOCAL_SCOPE) -> SyncResult:
        """Sube al hogar los platos creados antes de pertenecer a uno.

        Cada plato se intenta por separado; los que fallan se quedan en el
        ámbito local para un intento posterior.
        """
        if not self.is_online:
            return SyncResult(success=False, error=_OFFLINE_ERROR)
        table = table_for_entity(DISH)
        migrated = 0
        failed: list[FailedOperation] = []
        with OperationContext("migrate_local_dishes", scope_id=household_id):
            with self._mutation_lock:
                local_dishes = self._local.query_by_parent(DISH, source_scope)
            for record in local_dishes:
                dish = replace(record.entity, household_id=household_id, added_by=user_id, updated_at=now_iso(self._clock))
                try:
                    self._remote.upsert(table.table, table.to_wire(dish), conflict_key="id")
                except Exception as exc:  # noqa: BLE001
                    log_operational_error("No se pudo migrar un plato local", exc=exc, extra={"entity_id": dish.id})
                    failed.append(FailedOperation(DISH, dish.id, str(exc) or exc.__class__.__name__))
                    continue
                with self._mutation_lock:
                    self._queue.clear_for_entity(dish.id)
                    self._local.put(
                        CacheRecord(
                            entity=dish,
                            sync_status=SYNCED,
                            local_updated_at=now_iso(self._clock),
                            server_updated_at=dish.updated_at,
                        )
                    )
                migrated += 1
        if migrated:
            self._bus.publish(DataChanged(entity_type=DISH))
        return SyncResult(success=not failed, synced_count=migrated, failed=tuple(failed))

    def close(self) -> None:
        self._closed = True
        self.stop_realtime()

    def _set_state(self, state: SyncState) -> None:
        if not self._online and state != OFFLINE:
            state = OFFLINE
        self._state = state
        self._bus.publish(SyncStateChanged(state=state, pending_count=self.pending_changes_count()))


class RealtimeListener:
    """Consume un feed de cambios en un hilo propio y aplica cada evento en orden de llegada."""

    def __init__(self, engine: SyncEngine, feed: ChangeFeedPort, *, name: str = "realtime") -> None:
        self._engine = engine
        self._feed = feed
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)

    @property
    def alive(self) -> bool:
        return self._thread.is_alive()

    def start(self) -> None:
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._feed.close()
        if self._thread.is_alive() and threading.current_thread() is not self._thread:
            self._thread.join(timeout)

    def _run(self) -> None:
        for event in self._feed:
            try:
                self._engine.apply_remote_event(event)
            except Exception as exc:  # noqa: BLE001
                log_operational_error(
                    "Fallo aplicando un evento remoto",
                    exc=exc,
                    extra={"table": event.table, "entity_id": event.record_id},
                )
