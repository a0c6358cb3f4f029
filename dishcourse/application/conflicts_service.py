from __future__ import annotations

import logging
import threading
from typing import Optional

from dishcourse.application.local_writes import PushScheduler
from dishcourse.core.observability import OperationContext, log_event
from dishcourse.domain.events import ConflictDetected, DataChanged, EventPublisher
from dishcourse.domain.models import PENDING, SYNCED, CacheRecord
from dishcourse.domain.ports import ConflictStorePort, LocalStorePort, MutationQueuePort
from dishcourse.domain.sync_models import UPDATE, ConflictChoice, ConflictRecord
from dishcourse.domain.time_utils import Clock, now_iso, utc_now

logger = logging.getLogger(__name__)

CONFLICT_CHOICES: tuple[str, ...] = ("local", "server")


class ConflictsService:
    def __init__(
        self,
        local_store: LocalStorePort,
        queue: MutationQueuePort,
        conflict_store: ConflictStorePort,
        publisher: EventPublisher,
        scheduler: PushScheduler,
        *,
        mutation_lock: Optional[threading.RLock] = None,
        clock: Clock = utc_now,
    ) -> None:
        self._local_store = local_store
        self._queue = queue
        self._conflict_store = conflict_store
        self._publisher = publisher
        self._scheduler = scheduler
        self._mutation_lock = mutation_lock or threading.RLock()
        self._clock = clock

    def list_conflicts(self) -> list[ConflictRecord]:
        return self._conflict_store.list_conflicts()

    def count(self) -> int:
        return self._conflict_store.count()

    def resolve(self, entity_id: str, choice: ConflictChoice) -> bool:
        """Resuelve el conflicto de una entidad quedándose con la versión local o la del servidor.

        - `local`: la versión local vuelve a `pending`, se encola un update y se
          programa un push.
        - `server`: la versión del servidor queda como `synced` (o se borra en
          local si el servidor la eliminó) y se descarta lo encolado.

        Devuelve False si no hay conflicto para `entity_id`; repetir la llamada
        tras una resolución es inocuo.
        """
        if choice not in CONFLICT_CHOICES:
            raise ValueError(f"Resolución no válida: {choice}")
        with OperationContext("resolve_conflict"):
            with self._mutation_lock:
                conflict = self._conflict_store.get(entity_id)
                if conflict is None:
                    logger.warning("No hay conflicto registrado para %s", entity_id)
                    return False
                if choice == "local":
                    self._keep_local(conflict)
                else:
                    self._keep_server(conflict)
                self._conflict_store.remove(entity_id)
                remaining = self._conflict_store.count()
            log_event(
                logger,
                "conflict_resolved",
                {"entity_type": conflict.entity_type, "entity_id": entity_id, "choice": choice, "remaining": remaining},
            )
            self._publisher.publish(ConflictDetected(conflict_count=remaining, entity_id=entity_id))
            self._publisher.publish(DataChanged(entity_type=conflict.entity_type, entity_ids=(entity_id,)))
            if choice == "local":
                self._scheduler.schedule_push()
        return True

    def resolve_all(self, choice: ConflictChoice) -> int:
        resolved = 0
        for conflict in self._conflict_store.list_conflicts():
            if self.resolve(conflict.entity_id, choice):
                resolved += 1
        return resolved

    def _keep_local(self, conflict: ConflictRecord) -> None:
        self._local_store.write_local(conflict.local_version, sync_status=PENDING)
        self._queue.enqueue(UPDATE, conflict.entity_type, conflict.entity_id)

    def _keep_server(self, conflict: ConflictRecord) -> None:
        self._queue.clear_for_entity(conflict.entity_id)
        server_version = conflict.server_version
        if server_version.deleted_at:
            self._local_store.delete(conflict.entity_type, conflict.entity_id)
            return
        self._local_store.put(
            CacheRecord(
                entity=server_version,
                sync_status=SYNCED,
                local_updated_at=now_iso(self._clock),
                server_updated_at=server_version.updated_at or None,
            )
        )
