from __future__ import annotations

from typing import Any, Iterable, Iterator, Mapping, Optional, Protocol

from dishcourse.domain.models import CacheRecord, Entity, LocalConfig, SyncStatus
from dishcourse.domain.sync_models import ChangeEvent, ConflictRecord, DrainResult, OperationType, QueuedOperation


class ChangeFeedPort(Protocol):
    def __iter__(self) -> Iterator[ChangeEvent]:
        ...

    def close(self) -> None:
        ...


class RemoteStorePort(Protocol):
    """Almacén autoritativo (REST + feed de cambios) con el que se sincroniza la caché."""

    def upsert(self, table: str, record: dict[str, Any], conflict_key: str = "id") -> None:
        ...

    def update(self, table: str, patch: dict[str, Any], filters: dict[str, Any]) -> list[dict[str, Any]]:
        ...

    def select_all(self, table: str, filters: dict[str, Any]) -> list[dict[str, Any]]:
        ...

    def subscribe(self, table: str, filters: dict[str, Any]) -> ChangeFeedPort:
        ...


class LocalStorePort(Protocol):
    def get(self, entity_type: str, entity_id: str) -> Optional[CacheRecord]:
        ...

    def put(self, record: CacheRecord) -> CacheRecord:
        ...

    def write_local(self, entity: Entity, *, sync_status: SyncStatus = ...) -> CacheRecord:
        ...

    def delete(self, entity_type: str, entity_id: str) -> bool:
        ...

    def query_by_parent(self, entity_type: str, parent_id: str, include_deleted: bool = False) -> list[CacheRecord]:
        ...

    def list_pending(self, entity_type: Optional[str] = None) -> list[CacheRecord]:
        ...

    def count_pending(self) -> int:
        ...

    def mark_synced(
        self,
        entity_type: str,
        entity_id: str,
        server_updated_at: Optional[str] = None,
        *,
        expected_version: Optional[int] = None,
    ) -> bool:
        ...

    def mark_conflict(self, entity_type: str, entity_id: str) -> bool:
        ...

    def update_lock_fields(self, plan_id: str, locked_by: Optional[str], locked_at: Optional[str]) -> Optional[CacheRecord]:
        ...

    def replace_scope(self, entity_type: str, parent_id: str, entities: Iterable[Entity]) -> int:
        ...

    def replace_scopes(self, parent_id: str, batches: Mapping[str, Iterable[Entity]]) -> int:
        ...

    def clear_scope(self, parent_id: str) -> list[str]:
        ...


class MutationQueuePort(Protocol):
    @property
    def max_retries(self) -> int:
        ...

    def enqueue(self, operation_type: OperationType, entity_type: str, entity_id: str) -> Optional[QueuedOperation]:
        ...

    def drain(self) -> DrainResult:
        ...

    def record_attempt(self, operation_id: str, error: Optional[str] = None) -> None:
        ...

    def dequeue(self, operation_id: str, *, expected_created_at: Optional[str] = None) -> bool:
        ...

    def get_for_entity(self, entity_id: str) -> Optional[QueuedOperation]:
        ...

    def list_all(self) -> list[QueuedOperation]:
        ...

    def count(self) -> int:
        ...

    def reset_retries(self, operation_id: Optional[str] = None) -> int:
        ...

    def clear_for_entity(self, entity_id: str) -> None:
        ...

    def clear(self) -> None:
        ...


class ConflictStorePort(Protocol):
    def add(self, conflict: ConflictRecord) -> None:
        ...

    def get(self, entity_id: str) -> Optional[ConflictRecord]:
        ...

    def list_conflicts(self) -> list[ConflictRecord]:
        ...

    def count(self) -> int:
        ...

    def remove(self, entity_id: str) -> bool:
        ...

    def clear(self) -> None:
        ...


class SyncMetaPort(Protocol):
    def get(self, key: str) -> Any:
        ...

    def set(self, key: str, value: Any) -> None:
        ...

    def delete(self, key: str) -> None:
        ...


class LocalConfigStorePort(Protocol):
    def load(self) -> LocalConfig | None:
        ...

    def save(self, config: LocalConfig) -> LocalConfig:
        ...
