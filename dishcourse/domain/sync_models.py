from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Optional

from dishcourse.domain.models import Entity, EntityType

OperationType = Literal["add", "update", "delete"]
ADD: OperationType = "add"
UPDATE: OperationType = "update"
DELETE: OperationType = "delete"
OPERATION_TYPES: tuple[OperationType, ...] = (ADD, UPDATE, DELETE)

SyncState = Literal["idle", "syncing", "offline", "error"]
IDLE: SyncState = "idle"
SYNCING: SyncState = "syncing"
OFFLINE: SyncState = "offline"
ERROR: SyncState = "error"

ChangeEventType = Literal["insert", "update", "delete"]

ConflictChoice = Literal["local", "server"]


@dataclass(frozen=True)
class QueuedOperation:
    id: str
    operation_type: OperationType
    entity_type: EntityType
    entity_id: str
    created_at: str
    retry_count: int = 0
    last_error: Optional[str] = None
    last_attempt_at: Optional[str] = None


@dataclass(frozen=True)
class DrainResult:
    """Entradas listas para enviar y entradas agotadas que siguen en cola."""

    ready: tuple[QueuedOperation, ...] = ()
    exhausted: tuple[QueuedOperation, ...] = ()


@dataclass(frozen=True)
class ConflictRecord:
    entity_type: EntityType
    entity_id: str
    local_version: Entity
    server_version: Entity
    detected_at: str
    local_changed_by: Optional[str] = None
    server_changed_by: Optional[str] = None

    @property
    def id(self) -> str:
        return self.entity_id


@dataclass(frozen=True)
class ChangeEvent:
    event_type: ChangeEventType
    table: str
    record: dict[str, Any]

    @property
    def record_id(self) -> str:
        return str(self.record.get("id", ""))


@dataclass(frozen=True)
class FailedOperation:
    entity_type: str
    entity_id: str
    error: str
    retry_count: int = 0
    exhausted: bool = False


@dataclass(frozen=True)
class SyncResult:
    success: bool
    error: Optional[str] = None
    synced_count: int = 0
    failed: tuple[FailedOperation, ...] = field(default_factory=tuple)
