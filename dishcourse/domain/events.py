from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol, Union

from dishcourse.domain.sync_models import SyncState


@dataclass(frozen=True)
class DataChanged:
    """Los datos visibles de un ámbito cambiaron (push, full sync, evento remoto, resolución)."""

    entity_type: Optional[str] = None
    entity_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class SyncStateChanged:
    state: SyncState
    pending_count: int = 0


@dataclass(frozen=True)
class ConflictDetected:
    conflict_count: int
    entity_id: Optional[str] = None


@dataclass(frozen=True)
class RecordChanged:
    """Emitido por la caché local en cada mutación; `sync_status` es None tras un borrado físico."""

    entity_type: str
    entity_id: str
    sync_status: Optional[str] = None


SyncEvent = Union[DataChanged, SyncStateChanged, ConflictDetected, RecordChanged]


class EventPublisher(Protocol):
    def publish(self, event: SyncEvent) -> None:
        ...
