from __future__ import annotations

from typing import Any, Optional

from dishcourse.domain.models import PENDING, CacheRecord, Entity

# Campos que cambian por la propia replicación o por el bloqueo de edición y no
# representan una edición de contenido.
VOLATILE_FIELDS = frozenset({"updated_at", "locked_by", "locked_at"})


def content_of(entity: Entity) -> dict[str, Any]:
    return {key: value for key, value in entity.to_dict().items() if key not in VOLATILE_FIELDS}


def same_content(left: Entity, right: Entity) -> bool:
    return content_of(left) == content_of(right)


def is_conflict(local: Optional[CacheRecord], incoming: Entity) -> bool:
    """Hay conflicto solo si existe una escritura local pendiente que difiere de lo recibido.

    Un eco de nuestro propio push (mismo contenido) no es conflicto.
    """
    if local is None or local.sync_status != PENDING:
        return False
    return not same_content(local.entity, incoming)
