from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Optional

from dishcourse.domain.sync_models import ADD, DELETE, UPDATE, OperationType

MAX_QUEUE_RETRIES = 5

MergeAction = Literal["append", "keep", "remove", "replace"]


@dataclass(frozen=True)
class MergeDecision:
    action: MergeAction
    operation_type: Optional[OperationType] = None


def merge_operation(existing: Optional[OperationType], incoming: OperationType) -> MergeDecision:
    """Decide cómo se combina una operación entrante con la ya encolada para la misma entidad.

    La cola nunca guarda más de una entrada por entidad y esa entrada refleja el
    efecto neto de todas las ediciones locales desde el último push correcto:

    - add + update -> add (el alta enviará los datos más recientes)
    - add + delete -> se elimina la entrada (el remoto nunca la vio)
    - update + update -> update nuevo (reinicia reintentos)
    - update + delete -> delete
    - delete + lo que sea -> delete (una baja no se resucita desde la cola)
    """
    if existing is None:
        return MergeDecision("append", incoming)
    if existing == DELETE:
        return MergeDecision("keep", DELETE)
    if existing == ADD and incoming == DELETE:
        return MergeDecision("remove")
    if existing == ADD and incoming == UPDATE:
        return MergeDecision("keep", ADD)
    return MergeDecision("replace", incoming)
