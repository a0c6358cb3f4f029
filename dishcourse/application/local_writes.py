from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import replace
from datetime import timedelta
from typing import Optional, Protocol

from dishcourse.core.errors import RecordInConflictError, ResourceLockedError, ValidationError
from dishcourse.domain.lock_rules import DEFAULT_LOCK_TIMEOUT, is_lock_stale
from dishcourse.domain.models import (
    CONFLICT,
    DISH,
    DISH_TYPES,
    MEAL_PLAN,
    PENDING,
    CacheRecord,
    Dish,
    Entity,
    MealPlan,
)
from dishcourse.domain.ports import LocalStorePort, MutationQueuePort
from dishcourse.domain.sync_models import ADD, DELETE, UPDATE, OperationType
from dishcourse.domain.time_utils import Clock, now_iso, utc_now

logger = logging.getLogger(__name__)


class PushScheduler(Protocol):
    def schedule_push(self) -> None:
        ...


def new_entity_id() -> str:
    return str(uuid.uuid4())


class LocalWriteService:
    """Escrituras locales de platos y planes: caché `pending` + cola + push en segundo plano.

    Reglas de recurso compartido:
    - un registro en `conflict` no admite ediciones hasta resolverlo;
    - un plan con bloqueo vigente de otro usuario no admite ediciones.
    """

    def __init__(
        self,
        local_store: LocalStorePort,
        queue: MutationQueuePort,
        scheduler: PushScheduler,
        *,
        user_id: str,
        mutation_lock: Optional[threading.RLock] = None,
        lock_timeout: timedelta = DEFAULT_LOCK_TIMEOUT,
        clock: Clock = utc_now,
    ) -> None:
        self._local_store = local_store
        self._queue = queue
        self._scheduler = scheduler
        self._user_id = user_id
        self._mutation_lock = mutation_lock or threading.RLock()
        self._lock_timeout = lock_timeout
        self._clock = clock

    def add_dish(
        self,
        household_id: str,
        name: str,
        dish_type: str = "entree",
        *,
        cook_time_minutes: Optional[int] = None,
        recipe_url: Optional[str] = None,
        dish_id: Optional[str] = None,
    ) -> Dish:
        if not name.strip():
            raise ValidationError("El nombre del plato es obligatorio.")
        if dish_type not in DISH_TYPES:
            raise ValidationError(f"Tipo de plato no válido: {dish_type}")
        timestamp = now_iso(self._clock)
        dish = Dish(
            id=dish_id or new_entity_id(),
            household_id=household_id,
            name=name.strip(),
            type=dish_type,
            added_by=self._user_id,
            created_at=timestamp,
            updated_at=timestamp,
            cook_time_minutes=cook_time_minutes,
            recipe_url=recipe_url,
        )
        with self._mutation_lock:
            self._write(dish, ADD)
        self._scheduler.schedule_push()
        return dish

    def update_dish(self, dish: Dish) -> Dish:
        if not dish.name.strip():
            raise ValidationError("El nombre del plato es obligatorio.")
        with self._mutation_lock:
            self._ensure_editable(DISH, dish.id)
            updated = replace(dish, updated_at=now_iso(self._clock))
            self._write(updated, UPDATE)
        self._scheduler.schedule_push()
        return updated

    def delete_dish(self, dish_id: str) -> bool:
        return self._delete(DISH, dish_id)

    def create_plan(self, household_id: str, start_date: str, *, name: Optional[str] = None, plan_id: Optional[str] = None) -> MealPlan:
        if not start_date:
            raise ValidationError("La fecha de inicio del plan es obligatoria.")
        timestamp = now_iso(self._clock)
        plan = MealPlan(
            id=plan_id or new_entity_id(),
            household_id=household_id,
            start_date=start_date,
            created_by=self._user_id,
            created_at=timestamp,
            updated_at=timestamp,
            name=name,
        )
        with self._mutation_lock:
            self._write(plan, ADD)
        self._scheduler.schedule_push()
        return plan

    def update_plan(self, plan: MealPlan) -> MealPlan:
        with self._mutation_lock:
            current = self._ensure_editable(MEAL_PLAN, plan.id)
            if current is not None:
                # El bloqueo solo lo gestiona LockManager; una edición no lo pisa.
                plan = plan.with_lock(current.entity.locked_by, current.entity.locked_at)
            updated = replace(plan, updated_at=now_iso(self._clock))
            self._write(updated, UPDATE)
        self._scheduler.schedule_push()
        return updated

    def delete_plan(self, plan_id: str) -> bool:
        return self._delete(MEAL_PLAN, plan_id)

    def _delete(self, entity_type: str, entity_id: str) -> bool:
        with self._mutation_lock:
            current = self._ensure_editable(entity_type, entity_id)
            if current is None or current.is_deleted:
                return False
            timestamp = now_iso(self._clock)
            tombstone = replace(current.entity, deleted_at=timestamp, updated_at=timestamp)
            self._write(tombstone, DELETE)
        self._scheduler.schedule_push()
        return True

    def _ensure_editable(self, entity_type: str, entity_id: str) -> Optional[CacheRecord]:
        current = self._local_store.get(entity_type, entity_id)
        if current is None:
            return None
        if current.sync_status == CONFLICT:
            raise RecordInConflictError(entity_type, entity_id)
        if entity_type == MEAL_PLAN:
            plan: MealPlan = current.entity
            if (
                plan.locked_by
                and plan.locked_by != self._user_id
                and not is_lock_stale(plan.locked_at, self._clock(), self._lock_timeout)
            ):
                raise ResourceLockedError(entity_id, plan.locked_by, plan.locked_at)
        return current

    def _write(self, entity: Entity, operation_type: OperationType) -> None:
        """Caché + cola; el push lo programa el llamante."""
        with self._mutation_lock:
            self._local_store.write_local(entity, sync_status=PENDING)
            queued = self._queue.enqueue(operation_type, entity.entity_type, entity.id)
            if queued is None and operation_type == DELETE:
                # Alta y baja sin enviar: el remoto nunca vio la entidad.
                self._local_store.delete(entity.entity_type, entity.id)
        logger.info("Escritura local %s %s:%s", operation_type, entity.entity_type, entity.id)
