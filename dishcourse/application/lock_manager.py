from __future__ import annotations

import logging
import threading
from datetime import timedelta
from typing import Any, Callable, Optional

from dishcourse.core.errors import AppError
from dishcourse.core.operational_logging import log_operational_error
from dishcourse.domain.lock_rules import (
    DEFAULT_LOCK_REFRESH_SECONDS,
    DEFAULT_LOCK_TIMEOUT,
    LockResult,
    LockState,
    LockStatus,
    build_lock_status,
    can_acquire,
    format_lock_age,
    lock_state,
)
from dishcourse.domain.models import MEAL_PLAN
from dishcourse.domain.ports import LocalStorePort, RemoteStorePort
from dishcourse.domain.time_utils import Clock, to_iso, utc_now

logger = logging.getLogger(__name__)

PLANS_TABLE = "meal_plans"

_NOT_FOUND = "Plan no encontrado"


class LockManager:
    """Bloqueo colaborativo de edición de planes de comidas.

    Con conexión el servidor es la autoridad: se lee la fila y se escribe con
    compare-and-set sobre `locked_by`. Sin conexión, o para planes que aún no
    existen en remoto, se usa la caché local.

    Las lecturas y escrituras de caché van bajo `mutation_lock`, el mismo del
    motor: el heartbeat y la reconciliación no pisan ediciones concurrentes.
    """

    def __init__(
        self,
        local_store: LocalStorePort,
        remote: Optional[RemoteStorePort] = None,
        *,
        is_online: Callable[[], bool] = lambda: True,
        timeout: timedelta = DEFAULT_LOCK_TIMEOUT,
        refresh_seconds: float = DEFAULT_LOCK_REFRESH_SECONDS,
        mutation_lock: Optional[threading.RLock] = None,
        clock: Clock = utc_now,
    ) -> None:
        self._local_store = local_store
        self._remote = remote
        self._is_online = is_online
        self._timeout = timeout
        self._refresh_seconds = refresh_seconds
        self._mutation_lock = mutation_lock or threading.RLock()
        self._clock = clock

    @property
    def timeout(self) -> timedelta:
        return self._timeout

    def acquire(self, plan_id: str, user_id: str) -> LockResult:
        if self._remote_available():
            try:
                remote_row = self._read_remote(plan_id)
                if remote_row is not None:
                    return self._acquire_remote(plan_id, user_id, remote_row)
            except AppError as exc:
                log_operational_error(
                    "No se pudo adquirir el bloqueo en remoto",
                    exc=exc,
                    extra={"plan_id": plan_id, "user_id": user_id},
                )
                return LockResult(success=False, error=str(exc))
        return self._acquire_local(plan_id, user_id)

    def release(self, plan_id: str, user_id: Optional[str] = None) -> LockResult:
        """Libera el bloqueo; con `user_id` solo lo hace si ese usuario es el titular."""
        if self._remote_available():
            try:
                remote_row = self._read_remote(plan_id)
                if remote_row is not None:
                    filters: dict[str, Any] = {"id": plan_id}
                    if user_id is not None:
                        filters["locked_by"] = user_id
                    updated = self._remote.update(
                        PLANS_TABLE,
                        {"locked_by": None, "locked_at": None, "updated_at": self._now_text()},
                        filters,
                    )
                    if not updated:
                        holder = remote_row.get("locked_by") or None
                        if not holder:
                            self._write_lock_fields(plan_id, None, None)
                            return LockResult(success=True)
                        return LockResult(
                            success=False,
                            error="El bloqueo pertenece a otro usuario",
                            locked_by=holder,
                            locked_at=remote_row.get("locked_at") or None,
                        )
                    self._write_lock_fields(plan_id, None, None)
                    return LockResult(success=True)
            except AppError as exc:
                log_operational_error("No se pudo liberar el bloqueo en remoto", exc=exc, extra={"plan_id": plan_id})
                return LockResult(success=False, error=str(exc))
        with self._mutation_lock:
            record = self._local_store.get(MEAL_PLAN, plan_id)
            if record is None:
                return LockResult(success=False, error=_NOT_FOUND)
            plan = record.entity
            if user_id is not None and plan.locked_by and plan.locked_by != user_id:
                return LockResult(
                    success=False,
                    error="El bloqueo pertenece a otro usuario",
                    locked_by=plan.locked_by,
                    locked_at=plan.locked_at,
                )
            self._local_store.update_lock_fields(plan_id, None, None)
        return LockResult(success=True)

    def force_unlock(self, plan_id: str) -> LockResult:
        """Quita un bloqueo ajeno solo si está obsoleto (o no hay bloqueo)."""
        status = self.check(plan_id)
        if status.is_locked and not status.is_stale:
            return LockResult(
                success=False,
                error="El bloqueo sigue vigente",
                locked_by=status.locked_by,
                locked_at=status.locked_at,
            )
        if not status.is_locked:
            return LockResult(success=True)
        return self.release(plan_id, status.locked_by)

    def refresh(self, plan_id: str, user_id: str) -> LockResult:
        status = self.check(plan_id, user_id)
        if not status.is_locked_by_current_user:
            return LockResult(
                success=False,
                error="No eres el titular del bloqueo",
                locked_by=status.locked_by,
                locked_at=status.locked_at,
            )
        return self.acquire(plan_id, user_id)

    def check(self, plan_id: str, user_id: Optional[str] = None) -> LockStatus:
        now = self._clock()
        if self._remote_available():
            try:
                remote_row = self._read_remote(plan_id)
            except AppError as exc:
                logger.warning("Consulta de bloqueo remota fallida para %s; se usa la caché: %s", plan_id, exc)
                remote_row = None
            if remote_row is not None:
                locked_by = remote_row.get("locked_by") or None
                locked_at = remote_row.get("locked_at") or None
                self._reconcile_cache(plan_id, locked_by, locked_at)
                return build_lock_status(locked_by, locked_at, user_id, now, self._timeout)
        with self._mutation_lock:
            record = self._local_store.get(MEAL_PLAN, plan_id)
        if record is None:
            return LockStatus(is_locked=False)
        return build_lock_status(record.entity.locked_by, record.entity.locked_at, user_id, now, self._timeout)

    def state_of(self, plan_id: str, user_id: str) -> LockState:
        return lock_state(self.check(plan_id, user_id))

    def lock_age(self, locked_at: Optional[str]) -> str:
        return format_lock_age(locked_at, self._clock())

    def heartbeat(self, plan_id: str, user_id: str, interval_seconds: Optional[float] = None) -> "LockHeartbeat":
        if interval_seconds is None:
            interval_seconds = self._refresh_seconds
        return LockHeartbeat(self, plan_id, user_id, interval_seconds=interval_seconds)

    def _acquire_remote(self, plan_id: str, user_id: str, remote_row: dict[str, Any]) -> LockResult:
        holder = remote_row.get("locked_by") or None
        holder_since = remote_row.get("locked_at") or None
        if not can_acquire(holder, holder_since, user_id, self._clock(), self._timeout):
            self._reconcile_cache(plan_id, holder, holder_since)
            return LockResult(
                success=False,
                error="El plan está siendo editado por otro usuario",
                locked_by=holder,
                locked_at=holder_since,
            )
        now_text = self._now_text()
        updated = self._remote.update(
            PLANS_TABLE,
            {"locked_by": user_id, "locked_at": now_text, "updated_at": now_text},
            {"id": plan_id, "locked_by": holder},
        )
        if not updated:
            # Otro dispositivo ganó la carrera entre la lectura y la escritura.
            current = self._read_remote(plan_id) or {}
            winner = current.get("locked_by") or None
            winner_since = current.get("locked_at") or None
            self._reconcile_cache(plan_id, winner, winner_since)
            return LockResult(
                success=False,
                error="El plan está siendo editado por otro usuario",
                locked_by=winner,
                locked_at=winner_since,
            )
        self._write_lock_fields(plan_id, user_id, now_text)
        logger.info("Bloqueo adquirido en remoto para %s por %s", plan_id, user_id)
        return LockResult(success=True, locked_by=user_id, locked_at=now_text)

    def _acquire_local(self, plan_id: str, user_id: str) -> LockResult:
        with self._mutation_lock:
            record = self._local_store.get(MEAL_PLAN, plan_id)
            if record is None:
                return LockResult(success=False, error=_NOT_FOUND)
            plan = record.entity
            if not can_acquire(plan.locked_by, plan.locked_at, user_id, self._clock(), self._timeout):
                return LockResult(
                    success=False,
                    error="El plan está siendo editado por otro usuario",
                    locked_by=plan.locked_by,
                    locked_at=plan.locked_at,
                )
            now_text = self._now_text()
            self._local_store.update_lock_fields(plan_id, user_id, now_text)
        logger.info("Bloqueo local adquirido para %s por %s", plan_id, user_id)
        return LockResult(success=True, locked_by=user_id, locked_at=now_text)

    def _read_remote(self, plan_id: str) -> Optional[dict[str, Any]]:
        rows = self._remote.select_all(PLANS_TABLE, {"id": plan_id})
        return rows[0] if rows else None

    def _reconcile_cache(self, plan_id: str, locked_by: Optional[str], locked_at: Optional[str]) -> None:
        with self._mutation_lock:
            record = self._local_store.get(MEAL_PLAN, plan_id)
            if record is None:
                return
            if record.entity.locked_by != locked_by or record.entity.locked_at != locked_at:
                self._local_store.update_lock_fields(plan_id, locked_by, locked_at)

    def _write_lock_fields(self, plan_id: str, locked_by: Optional[str], locked_at: Optional[str]) -> None:
        with self._mutation_lock:
            self._local_store.update_lock_fields(plan_id, locked_by, locked_at)

    def _remote_available(self) -> bool:
        return self._remote is not None and self._is_online()

    def _now_text(self) -> str:
        return to_iso(self._clock())


class LockHeartbeat:
    """Renueva periódicamente un bloqueo mientras el usuario edita.

    `stop()` cancela el temporizador pendiente; después no se dispara ningún
    refresco más.
    """

    def __init__(self, manager: LockManager, plan_id: str, user_id: str, *, interval_seconds: float = DEFAULT_LOCK_REFRESH_SECONDS) -> None:
        self._manager = manager
        self._plan_id = plan_id
        self._user_id = user_id
        self._interval_seconds = interval_seconds
        self._guard = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self._running = False
        self.last_result: Optional[LockResult] = None

    @property
    def interval_seconds(self) -> float:
        return self._interval_seconds

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        with self._guard:
            if self._running:
                return
            self._running = True
            self._schedule()

    def stop(self, release: bool = False) -> None:
        with self._guard:
            self._running = False
            timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()
        if release:
            try:
                self._manager.release(self._plan_id, self._user_id)
            except AppError as exc:
                log_operational_error("No se pudo liberar el bloqueo al parar el heartbeat", exc=exc, extra={"plan_id": self._plan_id})

    def tick(self) -> Optional[LockResult]:
        with self._guard:
            if not self._running:
                return None
        result = self._manager.refresh(self._plan_id, self._user_id)
        self.last_result = result
        if not result.success:
            logger.warning("Refresco de bloqueo fallido para %s: %s", self._plan_id, result.error)
        with self._guard:
            if self._running:
                self._schedule()
        return result

    def _schedule(self) -> None:
        timer = threading.Timer(self._interval_seconds, self.tick)
        timer.daemon = True
        self._timer = timer
        timer.start()
