from __future__ import annotations

import logging
import threading
from typing import Callable, TypeVar

from dishcourse.core.operational_logging import log_operational_error
from dishcourse.domain.events import SyncEvent

logger = logging.getLogger(__name__)

_E = TypeVar("_E")

Unsubscribe = Callable[[], None]


class EventBus:
    """Bus de eventos tipados con suscripción explícita.

    Cada tipo de evento tiene su propio conjunto de handlers; un handler que
    falla se registra y no impide que el resto reciba el evento.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handlers: dict[type, list[Callable[[object], None]]] = {}

    def subscribe(self, event_type: type[_E], handler: Callable[[_E], None]) -> Unsubscribe:
        with self._lock:
            handlers = self._handlers.setdefault(event_type, [])
            if handler not in handlers:
                handlers.append(handler)  # type: ignore[arg-type]

        def _unsubscribe() -> None:
            with self._lock:
                current = self._handlers.get(event_type, [])
                if handler in current:
                    current.remove(handler)  # type: ignore[arg-type]

        return _unsubscribe

    def publish(self, event: SyncEvent) -> None:
        with self._lock:
            handlers = list(self._handlers.get(type(event), ()))
        for handler in handlers:
            try:
                handler(event)
            except Exception as exc:  # noqa: BLE001
                log_operational_error(
                    "Fallo en suscriptor de eventos de sync",
                    exc=exc,
                    extra={"event": type(event).__name__},
                )

    def subscriber_count(self, event_type: type) -> int:
        with self._lock:
            return len(self._handlers.get(event_type, ()))

    def clear(self) -> None:
        with self._lock:
            self._handlers.clear()
