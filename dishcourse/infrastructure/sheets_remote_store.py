from __future__ import annotations

import contextlib
import json
import logging
import threading
from typing import Any, Iterator, Protocol

import gspread

from dishcourse.bootstrap.settings import DEFAULT_POLL_SECONDS
from dishcourse.core.errors import AppError
from dishcourse.core.operational_logging import log_operational_error
from dishcourse.domain.ports import ChangeFeedPort, RemoteStorePort
from dishcourse.domain.sync_models import ChangeEvent
from dishcourse.infrastructure.sheets_errors import map_gspread_exception
from dishcourse.infrastructure.sheets_rows import (
    matches_filters,
    merge_headers,
    normalize_rows,
    record_to_row,
)

logger = logging.getLogger(__name__)


@contextlib.contextmanager
def _mapped_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except (gspread.exceptions.GSpreadException, OSError) as exc:
        logger.debug("Error de Google Sheets en %s: %s", operation, exc)
        raise map_gspread_exception(exc) from exc


class WorksheetTablesClient(Protocol):
    def read_all_values(self, worksheet_name: str) -> list[list[str]]:
        ...

    def append_row(self, worksheet_name: str, values: list[Any]) -> None:
        ...

    def update_rows(self, worksheet_name: str, rows: dict[int, list[Any]]) -> None:
        ...


class SheetsRemoteStore(RemoteStorePort):
    """Almacén remoto sobre Google Sheets: cada tabla es una worksheet con cabecera.

    El compare-and-set de `update` (filtros sobre la fila actual) se evalúa
    leyendo y escribiendo bajo un lock de proceso; Sheets no ofrece
    transacciones, así que entre dispositivos es best-effort.
    """

    def __init__(self, client: WorksheetTablesClient, *, poll_seconds: float = DEFAULT_POLL_SECONDS) -> None:
        self._client = client
        self._poll_seconds = poll_seconds
        self._write_lock = threading.Lock()

    def upsert(self, table: str, record: dict[str, Any], conflict_key: str = "id") -> None:
        key_value = record.get(conflict_key)
        if key_value in (None, ""):
            raise ValueError(f"El registro para {table} no tiene clave {conflict_key}")
        with self._write_lock, _mapped_errors(f"upsert({table})"):
            headers, rows = normalize_rows(self._client.read_all_values(table))
            headers, headers_changed = merge_headers(headers, record)
            if headers_changed:
                self._client.update_rows(table, {1: list(headers)})
            for row_number, current in rows:
                if matches_filters(current, {conflict_key: key_value}):
                    self._client.update_rows(table, {row_number: record_to_row(headers, record, current)})
                    logger.debug("Fila %s actualizada en %s (%s=%s)", row_number, table, conflict_key, key_value)
                    return
            self._client.append_row(table, record_to_row(headers, record))
            logger.debug("Fila añadida en %s (%s=%s)", table, conflict_key, key_value)

    def update(self, table: str, patch: dict[str, Any], filters: dict[str, Any]) -> list[dict[str, Any]]:
        with self._write_lock, _mapped_errors(f"update({table})"):
            headers, rows = normalize_rows(self._client.read_all_values(table))
            headers, headers_changed = merge_headers(headers, patch)
            if headers_changed:
                self._client.update_rows(table, {1: list(headers)})
            updated: dict[int, list[Any]] = {}
            result: list[dict[str, Any]] = []
            for row_number, current in rows:
                if not matches_filters(current, filters):
                    continue
                merged = {**current, **patch}
                updated[row_number] = record_to_row(headers, merged)
                result.append(merged)
            self._client.update_rows(table, updated)
        return result

    def select_all(self, table: str, filters: dict[str, Any]) -> list[dict[str, Any]]:
        with _mapped_errors(f"select_all({table})"):
            _, rows = normalize_rows(self._client.read_all_values(table))
        return [record for _, record in rows if matches_filters(record, filters)]

    def subscribe(self, table: str, filters: dict[str, Any]) -> "PollingChangeFeed":
        return PollingChangeFeed(self, table, filters, poll_seconds=self._poll_seconds)


def _snapshot_key(record: dict[str, Any]) -> str:
    return json.dumps(record, sort_keys=True, ensure_ascii=False, default=str)


class PollingChangeFeed(ChangeFeedPort):
    """Feed de cambios por sondeo: compara instantáneas sucesivas de una tabla.

    La primera lectura fija la línea base y no emite eventos. Un fallo de
    lectura se registra y se reintenta en el siguiente ciclo; `close()` corta
    la espera en curso.
    """

    def __init__(
        self,
        store: RemoteStorePort,
        table: str,
        filters: dict[str, Any],
        *,
        poll_seconds: float = DEFAULT_POLL_SECONDS,
    ) -> None:
        self._store = store
        self._table = table
        self._filters = dict(filters)
        self._poll_seconds = poll_seconds
        self._closed = threading.Event()
        self._known: dict[str, dict[str, Any]] | None = None

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def close(self) -> None:
        self._closed.set()

    def poll_once(self) -> list[ChangeEvent]:
        records = self._store.select_all(self._table, self._filters)
        current = {str(record.get("id")): record for record in records if record.get("id")}
        previous = self._known
        self._known = current
        if previous is None:
            return []
        events: list[ChangeEvent] = []
        for record_id, record in current.items():
            old = previous.get(record_id)
            if old is None:
                events.append(ChangeEvent("insert", self._table, record))
            elif _snapshot_key(old) != _snapshot_key(record):
                events.append(ChangeEvent("update", self._table, record))
        for record_id, old in previous.items():
            if record_id not in current:
                events.append(ChangeEvent("delete", self._table, old))
        return events

    def __iter__(self) -> Iterator[ChangeEvent]:
        while not self._closed.is_set():
            try:
                events = self.poll_once()
            except AppError as exc:
                log_operational_error(
                    "Fallo leyendo cambios remotos; se reintentará",
                    exc=exc,
                    extra={"table": self._table},
                )
                events = []
            for event in events:
                if self._closed.is_set():
                    return
                yield event
            self._closed.wait(self._poll_seconds)
