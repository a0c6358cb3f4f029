from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Any, Callable, TypeVar

import gspread
from google.auth.exceptions import DefaultCredentialsError

from dishcourse.core.operational_logging import log_operational_error
from dishcourse.infrastructure.sheets_errors import (
    SheetsPermissionError,
    SheetsRateLimitError,
    map_gspread_exception,
)

logger = logging.getLogger(__name__)

_MAX_RETRIES = 5
_BASE_BACKOFF_SECONDS = 1.0
_NEW_WORKSHEET_ROWS = 1000
_NEW_WORKSHEET_COLS = 26

T = TypeVar("T")


def backoff_seconds(attempt: int, base_seconds: float = _BASE_BACKOFF_SECONDS) -> float:
    return base_seconds * (2 ** (attempt - 1))


def column_letter(index: int) -> str:
    """Índice de columna 1-based a letra A1 (1 -> A, 27 -> AA)."""
    if index < 1:
        raise ValueError("El índice de columna empieza en 1")
    letters = ""
    while index:
        index, remainder = divmod(index - 1, 26)
        letters = chr(ord("A") + remainder) + letters
    return letters


class SheetsClient:
    """Acceso de bajo nivel a un spreadsheet: una worksheet por tabla remota.

    No cachea valores: el feed de cambios necesita leer siempre el estado
    actual. Solo se cachean los objetos worksheet.
    """

    def __init__(self, sleep: Callable[[float], None] = time.sleep) -> None:
        self._spreadsheet: Any | None = None
        self._worksheets: dict[str, Any] = {}
        self._sleep = sleep
        self._read_calls_count = 0
        self._write_calls_count = 0

    def open_spreadsheet(self, credentials_path: Path, spreadsheet_id: str) -> Any:
        logger.info("Conectando a Google Sheets (spreadsheet=%s)", spreadsheet_id)
        try:
            client = gspread.service_account(filename=str(credentials_path))
            spreadsheet = self._with_rate_limit_retry("open_spreadsheet", lambda: client.open_by_key(spreadsheet_id))
        except (gspread.exceptions.GSpreadException, FileNotFoundError, json.JSONDecodeError, DefaultCredentialsError, OSError) as exc:
            mapped = map_gspread_exception(exc)
            if isinstance(mapped, SheetsPermissionError):
                log_operational_error(
                    "Permisos insuficientes en Google Sheets",
                    exc=mapped,
                    extra={"operation": "open_spreadsheet", "spreadsheet_id": spreadsheet_id},
                )
            raise mapped from exc
        self.attach(spreadsheet)
        return spreadsheet

    def attach(self, spreadsheet: Any) -> None:
        self._spreadsheet = spreadsheet
        self._worksheets = {}
        self._read_calls_count = 0
        self._write_calls_count = 0

    def get_worksheet(self, name: str) -> Any:
        if name in self._worksheets:
            return self._worksheets[name]
        if self._spreadsheet is None:
            raise RuntimeError("Spreadsheet no inicializado. Llama a open_spreadsheet primero.")
        spreadsheet = self._spreadsheet
        try:
            worksheet = self._with_rate_limit_retry(f"spreadsheet.worksheet({name})", lambda: spreadsheet.worksheet(name))
        except gspread.exceptions.WorksheetNotFound:
            logger.info("Creando worksheet %s", name)
            worksheet = self._with_rate_limit_retry(
                f"spreadsheet.add_worksheet({name})",
                lambda: spreadsheet.add_worksheet(title=name, rows=_NEW_WORKSHEET_ROWS, cols=_NEW_WORKSHEET_COLS),
            )
        self._worksheets[name] = worksheet
        return worksheet

    def read_all_values(self, worksheet_name: str) -> list[list[str]]:
        worksheet = self.get_worksheet(worksheet_name)
        values = self._with_rate_limit_retry(f"worksheet.get_all_values({worksheet_name})", worksheet.get_all_values)
        self._read_calls_count += 1
        return values

    def append_row(self, worksheet_name: str, values: list[Any]) -> None:
        worksheet = self.get_worksheet(worksheet_name)
        self._with_rate_limit_retry(
            f"worksheet.append_row({worksheet_name})",
            lambda: worksheet.append_row(values, value_input_option="RAW"),
        )
        self._write_calls_count += 1

    def update_rows(self, worksheet_name: str, rows: dict[int, list[Any]]) -> None:
        """Sobrescribe filas completas (número de fila 1-based -> valores) en un único batch."""
        if not rows:
            return
        worksheet = self.get_worksheet(worksheet_name)
        data = [
            {"range": f"A{row_number}:{column_letter(max(len(values), 1))}{row_number}", "values": [values]}
            for row_number, values in sorted(rows.items())
        ]
        self._with_rate_limit_retry(
            f"worksheet.batch_update({worksheet_name})",
            lambda: worksheet.batch_update(data, value_input_option="RAW"),
        )
        self._write_calls_count += 1

    def get_read_calls_count(self) -> int:
        return self._read_calls_count

    def get_write_calls_count(self) -> int:
        return self._write_calls_count

    def _with_rate_limit_retry(self, operation_name: str, operation: Callable[[], T]) -> T:
        for attempt in range(1, _MAX_RETRIES + 1):
            try:
                return operation()
            except gspread.exceptions.APIError as exc:
                mapped = map_gspread_exception(exc)
                if not isinstance(mapped, SheetsRateLimitError):
                    raise mapped from exc
                if attempt >= _MAX_RETRIES:
                    logger.error("Rate limit persistente en %s tras %s intentos.", operation_name, attempt)
                    raise mapped from exc
                delay = backoff_seconds(attempt)
                logger.warning(
                    "Rate limit en Google Sheets (%s). intento=%s/%s backoff=%.1fs",
                    operation_name,
                    attempt,
                    _MAX_RETRIES,
                    delay,
                )
                self._sleep(delay)
        raise RuntimeError("No se pudo completar la operación de Google Sheets.")
