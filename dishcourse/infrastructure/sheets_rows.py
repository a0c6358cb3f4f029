from __future__ import annotations

import json
from typing import Any


def encode_cell(value: Any) -> Any:
    """Valor de dominio/wire a celda. Listas y dicts viajan como JSON."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple, dict)):
        return json.dumps(value, ensure_ascii=False, separators=(",", ":"))
    return value


# Columnas de wire con listas u objetos; el resto son texto tal cual.
JSON_COLUMNS = frozenset({"days", "pairs_well_with"})


def decode_cell(raw: Any, header: str | None = None) -> Any:
    """Celda a valor de wire. Solo las columnas estructuradas se leen como JSON."""
    if raw is None or raw == "":
        return None
    if header not in JSON_COLUMNS or not isinstance(raw, str):
        return raw
    text = raw.strip()
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError:
        return text


def normalize_headers(headers: list[Any]) -> list[str]:
    normalized: list[str] = []
    for idx, header in enumerate(headers):
        clean = str(header).strip() if header is not None else ""
        normalized.append(clean if clean else f"col_{idx + 1}")
    return normalized


def row_to_record(headers: list[str], row: list[Any]) -> dict[str, Any]:
    return {header: decode_cell(row[idx] if idx < len(row) else "", header) for idx, header in enumerate(headers)}


def normalize_rows(values: list[list[Any]]) -> tuple[list[str], list[tuple[int, dict[str, Any]]]]:
    """Devuelve cabeceras y filas no vacías como (número de fila 1-based, registro)."""
    if not values:
        return [], []
    headers = normalize_headers(values[0])
    rows: list[tuple[int, dict[str, Any]]] = []
    for row_number, row in enumerate(values[1:], start=2):
        record = row_to_record(headers, row)
        if any(value is not None for value in record.values()):
            rows.append((row_number, record))
    return headers, rows


def merge_headers(headers: list[str], record: dict[str, Any]) -> tuple[list[str], bool]:
    """Añade al final las columnas del registro que aún no existen en la hoja."""
    missing = [key for key in record if key not in headers]
    if not missing:
        return headers, False
    return [*headers, *missing], True


def record_to_row(headers: list[str], record: dict[str, Any], fallback: dict[str, Any] | None = None) -> list[Any]:
    base = fallback or {}
    return [encode_cell(record[header] if header in record else base.get(header)) for header in headers]


def matches_filters(record: dict[str, Any], filters: dict[str, Any]) -> bool:
    """Igualdad por columna; un filtro `None` solo casa con celdas vacías."""
    for key, expected in filters.items():
        actual = record.get(key)
        if expected is None:
            if actual not in (None, ""):
                return False
            continue
        if actual is None or str(encode_cell(actual)) != str(encode_cell(expected)):
            return False
    return True
