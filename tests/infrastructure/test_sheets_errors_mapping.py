from __future__ import annotations

import json

import gspread
import pytest
from google.auth.exceptions import DefaultCredentialsError

from dishcourse.core.errors import RemoteStoreError, RemoteUnavailableError, TransientExternalError
from dishcourse.infrastructure.sheets_errors import (
    SheetsCredentialsError,
    SheetsNotFoundError,
    SheetsPermissionError,
    SheetsRateLimitError,
    classify_api_error,
    map_gspread_exception,
)


class _FakeResponse:
    def __init__(self, status_code: int, message: str, status: str = "") -> None:
        self.status_code = status_code
        self.text = json.dumps({"error": {"code": status_code, "message": message, "status": status}})

    def json(self) -> dict:
        return json.loads(self.text)


def _api_error(status_code: int, message: str = "boom", status: str = "") -> gspread.exceptions.APIError:
    return gspread.exceptions.APIError(_FakeResponse(status_code, message, status))


@pytest.mark.parametrize(
    ("status_code", "text", "expected"),
    [
        (429, "", SheetsRateLimitError),
        (None, "quota exceeded for quota metric", SheetsRateLimitError),
        (503, "backend error", RemoteUnavailableError),
        (404, "", SheetsNotFoundError),
        (None, "requested entity was not found", SheetsNotFoundError),
        (403, "", SheetsPermissionError),
        (400, "invalid range", RemoteStoreError),
    ],
)
def test_classify_api_error(status_code, text, expected) -> None:
    assert type(classify_api_error(text, status_code)) is expected


def test_rate_limit_es_transitorio() -> None:
    assert isinstance(map_gspread_exception(_api_error(429, "Quota exceeded", "RESOURCE_EXHAUSTED")), TransientExternalError)


def test_permiso_denegado_desde_api_error() -> None:
    mapped = map_gspread_exception(_api_error(403, "The caller does not have permission", "PERMISSION_DENIED"))

    assert isinstance(mapped, SheetsPermissionError)
    assert isinstance(mapped, RemoteStoreError)


def test_errores_de_credenciales() -> None:
    missing = map_gspread_exception(FileNotFoundError(2, "No such file", "/tmp/creds.json"))

    assert isinstance(missing, SheetsCredentialsError)
    assert "/tmp/creds.json" in str(missing)
    assert isinstance(map_gspread_exception(json.JSONDecodeError("bad", "{", 0)), SheetsCredentialsError)
    assert isinstance(map_gspread_exception(DefaultCredentialsError("bad")), SheetsCredentialsError)


def test_errores_de_red_son_no_disponible() -> None:
    assert isinstance(map_gspread_exception(ConnectionError("reset")), RemoteUnavailableError)
    assert isinstance(map_gspread_exception(TimeoutError("slow")), RemoteUnavailableError)


def test_errores_ya_mapeados_se_devuelven_tal_cual() -> None:
    original = SheetsRateLimitError("ya mapeado")

    assert map_gspread_exception(original) is original


def test_error_desconocido_cae_en_remote_store_error() -> None:
    mapped = map_gspread_exception(ValueError("raro"))

    assert type(mapped) is RemoteStoreError
    assert str(mapped) == "raro"
