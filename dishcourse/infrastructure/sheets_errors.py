from __future__ import annotations

import json
from typing import Optional

import gspread
from google.auth.exceptions import DefaultCredentialsError

from dishcourse.core.errors import RemoteStoreError, RemoteUnavailableError, TransientExternalError


class SheetsConfigError(RemoteStoreError):
    pass


class SheetsPermissionError(SheetsConfigError):
    pass


class SheetsNotFoundError(SheetsConfigError):
    pass


class SheetsCredentialsError(SheetsConfigError):
    pass


class SheetsRateLimitError(TransientExternalError):
    pass


_RATE_LIMIT_TOKENS = (
    "[429]",
    "resource_exhausted",
    "rate_limit_exceeded",
    "quota exceeded",
)


def response_status_code(exc: Exception) -> int | None:
    response = getattr(exc, "response", None)
    return getattr(response, "status_code", None)


def _api_error_text(exc: gspread.exceptions.APIError) -> str:
    response = getattr(exc, "response", None)
    text = getattr(response, "text", "") if response is not None else ""
    return (text or str(exc)).strip().lower()


def classify_api_error(text_lower: str, status_code: int | None) -> Exception:
    if status_code == 429 or any(token in text_lower for token in _RATE_LIMIT_TOKENS):
        return SheetsRateLimitError("Límite de Google Sheets alcanzado. Se reintentará más tarde.")
    if status_code in {500, 502, 503, 504}:
        return RemoteUnavailableError(f"Google Sheets no disponible temporalmente (HTTP {status_code}).")
    if status_code == 404 or "requested entity was not found" in text_lower:
        return SheetsNotFoundError("El spreadsheet o la hoja solicitada no existe.")
    if status_code == 403 or "permission_denied" in text_lower:
        return SheetsPermissionError("La hoja no está compartida con la cuenta de servicio.")
    return RemoteStoreError(text_lower or "Error desconocido de Google Sheets.")


def _credentials_message(path: Optional[str]) -> str:
    if path:
        return f"No se encuentra el fichero de credenciales en {path}."
    return "No se encuentra el fichero de credenciales."


def map_gspread_exception(exc: Exception) -> Exception:
    """Traduce errores de gspread/google-auth a la taxonomía de errores del motor.

    Los transitorios (`TransientExternalError`) dejan la entrada en cola para el
    siguiente push; el resto se registran como fallo del intento igualmente.
    """
    if isinstance(exc, (RemoteStoreError, TransientExternalError)):
        return exc
    if isinstance(exc, gspread.exceptions.APIError):
        return classify_api_error(_api_error_text(exc), response_status_code(exc))
    if isinstance(exc, FileNotFoundError):
        return SheetsCredentialsError(_credentials_message(getattr(exc, "filename", None)))
    if isinstance(exc, (json.JSONDecodeError, DefaultCredentialsError)):
        return SheetsCredentialsError("El fichero de credenciales no es válido.")
    if isinstance(exc, (ConnectionError, TimeoutError, OSError)):
        return RemoteUnavailableError(f"Sin conexión con Google Sheets: {exc}")
    return RemoteStoreError(str(exc) or exc.__class__.__name__)
