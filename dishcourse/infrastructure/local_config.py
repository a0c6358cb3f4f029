from __future__ import annotations

import json
import logging
import os
import uuid
from pathlib import Path
from typing import Any

from dishcourse.domain.models import LocalConfig
from dishcourse.domain.ports import LocalConfigStorePort

logger = logging.getLogger(__name__)

CONFIG_DIR_ENV = "DISHCOURSE_CONFIG_DIR"


def resolve_config_dir() -> Path:
    override = os.environ.get(CONFIG_DIR_ENV, "").strip()
    if override:
        return Path(override)
    base = os.environ.get("XDG_CONFIG_HOME") or os.environ.get("LOCALAPPDATA")
    base_dir = Path(base) if base else Path.home() / ".config"
    return base_dir / "dishcourse"


class LocalConfigStore(LocalConfigStorePort):
    """Configuración del dispositivo en `config.json`: conexión remota e identidad.

    El `device_id` se genera una vez y se persiste aunque aún no haya conexión
    configurada.
    """

    def __init__(self, base_dir: Path | None = None) -> None:
        self._base_dir = base_dir or resolve_config_dir()
        self._config_path = self._base_dir / "config.json"

    @property
    def config_path(self) -> Path:
        return self._config_path

    def load(self) -> LocalConfig | None:
        if not self._config_path.exists():
            return None
        try:
            payload = json.loads(self._config_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.exception("No se pudo leer config.json: %s", exc)
            return None
        device_id = str(payload.get("device_id", "")).strip()
        if not device_id:
            payload["device_id"] = device_id = self._generate_device_id()
            self._write_payload(payload)
        return LocalConfig(
            spreadsheet_id=str(payload.get("spreadsheet_id", "")).strip(),
            credentials_path=str(payload.get("credentials_path", "")).strip(),
            device_id=device_id,
            user_id=str(payload.get("user_id", "")).strip(),
            household_id=str(payload.get("household_id", "")).strip(),
        )

    def save(self, config: LocalConfig) -> LocalConfig:
        payload = {
            "spreadsheet_id": config.spreadsheet_id,
            "credentials_path": config.credentials_path,
            "device_id": config.device_id or self._generate_device_id(),
            "user_id": config.user_id,
            "household_id": config.household_id,
        }
        self._write_payload(payload)
        return LocalConfig(**payload)

    def _write_payload(self, payload: dict[str, Any]) -> None:
        self._config_path.parent.mkdir(parents=True, exist_ok=True)
        self._config_path.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")

    @staticmethod
    def _generate_device_id() -> str:
        return str(uuid.uuid4())
