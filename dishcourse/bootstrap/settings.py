from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from pathlib import Path

from dishcourse.domain.lock_rules import DEFAULT_LOCK_REFRESH_SECONDS, DEFAULT_LOCK_TIMEOUT
from dishcourse.domain.queue_rules import MAX_QUEUE_RETRIES

DEFAULT_LOCK_TIMEOUT_SECONDS = int(DEFAULT_LOCK_TIMEOUT.total_seconds())
DEFAULT_MAX_QUEUE_RETRIES = MAX_QUEUE_RETRIES
DEFAULT_POLL_SECONDS = 10.0


def project_root() -> Path:
    return Path(__file__).resolve().parents[2]


def safe_int_env(name: str, default: int) -> int:
    raw_value = os.getenv(name)
    if raw_value is None:
        return default
    try:
        return int(raw_value)
    except ValueError:
        return default


def safe_float_env(name: str, default: float) -> float:
    raw_value = os.getenv(name)
    if raw_value is None:
        return default
    try:
        return float(raw_value)
    except ValueError:
        return default


def resolve_log_dir() -> Path:
    candidates: list[Path] = []
    env_dir = os.environ.get("DISHCOURSE_LOG_DIR")
    if env_dir:
        candidates.append(Path(env_dir))
    candidates.append(project_root() / "logs")
    candidates.append(Path(tempfile.gettempdir()) / "DishCourse" / "logs")

    for candidate in candidates:
        try:
            candidate.mkdir(parents=True, exist_ok=True)
            test_file = candidate / "_write_test.tmp"
            test_file.write_text("ok", encoding="utf-8")
            test_file.unlink(missing_ok=True)
            return candidate
        except OSError:
            continue

    fallback = project_root()
    fallback.mkdir(parents=True, exist_ok=True)
    return fallback


def resolve_db_path() -> Path:
    env_path = os.environ.get("DISHCOURSE_DB_PATH")
    if env_path:
        return Path(env_path)
    return project_root() / "logs" / "runtime" / "dishcourse.db"


@dataclass(frozen=True)
class Settings:
    db_path: Path
    log_dir: Path
    lock_timeout_seconds: int = DEFAULT_LOCK_TIMEOUT_SECONDS
    lock_refresh_seconds: int = DEFAULT_LOCK_REFRESH_SECONDS
    max_queue_retries: int = DEFAULT_MAX_QUEUE_RETRIES
    poll_seconds: float = DEFAULT_POLL_SECONDS

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            db_path=resolve_db_path(),
            log_dir=resolve_log_dir(),
            lock_timeout_seconds=safe_int_env("DISHCOURSE_LOCK_TIMEOUT_SECONDS", DEFAULT_LOCK_TIMEOUT_SECONDS),
            lock_refresh_seconds=safe_int_env("DISHCOURSE_LOCK_REFRESH_SECONDS", DEFAULT_LOCK_REFRESH_SECONDS),
            max_queue_retries=safe_int_env("DISHCOURSE_MAX_QUEUE_RETRIES", DEFAULT_MAX_QUEUE_RETRIES),
            poll_seconds=safe_float_env("DISHCOURSE_POLL_SECONDS", DEFAULT_POLL_SECONDS),
        )
