from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Literal, Optional

from dishcourse.domain.time_utils import parse_iso

DEFAULT_LOCK_TIMEOUT = timedelta(minutes=5)
DEFAULT_LOCK_REFRESH_SECONDS = 2 * 60

LockState = Literal["unlocked", "locked-by-me", "locked-by-other-fresh", "locked-by-other-stale"]
UNLOCKED: LockState = "unlocked"
LOCKED_BY_ME: LockState = "locked-by-me"
LOCKED_BY_OTHER_FRESH: LockState = "locked-by-other-fresh"
LOCKED_BY_OTHER_STALE: LockState = "locked-by-other-stale"


@dataclass(frozen=True)
class LockResult:
    success: bool
    error: Optional[str] = None
    locked_by: Optional[str] = None
    locked_at: Optional[str] = None


@dataclass(frozen=True)
class LockStatus:
    is_locked: bool
    locked_by: Optional[str] = None
    locked_at: Optional[str] = None
    is_stale: bool = False
    is_locked_by_current_user: bool = False


def is_lock_stale(locked_at: str | None, now: datetime, timeout: timedelta = DEFAULT_LOCK_TIMEOUT) -> bool:
    """Un bloqueo es obsoleto cuando su antigüedad supera el timeout.

    Un `locked_at` ilegible se trata como obsoleto: de lo contrario el recurso
    quedaría bloqueado para siempre.
    """
    if not locked_at:
        return False
    moment = parse_iso(locked_at)
    if moment is None:
        return True
    return now - moment > timeout


def build_lock_status(
    locked_by: str | None,
    locked_at: str | None,
    current_user_id: str | None,
    now: datetime,
    timeout: timedelta = DEFAULT_LOCK_TIMEOUT,
) -> LockStatus:
    is_locked = bool(locked_by)
    return LockStatus(
        is_locked=is_locked,
        locked_by=locked_by or None,
        locked_at=locked_at or None,
        is_stale=is_locked and is_lock_stale(locked_at, now, timeout),
        is_locked_by_current_user=is_locked and current_user_id is not None and locked_by == current_user_id,
    )


def lock_state(status: LockStatus) -> LockState:
    if not status.is_locked:
        return UNLOCKED
    if status.is_locked_by_current_user:
        return LOCKED_BY_ME
    if status.is_stale:
        return LOCKED_BY_OTHER_STALE
    return LOCKED_BY_OTHER_FRESH


def can_acquire(locked_by: str | None, locked_at: str | None, user_id: str, now: datetime, timeout: timedelta) -> bool:
    if not locked_by or locked_by == user_id:
        return True
    return is_lock_stale(locked_at, now, timeout)


def format_lock_age(locked_at: str | None, now: datetime) -> str:
    moment = parse_iso(locked_at)
    if moment is None:
        return ""
    minutes = int((now - moment).total_seconds() // 60)
    if minutes < 1:
        return "just now"
    if minutes == 1:
        return "1 min ago"
    if minutes < 60:
        return f"{minutes} min ago"
    hours = minutes // 60
    if hours == 1:
        return "1 hour ago"
    return f"{hours} hours ago"
