from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Protocol

from pimify_identity.logging import get_logger

logger = get_logger(__name__)


class ActivityAction(str, Enum):
    LOGIN = "LOGIN"
    LOGIN_FAILED = "LOGIN_FAILED"
    LOGOUT = "LOGOUT"
    SESSION_REVOKED = "SESSION_REVOKED"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    ACCOUNT_UNLOCKED = "ACCOUNT_UNLOCKED"
    PASSWORD_RESET_REQUESTED = "PASSWORD_RESET_REQUESTED"
    PASSWORD_RESET_COMPLETED = "PASSWORD_RESET_COMPLETED"
    TWO_FACTOR_ENROLLMENT_STARTED = "TWO_FACTOR_ENROLLMENT_STARTED"
    TWO_FACTOR_ENABLED = "TWO_FACTOR_ENABLED"
    TWO_FACTOR_DISABLED = "TWO_FACTOR_DISABLED"
    TWO_FACTOR_BACKUP_CODE_USED = "TWO_FACTOR_BACKUP_CODE_USED"
    TWO_FACTOR_BACKUP_CODES_REGENERATED = "TWO_FACTOR_BACKUP_CODES_REGENERATED"
    USER_CREATED = "USER_CREATED"
    USER_ACTIVATED = "USER_ACTIVATED"
    USER_DEACTIVATED = "USER_DEACTIVATED"
    USER_SUSPENDED = "USER_SUSPENDED"
    ROLE_CHANGED = "ROLE_CHANGED"
    PERMISSION_GRANTED = "PERMISSION_GRANTED"
    PERMISSION_REVOKED = "PERMISSION_REVOKED"
    USER_INVITED = "USER_INVITED"
    INVITATION_RESENT = "INVITATION_RESENT"
    INVITATION_CANCELLED = "INVITATION_CANCELLED"
    INVITATION_ACCEPTED = "INVITATION_ACCEPTED"
    DIRECTORY_SYNC_COMPLETED = "DIRECTORY_SYNC_COMPLETED"
    DIRECTORY_SYNC_FAILED = "DIRECTORY_SYNC_FAILED"


@dataclass
class ActivityEvent:
    action: ActivityAction
    user_id: Optional[str] = None
    actor_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class ActivitySink(Protocol):
    def record(self, event: ActivityEvent) -> None: ...


class ActivityLogger:
    """Append-only activity log bounded to the most recent ``max_events``."""

    def __init__(self, max_events: int = 10_000) -> None:
        self._events: Deque[ActivityEvent] = deque(maxlen=max_events)
        self._lock = threading.Lock()

    def record(self, event: ActivityEvent) -> None:
        with self._lock:
            self._events.append(event)
        logger.info(
            "activity_recorded",
            action=event.action.value,
            user_id=event.user_id,
            actor_id=event.actor_id,
            **{f"meta_{k}": v for k, v in event.metadata.items()},
        )

    def events(
        self, *, user_id: Optional[str] = None, action: Optional[ActivityAction] = None
    ) -> List[ActivityEvent]:
        with self._lock:
            items = list(self._events)
        return [
            e
            for e in items
            if (user_id is None or e.user_id == user_id) and (action is None or e.action == action)
        ]


def record_activity(
    sink: Optional[ActivitySink],
    action: ActivityAction,
    *,
    user_id: Optional[str] = None,
    actor_id: Optional[str] = None,
    **metadata: Any,
) -> None:
    """Fire-and-forget append; a failing sink never aborts the caller."""
    if sink is None:
        return
    try:
        sink.record(
            ActivityEvent(action=action, user_id=user_id, actor_id=actor_id, metadata=metadata)
        )
    except Exception as exc:
        logger.error("activity_record_failed", action=action.value, error=str(exc))


__all__ = ["ActivityAction", "ActivityEvent", "ActivityLogger", "ActivitySink", "record_activity"]
