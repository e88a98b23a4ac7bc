# lg_console/services/notifications.py
import logging
from typing import Dict, List, Optional

from lg_console.schemas.all_schemas import NotificationOut

logger = logging.getLogger(__name__)


class NotificationCenter:
    """Collects user-facing notices for one console session until the front end drains them."""

    def __init__(self, max_pending: int = 50):
        self._pending: List[NotificationOut] = []
        self.max_pending = max_pending

    def _push(self, level: str, message: str, field_errors: Optional[Dict[str, str]] = None) -> NotificationOut:
        notification = NotificationOut(level=level, message=message, field_errors=field_errors or {})
        self._pending.append(notification)
        # Oldest notices drop off first
        if len(self._pending) > self.max_pending:
            del self._pending[: len(self._pending) - self.max_pending]
        return notification

    def success(self, message: str) -> NotificationOut:
        return self._push("success", message)

    def info(self, message: str) -> NotificationOut:
        return self._push("info", message)

    def warning(self, message: str) -> NotificationOut:
        return self._push("warning", message)

    def error(self, message: str, field_errors: Optional[Dict[str, str]] = None) -> NotificationOut:
        return self._push("error", message, field_errors)

    def peek(self) -> List[NotificationOut]:
        return list(self._pending)

    def drain(self) -> List[NotificationOut]:
        pending, self._pending = self._pending, []
        return pending
