from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

log = logging.getLogger("warden.observability")


class LogLevel(Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


class ActionType(Enum):
    """Action types for structured logging."""
    INSTANCE_CLOSED = "instance_closed"
    MEMBER_BANNED = "member_banned"
    RATE_LIMITED = "rate_limited"
    PASS_COMPLETE = "pass_complete"
    STARTUP = "startup"
    ERROR = "error"


@dataclass
class StructuredLogEntry:
    timestamp: datetime
    level: LogLevel
    action: ActionType
    group_id: str | None
    user_id: str | None
    message: str
    details: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        data["level"] = self.level.value
        data["action"] = self.action.value
        return data


class ObservabilityManager:
    """Structured one-line logs for enforcement actions, plus per-action counters."""

    def __init__(self) -> None:
        self._started_at = datetime.now(timezone.utc)
        self._action_counts: dict[str, int] = {}
        self._error_counts: dict[str, int] = {}
        self._enforcements_by_group: dict[str, int] = {}

    def log_structured(
        self,
        level: LogLevel,
        action: ActionType,
        message: str,
        group_id: str | None = None,
        user_id: str | None = None,
        details: dict[str, Any] | None = None,
        error_type: str | None = None,
    ) -> None:
        entry = StructuredLogEntry(
            timestamp=datetime.now(timezone.utc),
            level=level,
            action=action,
            group_id=group_id,
            user_id=user_id,
            message=message,
            details=details or {},
        )
        log_method = {
            LogLevel.DEBUG: log.debug,
            LogLevel.INFO: log.info,
            LogLevel.WARNING: log.warning,
            LogLevel.ERROR: log.error,
        }.get(level, log.info)
        log_method("[%s] %s | %s", action.value, message, json.dumps(entry.to_dict(), separators=(",", ":"), default=str))

        self._action_counts[action.value] = self._action_counts.get(action.value, 0) + 1
        if action == ActionType.ERROR:
            key = f"{error_type or 'unknown'}:{message}"
            self._error_counts[key] = self._error_counts.get(key, 0) + 1

    def log_enforcement(
        self,
        action: ActionType,
        *,
        group_id: str,
        user_id: str,
        reason: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        self._enforcements_by_group[group_id] = self._enforcements_by_group.get(group_id, 0) + 1
        self.log_structured(
            level=LogLevel.INFO,
            action=action,
            message=reason,
            group_id=group_id,
            user_id=user_id,
            details=details,
        )

    def get_summary(self) -> dict[str, Any]:
        uptime = (datetime.now(timezone.utc) - self._started_at).total_seconds()
        return {
            "uptime_seconds": int(uptime),
            "started_at": self._started_at.isoformat(),
            "action_counts": dict(self._action_counts),
            "error_counts": dict(self._error_counts),
            "enforcements_by_group": dict(self._enforcements_by_group),
        }

    def reset_counters(self) -> None:
        self._action_counts.clear()
        self._error_counts.clear()
        self._enforcements_by_group.clear()


observability = ObservabilityManager()
