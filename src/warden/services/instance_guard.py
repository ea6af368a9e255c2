from __future__ import annotations

import logging
import time
from collections import deque
from typing import Any, Optional

from ..constants import DEFAULT_CLOSED_INSTANCE_TTL_SECONDS
from .cache import Clock, TTLCache

log = logging.getLogger("warden.instance_guard")


class InstanceGuardStore:
    """In-memory record of instances we closed.

    ``is_closed``/``mark_closed`` stop a pass from closing the same instance
    twice while the upstream list still shows it. Entries expire after
    ``closed_ttl_seconds``. ``history`` keeps the most recent guard events
    for display.
    """

    def __init__(
        self,
        *,
        closed_ttl_seconds: int = DEFAULT_CLOSED_INSTANCE_TTL_SECONDS,
        max_closed: int = 5000,
        history_size: int = 200,
        clock: Clock = time.monotonic,
    ) -> None:
        self._closed: TTLCache[str, bool] = TTLCache(
            default_ttl_seconds=closed_ttl_seconds,
            max_entries=max_closed,
            clock=clock,
        )
        self._history: deque[dict[str, Any]] = deque(maxlen=max(1, int(history_size)))

    def is_closed(self, instance_key: str) -> bool:
        return self._closed.get(instance_key) is not None

    def mark_closed(self, instance_key: str) -> None:
        self._closed.set(instance_key, True)

    def add_event_payload(self, payload: dict[str, Any]) -> None:
        self._history.appendleft(dict(payload))

    def get_history(self, group_id: Optional[str] = None) -> list[dict[str, Any]]:
        if group_id is None:
            return list(self._history)
        return [e for e in self._history if e.get("group_id") == group_id]

    def clear_history(self) -> None:
        self._history.clear()
        log.info("Instance guard history cleared")

    async def on_guard_event(self, event_name: str, payload: dict[str, Any]) -> None:
        """Event bus handler that records published guard events."""
        self.add_event_payload(payload)
