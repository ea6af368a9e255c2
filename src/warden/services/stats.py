from __future__ import annotations

import time
from dataclasses import dataclass, field


@dataclass
class RuntimeStats:
    started_at: float = field(default_factory=time.time)
    passes_run: int = 0
    passes_skipped_paused: int = 0
    groups_checked: int = 0
    events_processed: int = 0
    instances_closed: int = 0
    close_failures: int = 0
    rate_limit_pauses: int = 0
    evaluations: int = 0
    rule_errors: int = 0
    members_banned: int = 0
    notifications_delivered: int = 0
    notifications_failed: int = 0

    def uptime_seconds(self) -> int:
        return int(time.time() - self.started_at)
