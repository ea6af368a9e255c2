from __future__ import annotations

import logging
from typing import Iterable

log = logging.getLogger("warden.group_authorization")


class StaticGroupAuthorization:
    """Groups the warden is allowed to act on, fixed at startup."""

    def __init__(self, group_ids: Iterable[str]) -> None:
        seen: dict[str, None] = {}
        for gid in group_ids:
            gid = str(gid).strip()
            if gid:
                seen[gid] = None
        self._group_ids = list(seen)
        if not self._group_ids:
            log.warning("No authorized groups configured; the warden will idle")

    def get_authorized_group_ids(self) -> list[str]:
        return list(self._group_ids)

    def is_group_allowed(self, group_id: str) -> bool:
        return group_id in self._group_ids
