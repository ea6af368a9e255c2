"""Error taxonomy shared by the engine, the guard loop and the adapters.

Collaborators raise these; the guard loop contains everything except
``RateLimited`` to the unit of work that produced it.
"""

from __future__ import annotations

from typing import Optional


class WardenError(Exception):
    """Base class for all warden errors."""


class ConfigurationError(WardenError, ValueError):
    """A group or rule configuration is malformed."""


class RuleNotFoundError(WardenError, LookupError):
    def __init__(self, group_id: str, rule_id: int) -> None:
        super().__init__(f"Rule with ID {rule_id} not found in group {group_id}")
        self.group_id = group_id
        self.rule_id = rule_id


class PersistenceFailure(WardenError):
    """Durable state could not be read or written."""


class UpstreamError(WardenError):
    """An upstream platform call failed."""

    def __init__(self, message: str, *, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class LookupFailure(UpstreamError):
    """Transient failure fetching roles, members or groups."""


class NotFound(UpstreamError):
    """The requested entity does not exist (e.g. the member left the group)."""


class RateLimited(UpstreamError):
    """Upstream asked us to slow down."""

    def __init__(self, message: str = "rate limited", *, retry_after: Optional[float] = None) -> None:
        super().__init__(message, status=429)
        self.retry_after = retry_after


class AlreadyInDesiredState(UpstreamError):
    """The requested change is already in effect (e.g. instance already closed)."""
