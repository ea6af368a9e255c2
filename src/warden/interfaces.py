"""
Interface contracts for the warden's external collaborators.

The rule engine and the permission guard only ever talk to these protocols,
so the upstream API, storage and notification layers can be swapped (or
faked in tests) without touching enforcement logic.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from .moderation.models import (
    AuditEvent,
    EnforcementActionRecord,
    GroupConfig,
    GroupMember,
    GroupRole,
    UserGroup,
    UserSnapshot,
)


@runtime_checkable
class AuthorizedGroupSource(Protocol):
    def get_authorized_group_ids(self) -> list[str]:
        ...

    def is_group_allowed(self, group_id: str) -> bool:
        ...


@runtime_checkable
class GroupConfigSource(Protocol):
    async def get_group_config(self, group_id: str) -> GroupConfig:
        ...

    async def save_group_config(self, group_id: str, config: GroupConfig) -> None:
        ...


@runtime_checkable
class AuditLogSource(Protocol):
    """Raises RateLimited on throttling, other UpstreamError on failure."""

    async def get_group_audit_logs(self, group_id: str, limit: int) -> list[AuditEvent]:
        ...


@runtime_checkable
class GroupRoleSource(Protocol):
    async def get_group_roles(self, group_id: str) -> list[GroupRole]:
        ...


@runtime_checkable
class GroupMemberSource(Protocol):
    """Raises NotFound when the user is not (or no longer) a member."""

    async def get_group_member(self, group_id: str, user_id: str) -> GroupMember:
        ...


@runtime_checkable
class GroupMemberLister(Protocol):
    async def list_group_members(self, group_id: str, limit: int, offset: int) -> list[GroupMember]:
        ...


@runtime_checkable
class GroupBanAction(Protocol):
    async def ban_group_member(self, group_id: str, user_id: str) -> None:
        ...


@runtime_checkable
class UserGroupSource(Protocol):
    async def get_user_groups(self, user_id: str) -> list[UserGroup]:
        ...


@runtime_checkable
class UserDetailSource(Protocol):
    async def get_user(self, user_id: str) -> UserSnapshot:
        ...


@runtime_checkable
class InstanceCloser(Protocol):
    """Raises AlreadyInDesiredState when the instance is already closed."""

    async def close_instance(self, world_id: str, instance_id: str) -> None:
        ...


@runtime_checkable
class InstanceGuardState(Protocol):
    def is_closed(self, instance_key: str) -> bool:
        ...

    def mark_closed(self, instance_key: str) -> None:
        ...


@runtime_checkable
class AuditTrailSink(Protocol):
    async def create_audit_record(self, record: EnforcementActionRecord) -> Any:
        ...


@runtime_checkable
class NotificationSink(Protocol):
    async def publish(self, event_name: str, payload: dict[str, Any]) -> None:
        ...


@runtime_checkable
class DurableKeyValue(Protocol):
    async def load(self) -> list[str]:
        ...

    async def save(self, keys: list[str]) -> None:
        ...


def validate_collaborator(obj: object, protocol: type, name: str) -> Any:
    """Validate that ``obj`` implements ``protocol``; returns it unchanged."""
    if not isinstance(obj, protocol):
        raise AttributeError(f"{name} {obj!r} does not implement {protocol.__name__} interface")
    return obj
