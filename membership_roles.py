"""Role validation, per-member serialization and the removal gate."""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Set

from sync_errors import NotFound, ValidationFailure
from teamsync.entities import MemberRole, ProjectMember


_logger = logging.getLogger("teamsync.members")

ROLE_VALUES = tuple(r.value for r in MemberRole)


def validate_role(value: Any) -> MemberRole:
    if isinstance(value, MemberRole):
        return value
    if isinstance(value, str) and value in ROLE_VALUES:
        return MemberRole(value)
    raise ValidationFailure(
        message=f"role must be one of {', '.join(ROLE_VALUES)}",
        code="ROLE_INVALID",
        path="role",
    )


def plan_role_change(member: ProjectMember, target: Any) -> MemberRole | None:
    """Return the role to apply, or None when the member already holds it.

    Every role may move to every other role.
    """
    role = validate_role(target)
    if role == member.role:
        return None
    return role


@dataclass(frozen=True)
class PendingRemoval:
    token: str
    member: ProjectMember
    requested_at: str


class MembershipRoleGuard:
    """Applies role changes and removals one at a time per member.

    Transitions for the same member run in the order they were issued, so the
    last issued change is the last one the remote store sees. A removed member
    is terminal.
    """

    def __init__(self, mutations) -> None:
        self._mutations = mutations
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}
        self._changed: Set[str] = set()
        self._removed: Set[str] = set()
        self._pending: Dict[str, PendingRemoval] = {}

    @asynccontextmanager
    async def _serialized(self, member_id: str):
        lock = self._locks.setdefault(member_id, asyncio.Lock())
        self._holders[member_id] = self._holders.get(member_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[member_id] -= 1
            if not self._holders[member_id]:
                del self._holders[member_id]
                self._locks.pop(member_id, None)

    def _ensure_present(self, member: ProjectMember) -> None:
        if member.id in self._removed:
            raise NotFound(message="member was removed", code="MEMBER_REMOVED", path=member.id)

    def _is_settled(self, member: ProjectMember, target: MemberRole) -> bool:
        # the caller's snapshot is only trusted while nothing else touched the member
        if member.id in self._changed or member.id in self._locks:
            return False
        return plan_role_change(member, target) is None

    async def update_role(self, member: ProjectMember, role: Any) -> ProjectMember | None:
        """Apply ``role``; returns None when the member already holds it."""
        target = validate_role(role)
        self._ensure_present(member)
        if self._is_settled(member, target):
            return None
        async with self._serialized(member.id):
            self._ensure_present(member)
            _logger.info("member_role_change member_id=%s from=%s to=%s", member.id, member.role.value, target.value)
            updated = await self._mutations.mutate(
                "updateMemberRole",
                {"project_id": member.project_id, "member_id": member.id, "role": target.value},
            )
            self._changed.add(member.id)
            return updated

    async def remove(self, member: ProjectMember) -> None:
        self._ensure_present(member)
        async with self._serialized(member.id):
            self._ensure_present(member)
            await self._mutations.mutate(
                "removeMember",
                {"project_id": member.project_id, "member_id": member.id},
            )
            self._removed.add(member.id)
            self._changed.discard(member.id)
            _logger.info("member_removed member_id=%s project_id=%s", member.id, member.project_id)

    # two-step removal used at the UI boundary

    def request_removal(self, member: ProjectMember) -> PendingRemoval:
        self._ensure_present(member)
        pending = PendingRemoval(
            token=str(uuid.uuid4()),
            member=member,
            requested_at=datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        )
        self._pending[pending.token] = pending
        return pending

    def cancel_removal(self, token: str) -> bool:
        return self._pending.pop(token, None) is not None

    async def confirm_removal(self, token: str) -> None:
        pending = self._pending.pop(token, None)
        if pending is None:
            raise NotFound(message="no pending removal for token", code="REMOVAL_NOT_PENDING", path="token")
        await self.remove(pending.member)
