"""Remote-mutating operations and the cache invalidation they drive."""

from __future__ import annotations

import logging
from datetime import date
from enum import Enum
from typing import Any, Callable, Dict, List

from entity_store import EntityStore
from membership_roles import validate_role
from query_coordinator import call_with_timeout
from sync_errors import ValidationFailure
from teamsync.entities import COLOR_THEMES, MemberRole, ProjectStatus
from teamsync.query_keys import QueryKey, chat_key, format_key, members_key, project_key, projects_key


_logger = logging.getLogger("teamsync.mutation")

PROJECT_FIELDS = ("name", "description", "status", "color", "due_date")


class Operation(str, Enum):
    CREATE_MESSAGE = "createMessage"
    UPDATE_MEMBER_ROLE = "updateMemberRole"
    REMOVE_MEMBER = "removeMember"
    ADD_MEMBER = "addMember"
    UPDATE_PROJECT = "updateProject"


def _invalid(message: str, path: str | None = None, code: str = "VALIDATION_FAILED") -> None:
    raise ValidationFailure(message=message, code=code, path=path)


def _require_id(payload: dict, field: str) -> str:
    value = payload.get(field)
    if isinstance(value, int) and not isinstance(value, bool):
        value = str(value)
    if not isinstance(value, str) or not value.strip():
        _invalid(f"{field} is required", field, "ID_REQUIRED")
    return value


def invalidation_keys(operation: Operation, payload: dict) -> List[QueryKey]:
    project_id = payload["project_id"]
    if operation == Operation.CREATE_MESSAGE:
        return [chat_key(project_id)]
    if operation in (Operation.UPDATE_MEMBER_ROLE, Operation.REMOVE_MEMBER, Operation.ADD_MEMBER):
        return [members_key(project_id)]
    if operation == Operation.UPDATE_PROJECT:
        return [project_key(project_id), projects_key()]
    return []


class MutationCoordinator:
    """Validates, dispatches and invalidates.

    There is no optimistic echo: the cache changes only through the refetch
    that follows a successful mutation. Failed mutations invalidate nothing and
    re-raise the original error.
    """

    def __init__(
        self,
        store: EntityStore,
        projects,
        members,
        messages,
        identity,
        request_timeout_s: float | None = None,
    ) -> None:
        self._store = store
        self._projects = projects
        self._members = members
        self._messages = messages
        self._identity = identity
        self._timeout = request_timeout_s
        self._validators: Dict[Operation, Callable[[dict], dict]] = {
            Operation.CREATE_MESSAGE: self._validate_message,
            Operation.UPDATE_MEMBER_ROLE: self._validate_role_update,
            Operation.REMOVE_MEMBER: self._validate_removal,
            Operation.ADD_MEMBER: self._validate_new_member,
            Operation.UPDATE_PROJECT: self._validate_project_update,
        }
        self._handlers = {
            Operation.CREATE_MESSAGE: self._create_message,
            Operation.UPDATE_MEMBER_ROLE: self._update_member_role,
            Operation.REMOVE_MEMBER: self._remove_member,
            Operation.ADD_MEMBER: self._add_member,
            Operation.UPDATE_PROJECT: self._update_project,
        }

    async def mutate(self, operation, payload: dict) -> Any:
        try:
            op = Operation(operation)
        except ValueError:
            raise ValidationFailure(message=f"unknown operation {operation!r}", code="OPERATION_INVALID", path="operation") from None
        if not isinstance(payload, dict):
            _invalid("payload must be an object", "payload")
        prepared = self._validators[op](payload)

        try:
            result = await call_with_timeout(lambda: self._handlers[op](prepared), self._timeout, path=op.value)
        except Exception as exc:
            _logger.warning("mutation_failed op=%s project_id=%s error=%s", op.value, prepared["project_id"], exc)
            raise

        keys = invalidation_keys(op, prepared)
        for key in keys:
            self._store.invalidate(key)
        _logger.info(
            "mutation_applied op=%s project_id=%s invalidated=%s",
            op.value,
            prepared["project_id"],
            [format_key(k) for k in keys],
        )
        return result

    # -- validation (no network) ---------------------------------------

    def _validate_message(self, payload: dict) -> dict:
        project_id = _require_id(payload, "project_id")
        text = payload.get("message")
        if not isinstance(text, str) or not text.strip():
            _invalid("message must not be empty", "message", "MESSAGE_EMPTY")
        return {"project_id": project_id, "message": text.strip()}

    def _validate_role_update(self, payload: dict) -> dict:
        project_id = _require_id(payload, "project_id")
        member_id = _require_id(payload, "member_id")
        role = validate_role(payload.get("role"))
        return {"project_id": project_id, "member_id": member_id, "role": role}

    def _validate_removal(self, payload: dict) -> dict:
        return {
            "project_id": _require_id(payload, "project_id"),
            "member_id": _require_id(payload, "member_id"),
        }

    def _validate_new_member(self, payload: dict) -> dict:
        project_id = _require_id(payload, "project_id")
        email = payload.get("user_email")
        if not isinstance(email, str) or not email.strip():
            _invalid("user_email is required", "user_email", "EMAIL_REQUIRED")
        email = email.strip()
        local, _, domain = email.partition("@")
        if not local or not domain:
            _invalid("user_email must be an email address", "user_email", "EMAIL_INVALID")
        role = validate_role(payload.get("role") or MemberRole.MEMBER.value)
        entry = self._store.get(members_key(project_id))
        if entry is not None and entry.has_data:
            existing = {m.user_email.casefold() for m in entry.value or []}
            if email.casefold() in existing:
                _invalid("user is already a member of this project", "user_email", "MEMBER_EXISTS")
        return {"project_id": project_id, "user_email": email, "role": role}

    def _validate_project_update(self, payload: dict) -> dict:
        project_id = _require_id(payload, "project_id")
        changes = payload.get("changes")
        if not isinstance(changes, dict) or not changes:
            _invalid("changes must be a non-empty object", "changes")
        unknown = sorted(set(changes) - set(PROJECT_FIELDS))
        if unknown:
            _invalid(f"unsupported project fields: {', '.join(unknown)}", "changes", "FIELD_UNSUPPORTED")
        out = dict(changes)
        if "name" in out:
            if not isinstance(out["name"], str) or not out["name"].strip():
                _invalid("name must not be empty", "changes.name")
            out["name"] = out["name"].strip()
        if "status" in out:
            try:
                out["status"] = ProjectStatus(out["status"]).value
            except ValueError:
                _invalid("unknown project status", "changes.status", "STATUS_INVALID")
        if "color" in out and out["color"] not in COLOR_THEMES:
            _invalid("unknown color theme", "changes.color", "COLOR_INVALID")
        if out.get("due_date") is not None:
            value = out["due_date"]
            if isinstance(value, date):
                out["due_date"] = value.isoformat()
            else:
                try:
                    date.fromisoformat(str(value))
                except ValueError:
                    _invalid("due_date must be YYYY-MM-DD", "changes.due_date", "DATE_INVALID")
        return {"project_id": project_id, "changes": out}

    # -- dispatch ------------------------------------------------------

    async def _create_message(self, prepared: dict):
        identity = await self._identity.current_identity()
        return await self._messages.create(
            {
                "project_id": prepared["project_id"],
                "message": prepared["message"],
                "user_email": identity.email,
                "user_name": identity.display_name,
            }
        )

    async def _update_member_role(self, prepared: dict):
        return await self._members.update(prepared["member_id"], {"role": prepared["role"].value})

    async def _remove_member(self, prepared: dict) -> None:
        await self._members.delete(prepared["member_id"])

    async def _add_member(self, prepared: dict):
        return await self._members.create(
            {
                "project_id": prepared["project_id"],
                "user_email": prepared["user_email"],
                "role": prepared["role"].value,
            }
        )

    async def _update_project(self, prepared: dict):
        return await self._projects.update(prepared["project_id"], prepared["changes"])
