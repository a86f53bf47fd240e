"""Typed records for the entities synchronized by the client."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any


class ProjectStatus(str, Enum):
    PLANNING = "planning"
    IN_PROGRESS = "in_progress"
    ON_HOLD = "on_hold"
    COMPLETED = "completed"
    ARCHIVED = "archived"


STATUS_LABELS = {
    ProjectStatus.PLANNING: "Planning",
    ProjectStatus.IN_PROGRESS: "In Progress",
    ProjectStatus.ON_HOLD: "On Hold",
    ProjectStatus.COMPLETED: "Completed",
    ProjectStatus.ARCHIVED: "Archived",
}


class MemberRole(str, Enum):
    ADMIN = "admin"
    MEMBER = "member"
    VIEWER = "viewer"


COLOR_THEMES = ("indigo", "blue", "purple", "green", "orange", "red", "pink", "teal")
DEFAULT_COLOR = "indigo"


def parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not isinstance(value, str) or not value:
        raise ValueError("timestamp must be an ISO8601 string")
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")


def _parse_date(value: Any) -> date | None:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


@dataclass(frozen=True)
class Project:
    id: str
    name: str
    status: ProjectStatus
    created_date: datetime
    description: str | None = None
    color: str = DEFAULT_COLOR
    due_date: date | None = None

    @property
    def status_label(self) -> str:
        return STATUS_LABELS[self.status]

    @property
    def theme(self) -> str:
        return self.color if self.color in COLOR_THEMES else DEFAULT_COLOR

    @classmethod
    def from_record(cls, record: dict) -> "Project":
        return cls(
            id=str(record["id"]),
            name=record.get("name") or "",
            status=ProjectStatus(record.get("status") or ProjectStatus.PLANNING.value),
            created_date=parse_timestamp(record["created_date"]),
            description=record.get("description"),
            color=record.get("color") or DEFAULT_COLOR,
            due_date=_parse_date(record.get("due_date")),
        )

    def to_record(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "status": self.status.value,
            "color": self.color,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "created_date": format_timestamp(self.created_date),
        }


@dataclass(frozen=True)
class ProjectMember:
    id: str
    project_id: str
    user_email: str
    role: MemberRole

    @classmethod
    def from_record(cls, record: dict) -> "ProjectMember":
        return cls(
            id=str(record["id"]),
            project_id=str(record["project_id"]),
            user_email=record["user_email"],
            role=MemberRole(record["role"]),
        )

    def to_record(self) -> dict:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "user_email": self.user_email,
            "role": self.role.value,
        }


@dataclass(frozen=True)
class ChatMessage:
    id: str
    project_id: str
    user_email: str
    message: str
    created_date: datetime
    user_name: str | None = None

    @classmethod
    def from_record(cls, record: dict) -> "ChatMessage":
        return cls(
            id=str(record["id"]),
            project_id=str(record["project_id"]),
            user_email=record["user_email"],
            message=record["message"],
            created_date=parse_timestamp(record["created_date"]),
            user_name=record.get("user_name"),
        )

    def to_record(self) -> dict:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "user_email": self.user_email,
            "user_name": self.user_name,
            "message": self.message,
            "created_date": format_timestamp(self.created_date),
        }


@dataclass(frozen=True)
class EntityType:
    """Binds a remote entity name to the record type it decodes into."""

    name: str
    model: type

    def decode(self, record: dict):
        return self.model.from_record(record)


PROJECT = EntityType("Project", Project)
PROJECT_MEMBER = EntityType("ProjectMember", ProjectMember)
CHAT_MESSAGE = EntityType("Chat", ChatMessage)
