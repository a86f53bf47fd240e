"""Composition root and per-project view used by the UI shell."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, List

import httpx

from app.config import Settings, configure_logging, load_settings
from app.entity_api import HttpEntityApi, MemoryEntityApi
from app.identity import HttpIdentityProvider, Identity
from chat_ordering import is_own_message, newest_first, to_display_order
from entity_store import EntityStore
from membership_roles import MembershipRoleGuard, PendingRemoval
from mutation_coordinator import MutationCoordinator, Operation
from query_coordinator import QueryCoordinator, QueryObserver
from sync_errors import NotFound, SyncError
from teamsync.entities import CHAT_MESSAGE, PROJECT, PROJECT_MEMBER, ChatMessage, MemberRole, Project, ProjectMember
from teamsync.query_keys import chat_key, members_key, project_key


_logger = logging.getLogger("teamsync")


class Workspace:
    """Owns the store and both coordinators for the lifetime of the app."""

    def __init__(self, projects, members, messages, identity, settings: Settings | None = None, clock=None) -> None:
        self.settings = settings or Settings()
        self.projects_api = projects
        self.members_api = members
        self.messages_api = messages
        self.identity = identity
        self.store = EntityStore(clock=clock)
        self.queries = QueryCoordinator(
            self.store,
            default_stale_time_ms=self.settings.default_stale_time_ms,
            request_timeout_s=self.settings.request_timeout_s,
        )
        self.mutations = MutationCoordinator(
            self.store,
            projects,
            members,
            messages,
            identity,
            request_timeout_s=self.settings.request_timeout_s,
        )
        self.roles = MembershipRoleGuard(self.mutations)
        self._closers: List[Callable[[], Awaitable[Any]]] = []
        self._closed = False

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "Workspace":
        settings = settings or load_settings()
        configure_logging(settings.log_level)
        if not settings.remote_enabled:
            raise ValueError("TEAMSYNC_API_URL is required for a remote workspace")
        client = httpx.AsyncClient(timeout=settings.request_timeout_s)
        workspace = cls(
            HttpEntityApi(PROJECT, settings.api_url, settings.api_key, client=client),
            HttpEntityApi(PROJECT_MEMBER, settings.api_url, settings.api_key, client=client),
            HttpEntityApi(CHAT_MESSAGE, settings.api_url, settings.api_key, client=client),
            HttpIdentityProvider(settings.api_url, settings.api_key, client=client),
            settings=settings,
        )
        workspace._closers.append(client.aclose)
        _logger.info("workspace_started api_url=%s", settings.api_url)
        return workspace

    @classmethod
    def in_memory(cls, identity, settings: Settings | None = None, clock=None) -> "Workspace":
        return cls(
            MemoryEntityApi(PROJECT),
            MemoryEntityApi(PROJECT_MEMBER),
            MemoryEntityApi(CHAT_MESSAGE),
            identity,
            settings=settings,
            clock=clock,
        )

    def project(self, project_id: str) -> "ProjectView":
        return ProjectView(self, project_id)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.queries.close()
        self.store.clear()
        for closer in self._closers:
            await closer()
        _logger.info("workspace_closed")


class ProjectView:
    """Queries and mutations behind the project detail screen."""

    def __init__(self, workspace: Workspace, project_id: str) -> None:
        self.workspace = workspace
        self.project_id = project_id
        self.project_key = project_key(project_id)
        self.members_key = members_key(project_id)
        self.chat_key = chat_key(project_id)
        self._identity: Identity | None = None

    # -- fetchers ------------------------------------------------------

    async def _fetch_project(self) -> Project | None:
        items = await self.workspace.projects_api.filter({"id": self.project_id})
        return items[0] if items else None

    async def _fetch_members(self) -> tuple:
        return tuple(await self.workspace.members_api.filter({"project_id": self.project_id}))

    async def _fetch_messages(self) -> tuple:
        items = await self.workspace.messages_api.filter({"project_id": self.project_id}, "-created_date")
        return tuple(newest_first(items))

    # -- queries -------------------------------------------------------

    async def load_project(self, force: bool = False) -> Project:
        project = await self.workspace.queries.fetch(self.project_key, self._fetch_project, force=force)
        if project is None:
            raise NotFound(message="project not found", code="PROJECT_NOT_FOUND", path=self.project_id)
        return project

    async def load_members(self, force: bool = False) -> List[ProjectMember]:
        return list(await self.workspace.queries.fetch(self.members_key, self._fetch_members, force=force))

    async def load_messages(self, force: bool = False) -> List[ChatMessage]:
        feed = await self.workspace.queries.fetch(
            self.chat_key,
            self._fetch_messages,
            self.workspace.settings.chat_stale_time_ms,
            force=force,
        )
        return to_display_order(feed)

    async def refresh_messages(self) -> List[ChatMessage]:
        return await self.load_messages(force=True)

    def member_count(self) -> int:
        entry = self.workspace.store.get(self.members_key)
        if entry is None or not entry.has_data:
            return 0
        return len(entry.value)

    def observe_messages(self, listener=None) -> QueryObserver:
        return self.workspace.queries.observe(
            self.chat_key, self._fetch_messages, self.workspace.settings.chat_stale_time_ms, listener
        )

    def observe_members(self, listener=None) -> QueryObserver:
        return self.workspace.queries.observe(self.members_key, self._fetch_members, None, listener)

    # -- identity ------------------------------------------------------

    async def load_identity(self) -> Identity:
        self._identity = await self.workspace.identity.current_identity()
        return self._identity

    def is_mine(self, message: ChatMessage) -> bool:
        return is_own_message(message, self._identity)

    # -- mutations -----------------------------------------------------

    def composer(self) -> "MessageComposer":
        return MessageComposer(self)

    async def send_message(self, text: str) -> ChatMessage:
        return await self.workspace.mutations.mutate(
            Operation.CREATE_MESSAGE, {"project_id": self.project_id, "message": text}
        )

    async def add_member(self, user_email: str, role: str = MemberRole.MEMBER.value) -> ProjectMember:
        return await self.workspace.mutations.mutate(
            Operation.ADD_MEMBER,
            {"project_id": self.project_id, "user_email": user_email, "role": role},
        )

    async def change_role(self, member: ProjectMember, role: str) -> ProjectMember | None:
        return await self.workspace.roles.update_role(member, role)

    def request_removal(self, member: ProjectMember) -> PendingRemoval:
        return self.workspace.roles.request_removal(member)

    async def confirm_removal(self, token: str) -> None:
        await self.workspace.roles.confirm_removal(token)

    def cancel_removal(self, token: str) -> bool:
        return self.workspace.roles.cancel_removal(token)

    async def update_project(self, changes: dict) -> Project:
        return await self.workspace.mutations.mutate(
            Operation.UPDATE_PROJECT, {"project_id": self.project_id, "changes": changes}
        )


class MessageComposer:
    """Compose box state: text is cleared only after the server accepts it."""

    def __init__(self, view: ProjectView) -> None:
        self._view = view
        self.text = ""
        self.pending = False
        self.error: SyncError | None = None

    @property
    def can_submit(self) -> bool:
        return bool(self.text.strip()) and not self.pending

    async def submit(self) -> ChatMessage | None:
        if not self.can_submit:
            return None
        self.pending = True
        self.error = None
        try:
            message = await self._view.send_message(self.text)
        except SyncError as exc:
            self.error = exc
            raise
        finally:
            self.pending = False
        self.text = ""
        return message
