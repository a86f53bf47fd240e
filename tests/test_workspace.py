import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

import asyncio
from unittest import mock

from app.config import Settings
from app.identity import StaticIdentityProvider
from app.workspace import Workspace
from sync_errors import NetworkFailure, NotFound, ValidationFailure
from teamsync.entities import MemberRole, ProjectStatus


class WorkspaceTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.ws = Workspace.in_memory(
            StaticIdentityProvider("ada@example.com", "Ada Lovelace"),
            settings=Settings(default_stale_time_ms=0.0, chat_stale_time_ms=10_000.0, request_timeout_s=None),
        )
        self.ws.projects_api.seed(
            [{"id": "p1", "name": "Apollo", "status": "in_progress", "color": "teal"}]
        )
        self.view = self.ws.project("p1")

    async def asyncTearDown(self) -> None:
        await self.ws.close()

    def _seed_members(self):
        return self.ws.members_api.seed(
            [
                {"id": "m1", "project_id": "p1", "user_email": "ada@example.com", "role": "admin"},
                {"id": "m2", "project_id": "p1", "user_email": "bob@example.com", "role": "member"},
                {"id": "m3", "project_id": "p1", "user_email": "cy@example.com", "role": "viewer"},
            ]
        )


class TestChatScenarios(WorkspaceTestCase):
    async def test_send_to_empty_chat(self) -> None:
        self.assertEqual(await self.view.load_messages(), [])
        await self.view.send_message("hello")
        messages = await self.view.load_messages()
        self.assertEqual([m.message for m in messages], ["hello"])
        self.assertEqual(messages[0].user_email, "ada@example.com")

    async def test_messages_display_in_send_order(self) -> None:
        await self.view.send_message("a")
        await self.view.send_message("b")
        messages = await self.view.load_messages()
        self.assertEqual([m.message for m in messages], ["a", "b"])

    async def test_concurrent_loads_share_one_request(self) -> None:
        self.ws.messages_api.seed([{"project_id": "p1", "user_email": "bob@example.com", "message": "hi"}])
        first, second = await asyncio.gather(self.view.load_messages(), self.view.load_messages())
        self.assertEqual(self.ws.messages_api.calls.count("filter"), 1)
        self.assertEqual(first, second)
        self.assertIs(first[0], second[0])
        await self.view.load_messages()
        self.assertEqual(self.ws.messages_api.calls.count("filter"), 1)

    async def test_refresh_messages_bypasses_stale_window(self) -> None:
        await self.view.load_messages()
        await self.view.refresh_messages()
        self.assertEqual(self.ws.messages_api.calls.count("filter"), 2)

    async def test_observed_chat_refetches_after_send(self) -> None:
        events = []
        observer = self.view.observe_messages(events.append)
        await observer.start()
        await self.view.send_message("ping")
        await self.ws.queries.drain()
        self.assertEqual([m.message for m in observer.value], ["ping"])
        self.assertTrue(events)
        observer.close()

    async def test_own_messages(self) -> None:
        self.ws.messages_api.seed([{"project_id": "p1", "user_email": "bob@example.com", "message": "yo"}])
        await self.view.send_message("mine")
        await self.view.load_identity()
        mine = [self.view.is_mine(m) for m in await self.view.load_messages()]
        self.assertEqual(mine, [False, True])


class TestComposer(WorkspaceTestCase):
    async def test_blank_text_is_not_submitted(self) -> None:
        composer = self.view.composer()
        composer.text = "   "
        self.assertFalse(composer.can_submit)
        self.assertIsNone(await composer.submit())
        self.assertEqual(self.ws.messages_api.calls, [])

    async def test_failed_send_keeps_text(self) -> None:
        composer = self.view.composer()
        composer.text = "draft"
        failure = NetworkFailure(message="offline")
        with mock.patch.object(self.ws.messages_api, "create", new=mock.AsyncMock(side_effect=failure)):
            with self.assertLogs("teamsync.mutation", level="WARNING"):
                with self.assertRaises(NetworkFailure):
                    await composer.submit()
        self.assertEqual(composer.text, "draft")
        self.assertIs(composer.error, failure)
        self.assertFalse(composer.pending)

        sent = await composer.submit()
        self.assertEqual(sent.message, "draft")
        self.assertEqual(composer.text, "")
        self.assertIsNone(composer.error)


class TestMemberScenarios(WorkspaceTestCase):
    async def test_confirmed_removal_updates_observed_count(self) -> None:
        members = self._seed_members()
        observer = self.view.observe_members()
        await observer.start()
        self.assertEqual(self.view.member_count(), 3)

        pending = self.view.request_removal(members[2])
        await self.view.confirm_removal(pending.token)
        await self.ws.queries.drain()
        self.assertEqual(self.view.member_count(), 2)
        observer.close()

    async def test_failed_removal_keeps_roster(self) -> None:
        members = self._seed_members()
        observer = self.view.observe_members()
        await observer.start()
        failure = NetworkFailure(message="server unavailable", status_code=503)
        pending = self.view.request_removal(members[2])
        with mock.patch.object(self.ws.members_api, "delete", new=mock.AsyncMock(side_effect=failure)):
            with self.assertLogs("teamsync.mutation", level="WARNING"):
                with self.assertRaises(NetworkFailure):
                    await self.view.confirm_removal(pending.token)
        await self.ws.queries.drain()
        self.assertEqual(self.view.member_count(), 3)
        self.assertEqual(self.ws.members_api.calls.count("filter"), 1)
        observer.close()

    async def test_last_issued_role_change_wins(self) -> None:
        members = self._seed_members()
        viewer = members[2]
        await asyncio.gather(
            self.view.change_role(viewer, "admin"),
            self.view.change_role(viewer, "member"),
        )
        roster = {m.id: m.role for m in await self.view.load_members(force=True)}
        self.assertEqual(roster["m3"], MemberRole.MEMBER)

    async def test_reverting_from_the_same_snapshot_is_applied(self) -> None:
        members = self._seed_members()
        viewer = members[2]
        await asyncio.gather(
            self.view.change_role(viewer, "admin"),
            self.view.change_role(viewer, "viewer"),
        )
        roster = {m.id: m.role for m in await self.view.load_members(force=True)}
        self.assertEqual(roster["m3"], MemberRole.VIEWER)
        self.assertEqual(self.ws.members_api.calls.count("update"), 2)

    async def test_unchanged_role_is_a_no_op(self) -> None:
        members = self._seed_members()
        self.assertIsNone(await self.view.change_role(members[1], "member"))
        self.assertEqual(self.ws.members_api.calls, [])

    async def test_invalid_role_rejected(self) -> None:
        members = self._seed_members()
        with self.assertRaises(ValidationFailure):
            await self.view.change_role(members[1], "owner")
        self.assertEqual(self.ws.members_api.calls, [])

    async def test_add_member(self) -> None:
        self._seed_members()
        await self.view.load_members()
        await self.view.add_member("dee@example.com")
        roster = await self.view.load_members()
        self.assertEqual(len(roster), 4)
        with self.assertRaises(ValidationFailure):
            await self.view.add_member("dee@example.com")


class TestProjectView(WorkspaceTestCase):
    async def test_load_project(self) -> None:
        project = await self.view.load_project()
        self.assertEqual(project.name, "Apollo")
        self.assertEqual(project.status, ProjectStatus.IN_PROGRESS)
        self.assertEqual(project.status_label, "In Progress")
        self.assertEqual(project.theme, "teal")

    async def test_missing_project(self) -> None:
        with self.assertRaises(NotFound) as ctx:
            await self.ws.project("nope").load_project()
        self.assertEqual(ctx.exception.code, "PROJECT_NOT_FOUND")

    async def test_update_project_refreshes_on_next_load(self) -> None:
        await self.view.load_project()
        await self.view.update_project({"status": "completed"})
        project = await self.view.load_project()
        self.assertEqual(project.status, ProjectStatus.COMPLETED)


class TestWorkspaceLifecycle(unittest.IsolatedAsyncioTestCase):
    async def test_close_discards_outstanding_fetches(self) -> None:
        ws = Workspace.in_memory(StaticIdentityProvider("ada@example.com"))
        release = asyncio.Event()
        original = ws.messages_api.filter

        async def gated_filter(criteria, sort=None):
            await release.wait()
            return await original(criteria, sort)

        with mock.patch.object(ws.messages_api, "filter", new=gated_filter):
            pending = asyncio.create_task(ws.project("p1").load_messages())
            await asyncio.sleep(0)
            await ws.close()
            release.set()
            with self.assertRaises(asyncio.CancelledError):
                await pending
        await asyncio.sleep(0)
        self.assertEqual(ws.store.keys(), [])

    async def test_close_is_idempotent(self) -> None:
        ws = Workspace.in_memory(StaticIdentityProvider("ada@example.com"))
        ws.messages_api.seed([{"project_id": "p1", "user_email": "ada@example.com", "message": "x"}])
        await ws.project("p1").load_messages()
        await ws.close()
        await ws.close()
        self.assertEqual(ws.store.keys(), [])

    def test_remote_workspace_requires_url(self) -> None:
        with self.assertRaises(ValueError):
            Workspace.from_settings(Settings(api_url=""))

    async def test_remote_workspace_owns_its_client(self) -> None:
        ws = Workspace.from_settings(Settings(api_url="http://remote.invalid", api_key="k"))
        self.assertEqual(ws.project("p1").chat_key, ("chat", "p1"))
        client = ws.messages_api._client
        self.assertIs(client, ws.members_api._client)
        await ws.close()
        self.assertTrue(client.is_closed)


if __name__ == "__main__":
    unittest.main()
