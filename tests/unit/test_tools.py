"""
Unit tests for tool permissions and dispatch.

Covers per-category gating, refusal without side effects, memory logging
of successful calls, audit of privileged calls and feedback classification.
"""
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import httpx
import pytest

from zenna_shared.errors import IntegrationError, IntegrationErrorKind, ServiceUnavailableError
from zenna_shared.llm_router import GenerationError

from zenna.background import BackgroundWriter
from zenna.integrations.workspace import WorkspaceClient, WorkspaceItem
from zenna.memory_manager import FeedbackSnippet
from zenna.models import LightingManifest, MemoryRecord, MemoryScope, MemoryType, RoomInfo, Role, User
from zenna.permissions import ToolCategory, ToolPermissionContext
from zenna.tools import (
    REFUSAL_MESSAGE,
    TOOL_DEFINITIONS,
    TOOL_FAILURE_MESSAGE,
    ToolDispatcher,
    ToolCallContext,
    classify_feedback,
    tool_schemas_for,
)


def call_context(user, config, **kwargs):
    permissions = ToolPermissionContext.from_user(user, config.primary_admin_email)
    return ToolCallContext(permissions, user.settings, BackgroundWriter(timeout=1.0), **kwargs)


def schema_names(schemas):
    return {s["function"]["name"] for s in schemas}


# =============================================================================
# Permissions
# =============================================================================

class TestPermissions:

    def test_every_category_has_a_tool(self):
        assert {t["category"] for t in TOOL_DEFINITIONS} == set(ToolCategory)

    def test_companion_only_sees_search(self, companion_user):
        permissions = ToolPermissionContext.from_user(companion_user)
        assert schema_names(tool_schemas_for(permissions)) == {"web_search"}

    def test_connected_user_without_grants(self, connected_user, config):
        permissions = ToolPermissionContext.from_user(connected_user, config.primary_admin_email)
        names = schema_names(tool_schemas_for(permissions))

        assert {"control_lights", "workspace_search", "workspace_create_page"} <= names
        assert not names & {"sprint_read", "sprint_update", "backlog_create", "ecosystem_scan"}

    def test_grants_are_independent(self, connected_settings):
        user = User(id="u", username="u", backlog_write_access=True, settings=connected_settings)
        permissions = ToolPermissionContext.from_user(user)

        assert permissions.allows(ToolCategory.BACKLOG_WRITE)
        assert not permissions.allows(ToolCategory.SPRINT_READ)
        assert not permissions.allows(ToolCategory.SPRINT_WRITE)
        assert not permissions.allows(ToolCategory.ADMIN_SCAN)

    def test_sprint_write_needs_agent(self, connected_settings):
        human = User(id="u", username="u", sprint_assignment_access=True, settings=connected_settings)
        permissions = ToolPermissionContext.from_user(human)

        assert permissions.allows(ToolCategory.SPRINT_READ)
        assert not permissions.allows(ToolCategory.SPRINT_WRITE)

    def test_primary_admin_matches_email_case_insensitively(self, primary_admin):
        primary_admin.email = "  OWNER@Example.com "
        permissions = ToolPermissionContext.from_user(primary_admin, "owner@example.com")

        assert permissions.is_primary_admin
        assert all(permissions.allows(category) for category in ToolCategory)

    def test_god_mode_elevates_scan_only(self, connected_settings):
        user = User(id="u", username="u", god_mode=True, settings=connected_settings)
        permissions = ToolPermissionContext.from_user(user)

        assert permissions.allows(ToolCategory.ADMIN_SCAN)
        assert not permissions.allows(ToolCategory.BACKLOG_WRITE)

    def test_memory_scope_defaults(self, companion_user, worker_agent):
        assert ToolPermissionContext.from_user(companion_user).default_memory_scope == MemoryScope.COMPANION
        assert ToolPermissionContext.from_user(worker_agent).default_memory_scope == MemoryScope.ENGINEERING


# =============================================================================
# Dispatch
# =============================================================================

class TestRefusal:

    @pytest.mark.asyncio
    async def test_backlog_create_refused_without_grant(self, dispatcher, connected_user, config,
                                                        mock_workspace, mock_identity):
        context = call_context(connected_user, config)

        result = await dispatcher.invoke("backlog_create", {"title": "x"}, context)

        assert result == REFUSAL_MESSAGE
        mock_workspace.add_entry.assert_not_awaited()
        mock_identity.record_audit.assert_not_awaited()
        assert context.writer.pending == 0

    @pytest.mark.asyncio
    async def test_lights_refused_when_not_connected(self, dispatcher, companion_user, config, mock_lighting):
        result = await dispatcher.invoke(
            "control_lights", {"targetId": "abc", "state": "on"}, call_context(companion_user, config)
        )

        assert result == REFUSAL_MESSAGE
        mock_lighting.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_tool(self, dispatcher, companion_user, config):
        result = await dispatcher.invoke("launch_rocket", {}, call_context(companion_user, config))
        assert result == "Unknown tool: launch_rocket"


class TestSearchTool:

    @pytest.mark.asyncio
    async def test_result_logged_to_memory(self, dispatcher, companion_user, config, store):
        context = call_context(companion_user, config)

        result = await dispatcher.invoke("web_search", {"query": "weather Austin", "type": "weather"}, context)
        await context.writer.flush()

        assert result == "Austin: Sunny, 75F\n(Source: wttr.in)"
        hits = await store.search(
            "weather Austin", user_id="user-1", limit=5, threshold=0.0,
            memory_types=[MemoryType.INTERNET_SEARCH],
        )
        assert len(hits) == 1
        assert hits[0].record.content.startswith('[Internet Search] Query: "weather Austin"')
        assert hits[0].record.metadata["searchSource"] == "weather"

    @pytest.mark.asyncio
    async def test_expired_turn_skips_memory_write(self, dispatcher, companion_user, config, store):
        context = call_context(companion_user, config, expired=lambda: True)

        await dispatcher.invoke("web_search", {"query": "weather Austin", "type": "weather"}, context)
        await context.writer.flush()

        assert await store.scroll_user("user-1") == []

    @pytest.mark.asyncio
    async def test_missing_argument(self, dispatcher, companion_user, config):
        result = await dispatcher.invoke("web_search", {}, call_context(companion_user, config))
        assert result == "The web_search request was missing or had invalid details."

    @pytest.mark.asyncio
    async def test_integration_error_is_returned_as_text(self, dispatcher, companion_user, config, mock_web_search):
        mock_web_search.search.side_effect = IntegrationError("Web search", IntegrationErrorKind.NETWORK_ERROR)

        result = await dispatcher.invoke("web_search", {"query": "news", "type": "news"}, call_context(companion_user, config))

        assert result == "I couldn't reach Web search. Please check that it is online."


class TestWorkspaceTools:

    @pytest.mark.asyncio
    async def test_privileged_write_is_audited(self, dispatcher, connected_user, config, mock_workspace, mock_identity):
        mock_workspace.create_page.return_value = WorkspaceItem(id="p1", title="Trip plan")
        context = call_context(connected_user, config)

        result = await dispatcher.invoke("workspace_create_page", {"title": "Trip plan"}, context)

        assert result == 'Created page "Trip plan" (id: p1).'
        mock_identity.record_audit.assert_awaited_once()
        args, kwargs = mock_identity.record_audit.await_args
        assert args == ("user-2",)
        assert kwargs["action"] == "tool:workspace_create_page"
        assert kwargs["details"]["success"] is True

    @pytest.mark.asyncio
    async def test_read_is_not_audited(self, dispatcher, connected_user, config, mock_workspace, mock_identity):
        mock_workspace.search.return_value = []

        result = await dispatcher.invoke("workspace_search", {"query": "recipes"}, call_context(connected_user, config))

        assert result == 'Nothing in the workspace matched "recipes".'
        mock_identity.record_audit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_write_logged_as_workspace_action(self, dispatcher, connected_user, config, mock_workspace, store):
        mock_workspace.add_entry.return_value = WorkspaceItem(id="e1", title="Milk")
        context = call_context(connected_user, config)

        await dispatcher.invoke("workspace_add_entry", {"database_id": "db", "title": "Milk"}, context)
        await context.writer.flush()

        points = await store.scroll_user("user-2")
        assert len(points) == 1
        assert points[0].payload["memoryType"] == MemoryType.WORKSPACE_ACTION.value
        assert points[0].payload["importance"] == 0.8

    @pytest.mark.asyncio
    async def test_unexpected_handler_error_becomes_tool_text(
        self, memory, mock_web_search, mock_lighting, mock_identity, connected_user, config, store,
    ):
        def handler(request):
            raise AssertionError("request should not be sent")

        workspace = WorkspaceClient("https://workspace.test", transport=httpx.MockTransport(handler))
        dispatcher = ToolDispatcher(memory, mock_web_search, workspace, mock_lighting, mock_identity, timeout=1.0)
        context = call_context(connected_user, config)

        # Model supplied a list where an object was expected
        result = await dispatcher.invoke(
            "workspace_add_entry", {"database_id": "db", "title": "t", "properties": ["x"]}, context,
        )
        await context.writer.flush()

        assert result == TOOL_FAILURE_MESSAGE.format(tool="workspace_add_entry")
        assert mock_identity.record_audit.await_args.kwargs["details"]["success"] is False
        assert await store.scroll_user("user-2") == []

    @pytest.mark.asyncio
    async def test_audit_failure_does_not_fail_tool(self, dispatcher, connected_user, config, mock_workspace, mock_identity):
        mock_workspace.create_page.return_value = WorkspaceItem(id="p1", title="Notes")
        mock_identity.record_audit.side_effect = RuntimeError("audit down")

        result = await dispatcher.invoke("workspace_create_page", {"title": "Notes"}, call_context(connected_user, config))

        assert result.startswith("Created page")


class TestWorkforceTools:

    @pytest.mark.asyncio
    async def test_sprint_read_filters(self, dispatcher, worker_agent, config, mock_workspace):
        mock_workspace.query_database.return_value = [
            WorkspaceItem(id="t1", title="Fix login", properties={"Status": "In progress"}),
        ]

        result = await dispatcher.invoke(
            "sprint_read", {"status": "In progress"}, call_context(worker_agent, config)
        )

        assert result == "- Fix login [In progress] (id: t1)"
        args = mock_workspace.query_database.await_args.args
        assert args[1] == "sprint-db"
        assert args[2] == {"property": "Status", "status": {"equals": "In progress"}}

    @pytest.mark.asyncio
    async def test_sprint_update(self, dispatcher, worker_agent, config, mock_workspace, mock_identity):
        result = await dispatcher.invoke(
            "sprint_update", {"task_id": "t1", "status": "Done", "note": "Shipped"}, call_context(worker_agent, config)
        )

        assert result == "Task t1: status set to Done, note added."
        mock_workspace.update_page.assert_awaited_once_with("ws-token", "t1", {"Status": {"status": {"name": "Done"}}})
        mock_workspace.append_text.assert_awaited_once_with("ws-token", "t1", "Shipped")
        mock_identity.record_audit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_backlog_create_for_primary_admin(self, dispatcher, primary_admin, config, mock_workspace):
        mock_workspace.add_entry.return_value = WorkspaceItem(id="b1", title="Dark mode")

        result = await dispatcher.invoke(
            "backlog_create", {"title": "Dark mode", "priority": "High"}, call_context(primary_admin, config)
        )

        assert result == 'Filed backlog item "Dark mode" (id: b1).'
        mock_workspace.add_entry.assert_awaited_once_with(
            "ws-token", "backlog-db", "Dark mode", {"Priority": {"select": {"name": "High"}}}
        )


class TestLightingTool:

    @pytest.mark.asyncio
    async def test_control_lights_logs_device_action(self, dispatcher, connected_user, config, store):
        context = call_context(connected_user, config)

        result = await dispatcher.invoke("control_lights", {"targetId": "abc", "state": "on"}, context)
        await context.writer.flush()

        assert result == "Done: turned on the abc."
        points = await store.scroll_user("user-2")
        assert points[0].payload["memoryType"] == MemoryType.SMART_HOME.value


# =============================================================================
# Ecosystem scan
# =============================================================================

def snippet(content, score=0.9):
    return FeedbackSnippet(
        id=content[:8], content=content, user_id="user-9", memory_type="conversation",
        created_at=datetime.now(timezone.utc), score=score, tags=[],
    )


class TestClassifyFeedback:

    @pytest.mark.asyncio
    async def test_groups_by_category(self):
        provider = AsyncMock()
        provider.generate = AsyncMock(return_value=(
            '```json\n[{"index": 1, "category": "bug", "summary": "Login fails"},'
            ' {"index": 2, "category": "feature_request", "summary": "Wants dark mode"}]\n```'
        ))

        text = await classify_feedback([snippet("login broken"), snippet("dark mode please")], provider)

        assert text.startswith("Ecosystem feedback (2 snippets):")
        assert "Bug (1):\n- Login fails" in text
        assert "Feature Request (1):\n- Wants dark mode" in text

    @pytest.mark.asyncio
    async def test_malformed_output_falls_back_to_raw(self):
        provider = AsyncMock()
        provider.generate = AsyncMock(return_value="Sure! Here is what I found.")

        text = await classify_feedback([snippet("login broken")], provider)

        assert text.startswith("Classification unavailable (classifier returned malformed output)")
        assert "1. login broken" in text

    @pytest.mark.asyncio
    async def test_provider_error_falls_back_to_raw(self):
        provider = AsyncMock()
        provider.generate = AsyncMock(side_effect=GenerationError("anthropic", "overloaded", 529))

        text = await classify_feedback([snippet("login broken")], provider)

        assert text.startswith("Classification unavailable (classifier error)")

    @pytest.mark.asyncio
    async def test_no_provider(self):
        text = await classify_feedback([snippet("login broken")], None)
        assert text.startswith("Classification unavailable (no classifier available)")


class TestEcosystemScan:

    @pytest.mark.asyncio
    async def test_scan_excludes_companion_memories(self, dispatcher, primary_admin, config, store, mock_identity):
        content = "bug report the app is not working error broken"
        for record_id, scope in (("eng-1", MemoryScope.ENGINEERING), ("comp-1", MemoryScope.COMPANION)):
            await store.add(MemoryRecord(
                id=record_id, user_id="user-9", content=content,
                memory_type=MemoryType.CONVERSATION, role=Role.USER, memory_scope=scope,
            ))

        result = await dispatcher.invoke("ecosystem_scan", {}, call_context(primary_admin, config))

        assert result.startswith("Classification unavailable (no classifier available)")
        assert result.count(content) == 1
        mock_identity.record_audit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_scan_refused_for_regular_user(self, dispatcher, connected_user, config):
        result = await dispatcher.invoke("ecosystem_scan", {}, call_context(connected_user, config))
        assert result == REFUSAL_MESSAGE


class TestRefreshLights:

    @pytest.mark.asyncio
    async def test_manifest_saved_to_settings(self, dispatcher, connected_user, config, mock_lighting, mock_identity):
        manifest = LightingManifest(rooms=[RoomInfo(id="r1", name="Office", grouped_light_id="gl-9")])
        mock_lighting.fetch_manifest.return_value = manifest
        context = call_context(connected_user, config)

        result = await dispatcher.invoke("refresh_lights", {}, context)

        assert result == "Refreshed the lighting setup: 1 rooms, 0 zones and 0 scenes."
        assert context.settings.lighting.manifest is manifest
        user_id, patch = mock_identity.update_settings.await_args.args
        assert user_id == "user-2"
        assert patch["lighting"]["manifest"]["rooms"][0]["groupedLightId"] == "gl-9"

    @pytest.mark.asyncio
    async def test_save_failure_still_refreshes(self, dispatcher, connected_user, config, mock_lighting, mock_identity):
        mock_lighting.fetch_manifest.return_value = LightingManifest()
        mock_identity.update_settings.side_effect = ServiceUnavailableError("Identity service unavailable")

        result = await dispatcher.invoke("refresh_lights", {}, call_context(connected_user, config))

        assert result.startswith("Refreshed the lighting setup")
