"""
Tool definitions and dispatch for model tool calls.

Every tool belongs to exactly one ``ToolCategory``. The dispatcher checks the
category's permission predicate before anything else; a denied call returns
a fixed refusal and has no side effects. Successful calls are logged to
memory in the background, and privileged categories are also written to the
audit log.
"""
import asyncio
import json
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
import structlog
from pydantic import ValidationError

from zenna_shared.errors import IntegrationError, ZennaException
from zenna_shared.llm_router import GenerationError, GenerationProvider

from .background import BackgroundWriter
from .identity import IdentityClient
from .integrations.lighting import LightCommand, LightingClient
from .integrations.web_search import WebSearchClient
from .integrations.workspace import WorkspaceClient
from .memory_manager import FeedbackSnippet, MemoryOrchestrator
from .metrics import tool_invocations
from .models import UserSettings
from .permissions import PRIVILEGED_CATEGORIES, ToolCategory, ToolPermissionContext

logger = structlog.get_logger()

REFUSAL_MESSAGE = "I'm not able to do that with your current permissions."
TOOL_FAILURE_MESSAGE = "Something went wrong while running {tool}. Please try again."


def _schema(name: str, description: str, properties: Dict[str, Any], required: List[str]) -> Dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description,
            "parameters": {"type": "object", "properties": properties, "required": required},
        },
    }


# Tool definitions in OpenAI function calling format
TOOL_DEFINITIONS: List[Dict[str, Any]] = [
    {
        "tool_name": "web_search",
        "category": ToolCategory.SEARCH,
        "function_schema": _schema(
            "web_search",
            "Search the internet for real-time information: weather, current time, news, "
            "sports, events. Always use this for weather instead of guessing.",
            {
                "query": {"type": "string", "description": "Search query or location"},
                "type": {"type": "string", "enum": ["weather", "time", "news", "general"]},
            },
            ["query", "type"],
        ),
    },
    {
        "tool_name": "workspace_search",
        "category": ToolCategory.WORKSPACE_READ,
        "function_schema": _schema(
            "workspace_search",
            "Search the user's workspace for pages and databases by title or content.",
            {
                "query": {"type": "string"},
                "object_type": {"type": "string", "enum": ["page", "database"]},
            },
            ["query"],
        ),
    },
    {
        "tool_name": "workspace_read_page",
        "category": ToolCategory.WORKSPACE_READ,
        "function_schema": _schema(
            "workspace_read_page",
            "Read the text content of a workspace page.",
            {"page_id": {"type": "string"}},
            ["page_id"],
        ),
    },
    {
        "tool_name": "workspace_changes",
        "category": ToolCategory.WORKSPACE_READ,
        "function_schema": _schema(
            "workspace_changes",
            "List workspace pages edited recently.",
            {"hours": {"type": "integer", "description": "Look-back window in hours (default 24)"}},
            [],
        ),
    },
    {
        "tool_name": "workspace_create_page",
        "category": ToolCategory.WORKSPACE_WRITE,
        "function_schema": _schema(
            "workspace_create_page",
            "Create a new page in the user's workspace.",
            {
                "title": {"type": "string"},
                "content": {"type": "string"},
                "parent_id": {"type": "string"},
            },
            ["title"],
        ),
    },
    {
        "tool_name": "workspace_add_entry",
        "category": ToolCategory.WORKSPACE_WRITE,
        "function_schema": _schema(
            "workspace_add_entry",
            "Add an entry to a workspace database.",
            {
                "database_id": {"type": "string"},
                "title": {"type": "string"},
                "properties": {"type": "object"},
            },
            ["database_id", "title"],
        ),
    },
    {
        "tool_name": "control_lights",
        "category": ToolCategory.DEVICE_CONTROL,
        "function_schema": _schema(
            "control_lights",
            "Turn lights or rooms on/off, set brightness or color, or activate a scene.",
            {
                "target": {"type": "string", "description": "Human name of the light, room or zone"},
                "targetId": {"type": "string"},
                "targetType": {"type": "string", "enum": ["light", "grouped_light"]},
                "state": {"type": "string", "enum": ["on", "off"]},
                "brightness": {"type": "integer", "minimum": 0, "maximum": 100},
                "sceneId": {"type": "string"},
                "sceneName": {"type": "string"},
            },
            [],
        ),
    },
    {
        "tool_name": "refresh_lights",
        "category": ToolCategory.DEVICE_CONTROL,
        "function_schema": _schema(
            "refresh_lights",
            "Re-read the user's rooms, lights and scenes from the bridge when a light seems to be missing.",
            {},
            [],
        ),
    },
    {
        "tool_name": "sprint_read",
        "category": ToolCategory.SPRINT_READ,
        "function_schema": _schema(
            "sprint_read",
            "List tasks on the current sprint board, optionally filtered by status or assignee.",
            {"status": {"type": "string"}, "assignee": {"type": "string"}},
            [],
        ),
    },
    {
        "tool_name": "sprint_update",
        "category": ToolCategory.SPRINT_WRITE,
        "function_schema": _schema(
            "sprint_update",
            "Update a sprint task's status and/or append a progress note.",
            {
                "task_id": {"type": "string"},
                "status": {"type": "string"},
                "note": {"type": "string"},
            },
            ["task_id"],
        ),
    },
    {
        "tool_name": "backlog_create",
        "category": ToolCategory.BACKLOG_WRITE,
        "function_schema": _schema(
            "backlog_create",
            "File a new item in the engineering backlog.",
            {
                "title": {"type": "string"},
                "description": {"type": "string"},
                "priority": {"type": "string", "enum": ["low", "medium", "high", "critical"]},
            },
            ["title"],
        ),
    },
    {
        "tool_name": "ecosystem_scan",
        "category": ToolCategory.ADMIN_SCAN,
        "function_schema": _schema(
            "ecosystem_scan",
            "Scan feedback shared across the platform (bugs, feature requests, complaints) "
            "and summarize it by category.",
            {"focus": {"type": "string", "description": "Optional theme to emphasise"}},
            [],
        ),
    },
]

TOOLS_BY_NAME: Dict[str, Dict[str, Any]] = {t["tool_name"]: t for t in TOOL_DEFINITIONS}


def tool_schemas_for(permissions: ToolPermissionContext) -> List[Dict[str, Any]]:
    """Function schemas for the tools this user may call."""
    return [t["function_schema"] for t in TOOL_DEFINITIONS if permissions.allows(t["category"])]


@dataclass
class ToolCallContext:
    """Everything a tool call may touch, fixed for the duration of a turn."""
    permissions: ToolPermissionContext
    settings: UserSettings
    writer: BackgroundWriter
    provider: Optional[GenerationProvider] = None
    # True once the turn is cancelled or out of budget; late results are dropped
    expired: Callable[[], bool] = lambda: False


Handler = Callable[[Dict[str, Any], ToolCallContext], Awaitable[str]]


class ToolDispatcher:

    def __init__(
        self,
        memory: MemoryOrchestrator,
        web_search: WebSearchClient,
        workspace: WorkspaceClient,
        lighting: LightingClient,
        identity: IdentityClient,
        timeout: float = 20.0,
    ):
        self.memory = memory
        self.web_search = web_search
        self.workspace = workspace
        self.lighting = lighting
        self.identity = identity
        self.timeout = timeout

        self._handlers: Dict[str, Handler] = {
            "web_search": self._web_search,
            "workspace_search": self._workspace_search,
            "workspace_read_page": self._workspace_read_page,
            "workspace_changes": self._workspace_changes,
            "workspace_create_page": self._workspace_create_page,
            "workspace_add_entry": self._workspace_add_entry,
            "control_lights": self._control_lights,
            "refresh_lights": self._refresh_lights,
            "sprint_read": self._sprint_read,
            "sprint_update": self._sprint_update,
            "backlog_create": self._backlog_create,
            "ecosystem_scan": self._ecosystem_scan,
        }
        missing = set(TOOLS_BY_NAME) - set(self._handlers)
        uncovered = set(ToolCategory) - {t["category"] for t in TOOL_DEFINITIONS}
        if missing or uncovered:
            raise RuntimeError(f"Tool registry incomplete: handlers={missing} categories={uncovered}")

    async def invoke(self, tool_name: str, tool_input: Dict[str, Any], context: ToolCallContext) -> str:
        """Run one tool call and return the text handed back to the model."""
        definition = TOOLS_BY_NAME.get(tool_name)
        if definition is None:
            logger.warning("tool_unknown", tool=tool_name)
            return f"Unknown tool: {tool_name}"

        category: ToolCategory = definition["category"]
        permissions = context.permissions
        if not permissions.allows(category):
            logger.warning("tool_refused", tool=tool_name, category=category.value, user_id=permissions.user_id)
            tool_invocations.labels(tool=tool_name, outcome="refused").inc()
            return REFUSAL_MESSAGE

        logger.info("tool_executing", tool=tool_name, category=category.value)
        success = False
        try:
            result = await asyncio.wait_for(self._handlers[tool_name](tool_input, context), timeout=self.timeout)
            success = True
        except asyncio.TimeoutError:
            logger.warning("tool_timeout", tool=tool_name, timeout=self.timeout)
            result = "That request took too long to complete. Please try again."
        except IntegrationError as e:
            logger.warning("tool_integration_error", tool=tool_name, kind=e.kind.value, error=str(e))
            result = e.user_message
        except (ValidationError, KeyError, ValueError) as e:
            logger.warning("tool_bad_input", tool=tool_name, error=str(e))
            result = f"The {tool_name} request was missing or had invalid details."
        except Exception:
            logger.exception("tool_failed", tool=tool_name)
            result = TOOL_FAILURE_MESSAGE.format(tool=tool_name)

        tool_invocations.labels(tool=tool_name, outcome="success" if success else "error").inc()
        if success and context.expired():
            logger.info("tool_result_discarded", tool=tool_name)
        elif success:
            self._log_to_memory(tool_name, category, tool_input, result, context)
        if category in PRIVILEGED_CATEGORIES:
            await self._audit(tool_name, tool_input, success, permissions)
        return result

    # =========================================================================
    # Side effects
    # =========================================================================

    def _log_to_memory(self, tool_name: str, category: ToolCategory, tool_input: Dict[str, Any],
                       result: str, context: ToolCallContext) -> None:
        user_id = context.permissions.user_id
        if category == ToolCategory.SEARCH:
            write = self.memory.store_internet_search(
                user_id, tool_input.get("query", ""), result,
                search_source="weather" if tool_input.get("type") == "weather" else "web",
                search_type=tool_input.get("type", "general"),
            )
        elif category == ToolCategory.DEVICE_CONTROL:
            write = self.memory.store_device_action(
                user_id, tool_input.get("target") or tool_input.get("sceneName") or "lights",
                tool_input.get("state") or ("scene" if tool_input.get("sceneId") else tool_name), result,
            )
        elif category == ToolCategory.ADMIN_SCAN:
            return
        else:
            is_write = category in (ToolCategory.WORKSPACE_WRITE, ToolCategory.SPRINT_WRITE, ToolCategory.BACKLOG_WRITE)
            write = self.memory.store_workspace_action(user_id, tool_name, tool_input, result, is_write)
        context.writer.spawn(write, name=f"tool_memory:{tool_name}")

    async def _audit(self, tool_name: str, tool_input: Dict[str, Any], success: bool,
                     permissions: ToolPermissionContext) -> None:
        try:
            await self.identity.record_audit(
                permissions.user_id,
                action=f"tool:{tool_name}",
                details={"input": tool_input, "success": success},
            )
        except Exception as e:
            logger.error("tool_audit_failed", tool=tool_name, error=str(e))

    # =========================================================================
    # Handlers
    # =========================================================================

    async def _web_search(self, tool_input, context) -> str:
        query = tool_input["query"]
        result = await self.web_search.search(query, tool_input.get("type", "general"))
        if not result.found:
            return f'No results found for "{query}".'
        return f"{result.text}\n(Source: {result.source})"

    @staticmethod
    def _workspace_token(context: ToolCallContext) -> str:
        return context.settings.workspace.token

    async def _workspace_search(self, tool_input, context) -> str:
        items = await self.workspace.search(
            self._workspace_token(context), tool_input["query"], tool_input.get("object_type")
        )
        if not items:
            return f'Nothing in the workspace matched "{tool_input["query"]}".'
        return "\n".join(item.summary() for item in items)

    async def _workspace_read_page(self, tool_input, context) -> str:
        text = await self.workspace.get_page_text(self._workspace_token(context), tool_input["page_id"])
        return text[:4000]

    async def _workspace_changes(self, tool_input, context) -> str:
        hours = int(tool_input.get("hours") or 24)
        since = datetime.now(timezone.utc) - timedelta(hours=hours)
        items = await self.workspace.changes_since(self._workspace_token(context), since)
        if not items:
            return f"No workspace changes in the last {hours} hours."
        return "\n".join(item.summary() for item in items)

    async def _workspace_create_page(self, tool_input, context) -> str:
        item = await self.workspace.create_page(
            self._workspace_token(context), tool_input["title"], tool_input.get("content", ""),
            tool_input.get("parent_id"),
        )
        return f'Created page "{item.title}" (id: {item.id}).'

    async def _workspace_add_entry(self, tool_input, context) -> str:
        item = await self.workspace.add_entry(
            self._workspace_token(context), tool_input["database_id"], tool_input["title"],
            tool_input.get("properties"),
        )
        return f'Added "{item.title}" (id: {item.id}).'

    async def _control_lights(self, tool_input, context) -> str:
        command = LightCommand.model_validate(tool_input)
        result = await self.lighting.execute(context.settings.lighting, command)
        return f"Done: {result}."

    async def _refresh_lights(self, tool_input, context) -> str:
        lighting = context.settings.lighting
        manifest = await self.lighting.fetch_manifest(lighting)
        lighting.manifest = manifest
        try:
            await self.identity.update_settings(
                context.permissions.user_id,
                {"lighting": {"manifest": manifest.model_dump(mode="json", by_alias=True)}},
            )
        except (httpx.HTTPError, ZennaException) as e:
            # Still usable for the rest of this turn
            logger.warning("lighting_manifest_save_failed", error=str(e))
        return (
            f"Refreshed the lighting setup: {len(manifest.rooms)} rooms, "
            f"{len(manifest.zones)} zones and {len(manifest.scenes)} scenes."
        )

    async def _sprint_read(self, tool_input, context) -> str:
        database_id = context.settings.workspace.sprint_database_id
        if not database_id:
            return "No sprint board is configured for this workspace."
        conditions = []
        if tool_input.get("status"):
            conditions.append({"property": "Status", "status": {"equals": tool_input["status"]}})
        if tool_input.get("assignee"):
            conditions.append({"property": "Assignee", "rich_text": {"contains": tool_input["assignee"]}})
        filters = {"and": conditions} if len(conditions) > 1 else (conditions[0] if conditions else None)
        tasks = await self.workspace.query_database(self._workspace_token(context), database_id, filters)
        if not tasks:
            return "No sprint tasks matched."
        lines = []
        for task in tasks:
            status = task.properties.get("Status") or "unknown"
            lines.append(f"- {task.title} [{status}] (id: {task.id})")
        return "\n".join(lines)

    async def _sprint_update(self, tool_input, context) -> str:
        token = self._workspace_token(context)
        task_id = tool_input["task_id"]
        changes = []
        if tool_input.get("status"):
            await self.workspace.update_page(token, task_id, {"Status": {"status": {"name": tool_input["status"]}}})
            changes.append(f"status set to {tool_input['status']}")
        if tool_input.get("note"):
            await self.workspace.append_text(token, task_id, tool_input["note"])
            changes.append("note added")
        if not changes:
            return "Nothing to update: give a status or a note."
        return f"Task {task_id}: {', '.join(changes)}."

    async def _backlog_create(self, tool_input, context) -> str:
        database_id = context.settings.workspace.backlog_database_id
        if not database_id:
            return "No backlog is configured for this workspace."
        token = self._workspace_token(context)
        properties = {}
        if tool_input.get("priority"):
            properties["Priority"] = {"select": {"name": tool_input["priority"]}}
        item = await self.workspace.add_entry(token, database_id, tool_input["title"], properties)
        if tool_input.get("description"):
            await self.workspace.append_text(token, item.id, tool_input["description"])
        return f'Filed backlog item "{item.title}" (id: {item.id}).'

    async def _ecosystem_scan(self, tool_input, context) -> str:
        snippets = await self.memory.scan_feedback()
        if not snippets:
            return "The ecosystem scan found no feedback."
        return await classify_feedback(snippets, context.provider, tool_input.get("focus"))


# =============================================================================
# Feedback classification
# =============================================================================

FEEDBACK_CATEGORIES = ("bug", "feature_request", "suggestion", "complaint", "other")

_CODE_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$")

CLASSIFIER_PROMPT = """\
Classify each numbered feedback snippet. Respond with ONLY a JSON array, one
object per snippet: {{"index": <number>, "category": one of {categories},
"summary": "<one short sentence>"}}.{focus}

{snippets}"""


def _raw_feedback(snippets: List[FeedbackSnippet], reason: str) -> str:
    lines = [f"Classification unavailable ({reason}). Raw feedback, most relevant first:"]
    lines.extend(f"{i}. {s.content[:200]}" for i, s in enumerate(snippets[:20], 1))
    return "\n".join(lines)


async def classify_feedback(
    snippets: List[FeedbackSnippet],
    provider: Optional[GenerationProvider],
    focus: Optional[str] = None,
) -> str:
    """
    Group feedback snippets by category using the turn's generation provider.

    Malformed classifier output degrades to the raw snippet list.
    """
    if provider is None:
        return _raw_feedback(snippets, "no classifier available")

    numbered = "\n".join(f"{i}. {s.content[:300]}" for i, s in enumerate(snippets[:30], 1))
    prompt = CLASSIFIER_PROMPT.format(
        categories=", ".join(FEEDBACK_CATEGORIES),
        focus=f" Pay particular attention to: {focus}." if focus else "",
        snippets=numbered,
    )
    try:
        raw = await provider.generate([{"role": "user", "content": prompt}])
    except GenerationError as e:
        logger.warning("feedback_classifier_failed", error=str(e))
        return _raw_feedback(snippets, "classifier error")

    try:
        entries = json.loads(_CODE_FENCE.sub("", raw.strip()))
        if not isinstance(entries, list):
            raise ValueError("expected a JSON array")
        grouped: Dict[str, List[str]] = {}
        for entry in entries:
            category = entry.get("category") if entry.get("category") in FEEDBACK_CATEGORIES else "other"
            grouped.setdefault(category, []).append(str(entry.get("summary", "")).strip())
    except (ValueError, AttributeError, TypeError) as e:
        logger.warning("feedback_classifier_malformed", error=str(e), preview=raw[:120])
        return _raw_feedback(snippets, "classifier returned malformed output")

    lines = [f"Ecosystem feedback ({len(snippets)} snippets):"]
    for category in FEEDBACK_CATEGORIES:
        summaries = [s for s in grouped.get(category, []) if s]
        if summaries:
            lines.append(f"\n{category.replace('_', ' ').title()} ({len(summaries)}):")
            lines.extend(f"- {s}" for s in summaries)
    return "\n".join(lines)
