"""
Shared fixtures for Zenna tests.

Provides sample users and configuration, an in-process memory stack, and a
scripted generation provider whose stream is driven by a list of steps.
"""
import asyncio
from typing import Any, Dict, List
from unittest.mock import AsyncMock, MagicMock

import pytest

from zenna_shared.config import ZennaConfig
from zenna_shared.llm_router import ChunkKind, GenerationProvider, ProviderId, StreamChunk

from zenna.action_blocks import ActionBlockProcessor
from zenna.integrations.web_search import SearchResult
from zenna.memory_manager import MemoryOrchestrator
from zenna.memory_store import InMemoryMemoryStore
from zenna.models import (
    Guardrails,
    LightingIntegration,
    MasterConfig,
    User,
    UserSettings,
    UserType,
    WorkspaceIntegration,
)
from zenna.pipeline import TurnPipeline
from zenna.sessions import TurnRegistry
from zenna.tools import ToolDispatcher

PRIMARY_ADMIN_EMAIL = "owner@example.com"


# =============================================================================
# Scripted provider
# =============================================================================

class ScriptedProvider(GenerationProvider):
    """
    Generation provider that plays back a script.

    Script steps:
        str                       -> text chunk
        float                     -> sleep for that many seconds
        ("tool", name, input)     -> run a tool through execute_tool
        Exception instance        -> raise it
    """

    provider_id = ProviderId.OLLAMA

    def __init__(self, script=None, reply: str = ""):
        super().__init__(model="scripted")
        self.script = list(script or [])
        self.reply = reply
        self.seen_messages: List[Dict[str, Any]] = []
        self.seen_tools: List[Dict[str, Any]] = []
        self.tool_results: List[str] = []
        self.generate_calls: List[List[Dict[str, str]]] = []

    async def generate(self, messages):
        self.generate_calls.append(messages)
        return self.reply

    async def stream_with_tools(self, messages, tools, execute_tool):
        self.seen_messages = messages
        self.seen_tools = tools
        for step in self.script:
            if isinstance(step, BaseException):
                raise step
            if isinstance(step, float):
                await asyncio.sleep(step)
            elif isinstance(step, tuple):
                _, name, tool_input = step
                yield StreamChunk(ChunkKind.STATUS, action="executing", tool=name, tool_index=0, total_tools=1)
                self.tool_results.append(await execute_tool(name, tool_input))
                yield StreamChunk(ChunkKind.STATUS, action="completed", tool=name, tool_index=0, total_tools=1)
            else:
                yield StreamChunk(ChunkKind.TEXT, step)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def config():
    """Config with short timings suitable for tests."""
    cfg = ZennaConfig()
    cfg.admin_api_url = "http://admin.test"
    cfg.service_api_key = "test-key"
    cfg.memory_backend = "memory"
    cfg.llm_provider = "anthropic"
    cfg.llm_model = "test-model"
    cfg.anthropic_api_key = "env-key"
    cfg.primary_admin_email = PRIMARY_ADMIN_EMAIL
    cfg.identity_timeout = 1.0
    cfg.history_timeout = 1.0
    cfg.memory_timeout = 1.0
    cfg.fact_write_timeout = 1.0
    cfg.thinking_offsets = (10.0, 25.0, 45.0)
    cfg.hard_generation_timeout = 5.0
    cfg.tool_timeout = 1.0
    cfg.history_window = 50
    return cfg


@pytest.fixture
def master_config():
    return MasterConfig(
        system_prompt="You are Zenna, a warm and attentive companion.",
        immutable_rules=["Never share one user's memories with another user."],
        guardrails=Guardrails(blocked_topics=["medical diagnosis"]),
    )


@pytest.fixture
def companion_user():
    """Ordinary human user with no integrations."""
    return User(id="user-1", username="sam", email="sam@example.com")


@pytest.fixture
def connected_settings():
    return UserSettings(
        lighting=LightingIntegration(access_token="hue-token", username="bridge-user"),
        workspace=WorkspaceIntegration(
            enabled=True,
            token="ws-token",
            workspace_name="Home",
            sprint_database_id="sprint-db",
            backlog_database_id="backlog-db",
        ),
    )


@pytest.fixture
def connected_user(connected_settings):
    """Human user with lighting and workspace connected but no workforce grants."""
    return User(id="user-2", username="riley", email="riley@example.com", settings=connected_settings)


@pytest.fixture
def primary_admin(connected_settings):
    return User(id="admin-1", username="owner", email=PRIMARY_ADMIN_EMAIL, settings=connected_settings)


@pytest.fixture
def worker_agent(connected_settings):
    return User(
        id="agent-1",
        username="builder",
        user_type=UserType.WORKER_AGENT,
        sprint_assignment_access=True,
        settings=connected_settings,
    )


@pytest.fixture
def store():
    return InMemoryMemoryStore()


@pytest.fixture
def memory(store):
    return MemoryOrchestrator(store, retrieval_timeout=1.0)


@pytest.fixture
def mock_identity(companion_user, master_config):
    identity = AsyncMock()
    identity.authenticate = AsyncMock(return_value=companion_user.id)
    identity.get_user = AsyncMock(return_value=companion_user)
    identity.get_master_config = AsyncMock(return_value=master_config)
    identity.record_audit = AsyncMock(return_value=None)
    identity.health_check = AsyncMock(return_value=True)
    return identity


@pytest.fixture
def mock_web_search():
    client = AsyncMock()
    client.search = AsyncMock(
        return_value=SearchResult("weather Austin", "weather", "wttr.in", "Austin: Sunny, 75F")
    )
    return client


@pytest.fixture
def mock_workspace():
    return AsyncMock()


@pytest.fixture
def mock_lighting():
    lighting = AsyncMock()
    lighting.execute = AsyncMock(return_value="turned on the abc")
    return lighting


@pytest.fixture
def mock_scheduling():
    return AsyncMock()


@pytest.fixture
def dispatcher(memory, mock_web_search, mock_workspace, mock_lighting, mock_identity):
    return ToolDispatcher(memory, mock_web_search, mock_workspace, mock_lighting, mock_identity, timeout=1.0)


@pytest.fixture
def provider():
    return ScriptedProvider(["Hello ", "there."])


@pytest.fixture
def mock_router(provider):
    router = MagicMock()
    router.get_provider = MagicMock(return_value=provider)
    router.close = AsyncMock()
    return router


@pytest.fixture
def pipeline(config, mock_identity, memory, mock_router, dispatcher, mock_lighting, mock_scheduling):
    return TurnPipeline(
        config=config,
        identity=mock_identity,
        memory=memory,
        router=mock_router,
        tools=dispatcher,
        actions=ActionBlockProcessor(mock_lighting, mock_scheduling, memory),
        registry=TurnRegistry(write_timeout=1.0),
    )
