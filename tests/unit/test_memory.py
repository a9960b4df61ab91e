"""
Unit tests for memory orchestration on the in-process store.
"""
import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from zenna.fact_extractor import ExtractedFact
from zenna.memory_manager import (
    FACT_IMPORTANCE,
    INTERNET_SEARCH_IMPORTANCE,
    SMART_HOME_IMPORTANCE,
    WORKSPACE_READ_IMPORTANCE,
    MemoryOrchestrator,
)
from zenna.memory_store import InMemoryMemoryStore, StoredPoint
from zenna.models import MemoryRecord, MemoryScope, MemoryType, Role


class TestHistory:

    @pytest.mark.asyncio
    async def test_oldest_first_and_windowed(self, memory):
        for i in range(5):
            await memory.append_turn("user-1", Role.USER, f"message {i}")

        history = await memory.get_history("user-1", 3)

        assert [t.content for t in history] == ["message 2", "message 3", "message 4"]

    @pytest.mark.asyncio
    async def test_system_turns_not_replayed(self, memory):
        await memory.append_turn("user-1", Role.USER, "turn on the lamp")
        await memory.append_turn("user-1", Role.SYSTEM, "[Smart Home] lamp: on")
        await memory.append_turn("user-1", Role.ASSISTANT, "Done!")

        history = await memory.get_history("user-1", 10)

        assert [t.role for t in history] == [Role.USER, Role.ASSISTANT]

    @pytest.mark.asyncio
    async def test_users_are_isolated(self, memory):
        await memory.append_turn("user-1", Role.USER, "secret")
        assert await memory.get_history("user-2", 10) == []


class TestTypedWrites:

    @pytest.mark.asyncio
    async def test_fact_importance_and_type(self, memory):
        record = await memory.store_fact(
            "user-1", ExtractedFact("User's name is Sam", "personal", ["personal", "name"])
        )
        assert record.memory_type == MemoryType.FACT
        assert record.importance == FACT_IMPORTANCE

    @pytest.mark.asyncio
    async def test_preference_fact_stored_as_preference(self, memory):
        record = await memory.store_fact(
            "user-1", ExtractedFact("User likes hiking", "preferences", ["preferences"])
        )
        assert record.memory_type == MemoryType.PREFERENCE

    @pytest.mark.asyncio
    async def test_internet_search(self, memory):
        record = await memory.store_internet_search("user-1", "news", "Headlines...", "Web Search", "news")
        assert record.importance == INTERNET_SEARCH_IMPORTANCE
        assert record.tags == ["internet", "news", "web_search"]

    @pytest.mark.asyncio
    async def test_device_action(self, memory):
        record = await memory.store_device_action("user-1", "Lamp", "off", "turned off the Lamp")
        assert record.content == "[Smart Home] Lamp: off -> turned off the Lamp"
        assert record.importance == SMART_HOME_IMPORTANCE

    @pytest.mark.asyncio
    async def test_workspace_read(self, memory):
        record = await memory.store_workspace_action("user-1", "workspace_search", {"query": "x"}, "none", False)
        assert record.importance == WORKSPACE_READ_IMPORTANCE
        assert record.memory_scope == MemoryScope.ENGINEERING


class TestRetrieveContext:

    @pytest.mark.asyncio
    async def test_facts_formatted_and_question_echoes_dropped(self, memory):
        await memory.store_fact(
            "user-1", ExtractedFact("User's mother's name is Diane West", "family", ["family"])
        )
        await memory.append_turn("user-1", Role.USER, "What is my mother's name?")

        context = await memory.retrieve_context("user-1", "mother's name")

        assert "**Important Facts:**\n- User's mother's name is Diane West" in context
        assert "Related Past Conversations" not in context

    @pytest.mark.asyncio
    async def test_related_conversations_listed(self, memory):
        await memory.append_turn("user-1", Role.USER, "We talked about the garden roses")

        context = await memory.retrieve_context("user-1", "garden roses")

        assert "**Related Past Conversations:**\n- We talked about the garden roses" in context

    @pytest.mark.asyncio
    async def test_nothing_relevant_returns_none(self, memory):
        assert await memory.retrieve_context("user-1", "anything at all") is None

    @pytest.mark.asyncio
    async def test_slow_store_degrades_to_none(self):
        async def slow_search(**kwargs):
            await asyncio.sleep(1)
            return []

        store = MagicMock()
        store.search = AsyncMock(side_effect=slow_search)
        memory = MemoryOrchestrator(store, retrieval_timeout=0.05)

        assert await memory.retrieve_context("user-1", "mother") is None

    @pytest.mark.asyncio
    async def test_failing_store_degrades_to_none(self):
        store = MagicMock()
        store.search = AsyncMock(side_effect=RuntimeError("qdrant down"))
        memory = MemoryOrchestrator(store)

        assert await memory.retrieve_context("user-1", "mother") is None


class TestFeedbackScan:

    @pytest.mark.asyncio
    async def test_dedup_across_queries(self, memory, store):
        await store.add(MemoryRecord(
            id="m1", user_id="user-9", content="problem issue error bug not working broken",
            memory_scope=MemoryScope.PLATFORM,
        ))

        snippets = await memory.scan_feedback()

        assert [s.id for s in snippets] == ["m1"]

    @pytest.mark.asyncio
    async def test_companion_scope_excluded(self, memory, store):
        await store.add(MemoryRecord(
            id="m1", user_id="user-9", content="problem issue error bug not working broken",
        ))
        assert await memory.scan_feedback() == []


class TestInMemoryStore:

    @pytest.mark.asyncio
    async def test_scroll_and_upsert(self):
        store = InMemoryMemoryStore()
        await store.add(MemoryRecord(id="m1", user_id="a", content="hello"))

        points = await store.scroll_user("a")
        points[0].payload["userId"] = "b"
        await store.upsert_points(points)

        assert await store.scroll_user("a") == []
        assert [p.id for p in await store.scroll_user("b")] == ["m1"]

    @pytest.mark.asyncio
    async def test_health(self):
        assert await InMemoryMemoryStore().health_check()

    @pytest.mark.asyncio
    async def test_search_threshold(self):
        store = InMemoryMemoryStore()
        await store.add(MemoryRecord(id="m1", user_id="a", content="red apples"))

        assert await store.search("blue cars", user_id="a", limit=5, threshold=0.1) == []
        hits = await store.search("red apples", user_id="a", limit=5, threshold=0.1)
        assert hits[0].score == 1.0

    def test_stored_point_repr_hides_vector(self):
        assert "vector" not in repr(StoredPoint("m1", {}, [0.1] * 384))
