"""
Memory orchestration for the turn pipeline.

Wraps a ``MemoryStore`` with the companion's memory policy:

- conversation history (storage is unbounded, replay is windowed by caller)
- retrieval of relevant facts and past conversations for prompt context
- typed writes (facts, search results, device actions, workspace actions)
  with fixed importance per type
- the cross-user feedback scan for administrators (companion scope excluded)

Retrieval never raises: a slow or failing store degrades to "no memories".
Writes do raise; callers decide whether a failure matters.
"""
import asyncio
import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import structlog

from .fact_extractor import ExtractedFact
from .memory_store import MemoryStore, new_memory_id
from .models import (
    ConversationTurn,
    MemoryHit,
    MemoryRecord,
    MemoryScope,
    MemoryType,
    Role,
)

logger = structlog.get_logger()

FACT_IMPORTANCE = 0.95
PREFERENCE_IMPORTANCE = 0.8
INTERNET_SEARCH_IMPORTANCE = 0.6
SMART_HOME_IMPORTANCE = 0.5
WORKSPACE_WRITE_IMPORTANCE = 0.8
WORKSPACE_READ_IMPORTANCE = 0.6

# Questions the user asked before are similar to the current query but carry no answer
_QUESTION_ECHOES = (
    "what is my", "what's my", "who is my", "who's my",
    "tell me", "do you know", "do you remember", "can you tell",
    "what do you know about", "remind me",
)

FEEDBACK_QUERIES = (
    "bug report problem issue error not working broken",
    "feature request would be nice wish could want need",
    "suggestion improvement idea enhancement",
    "frustrating annoying confusing difficult hard to use",
    "complaint issue problem with the system",
)


@dataclass
class FeedbackSnippet:
    id: str
    content: str
    user_id: str
    memory_type: str
    created_at: datetime
    score: float
    tags: List[str]


class MemoryOrchestrator:
    """Memory policy on top of a vector store."""

    def __init__(self, store: MemoryStore, retrieval_timeout: float = 8.0):
        self.store = store
        self.retrieval_timeout = retrieval_timeout

    # =========================================================================
    # History
    # =========================================================================

    async def get_history(self, user_id: str, limit: int) -> List[ConversationTurn]:
        """Most recent ``limit`` user/assistant turns, oldest first."""
        records = await self.store.recent(user_id, limit, [MemoryType.CONVERSATION])
        return [
            ConversationTurn(
                role=record.role or Role.USER,
                content=record.content,
                created_at=record.created_at,
                memory_scope=record.memory_scope,
                tags=record.tags,
                topic=record.topic,
                importance=record.importance,
            )
            for record in records
            if record.role in (Role.USER, Role.ASSISTANT)
        ]

    async def append_turn(
        self,
        user_id: str,
        role: Role,
        content: str,
        *,
        tags: Optional[List[str]] = None,
        topic: Optional[str] = None,
        memory_scope: MemoryScope = MemoryScope.COMPANION,
        importance: Optional[float] = None,
    ) -> MemoryRecord:
        """Persist one conversation turn. Returns after the write is durable."""
        record = MemoryRecord(
            id=new_memory_id(),
            user_id=user_id,
            content=content,
            memory_type=MemoryType.CONVERSATION,
            role=role,
            importance=importance if importance is not None else 0.5,
            tags=tags or [],
            topic=topic,
            memory_scope=memory_scope,
            source=role.value,
        )
        await self.store.add(record)
        logger.debug("conversation_turn_stored", role=role.value, memory_id=record.id)
        return record

    # =========================================================================
    # Typed writes
    # =========================================================================

    async def store_fact(
        self,
        user_id: str,
        fact: ExtractedFact,
        memory_scope: MemoryScope = MemoryScope.COMPANION,
    ) -> MemoryRecord:
        memory_type = MemoryType.PREFERENCE if fact.topic == "preferences" else MemoryType.FACT
        record = MemoryRecord(
            id=new_memory_id(),
            user_id=user_id,
            content=fact.fact,
            memory_type=memory_type,
            importance=FACT_IMPORTANCE,
            tags=list(fact.tags),
            topic=fact.topic,
            memory_scope=memory_scope,
            source="fact_extraction",
        )
        await self.store.add(record)
        logger.info("fact_stored", topic=fact.topic, memory_id=record.id)
        return record

    async def store_internet_search(
        self,
        user_id: str,
        query: str,
        result: str,
        search_source: str,
        search_type: str = "general",
    ) -> MemoryRecord:
        record = MemoryRecord(
            id=new_memory_id(),
            user_id=user_id,
            content=f'[Internet Search] Query: "{query}" | Result: {result[:1000]}',
            memory_type=MemoryType.INTERNET_SEARCH,
            importance=INTERNET_SEARCH_IMPORTANCE,
            tags=["internet", search_type, search_source.lower().replace(" ", "_")],
            topic=search_type,
            source="external",
            metadata={"searchQuery": query, "searchSource": search_source},
        )
        await self.store.add(record)
        return record

    async def store_device_action(
        self,
        user_id: str,
        device_name: str,
        command: str,
        result: str,
    ) -> MemoryRecord:
        record = MemoryRecord(
            id=new_memory_id(),
            user_id=user_id,
            content=f"[Smart Home] {device_name}: {command} -> {result}",
            memory_type=MemoryType.SMART_HOME,
            importance=SMART_HOME_IMPORTANCE,
            tags=["smart_home", "lighting", command],
            topic="smart-home-control",
            source="system",
        )
        await self.store.add(record)
        return record

    async def store_workspace_action(
        self,
        user_id: str,
        tool_name: str,
        tool_input: Dict[str, Any],
        result: str,
        is_write: bool,
    ) -> MemoryRecord:
        summary = json.dumps(tool_input, sort_keys=True, default=str)[:300]
        record = MemoryRecord(
            id=new_memory_id(),
            user_id=user_id,
            content=f"[Workspace] {tool_name} {summary} | Result: {result[:500]}",
            memory_type=MemoryType.WORKSPACE_ACTION,
            importance=WORKSPACE_WRITE_IMPORTANCE if is_write else WORKSPACE_READ_IMPORTANCE,
            tags=["workspace", tool_name],
            topic="workspace",
            memory_scope=MemoryScope.ENGINEERING,
            source="external",
            metadata={"toolName": tool_name},
        )
        await self.store.add(record)
        return record

    # =========================================================================
    # Retrieval
    # =========================================================================

    async def _bounded_search(self, label: str, **kwargs) -> List[MemoryHit]:
        try:
            return await asyncio.wait_for(self.store.search(**kwargs), timeout=self.retrieval_timeout)
        except asyncio.TimeoutError:
            logger.warning("memory_search_timeout", search=label, timeout=self.retrieval_timeout)
        except Exception as e:
            logger.warning("memory_search_failed", search=label, error=str(e))
        return []

    async def retrieve_context(self, user_id: str, query: str) -> Optional[str]:
        """
        Build the memory context block for a turn.

        Facts/preferences and past conversations are searched in parallel,
        each bounded by the retrieval timeout. Returns None when nothing
        useful was found.
        """
        fact_hits, conversation_hits = await asyncio.gather(
            self._bounded_search(
                "facts", query=query, user_id=user_id, limit=10, threshold=0.1,
                memory_types=[MemoryType.FACT, MemoryType.PREFERENCE],
            ),
            self._bounded_search(
                "conversations", query=query, user_id=user_id, limit=20, threshold=0.2,
                memory_types=[MemoryType.CONVERSATION],
            ),
        )

        seen = set()
        relevant: List[MemoryRecord] = []
        for hit in [*fact_hits, *conversation_hits]:
            key = hit.record.content[:100]
            if key in seen:
                continue
            seen.add(key)
            record = hit.record
            if record.memory_type == MemoryType.CONVERSATION and record.content.lower().startswith(_QUESTION_ECHOES):
                continue
            relevant.append(record)

        logger.info(
            "memory_context_retrieved",
            facts=len(fact_hits),
            conversations=len(conversation_hits),
            kept=len(relevant),
        )
        if not relevant:
            return None
        return self.format_context(relevant)

    @staticmethod
    def format_context(records: Sequence[MemoryRecord]) -> str:
        facts = [r for r in records if r.memory_type == MemoryType.FACT]
        preferences = [r for r in records if r.memory_type == MemoryType.PREFERENCE]
        conversations = [r for r in records if r.memory_type == MemoryType.CONVERSATION]

        lines = ["Relevant information from memory:", ""]
        if facts:
            lines.append("**Important Facts:**")
            lines.extend(f"- {r.content}" for r in facts)
            lines.append("")
        if preferences:
            lines.append("**User Preferences:**")
            lines.extend(f"- {r.content}" for r in preferences)
            lines.append("")
        if conversations:
            lines.append("**Related Past Conversations:**")
            for r in conversations[:5]:
                text = r.content[:200] + ("..." if len(r.content) > 200 else "")
                lines.append(f"- {text}")
        return "\n".join(lines).rstrip() + "\n"

    # =========================================================================
    # Feedback scan (administrators only; callers enforce permission)
    # =========================================================================

    async def scan_feedback(self, limit: int = 30, threshold: float = 0.4) -> List[FeedbackSnippet]:
        results: Dict[str, FeedbackSnippet] = {}
        for query in FEEDBACK_QUERIES:
            try:
                hits = await self.store.search(
                    query,
                    user_id=None,
                    limit=limit,
                    threshold=threshold,
                    memory_types=[MemoryType.CONVERSATION],
                    exclude_scopes=[MemoryScope.COMPANION],
                )
            except Exception as e:
                logger.error("feedback_scan_query_failed", query=query, error=str(e))
                continue
            for hit in hits:
                existing = results.get(hit.record.id)
                if existing is None or hit.score > existing.score:
                    results[hit.record.id] = FeedbackSnippet(
                        id=hit.record.id,
                        content=hit.record.content,
                        user_id=hit.record.user_id,
                        memory_type=hit.record.memory_type.value,
                        created_at=hit.record.created_at,
                        score=hit.score,
                        tags=list(hit.record.tags),
                    )

        logger.info("feedback_scan_complete", unique=len(results))
        return sorted(results.values(), key=lambda s: s.score, reverse=True)
