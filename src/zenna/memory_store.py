"""
Vector memory storage.

``QdrantMemoryStore`` keeps every memory as a point in one Qdrant collection,
embedded locally with fastembed and filtered by ``userId`` payload. The
``InMemoryMemoryStore`` keeps the same contract in process (token-overlap
similarity) for single-node development and tests.
"""
import asyncio
import re
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

import structlog
from fastembed import TextEmbedding
from qdrant_client import AsyncQdrantClient
from qdrant_client.models import (
    Direction,
    Distance,
    FieldCondition,
    Filter,
    MatchAny,
    MatchValue,
    OrderBy,
    PayloadSchemaType,
    PointStruct,
    VectorParams,
)

from .models import MemoryHit, MemoryRecord, MemoryScope, MemoryType

logger = structlog.get_logger()


@dataclass
class StoredPoint:
    """A raw stored memory, vector included. Used for bulk re-ownership."""
    id: str
    payload: Dict[str, Any]
    vector: Optional[List[float]] = field(default=None, repr=False)


def record_to_payload(record: MemoryRecord) -> Dict[str, Any]:
    payload = record.model_dump(mode="json", by_alias=True, exclude={"id"})
    payload["createdAtTs"] = record.created_at.timestamp()
    return payload


def payload_to_record(point_id: Any, payload: Dict[str, Any]) -> MemoryRecord:
    return MemoryRecord.model_validate({**payload, "id": str(point_id)})


class MemoryStore(ABC):
    """Per-user semantic memory."""

    async def initialize(self) -> None:
        pass

    async def close(self) -> None:
        pass

    @abstractmethod
    async def add(self, record: MemoryRecord) -> MemoryRecord:
        """Persist one record. Returns once the write is durable."""

    @abstractmethod
    async def search(
        self,
        query: str,
        *,
        user_id: Optional[str],
        limit: int,
        threshold: float,
        memory_types: Optional[Sequence[MemoryType]] = None,
        exclude_scopes: Optional[Sequence[MemoryScope]] = None,
    ) -> List[MemoryHit]:
        """Similarity search. ``user_id=None`` searches across all users."""

    @abstractmethod
    async def recent(self, user_id: str, limit: int, memory_types: Sequence[MemoryType]) -> List[MemoryRecord]:
        """Most recent ``limit`` records, oldest first."""

    @abstractmethod
    async def scroll_user(self, user_id: str) -> List[StoredPoint]:
        """Every stored point owned by a user, vectors included."""

    @abstractmethod
    async def upsert_points(self, points: List[StoredPoint]) -> None:
        """Write raw points back, keeping ids and vectors."""

    async def health_check(self) -> bool:
        return True


# ============================================================================
# Qdrant
# ============================================================================

class QdrantMemoryStore(MemoryStore):

    def __init__(
        self,
        url: str,
        collection: str,
        embedding_model: str,
        api_key: Optional[str] = None,
        client: Optional[AsyncQdrantClient] = None,
        embedder: Optional[TextEmbedding] = None,
    ):
        self.collection = collection
        self.embedding_model = embedding_model
        self.client = client or AsyncQdrantClient(url=url, api_key=api_key or None, timeout=10)
        self._embedder = embedder

    def _get_embedder(self) -> TextEmbedding:
        if self._embedder is None:
            self._embedder = TextEmbedding(model_name=self.embedding_model)
            logger.info("embedder_loaded", model=self.embedding_model)
        return self._embedder

    def _embed_sync(self, text: str) -> List[float]:
        return list(next(iter(self._get_embedder().embed([text]))))

    async def embed(self, text: str) -> List[float]:
        # fastembed runs ONNX inference synchronously
        vector = await asyncio.to_thread(self._embed_sync, text)
        return [float(v) for v in vector]

    async def initialize(self) -> None:
        if await self.client.collection_exists(self.collection):
            return
        dimension = len(await self.embed("dimension probe"))
        await self.client.create_collection(
            collection_name=self.collection,
            vectors_config=VectorParams(size=dimension, distance=Distance.COSINE),
        )
        await self.client.create_payload_index(self.collection, "userId", PayloadSchemaType.KEYWORD)
        await self.client.create_payload_index(self.collection, "memoryType", PayloadSchemaType.KEYWORD)
        await self.client.create_payload_index(self.collection, "createdAtTs", PayloadSchemaType.FLOAT)
        logger.info("qdrant_collection_created", collection=self.collection, dimension=dimension)

    async def close(self) -> None:
        await self.client.close()

    async def health_check(self) -> bool:
        try:
            await self.client.get_collections()
            return True
        except Exception as e:
            logger.warning("qdrant_health_check_failed", error=str(e))
            return False

    def _filter(
        self,
        user_id: Optional[str],
        memory_types: Optional[Sequence[MemoryType]],
        exclude_scopes: Optional[Sequence[MemoryScope]] = None,
    ) -> Optional[Filter]:
        must = []
        must_not = []
        if user_id is not None:
            must.append(FieldCondition(key="userId", match=MatchValue(value=user_id)))
        if memory_types:
            must.append(FieldCondition(key="memoryType", match=MatchAny(any=[t.value for t in memory_types])))
        if exclude_scopes:
            must_not.append(FieldCondition(key="memoryScope", match=MatchAny(any=[s.value for s in exclude_scopes])))
        if not must and not must_not:
            return None
        return Filter(must=must or None, must_not=must_not or None)

    async def add(self, record: MemoryRecord) -> MemoryRecord:
        vector = await self.embed(record.content)
        await self.client.upsert(
            collection_name=self.collection,
            points=[PointStruct(id=record.id, vector=vector, payload=record_to_payload(record))],
            wait=True,
        )
        return record

    async def search(self, query, *, user_id, limit, threshold, memory_types=None, exclude_scopes=None):
        vector = await self.embed(query)
        response = await self.client.query_points(
            collection_name=self.collection,
            query=vector,
            query_filter=self._filter(user_id, memory_types, exclude_scopes),
            limit=limit,
            score_threshold=threshold,
            with_payload=True,
        )
        return [
            MemoryHit(record=payload_to_record(point.id, point.payload or {}), score=point.score)
            for point in response.points
        ]

    async def recent(self, user_id, limit, memory_types):
        points, _ = await self.client.scroll(
            collection_name=self.collection,
            scroll_filter=self._filter(user_id, memory_types),
            limit=limit,
            order_by=OrderBy(key="createdAtTs", direction=Direction.DESC),
            with_payload=True,
        )
        records = [payload_to_record(point.id, point.payload or {}) for point in points]
        records.reverse()
        return records

    async def scroll_user(self, user_id):
        points: List[StoredPoint] = []
        offset = None
        while True:
            batch, offset = await self.client.scroll(
                collection_name=self.collection,
                scroll_filter=self._filter(user_id, None),
                limit=256,
                offset=offset,
                with_payload=True,
                with_vectors=True,
            )
            points.extend(StoredPoint(str(p.id), dict(p.payload or {}), p.vector) for p in batch)
            if offset is None:
                return points

    async def upsert_points(self, points):
        if not points:
            return
        await self.client.upsert(
            collection_name=self.collection,
            points=[PointStruct(id=p.id, vector=p.vector, payload=p.payload) for p in points],
            wait=True,
        )


# ============================================================================
# In-process
# ============================================================================

_TOKEN = re.compile(r"[a-z0-9']+")


def _tokens(text: str) -> set:
    return set(_TOKEN.findall(text.lower()))


def _similarity(query: Iterable[str], text: Iterable[str]) -> float:
    query, text = set(query), set(text)
    if not query or not text:
        return 0.0
    return len(query & text) / len(query | text)


class InMemoryMemoryStore(MemoryStore):
    """Process-local store with the same semantics as the Qdrant store."""

    def __init__(self):
        self._points: Dict[str, StoredPoint] = {}
        self._lock = asyncio.Lock()

    async def add(self, record: MemoryRecord) -> MemoryRecord:
        async with self._lock:
            self._points[record.id] = StoredPoint(record.id, record_to_payload(record))
        return record

    def _records(self) -> List[MemoryRecord]:
        return [payload_to_record(p.id, p.payload) for p in self._points.values()]

    async def search(self, query, *, user_id, limit, threshold, memory_types=None, exclude_scopes=None):
        query_tokens = _tokens(query)
        hits = []
        for record in self._records():
            if user_id is not None and record.user_id != user_id:
                continue
            if memory_types and record.memory_type not in memory_types:
                continue
            if exclude_scopes and record.memory_scope in exclude_scopes:
                continue
            score = _similarity(query_tokens, _tokens(record.content))
            if score >= threshold:
                hits.append(MemoryHit(record=record, score=score))
        hits.sort(key=lambda hit: hit.score, reverse=True)
        return hits[:limit]

    async def recent(self, user_id, limit, memory_types):
        records = [
            r for r in self._records()
            if r.user_id == user_id and r.memory_type in memory_types
        ]
        records.sort(key=lambda r: r.created_at)
        return records[-limit:] if limit else []

    async def scroll_user(self, user_id):
        return [
            StoredPoint(p.id, dict(p.payload), p.vector)
            for p in self._points.values()
            if p.payload.get("userId") == user_id
        ]

    async def upsert_points(self, points):
        async with self._lock:
            for point in points:
                self._points[point.id] = StoredPoint(point.id, dict(point.payload), point.vector)


def new_memory_id() -> str:
    return str(uuid.uuid4())


def build_memory_store(config) -> MemoryStore:
    """Construct the configured store."""
    if config.memory_backend == "memory":
        logger.info("memory_store_selected", backend="memory")
        return InMemoryMemoryStore()
    logger.info("memory_store_selected", backend="qdrant", url=config.qdrant_url, collection=config.qdrant_collection)
    return QdrantMemoryStore(
        url=config.qdrant_url,
        collection=config.qdrant_collection,
        embedding_model=config.embedding_model,
        api_key=config.qdrant_api_key,
    )
