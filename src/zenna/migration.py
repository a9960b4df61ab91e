"""
Memory ownership migration.

Moves every stored memory from one user id to another, for example when an
account is re-created or two identities are merged. Points keep their ids
and vectors; only ownership changes, with a record of where they came from.
"""
from datetime import datetime, timezone
from typing import List

import structlog

from zenna_shared.errors import BadRequestError

from .memory_store import MemoryStore, StoredPoint

logger = structlog.get_logger()

BATCH_SIZE = 100


async def migrate_memories(store: MemoryStore, from_user_id: str, to_user_id: str) -> int:
    """Re-own all of ``from_user_id``'s points. Returns the number migrated."""
    if not from_user_id or not to_user_id:
        raise BadRequestError("Both fromUserId and toUserId are required")
    if from_user_id == to_user_id:
        raise BadRequestError("Source and target user are the same")

    points = await store.scroll_user(from_user_id)
    if not points:
        logger.info("memory_migration_nothing_to_do", from_user_id=from_user_id)
        return 0

    migrated_at = datetime.now(timezone.utc).isoformat()
    rewritten: List[StoredPoint] = [
        StoredPoint(
            id=point.id,
            payload={
                **point.payload,
                "userId": to_user_id,
                "migratedFrom": from_user_id,
                "migratedAt": migrated_at,
            },
            vector=point.vector,
        )
        for point in points
    ]

    for start in range(0, len(rewritten), BATCH_SIZE):
        await store.upsert_points(rewritten[start:start + BATCH_SIZE])

    logger.info(
        "memory_migration_complete",
        from_user_id=from_user_id,
        to_user_id=to_user_id,
        count=len(rewritten),
    )
    return len(rewritten)
