"""Per-turn stage timing."""
import time
from contextlib import asynccontextmanager, contextmanager
from typing import Dict, Optional

from .metrics import stage_duration


class TimingTracker:
    """Records how long each stage of one turn took.

    Stage durations are kept in milliseconds for the turn's summary log line
    and observed into the ``zenna_turn_stage_seconds`` histogram.

    Usage:
        async with tracker.track_async("retrieving_memory"):
            context = await memory.retrieve_context(...)
    """

    def __init__(self):
        self.start_time = time.monotonic()
        self.stages: Dict[str, int] = {}
        self.first_token_ms: Optional[int] = None

    def elapsed(self) -> float:
        """Seconds since the turn started."""
        return time.monotonic() - self.start_time

    def record(self, stage: str, duration_seconds: float):
        self.stages[f"{stage}_ms"] = int(duration_seconds * 1000)
        stage_duration.labels(stage=stage).observe(duration_seconds)

    @contextmanager
    def track(self, stage: str):
        start = time.monotonic()
        try:
            yield
        finally:
            self.record(stage, time.monotonic() - start)

    @asynccontextmanager
    async def track_async(self, stage: str):
        start = time.monotonic()
        try:
            yield
        finally:
            self.record(stage, time.monotonic() - start)

    def mark_first_token(self) -> bool:
        """Record time-to-first-token. Returns True only on the first call."""
        if self.first_token_ms is not None:
            return False
        self.first_token_ms = int(self.elapsed() * 1000)
        return True

    def finalize(self) -> Dict[str, Optional[int]]:
        return {
            "total_ms": int(self.elapsed() * 1000),
            "first_token_ms": self.first_token_ms,
            **self.stages,
        }
