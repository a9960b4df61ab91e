"""Prometheus metrics for the turn service."""
from prometheus_client import Counter, Histogram

turn_counter = Counter(
    'zenna_turns_total',
    'Chat turns by outcome',
    ['outcome']
)

turn_duration = Histogram(
    'zenna_turn_duration_seconds',
    'Wall-clock duration of a chat turn',
    buckets=[0.5, 1.0, 2.5, 5.0, 10.0, 20.0, 30.0, 45.0, 60.0, 90.0]
)

first_token_latency = Histogram(
    'zenna_time_to_first_token_seconds',
    'Time from turn start to the first streamed text chunk',
    buckets=[0.25, 0.5, 1.0, 2.0, 3.0, 5.0, 10.0, 20.0, 45.0]
)

stage_duration = Histogram(
    'zenna_turn_stage_seconds',
    'Duration of individual turn stages',
    ['stage']
)

tool_invocations = Counter(
    'zenna_tool_invocations_total',
    'Tool calls by tool and outcome',
    ['tool', 'outcome']
)

background_write_failures = Counter(
    'zenna_background_write_failures_total',
    'Background memory writes that failed or timed out'
)
