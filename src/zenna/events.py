"""
Turn events streamed to the client as server-sent events.

Each event serializes to one SSE frame: ``data: {json}\\n\\n``. Field names
are camelCase on the wire.
"""
from typing import Literal, Optional, Union

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class _Event(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_sse(self) -> str:
        return f"data: {self.model_dump_json(by_alias=True, exclude_none=True)}\n\n"


class ThinkingEvent(_Event):
    """Advisory progress message while no output has been produced yet."""
    type: Literal["thinking"] = "thinking"
    content: str
    stage: int


class StatusEvent(_Event):
    """A tool is being run on the user's behalf."""
    type: Literal["status"] = "status"
    action: str
    tool: str
    tool_index: Optional[int] = None
    total_tools: Optional[int] = None


class TextEvent(_Event):
    type: Literal["text"] = "text"
    content: str


class CompleteEvent(_Event):
    type: Literal["complete"] = "complete"
    full_response: str
    emotion: str


class ErrorEvent(_Event):
    type: Literal["error"] = "error"
    error: str


TurnEvent = Union[ThinkingEvent, StatusEvent, TextEvent, CompleteEvent, ErrorEvent]

TERMINAL_EVENTS = (CompleteEvent, ErrorEvent)


def is_terminal(event: TurnEvent) -> bool:
    return isinstance(event, TERMINAL_EVENTS)
