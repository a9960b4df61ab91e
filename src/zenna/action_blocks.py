"""
Post-processing of fenced JSON action blocks in assistant responses.

The model can request side effects by embedding blocks such as

    ```json
    {"action": "control_lights", "targetId": "abc", "targetType": "light", "state": "on"}
    ```

Every json-fenced block is removed from the visible response. Recognised
actions are dispatched; each produces a confirmation sentence, and when
any confirmation exists it replaces the visible text. Unknown actions and
malformed JSON are logged and skipped.
"""
import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import structlog
from pydantic import ValidationError

from zenna_shared.errors import IntegrationError, user_message_for

from .integrations.lighting import LightCommand, LightingClient
from .memory_manager import MemoryOrchestrator
from .models import Role, UserSettings
from .scheduling import ScheduleRequest, SchedulingClient

logger = structlog.get_logger()

ACTION_BLOCK = re.compile(r"```json\s*([\s\S]*?)\s*```")

SMART_HOME_TAGS = ["Smart Home", "Lighting"]
SMART_HOME_TOPIC = "smart-home-control"

LIGHTING_NOT_CONNECTED = (
    "I'd love to help with the lights, but the lighting connection needs to be set up "
    "first. You can connect it in Settings > Integrations."
)

BLOCK_FAILURE_MESSAGES = {
    "control_lights": "I had trouble controlling the lights. Please try again in a moment.",
    "create_schedule": "I couldn't set up that schedule. Please try again in a moment.",
}


@dataclass
class ActionOutcome:
    action: str
    success: bool
    confirmation: str


@dataclass
class ActionResult:
    cleaned_response: str
    outcomes: List[ActionOutcome] = field(default_factory=list)

    @property
    def confirmation(self) -> Optional[str]:
        sentences = [o.confirmation for o in self.outcomes if o.confirmation]
        return " ".join(sentences) if sentences else None

    @property
    def device_action(self) -> bool:
        return any(o.action in ("control_lights", "create_schedule") and o.success for o in self.outcomes)


def extract_action_blocks(text: str) -> List[Dict[str, Any]]:
    """Parse every json-fenced block that holds a JSON object, in order."""
    blocks = []
    for match in ACTION_BLOCK.finditer(text):
        try:
            data = json.loads(match.group(1))
        except json.JSONDecodeError:
            logger.warning("action_block_malformed", preview=match.group(1)[:80])
            continue
        if isinstance(data, dict):
            blocks.append(data)
    return blocks


def strip_action_blocks(text: str) -> str:
    return ACTION_BLOCK.sub("", text).strip()


class ActionBlockProcessor:

    def __init__(
        self,
        lighting: LightingClient,
        scheduling: SchedulingClient,
        memory: MemoryOrchestrator,
    ):
        self.lighting = lighting
        self.scheduling = scheduling
        self.memory = memory

    async def process(self, text: str, user_id: str, settings: UserSettings) -> Optional[ActionResult]:
        """
        Dispatch the response's action blocks.

        Returns None when the response contains no action blocks.
        """
        if not ACTION_BLOCK.search(text):
            return None

        outcomes = []
        for block in extract_action_blocks(text):
            action = block.get("action")
            if action not in BLOCK_FAILURE_MESSAGES:
                logger.warning("action_block_unknown", action=action)
                continue
            try:
                if action == "control_lights":
                    outcome = await self._control_lights(block, user_id, settings)
                else:
                    outcome = await self._create_schedule(block, user_id)
            except Exception:
                # One bad block never stops the rest
                logger.exception("action_block_failed", action=action)
                outcome = ActionOutcome(action, False, BLOCK_FAILURE_MESSAGES[action])
            outcomes.append(outcome)

        cleaned = strip_action_blocks(text)
        result = ActionResult(cleaned_response=cleaned, outcomes=outcomes)
        if result.confirmation:
            result.cleaned_response = result.confirmation
        return result

    async def _log_action(self, user_id: str, content: str) -> None:
        try:
            await self.memory.append_turn(
                user_id, Role.SYSTEM, content, tags=list(SMART_HOME_TAGS), topic=SMART_HOME_TOPIC,
            )
        except Exception as e:
            logger.warning("action_log_failed", error=str(e))

    async def _control_lights(self, block: Dict[str, Any], user_id: str, settings: UserSettings) -> ActionOutcome:
        lighting = settings.lighting
        if lighting is None or not lighting.connected:
            return ActionOutcome("control_lights", False, LIGHTING_NOT_CONNECTED)

        try:
            command = LightCommand.model_validate(block)
        except ValidationError as e:
            logger.warning("light_command_invalid", error=str(e))
            return ActionOutcome("control_lights", False,
                                 "I had trouble controlling the lights: that request didn't look right.")

        try:
            result = await self.lighting.execute(lighting, command)
        except IntegrationError as e:
            logger.warning("light_command_failed", kind=e.kind.value, error=str(e))
            return ActionOutcome("control_lights", False,
                                 f"I had trouble controlling the lights: {user_message_for(e)}")

        await self._log_action(user_id, f"[Lighting Action] {result}")
        return ActionOutcome("control_lights", True, f"Done! I've {result}.")

    async def _create_schedule(self, block: Dict[str, Any], user_id: str) -> ActionOutcome:
        try:
            request = ScheduleRequest.model_validate(block)
        except ValidationError as e:
            logger.warning("schedule_request_invalid", error=str(e))
            return ActionOutcome("create_schedule", False,
                                 "I couldn't set up that schedule because some details were missing.")

        try:
            await self.scheduling.create_routine(user_id, request)
        except IntegrationError as e:
            logger.warning("schedule_create_failed", kind=e.kind.value, error=str(e))
            return ActionOutcome("create_schedule", False,
                                 f"I couldn't set up that schedule: {user_message_for(e)}")

        confirmation = request.confirmation()
        await self._log_action(user_id, f"[Lighting Schedule] {confirmation}")
        return ActionOutcome("create_schedule", True, confirmation)
