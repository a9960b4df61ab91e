"""
Unit tests for action block post-processing.
"""
from unittest.mock import AsyncMock

import httpx
import pytest

from zenna_shared.errors import IntegrationError, IntegrationErrorKind

from zenna.action_blocks import (
    BLOCK_FAILURE_MESSAGES,
    LIGHTING_NOT_CONNECTED,
    SMART_HOME_TAGS,
    SMART_HOME_TOPIC,
    ActionBlockProcessor,
    extract_action_blocks,
    strip_action_blocks,
)
from zenna.models import MemoryType, Role, UserSettings
from zenna.scheduling import SchedulingClient

LIGHT_ON_BLOCK = '```json\n{"action":"control_lights","targetType":"light","targetId":"abc","state":"on"}\n```'

SCHEDULE_BLOCK = (
    '```json\n{"action":"create_schedule","integration":"lighting","actionId":"turn-on",'
    '"time":"07:30","scheduleType":"daily","parameters":{"target":"bedroom"}}\n```'
)


@pytest.fixture
def processor(mock_lighting, mock_scheduling, memory):
    return ActionBlockProcessor(mock_lighting, mock_scheduling, memory)


# =============================================================================
# Parsing
# =============================================================================

class TestParsing:

    def test_extract_in_order(self):
        text = f"{LIGHT_ON_BLOCK}\nand\n{SCHEDULE_BLOCK}"
        actions = [block["action"] for block in extract_action_blocks(text)]
        assert actions == ["control_lights", "create_schedule"]

    def test_malformed_block_is_skipped(self):
        text = "```json\n{not json}\n```\n" + LIGHT_ON_BLOCK
        assert len(extract_action_blocks(text)) == 1

    def test_strip_removes_every_fence(self):
        text = f"Sure.\n{LIGHT_ON_BLOCK}\n```json\n{{broken\n```\nBye."
        assert "```" not in strip_action_blocks(text)


# =============================================================================
# Processing
# =============================================================================

class TestProcess:

    @pytest.mark.asyncio
    async def test_no_blocks_returns_none(self, processor, connected_settings):
        assert await processor.process("Just chatting.", "user-2", connected_settings) is None

    @pytest.mark.asyncio
    async def test_light_block_confirmation_replaces_text(self, processor, connected_settings, mock_lighting):
        text = f"{LIGHT_ON_BLOCK}\nTurning on the light for you now!"

        result = await processor.process(text, "user-2", connected_settings)

        assert result.confirmation == "Done! I've turned on the abc."
        assert result.cleaned_response == result.confirmation
        assert result.device_action
        command = mock_lighting.execute.await_args.args[1]
        assert command.target_id == "abc"
        assert command.state == "on"

    @pytest.mark.asyncio
    async def test_successful_action_is_logged_to_memory(self, processor, connected_settings, store):
        await processor.process(LIGHT_ON_BLOCK, "user-2", connected_settings)

        records = await store.recent("user-2", 10, [MemoryType.CONVERSATION])
        assert len(records) == 1
        assert records[0].role == Role.SYSTEM
        assert records[0].tags == SMART_HOME_TAGS
        assert records[0].topic == SMART_HOME_TOPIC

    @pytest.mark.asyncio
    async def test_lighting_not_connected(self, processor, mock_lighting):
        result = await processor.process(LIGHT_ON_BLOCK, "user-1", UserSettings())

        assert result.cleaned_response == LIGHTING_NOT_CONNECTED
        assert not result.device_action
        mock_lighting.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failure_message_strips_error_code(self, processor, connected_settings, mock_lighting):
        mock_lighting.execute.side_effect = IntegrationError(
            "Lighting", IntegrationErrorKind.NOT_FOUND, "HUE_NOT_FOUND: That light doesn't exist anymore."
        )

        result = await processor.process(LIGHT_ON_BLOCK, "user-2", connected_settings)

        assert result.cleaned_response == (
            "I had trouble controlling the lights: That light doesn't exist anymore."
        )
        assert "```" not in result.cleaned_response

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_the_others(self, processor, connected_settings, mock_lighting, mock_scheduling):
        mock_lighting.execute.side_effect = IntegrationError("Lighting", IntegrationErrorKind.SERVER_ERROR)

        result = await processor.process(f"{LIGHT_ON_BLOCK}\n{SCHEDULE_BLOCK}", "user-2", connected_settings)

        assert [o.success for o in result.outcomes] == [False, True]
        mock_scheduling.create_routine.assert_awaited_once()
        assert "daily schedule" in result.cleaned_response

    @pytest.mark.asyncio
    async def test_unexpected_error_does_not_stop_the_others(self, mock_lighting, memory, connected_settings):
        # Backend accepts the routine but answers with a non-JSON body
        scheduling = SchedulingClient("http://admin.test", "svc-key", transport=httpx.MockTransport(
            lambda request: httpx.Response(200, text="OK")
        ))
        processor = ActionBlockProcessor(mock_lighting, scheduling, memory)

        result = await processor.process(f"{SCHEDULE_BLOCK}\n{LIGHT_ON_BLOCK}", "user-2", connected_settings)

        assert [(o.action, o.success) for o in result.outcomes] == [
            ("create_schedule", False),
            ("control_lights", True),
        ]
        mock_lighting.execute.assert_awaited_once()
        assert result.cleaned_response.startswith(BLOCK_FAILURE_MESSAGES["create_schedule"])
        assert "```" not in result.cleaned_response

    @pytest.mark.asyncio
    async def test_unknown_action_only_strips(self, processor, connected_settings):
        text = 'Hi there.\n```json\n{"action":"launch_rocket"}\n```'

        result = await processor.process(text, "user-2", connected_settings)

        assert result.outcomes == []
        assert result.cleaned_response == "Hi there."

    @pytest.mark.asyncio
    async def test_memory_failure_does_not_fail_action(self, mock_lighting, mock_scheduling, connected_settings):
        memory = AsyncMock()
        memory.append_turn.side_effect = RuntimeError("store down")
        processor = ActionBlockProcessor(mock_lighting, mock_scheduling, memory)

        result = await processor.process(LIGHT_ON_BLOCK, "user-2", connected_settings)

        assert result.outcomes[0].success
