"""
Conversational turn pipeline.

One turn runs through these stages, in order:

    authenticating -> loading-context -> assembling-prompt -> retrieving-memory
    -> generating -> post-processing -> persisting -> complete

Failures before generation raise ``ZennaException`` subclasses so the HTTP
layer can answer with a status code. Once the event stream has started, the
only way a turn reports failure is a terminal ``ErrorEvent``.

Generation runs as a producer task that pushes chunks onto a queue. The
consumer side (``TurnPipeline.stream``) also receives "thinking" events from
escalating timers, enforces the hard wall-clock budget on every item it
takes off the queue, and stops emitting the moment the turn is superseded or
interrupted.
"""
import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Union

import httpx
import structlog

from zenna_shared.config import ZennaConfig
from zenna_shared.errors import (
    BadRequestError,
    NotFoundError,
    ServiceUnavailableError,
    UnauthorizedError,
    UpstreamError,
    UpstreamTimeoutError,
)
from zenna_shared.llm_router import (
    ChunkKind,
    GenerationError,
    GenerationProvider,
    LLMRouter,
    StreamChunk,
)
from zenna_shared.logging_config import bind_turn_context, clear_turn_context

from .action_blocks import SMART_HOME_TAGS, SMART_HOME_TOPIC, ActionBlockProcessor
from .emotion import EmotionLabel, classify_emotion
from .events import CompleteEvent, ErrorEvent, StatusEvent, TextEvent, ThinkingEvent, TurnEvent, is_terminal
from .fact_extractor import extract_facts
from .identity import IdentityClient
from .memory_manager import MemoryOrchestrator
from .metrics import background_write_failures, first_token_latency, turn_counter, turn_duration
from .models import ConversationTurn, MasterConfig, Role, User
from .permissions import ToolPermissionContext
from .prompt_builder import BACKGROUND_NOISE_PREFIX, PromptAssembler, memory_system_message
from .sessions import TurnHandle, TurnRegistry
from .timing import TimingTracker
from .tools import ToolCallContext, ToolDispatcher, tool_schemas_for

logger = structlog.get_logger()

DEFAULT_ERROR_MESSAGE = "I apologize, but I'm having trouble responding right now."
TIMEOUT_ERROR_MESSAGE = "I'm sorry, I'm taking longer than expected. Please try again in a moment."
CUT_OFF_ERROR_MESSAGE = "I'm sorry, my answer took too long and was cut off. Please try again."
RATE_LIMIT_ERROR_MESSAGE = "I'm receiving a lot of requests right now. Please give me a moment and try again."

BACKGROUND_NOISE_REQUEST = (
    "I'm detecting some background noise. Please acknowledge this briefly and let me know "
    "you'll wait for me to speak clearly. Keep it to one short sentence."
)

# One message per escalation step; the last one repeats if more offsets are configured
THINKING_MESSAGES = (
    "I'm taking a moment to think about this carefully...",
    "Still working on it, this one needs a bit more digging...",
    "Almost there, thanks for your patience...",
)


class TurnStage(str, Enum):
    AUTHENTICATING = "authenticating"
    LOADING_CONTEXT = "loading-context"
    ASSEMBLING_PROMPT = "assembling-prompt"
    RETRIEVING_MEMORY = "retrieving-memory"
    GENERATING = "generating"
    POST_PROCESSING = "post-processing"
    PERSISTING = "persisting"
    COMPLETE = "complete"
    ERRORED = "errored"


@dataclass
class PreparedTurn:
    """Everything loaded before the event stream starts."""
    handle: TurnHandle
    user: User
    permissions: ToolPermissionContext
    master_config: MasterConfig
    history: List[ConversationTurn]
    provider: GenerationProvider
    message: str
    is_background_noise: bool = False
    # Started when preparation begins; thinking offsets count from here
    tracker: TimingTracker = field(default_factory=TimingTracker)

    @property
    def generation_message(self) -> str:
        return BACKGROUND_NOISE_REQUEST if self.is_background_noise else self.message


@dataclass
class TurnContext:
    """Mutable state of one running turn. Never persisted."""
    messages: List[Dict[str, str]]
    stage: TurnStage = TurnStage.ASSEMBLING_PROMPT
    text_parts: List[str] = field(default_factory=list)
    tool_calls: int = 0
    output_started: bool = False
    deadline: Optional[float] = None

    @property
    def text(self) -> str:
        return "".join(self.text_parts)

    def budget_exhausted(self) -> bool:
        return self.deadline is not None and asyncio.get_running_loop().time() >= self.deadline


class _EndOfStream:
    pass


_END = _EndOfStream()

QueueItem = Union[StreamChunk, ThinkingEvent, BaseException, _EndOfStream]


class TurnPipeline:

    def __init__(
        self,
        config: ZennaConfig,
        identity: IdentityClient,
        memory: MemoryOrchestrator,
        router: LLMRouter,
        tools: ToolDispatcher,
        actions: ActionBlockProcessor,
        registry: Optional[TurnRegistry] = None,
        assembler: Optional[PromptAssembler] = None,
    ):
        self.config = config
        self.identity = identity
        self.memory = memory
        self.router = router
        self.tools = tools
        self.actions = actions
        self.registry = registry or TurnRegistry(write_timeout=config.fact_write_timeout)
        self.assembler = assembler or PromptAssembler()

    # =========================================================================
    # Before the stream
    # =========================================================================

    async def authenticate(self, token: Optional[str]) -> str:
        """Resolve a session token to a user id."""
        if not token:
            raise UnauthorizedError("Missing session token")
        try:
            user_id = await asyncio.wait_for(self.identity.authenticate(token), self.config.identity_timeout)
        except asyncio.TimeoutError:
            raise UpstreamTimeoutError("Session verification timed out")
        if not user_id:
            raise UnauthorizedError("Invalid or expired session")
        return user_id

    async def _load_user_and_config(self, user_id: str):
        timeout = self.config.identity_timeout
        try:
            user, master_config = await asyncio.gather(
                asyncio.wait_for(self.identity.get_user(user_id), timeout),
                asyncio.wait_for(self.identity.get_master_config(), timeout),
            )
        except asyncio.TimeoutError:
            raise UpstreamTimeoutError("Loading user profile timed out")
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404:
                raise NotFoundError("Master configuration not found")
            raise UpstreamError("identity", detail=f"HTTP {e.response.status_code}")
        if user is None:
            raise NotFoundError("User not found")
        return user, master_config

    async def _load_history(self, user_id: str) -> List[ConversationTurn]:
        try:
            return await asyncio.wait_for(
                self.memory.get_history(user_id, self.config.history_window),
                self.config.history_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("history_load_timeout", timeout=self.config.history_timeout)
        except Exception as e:
            logger.warning("history_load_failed", error=str(e))
        return []

    def resolve_provider(self, user: User, master_config: MasterConfig) -> GenerationProvider:
        """
        Pick the generation backend for a turn.

        Order: the user's own brain settings, then the deployment default
        from master config, then the service environment.
        """
        settings = user.settings
        brain = master_config.default_brain
        if settings.preferred_brain_provider:
            provider_id = settings.preferred_brain_provider
            api_key = settings.brain_api_key
            model = settings.brain_model
        elif brain is not None:
            provider_id, api_key, model = brain.provider_id, brain.api_key, brain.model
        else:
            provider_id, api_key, model = self.config.llm_provider, None, None

        if not api_key and provider_id == self.config.llm_provider:
            api_key = self.config.anthropic_api_key
        model = model or self.config.llm_model

        try:
            return self.router.get_provider(provider_id, model, api_key)
        except ValueError as e:
            logger.error("llm_provider_unavailable", provider=provider_id, error=str(e))
            raise ServiceUnavailableError("No language model is configured", detail=str(e))

    async def prepare(self, user_id: str, message: str) -> PreparedTurn:
        """
        Load everything a turn needs and register it as the user's active turn.

        Registering supersedes any turn still running for the same user.
        """
        if not message or not message.strip():
            raise BadRequestError("Message is required")

        tracker = TimingTracker()
        handle = self.registry.begin(user_id)
        try:
            # Writes from the superseded turn land before anything reads memory
            if handle.previous_writer is not None:
                await handle.previous_writer.flush(self.config.fact_write_timeout)

            async with tracker.track_async(TurnStage.LOADING_CONTEXT.value):
                user, master_config = await self._load_user_and_config(user_id)
                history = await self._load_history(user_id)
            provider = self.resolve_provider(user, master_config)
        except BaseException:
            self.registry.finish(handle)
            raise

        turn = PreparedTurn(
            handle=handle,
            user=user,
            permissions=ToolPermissionContext.from_user(user, self.config.primary_admin_email),
            master_config=master_config,
            history=history,
            provider=provider,
            message=message.strip(),
            is_background_noise=message.startswith(BACKGROUND_NOISE_PREFIX),
            tracker=tracker,
        )
        # Stored even if a newer message supersedes this turn before generation
        self._record_user_message(turn)
        return turn

    # =========================================================================
    # The stream
    # =========================================================================

    async def stream(self, turn: PreparedTurn) -> AsyncIterator[TurnEvent]:
        """Run the turn, yielding events in order. Ends after one terminal event."""
        handle = turn.handle
        bind_turn_context(handle.request_id, handle.user_id)
        tracker = turn.tracker
        outcome = "cancelled"
        events = self._run(turn, tracker)
        try:
            async for event in events:
                if handle.cancelled:
                    break
                if isinstance(event, CompleteEvent):
                    outcome = "complete"
                elif isinstance(event, ErrorEvent):
                    outcome = "error"
                yield event
        finally:
            await events.aclose()
            self.registry.finish(handle)
            if handle.writer.failures:
                background_write_failures.inc(handle.writer.failures)
            turn_counter.labels(outcome=outcome).inc()
            turn_duration.observe(tracker.elapsed())
            logger.info("turn_finished", outcome=outcome, **tracker.finalize())
            clear_turn_context()

    async def run_to_completion(self, turn: PreparedTurn) -> Union[CompleteEvent, ErrorEvent, None]:
        """Consume a turn server-side and return its terminal event (None if cancelled)."""
        terminal = None
        async for event in self.stream(turn):
            if is_terminal(event):
                terminal = event
        return terminal

    def _build_messages(self, turn: PreparedTurn, memory_context: Optional[str]) -> List[Dict[str, str]]:
        system_prompt = self.assembler.build(turn.master_config, turn.user.settings, turn.permissions)
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "system", "content": memory_system_message(memory_context)},
        ]
        messages.extend({"role": t.role.value, "content": t.content} for t in turn.history)
        messages.append({"role": "user", "content": turn.generation_message})
        return messages

    async def _retrieve_memory(self, turn: PreparedTurn) -> Optional[str]:
        if turn.is_background_noise:
            return None
        try:
            return await asyncio.wait_for(
                self.memory.retrieve_context(turn.user.id, turn.message),
                self.config.memory_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("memory_retrieval_timeout", timeout=self.config.memory_timeout)
        except Exception as e:
            logger.warning("memory_retrieval_failed", error=str(e))
        return None

    def _record_user_message(self, turn: PreparedTurn) -> None:
        """Queue the user turn and any extracted facts on the turn's writer."""
        if turn.is_background_noise:
            return
        writer = turn.handle.writer
        user_id = turn.user.id
        scope = turn.permissions.default_memory_scope
        writer.spawn(
            self.memory.append_turn(user_id, Role.USER, turn.message, memory_scope=scope),
            name="append_user_turn",
        )
        for fact in extract_facts(turn.message):
            writer.spawn(self.memory.store_fact(user_id, fact, scope), name=f"store_fact:{fact.topic}")

    async def _run(self, turn: PreparedTurn, tracker: TimingTracker) -> AsyncIterator[TurnEvent]:
        handle = turn.handle

        async with tracker.track_async(TurnStage.RETRIEVING_MEMORY.value):
            memory_context = await self._retrieve_memory(turn)
        if handle.cancelled:
            return

        ctx = TurnContext(messages=self._build_messages(turn, memory_context))

        ctx.stage = TurnStage.GENERATING
        async with tracker.track_async(TurnStage.GENERATING.value):
            async for event in self._generate(turn, ctx, tracker):
                yield event
        if handle.cancelled or ctx.stage == TurnStage.ERRORED:
            return

        ctx.stage = TurnStage.POST_PROCESSING
        try:
            async with tracker.track_async(TurnStage.POST_PROCESSING.value):
                final_text, device_action = await self._post_process(turn, ctx.text)
                emotion = classify_emotion(final_text) if final_text else EmotionLabel.NEUTRAL
        except Exception:
            logger.exception("post_processing_failed")
            ctx.stage = TurnStage.ERRORED
            yield ErrorEvent(error=DEFAULT_ERROR_MESSAGE)
            return
        if handle.cancelled:
            return
        if not final_text:
            logger.warning("empty_response", tool_calls=ctx.tool_calls)
            yield ErrorEvent(error=DEFAULT_ERROR_MESSAGE)
            return

        ctx.stage = TurnStage.PERSISTING
        async with tracker.track_async(TurnStage.PERSISTING.value):
            await self._persist(turn, final_text, device_action)
        if handle.cancelled:
            return

        ctx.stage = TurnStage.COMPLETE
        yield CompleteEvent(full_response=final_text, emotion=emotion.value)

    # =========================================================================
    # Generating
    # =========================================================================

    def _start_thinking_timers(self, ctx: TurnContext, queue: asyncio.Queue, handle: TurnHandle,
                               tracker: TimingTracker) -> List[asyncio.TimerHandle]:
        """Schedule the escalating "still working" events, offset from turn start."""
        loop = asyncio.get_running_loop()

        def fire(stage: int) -> None:
            # A timer that fires after output started (or after cancel) is a no-op
            if ctx.output_started or handle.cancelled:
                return
            text = THINKING_MESSAGES[min(stage - 1, len(THINKING_MESSAGES) - 1)]
            queue.put_nowait(ThinkingEvent(content=text, stage=stage))

        return [
            loop.call_later(max(0.0, offset - tracker.elapsed()), fire, stage)
            for stage, offset in enumerate(self.config.thinking_offsets, 1)
        ]

    async def _produce(
        self,
        provider: GenerationProvider,
        ctx: TurnContext,
        tools: List[Dict[str, Any]],
        execute_tool: Callable,
        queue: asyncio.Queue,
    ) -> None:
        try:
            async for chunk in provider.stream_with_tools(ctx.messages, tools, execute_tool):
                await queue.put(chunk)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await queue.put(e)
        finally:
            queue.put_nowait(_END)

    async def _generate(self, turn: PreparedTurn, ctx: TurnContext, tracker: TimingTracker) -> AsyncIterator[TurnEvent]:
        handle = turn.handle
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()
        ctx.deadline = loop.time() + self.config.hard_generation_timeout

        tool_context = ToolCallContext(
            permissions=turn.permissions,
            settings=turn.user.settings,
            writer=handle.writer,
            provider=turn.provider,
            expired=lambda: handle.cancelled or ctx.budget_exhausted(),
        )

        async def execute_tool(name: str, tool_input: Dict[str, Any]) -> str:
            ctx.tool_calls += 1
            return await self.tools.invoke(name, tool_input, tool_context)

        timers = self._start_thinking_timers(ctx, queue, handle, tracker)
        handle.generation_task = asyncio.create_task(
            self._produce(turn.provider, ctx, tool_schemas_for(turn.permissions), execute_tool, queue),
            name=f"generate:{handle.request_id}",
        )

        def stop_timers() -> None:
            for timer in timers:
                timer.cancel()

        try:
            while True:
                remaining = ctx.deadline - loop.time()
                if remaining <= 0:
                    raise asyncio.TimeoutError()
                item: QueueItem = await asyncio.wait_for(queue.get(), remaining)

                if handle.cancelled:
                    return
                if isinstance(item, _EndOfStream):
                    break
                if isinstance(item, BaseException):
                    raise item
                if isinstance(item, ThinkingEvent):
                    yield item
                    continue

                if not ctx.output_started:
                    ctx.output_started = True
                    stop_timers()
                if item.kind == ChunkKind.TEXT:
                    if item.content:
                        ctx.text_parts.append(item.content)
                        if tracker.mark_first_token():
                            first_token_latency.observe(tracker.elapsed())
                        yield TextEvent(content=item.content)
                else:
                    yield StatusEvent(
                        action=item.action or "executing",
                        tool=item.tool or "",
                        tool_index=item.tool_index,
                        total_tools=item.total_tools,
                    )
                if ctx.budget_exhausted():
                    raise asyncio.TimeoutError()

        except asyncio.TimeoutError:
            ctx.stage = TurnStage.ERRORED
            logger.warning(
                "generation_budget_exceeded",
                budget=self.config.hard_generation_timeout,
                output_started=ctx.output_started,
                tool_calls=ctx.tool_calls,
            )
            yield ErrorEvent(error=CUT_OFF_ERROR_MESSAGE if ctx.output_started else TIMEOUT_ERROR_MESSAGE)
        except GenerationError as e:
            ctx.stage = TurnStage.ERRORED
            logger.error("generation_failed", provider=e.provider, status_code=e.status_code, error=str(e))
            yield ErrorEvent(error=RATE_LIMIT_ERROR_MESSAGE if e.rate_limited else DEFAULT_ERROR_MESSAGE)
        except Exception as e:
            ctx.stage = TurnStage.ERRORED
            logger.exception("generation_crashed", error=str(e))
            yield ErrorEvent(error=DEFAULT_ERROR_MESSAGE)
        finally:
            stop_timers()
            task = handle.generation_task
            if task is not None and not task.done():
                task.cancel()

    # =========================================================================
    # After generation
    # =========================================================================

    async def _post_process(self, turn: PreparedTurn, text: str):
        """Run action blocks. Returns the text to show and whether a device action ran."""
        result = await self.actions.process(text, turn.user.id, turn.user.settings)
        if result is None:
            return text.strip(), False
        logger.info(
            "action_blocks_processed",
            count=len(result.outcomes),
            succeeded=sum(1 for o in result.outcomes if o.success),
        )
        return result.cleaned_response, result.device_action

    async def _persist(self, turn: PreparedTurn, text: str, device_action: bool) -> None:
        writer = turn.handle.writer
        await writer.flush(self.config.fact_write_timeout)
        if turn.is_background_noise or turn.handle.cancelled:
            return
        try:
            await asyncio.wait_for(
                self.memory.append_turn(
                    turn.user.id,
                    Role.ASSISTANT,
                    text,
                    tags=SMART_HOME_TAGS if device_action else None,
                    topic=SMART_HOME_TOPIC if device_action else None,
                    memory_scope=turn.permissions.default_memory_scope,
                ),
                self.config.fact_write_timeout,
            )
        except Exception as e:
            logger.error("assistant_turn_persist_failed", error=str(e))
