"""
LLM Router - generation providers behind one streaming interface.

Providers:
- anthropic: Anthropic messages API via the official SDK
- ollama: local Ollama server over HTTP

Every provider exposes ``generate()`` for one-shot completions (used by
classifiers) and ``stream_with_tools()``, which runs the tool-use loop and
yields text and status chunks as they happen. Tools are described in the
OpenAI function format and converted per provider.
"""
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Tuple

import anthropic
import httpx
import structlog

logger = structlog.get_logger()


class ProviderId(str, Enum):
    """Supported generation backends."""
    ANTHROPIC = "anthropic"
    OLLAMA = "ollama"


class ChunkKind(str, Enum):
    TEXT = "text"
    STATUS = "status"


@dataclass
class StreamChunk:
    """One unit of provider output.

    TEXT chunks carry model text. STATUS chunks announce a tool invocation
    (``action`` is "executing" before the call and "completed" after).
    """
    kind: ChunkKind
    content: str = ""
    action: Optional[str] = None
    tool: Optional[str] = None
    tool_index: Optional[int] = None
    total_tools: Optional[int] = None


# (tool name, tool input) -> tool result text
ToolExecutor = Callable[[str, Dict[str, Any]], Awaitable[str]]


class GenerationError(Exception):
    """The provider rejected or failed a generation request."""

    def __init__(self, provider: str, message: str, status_code: Optional[int] = None):
        self.provider = provider
        self.status_code = status_code
        super().__init__(message)

    @property
    def rate_limited(self) -> bool:
        return self.status_code == 429 or "429" in str(self)


# =============================================================================
# Message normalisation
# =============================================================================

def prepare_messages(messages: List[Dict[str, str]]) -> Tuple[str, List[Dict[str, str]]]:
    """
    Split and normalise a role-tagged conversation for strict providers.

    - all system messages are merged into one system prompt
    - leading assistant messages are dropped (conversation must open with user)
    - consecutive same-role messages are merged
    - empty messages are dropped

    Returns:
        (system_prompt, conversation)
    """
    system_parts = []
    conversation: List[Dict[str, str]] = []

    for msg in messages:
        content = (msg.get("content") or "").strip()
        if not content:
            continue
        role = msg.get("role")
        if role == "system":
            system_parts.append(content)
            continue
        if role not in ("user", "assistant"):
            continue
        if not conversation and role == "assistant":
            continue
        if conversation and conversation[-1]["role"] == role:
            conversation[-1]["content"] += "\n\n" + content
        else:
            conversation.append({"role": role, "content": content})

    return "\n\n".join(system_parts), conversation


def tools_to_anthropic_format(tools: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Convert OpenAI function-format tools to Anthropic's input_schema format."""
    anthropic_tools = []
    for tool in tools:
        if "function" in tool:
            func = tool["function"]
            anthropic_tools.append({
                "name": func["name"],
                "description": func.get("description", ""),
                "input_schema": func.get("parameters", {"type": "object", "properties": {}})
            })
    return anthropic_tools


# =============================================================================
# Providers
# =============================================================================

class GenerationProvider(ABC):
    """A generation backend selected for one turn."""

    provider_id: ProviderId

    def __init__(
        self,
        model: str,
        temperature: float = 0.2,
        max_tokens: int = 2048,
        max_tool_iterations: int = 5,
    ):
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.max_tool_iterations = max_tool_iterations

    @abstractmethod
    async def generate(self, messages: List[Dict[str, str]]) -> str:
        """Return one complete response."""

    @abstractmethod
    def stream_with_tools(
        self,
        messages: List[Dict[str, str]],
        tools: List[Dict[str, Any]],
        execute_tool: ToolExecutor,
    ) -> AsyncIterator[StreamChunk]:
        """Stream a response, running tool calls through ``execute_tool``."""

    async def close(self) -> None:
        pass


class AnthropicProvider(GenerationProvider):
    """Anthropic messages API with streaming tool use."""

    provider_id = ProviderId.ANTHROPIC

    def __init__(self, api_key: str, model: str, **kwargs):
        super().__init__(model, **kwargs)
        self.client = anthropic.AsyncAnthropic(api_key=api_key)

    def _request_args(self, system_prompt: str, conversation: List[Dict[str, Any]]) -> Dict[str, Any]:
        args = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "messages": conversation,
            "temperature": self.temperature,
        }
        if system_prompt:
            args["system"] = system_prompt
        return args

    async def generate(self, messages: List[Dict[str, str]]) -> str:
        system_prompt, conversation = prepare_messages(messages)
        try:
            response = await self.client.messages.create(**self._request_args(system_prompt, conversation))
        except anthropic.APIStatusError as e:
            logger.error("anthropic_generation_error", model=self.model, status=e.status_code, error=str(e))
            raise GenerationError("anthropic", str(e), e.status_code) from e
        except anthropic.APIError as e:
            logger.error("anthropic_generation_error", model=self.model, error=str(e))
            raise GenerationError("anthropic", str(e)) from e

        return "".join(block.text for block in response.content if block.type == "text")

    async def stream_with_tools(
        self,
        messages: List[Dict[str, str]],
        tools: List[Dict[str, Any]],
        execute_tool: ToolExecutor,
    ) -> AsyncIterator[StreamChunk]:
        system_prompt, conversation = prepare_messages(messages)
        working: List[Dict[str, Any]] = list(conversation)
        anthropic_tools = tools_to_anthropic_format(tools)

        for iteration in range(self.max_tool_iterations + 1):
            args = self._request_args(system_prompt, working)
            # Tools are withheld on the final pass so the model has to answer
            if anthropic_tools and iteration < self.max_tool_iterations:
                args["tools"] = anthropic_tools

            try:
                async with self.client.messages.stream(**args) as stream:
                    async for event in stream:
                        if event.type == "content_block_delta" and getattr(event.delta, "type", None) == "text_delta":
                            yield StreamChunk(ChunkKind.TEXT, event.delta.text)
                    final = await stream.get_final_message()
            except anthropic.APIStatusError as e:
                logger.error("anthropic_stream_error", model=self.model, status=e.status_code, error=str(e))
                raise GenerationError("anthropic", str(e), e.status_code) from e
            except anthropic.APIError as e:
                logger.error("anthropic_stream_error", model=self.model, error=str(e))
                raise GenerationError("anthropic", str(e)) from e

            tool_uses = [block for block in final.content if block.type == "tool_use"]
            if final.stop_reason != "tool_use" or not tool_uses:
                return

            logger.info(
                "anthropic_tool_calls_requested",
                count=len(tool_uses),
                functions=[block.name for block in tool_uses],
                iteration=iteration,
            )

            working.append({
                "role": "assistant",
                "content": [block.model_dump(exclude_none=True) for block in final.content],
            })
            results = []
            for index, block in enumerate(tool_uses):
                yield StreamChunk(ChunkKind.STATUS, action="executing", tool=block.name,
                                  tool_index=index, total_tools=len(tool_uses))
                output = await execute_tool(block.name, dict(block.input or {}))
                yield StreamChunk(ChunkKind.STATUS, action="completed", tool=block.name,
                                  tool_index=index, total_tools=len(tool_uses))
                results.append({"type": "tool_result", "tool_use_id": block.id, "content": output})
            working.append({"role": "user", "content": results})

    async def close(self) -> None:
        await self.client.close()


class OllamaProvider(GenerationProvider):
    """
    Local Ollama server via /api/chat.

    Tool rounds use non-streaming calls (Ollama returns tool calls in one
    message); the final answer is yielded as a single chunk when tools are
    offered and streamed token by token otherwise.
    """

    provider_id = ProviderId.OLLAMA

    def __init__(self, base_url: str, model: str, timeout: float = 60.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None, **kwargs):
        super().__init__(model, **kwargs)
        self.client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)

    def _payload(self, messages: List[Dict[str, Any]], stream: bool,
                 tools: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
        payload = {
            "model": self.model,
            "messages": messages,
            "stream": stream,
            "options": {
                "temperature": self.temperature,
                "num_predict": self.max_tokens,
            },
        }
        if tools:
            payload["tools"] = tools
        return payload

    def _as_chat(self, messages: List[Dict[str, str]]) -> List[Dict[str, Any]]:
        system_prompt, conversation = prepare_messages(messages)
        chat: List[Dict[str, Any]] = []
        if system_prompt:
            chat.append({"role": "system", "content": system_prompt})
        chat.extend(conversation)
        return chat

    async def _chat(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = await self.client.post("/api/chat", json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error("ollama_chat_error", model=self.model, status=e.response.status_code)
            raise GenerationError("ollama", f"HTTP {e.response.status_code}", e.response.status_code) from e
        except httpx.TransportError as e:
            logger.error("ollama_chat_error", model=self.model, error=str(e))
            raise GenerationError("ollama", str(e)) from e
        return response.json().get("message", {})

    async def generate(self, messages: List[Dict[str, str]]) -> str:
        message = await self._chat(self._payload(self._as_chat(messages), stream=False))
        return message.get("content", "")

    async def _stream_plain(self, chat: List[Dict[str, Any]]) -> AsyncIterator[StreamChunk]:
        try:
            async with self.client.stream("POST", "/api/chat", json=self._payload(chat, stream=True)) as response:
                response.raise_for_status()
                async for line in response.aiter_lines():
                    if not line:
                        continue
                    try:
                        data = json.loads(line)
                    except json.JSONDecodeError:
                        logger.warning("ollama_stream_json_error", line=line[:100])
                        continue
                    token = data.get("message", {}).get("content", "")
                    if token:
                        yield StreamChunk(ChunkKind.TEXT, token)
                    if data.get("done"):
                        break
        except httpx.HTTPStatusError as e:
            raise GenerationError("ollama", f"HTTP {e.response.status_code}", e.response.status_code) from e
        except httpx.TransportError as e:
            raise GenerationError("ollama", str(e)) from e

    async def stream_with_tools(
        self,
        messages: List[Dict[str, str]],
        tools: List[Dict[str, Any]],
        execute_tool: ToolExecutor,
    ) -> AsyncIterator[StreamChunk]:
        chat = self._as_chat(messages)

        if not tools:
            async for chunk in self._stream_plain(chat):
                yield chunk
            return

        for iteration in range(self.max_tool_iterations + 1):
            offered = tools if iteration < self.max_tool_iterations else None
            message = await self._chat(self._payload(chat, stream=False, tools=offered))
            tool_calls = message.get("tool_calls") or []

            if not tool_calls:
                content = message.get("content", "")
                if content:
                    yield StreamChunk(ChunkKind.TEXT, content)
                return

            logger.info(
                "ollama_tool_calls_requested",
                count=len(tool_calls),
                functions=[tc["function"]["name"] for tc in tool_calls],
                iteration=iteration,
            )
            chat.append(message)
            for index, call in enumerate(tool_calls):
                name = call["function"]["name"]
                arguments = call["function"].get("arguments") or {}
                if isinstance(arguments, str):
                    try:
                        arguments = json.loads(arguments)
                    except json.JSONDecodeError:
                        arguments = {}
                yield StreamChunk(ChunkKind.STATUS, action="executing", tool=name,
                                  tool_index=index, total_tools=len(tool_calls))
                output = await execute_tool(name, arguments)
                yield StreamChunk(ChunkKind.STATUS, action="completed", tool=name,
                                  tool_index=index, total_tools=len(tool_calls))
                chat.append({"role": "tool", "content": output})

    async def close(self) -> None:
        await self.client.aclose()


# =============================================================================
# Router
# =============================================================================

class LLMRouter:
    """
    Builds and caches generation providers.

    Providers are keyed by (provider, model, credential) so a user's own API
    key gets its own client while turns sharing the deployment key reuse one.
    At most ``max_cached_providers`` are kept; the least recently used is
    dropped first. Dropped providers are not closed since a running turn may
    still hold one.
    """

    def __init__(
        self,
        ollama_url: str = "http://localhost:11434",
        temperature: float = 0.2,
        max_tokens: int = 2048,
        max_tool_iterations: int = 5,
        max_cached_providers: int = 32,
    ):
        self.ollama_url = ollama_url
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.max_tool_iterations = max_tool_iterations
        self.max_cached_providers = max_cached_providers
        self._providers: Dict[Tuple[str, str, str], GenerationProvider] = {}

    def get_provider(self, provider_id: str, model: str, api_key: Optional[str] = None) -> GenerationProvider:
        """
        Return a provider for the given backend.

        Raises:
            ValueError: unknown provider, or a cloud provider without a key
        """
        key = (provider_id, model, api_key or "")
        if key in self._providers:
            # Re-inserted so insertion order tracks recency
            cached = self._providers.pop(key)
            self._providers[key] = cached
            return cached

        tuning = {
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "max_tool_iterations": self.max_tool_iterations,
        }
        if provider_id == ProviderId.ANTHROPIC.value:
            if not api_key:
                raise ValueError("anthropic provider requires an API key")
            provider: GenerationProvider = AnthropicProvider(api_key, model, **tuning)
        elif provider_id == ProviderId.OLLAMA.value:
            provider = OllamaProvider(self.ollama_url, model, **tuning)
        else:
            raise ValueError(f"Unknown generation provider: {provider_id}")

        logger.info("llm_provider_created", provider=provider_id, model=model)
        self._providers[key] = provider
        while len(self._providers) > self.max_cached_providers:
            evicted = next(iter(self._providers))
            del self._providers[evicted]
            logger.info("llm_provider_evicted", provider=evicted[0], model=evicted[1])
        return provider

    async def close(self) -> None:
        for provider in self._providers.values():
            await provider.close()
        self._providers.clear()
