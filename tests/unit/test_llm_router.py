"""
Unit tests for LLM routing, message normalisation and the Ollama provider.
"""
import json

import httpx
import pytest

from zenna_shared.llm_router import (
    AnthropicProvider,
    ChunkKind,
    GenerationError,
    LLMRouter,
    OllamaProvider,
    prepare_messages,
    tools_to_anthropic_format,
)


class TestPrepareMessages:

    def test_merges_system_and_same_role(self):
        system, conversation = prepare_messages([
            {"role": "system", "content": "persona"},
            {"role": "system", "content": "memories"},
            {"role": "assistant", "content": "leading reply"},
            {"role": "user", "content": "one"},
            {"role": "user", "content": "two"},
            {"role": "assistant", "content": ""},
            {"role": "assistant", "content": "answer"},
        ])

        assert system == "persona\n\nmemories"
        assert conversation == [
            {"role": "user", "content": "one\n\ntwo"},
            {"role": "assistant", "content": "answer"},
        ]

    def test_unknown_roles_dropped(self):
        _, conversation = prepare_messages([{"role": "tool", "content": "x"}, {"role": "user", "content": "hi"}])
        assert conversation == [{"role": "user", "content": "hi"}]


def test_tools_to_anthropic_format():
    tools = [{
        "type": "function",
        "function": {"name": "web_search", "description": "Search", "parameters": {"type": "object"}},
    }]
    assert tools_to_anthropic_format(tools) == [
        {"name": "web_search", "description": "Search", "input_schema": {"type": "object"}}
    ]


class TestRouter:

    def test_provider_cached_per_credential(self):
        router = LLMRouter()
        first = router.get_provider("anthropic", "model", "key-a")

        assert router.get_provider("anthropic", "model", "key-a") is first
        assert router.get_provider("anthropic", "model", "key-b") is not first
        assert isinstance(first, AnthropicProvider)

    def test_cache_drops_least_recently_used(self):
        router = LLMRouter(max_cached_providers=2)
        first = router.get_provider("anthropic", "model", "key-a")
        second = router.get_provider("anthropic", "model", "key-b")
        router.get_provider("anthropic", "model", "key-a")

        router.get_provider("anthropic", "model", "key-c")

        assert len(router._providers) == 2
        assert router.get_provider("anthropic", "model", "key-a") is first
        assert router.get_provider("anthropic", "model", "key-b") is not second

    def test_anthropic_needs_key(self):
        with pytest.raises(ValueError):
            LLMRouter().get_provider("anthropic", "model")

    def test_unknown_provider(self):
        with pytest.raises(ValueError):
            LLMRouter().get_provider("mystery", "model")

    def test_ollama_needs_no_key(self):
        assert isinstance(LLMRouter().get_provider("ollama", "llama3"), OllamaProvider)


# =============================================================================
# Ollama over a mock transport
# =============================================================================

def ollama(handler):
    return OllamaProvider("http://ollama.test", "llama3", transport=httpx.MockTransport(handler))


async def collect(provider, tools, execute_tool=None):
    async def no_tools(name, arguments):
        raise AssertionError("unexpected tool call")

    return [chunk async for chunk in provider.stream_with_tools(
        [{"role": "system", "content": "be kind"}, {"role": "user", "content": "hi"}],
        tools,
        execute_tool or no_tools,
    )]


class TestOllamaProvider:

    @pytest.mark.asyncio
    async def test_plain_stream(self):
        def handler(request):
            body = json.loads(request.content)
            assert body["stream"] is True
            assert body["messages"][0] == {"role": "system", "content": "be kind"}
            lines = [
                {"message": {"content": "Hel"}},
                {"message": {"content": "lo"}},
                {"message": {"content": ""}, "done": True},
            ]
            return httpx.Response(200, content="\n".join(json.dumps(line) for line in lines).encode())

        chunks = await collect(ollama(handler), [])

        assert [c.content for c in chunks] == ["Hel", "lo"]

    @pytest.mark.asyncio
    async def test_tool_round_trip(self):
        calls = []

        def handler(request):
            body = json.loads(request.content)
            calls.append(body)
            if len(calls) == 1:
                return httpx.Response(200, json={"message": {
                    "role": "assistant",
                    "content": "",
                    "tool_calls": [{"function": {"name": "web_search", "arguments": {"query": "news"}}}],
                }})
            assert body["messages"][-1] == {"role": "tool", "content": "headlines"}
            return httpx.Response(200, json={"message": {"role": "assistant", "content": "Here's the news."}})

        executed = []

        async def execute_tool(name, arguments):
            executed.append((name, arguments))
            return "headlines"

        tools = [{"type": "function", "function": {"name": "web_search", "parameters": {}}}]
        chunks = await collect(ollama(handler), tools, execute_tool)

        assert executed == [("web_search", {"query": "news"})]
        assert [(c.kind, c.action) for c in chunks[:2]] == [
            (ChunkKind.STATUS, "executing"),
            (ChunkKind.STATUS, "completed"),
        ]
        assert chunks[-1].content == "Here's the news."

    @pytest.mark.asyncio
    async def test_http_error(self):
        provider = ollama(lambda request: httpx.Response(429, json={"error": "busy"}))

        with pytest.raises(GenerationError) as exc_info:
            await provider.generate([{"role": "user", "content": "hi"}])

        assert exc_info.value.rate_limited

    @pytest.mark.asyncio
    async def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(GenerationError):
            await collect(ollama(handler), [])
