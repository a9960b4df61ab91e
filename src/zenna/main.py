"""
Zenna chat service.

FastAPI app exposing the streaming conversational turn pipeline. Services
are built once in the lifespan and kept on ``app.state``; route handlers
reach them through the dependency functions below.
"""
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import StreamingResponse
from prometheus_client import generate_latest
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from starlette.responses import Response

from zenna_shared.config import ZennaConfig, get_config
from zenna_shared.errors import ForbiddenError, UnauthorizedError, register_exception_handlers
from zenna_shared.llm_router import LLMRouter
from zenna_shared.logging_config import configure_logging

from . import __version__
from .action_blocks import ActionBlockProcessor
from .events import ErrorEvent
from .identity import IdentityClient
from .integrations.lighting import LightingClient
from .integrations.web_search import WebSearchClient
from .integrations.workspace import WorkspaceClient
from .memory_manager import MemoryOrchestrator
from .memory_store import MemoryStore, build_memory_store
from .migration import migrate_memories
from .permissions import ToolPermissionContext
from .pipeline import TurnPipeline
from .scheduling import SchedulingClient
from .sessions import TurnRegistry
from .tools import ToolDispatcher

load_dotenv()
logger = configure_logging("zenna")


@dataclass
class ZennaServices:
    """Long-lived collaborators shared by every request."""
    config: ZennaConfig
    store: MemoryStore
    memory: MemoryOrchestrator
    identity: IdentityClient
    router: LLMRouter
    pipeline: TurnPipeline
    closers: tuple = ()

    async def close(self) -> None:
        for close in self.closers:
            try:
                await close()
            except Exception as e:
                logger.warning("service_close_failed", error=str(e))


def build_services(config: ZennaConfig) -> ZennaServices:
    store = build_memory_store(config)
    memory = MemoryOrchestrator(store, retrieval_timeout=config.memory_timeout)
    identity = IdentityClient(config.admin_api_url, config.service_api_key, timeout=config.identity_timeout)
    scheduling = SchedulingClient(config.admin_api_url, config.service_api_key, timeout=config.identity_timeout)
    lighting = LightingClient(config.lighting_api_url)
    workspace = WorkspaceClient(config.workspace_api_url)
    web_search = WebSearchClient(config.web_search_url)
    router = LLMRouter(
        ollama_url=config.ollama_url,
        temperature=config.llm_temperature,
        max_tokens=config.llm_max_tokens,
        max_tool_iterations=config.llm_max_tool_iterations,
    )
    tools = ToolDispatcher(memory, web_search, workspace, lighting, identity, timeout=config.tool_timeout)
    pipeline = TurnPipeline(
        config=config,
        identity=identity,
        memory=memory,
        router=router,
        tools=tools,
        actions=ActionBlockProcessor(lighting, scheduling, memory),
        registry=TurnRegistry(write_timeout=config.fact_write_timeout),
    )
    return ZennaServices(
        config=config,
        store=store,
        memory=memory,
        identity=identity,
        router=router,
        pipeline=pipeline,
        closers=(
            router.close, identity.close, scheduling.close, lighting.close,
            workspace.close, web_search.close, store.close,
        ),
    )


def create_app(services: Optional[ZennaServices] = None) -> FastAPI:
    """Build the app. Passing ``services`` skips construction and teardown."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = services is None
        if owned:
            config = get_config()
            config.validate_or_exit("zenna")
            app.state.services = build_services(config)
            await app.state.services.store.initialize()
        else:
            app.state.services = services
        logger.info(
            "zenna_started",
            version=__version__,
            memory_backend=app.state.services.config.memory_backend,
            llm_provider=app.state.services.config.llm_provider,
        )
        yield
        if owned:
            await app.state.services.close()
        logger.info("zenna_stopped")

    app = FastAPI(
        title="Zenna",
        description="Memory-augmented conversational assistant",
        version=__version__,
        lifespan=lifespan,
    )
    register_exception_handlers(app)
    _register_routes(app)
    return app


# =============================================================================
# Dependencies
# =============================================================================

def get_services(request: Request) -> ZennaServices:
    return request.app.state.services


def bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("Authorization", "")
    if not header.startswith("Bearer "):
        return None
    return header[len("Bearer "):].strip() or None


async def current_user_id(
    token: Optional[str] = Depends(bearer_token),
    services: ZennaServices = Depends(get_services),
) -> str:
    return await services.pipeline.authenticate(token)


# =============================================================================
# Request / response models
# =============================================================================

class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ChatRequest(_CamelModel):
    message: str


class ChatResponse(_CamelModel):
    response: str
    emotion: str


class InterruptResponse(_CamelModel):
    interrupted: bool


class HistoryItem(_CamelModel):
    role: str
    content: str
    created_at: str


class HistoryResponse(_CamelModel):
    messages: List[HistoryItem]


class MigrateRequest(_CamelModel):
    from_user_id: str
    to_user_id: str


class MigrateResponse(_CamelModel):
    migrated_count: int


# =============================================================================
# Routes
# =============================================================================

async def _sse(events: AsyncIterator) -> AsyncIterator[str]:
    async for event in events:
        yield event.to_sse()


def _register_routes(app: FastAPI) -> None:

    @app.post("/chat/stream")
    async def chat_stream(
        body: ChatRequest,
        user_id: str = Depends(current_user_id),
        services: ZennaServices = Depends(get_services),
    ):
        """Run one turn and stream its events as server-sent events."""
        turn = await services.pipeline.prepare(user_id, body.message)
        return StreamingResponse(
            _sse(services.pipeline.stream(turn)),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    @app.post("/chat", response_model=ChatResponse, response_model_by_alias=True)
    async def chat(
        body: ChatRequest,
        user_id: str = Depends(current_user_id),
        services: ZennaServices = Depends(get_services),
    ):
        """Non-streaming variant: run the turn server-side and return the final text."""
        turn = await services.pipeline.prepare(user_id, body.message)
        terminal = await services.pipeline.run_to_completion(turn)
        if terminal is None:
            return ChatResponse(response="", emotion="neutral")
        if isinstance(terminal, ErrorEvent):
            return ChatResponse(response=terminal.error, emotion="empathetic")
        return ChatResponse(response=terminal.full_response, emotion=terminal.emotion)

    @app.post("/chat/interrupt", response_model=InterruptResponse)
    async def chat_interrupt(
        user_id: str = Depends(current_user_id),
        services: ZennaServices = Depends(get_services),
    ):
        interrupted = services.pipeline.registry.interrupt(user_id)
        logger.info("chat_interrupt", user_id=user_id, interrupted=interrupted)
        return InterruptResponse(interrupted=interrupted)

    @app.get("/history", response_model=HistoryResponse, response_model_by_alias=True)
    async def history(
        limit: int = Query(50, ge=1, le=500),
        user_id: str = Depends(current_user_id),
        services: ZennaServices = Depends(get_services),
    ):
        turns = await services.memory.get_history(user_id, limit)
        return HistoryResponse(messages=[
            HistoryItem(role=t.role.value, content=t.content, created_at=t.created_at.isoformat())
            for t in turns
        ])

    @app.post("/admin/memory/migrate", response_model=MigrateResponse, response_model_by_alias=True)
    async def migrate(
        body: MigrateRequest,
        user_id: str = Depends(current_user_id),
        services: ZennaServices = Depends(get_services),
    ):
        """Re-own stored memories. Primary administrator only."""
        user = await services.identity.get_user(user_id)
        if user is None:
            raise UnauthorizedError("Unknown user")
        permissions = ToolPermissionContext.from_user(user, services.config.primary_admin_email)
        if not permissions.is_primary_admin:
            raise ForbiddenError("Only the primary administrator can migrate memories")

        count = await migrate_memories(services.store, body.from_user_id, body.to_user_id)
        try:
            await services.identity.record_audit(
                user_id, "memory_migrate", target=body.to_user_id,
                details={"fromUserId": body.from_user_id, "count": count},
            )
        except Exception as e:
            logger.error("migration_audit_failed", error=str(e))
        return MigrateResponse(migrated_count=count)

    @app.get("/health")
    async def health(services: ZennaServices = Depends(get_services)):
        """Health check endpoint."""
        config = services.config
        memory_ok = await services.store.health_check()
        identity_ok = await services.identity.health_check()
        return {
            "status": "healthy" if memory_ok and identity_ok else "degraded",
            "service": "zenna",
            "version": __version__,
            "memory": memory_ok,
            "identity": identity_ok,
            "memoryBackend": config.memory_backend,
            "llmProvider": config.llm_provider,
            "llmConfigured": bool(config.anthropic_api_key) or config.llm_provider == "ollama",
        }

    @app.get("/metrics")
    async def metrics():
        """Prometheus metrics endpoint."""
        return Response(content=generate_latest(), media_type="text/plain")


app = create_app()
