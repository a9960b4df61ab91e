"""
Data models shared across the turn service.

Records coming from the admin backend use camelCase keys; every model here
accepts both camelCase and snake_case.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class MemoryScope(str, Enum):
    """Partition of stored memories by audience."""
    COMPANION = "companion"
    ENGINEERING = "engineering"
    PLATFORM = "platform"
    SIMULATION = "simulation"


class MemoryType(str, Enum):
    CONVERSATION = "conversation"
    FACT = "fact"
    PREFERENCE = "preference"
    INTERNET_SEARCH = "internet_search"
    SMART_HOME = "smart_home"
    WORKSPACE_ACTION = "workspace_action"


# ============================================================================
# Conversation and memory
# ============================================================================

class ConversationTurn(CamelModel):
    """One persisted message. Never mutated after creation."""
    role: Role
    content: str
    created_at: datetime = Field(default_factory=utcnow)
    memory_scope: Optional[MemoryScope] = None
    tags: List[str] = Field(default_factory=list)
    topic: Optional[str] = None
    importance: Optional[float] = None


class MemoryRecord(CamelModel):
    """A memory as held by the vector store."""
    id: str
    user_id: str
    content: str
    memory_type: MemoryType = MemoryType.CONVERSATION
    role: Optional[Role] = None
    created_at: datetime = Field(default_factory=utcnow)
    importance: float = 0.5
    tags: List[str] = Field(default_factory=list)
    topic: Optional[str] = None
    memory_scope: MemoryScope = MemoryScope.COMPANION
    source: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class MemoryHit(BaseModel):
    record: MemoryRecord
    score: float


# ============================================================================
# Identity and configuration
# ============================================================================

class UserRole(str, Enum):
    ADMIN = "admin"
    USER = "user"
    GUEST = "guest"


class UserType(str, Enum):
    HUMAN = "human"
    WORKER_AGENT = "worker_agent"
    ARCHITECT_AGENT = "architect_agent"

    @property
    def is_agent(self) -> bool:
        return self in (UserType.WORKER_AGENT, UserType.ARCHITECT_AGENT)


class LightInfo(CamelModel):
    id: str
    name: str
    supports_color: bool = False
    supports_dimming: bool = True
    supports_color_temp: bool = False
    product_name: Optional[str] = None


class RoomInfo(CamelModel):
    """A room or zone: named group of lights with an optional grouped-light id."""
    id: str
    name: str
    grouped_light_id: Optional[str] = None
    lights: List[LightInfo] = Field(default_factory=list)


class SceneInfo(CamelModel):
    id: str
    name: str
    room_name: Optional[str] = None
    type: Optional[str] = None


class HomeInfo(CamelModel):
    id: str
    name: str


class LightingManifest(CamelModel):
    """Cached description of the user's lighting setup."""
    homes: List[HomeInfo] = Field(default_factory=list)
    rooms: List[RoomInfo] = Field(default_factory=list)
    zones: List[RoomInfo] = Field(default_factory=list)
    scenes: List[SceneInfo] = Field(default_factory=list)
    fetched_at: Optional[datetime] = None


class LightingIntegration(CamelModel):
    access_token: Optional[str] = None
    username: Optional[str] = None
    manifest: Optional[LightingManifest] = None

    @property
    def connected(self) -> bool:
        return bool(self.access_token and self.username)


class WorkspaceIntegration(CamelModel):
    enabled: bool = False
    token: Optional[str] = None
    workspace_name: Optional[str] = None
    sprint_database_id: Optional[str] = None
    backlog_database_id: Optional[str] = None

    @property
    def connected(self) -> bool:
        return bool(self.enabled and self.token)


class UserLocation(CamelModel):
    city: Optional[str] = None
    region: Optional[str] = None
    country: Optional[str] = None

    def describe(self) -> Optional[str]:
        parts = [p for p in (self.city, self.region, self.country) if p]
        return ", ".join(parts) or None


class UserSettings(CamelModel):
    personal_prompt: Optional[str] = None
    preferred_brain_provider: Optional[str] = None
    brain_api_key: Optional[str] = None
    brain_model: Optional[str] = None
    location: Optional[UserLocation] = None
    lighting: Optional[LightingIntegration] = None
    workspace: Optional[WorkspaceIntegration] = None


class User(CamelModel):
    id: str
    username: str
    email: Optional[str] = None
    role: UserRole = UserRole.USER
    user_type: UserType = UserType.HUMAN
    god_mode: bool = False
    backlog_write_access: bool = False
    sprint_assignment_access: bool = False
    memory_scope: List[MemoryScope] = Field(default_factory=list)
    settings: UserSettings = Field(default_factory=UserSettings)


class Guardrails(CamelModel):
    blocked_topics: List[str] = Field(default_factory=list)
    max_response_length: Optional[int] = None


class BrainConfig(CamelModel):
    provider_id: str = "anthropic"
    api_key: Optional[str] = None
    model: Optional[str] = None


class MasterConfig(CamelModel):
    """Deployment-wide persona and rules. Read-only inside a turn."""
    system_prompt: str = ""
    immutable_rules: List[str] = Field(default_factory=list)
    guardrails: Guardrails = Field(default_factory=Guardrails)
    default_brain: Optional[BrainConfig] = None
    greeting: Optional[str] = None
