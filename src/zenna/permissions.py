"""
Per-turn permission snapshot used to gate tool invocations.

A ``ToolPermissionContext`` is derived fresh from the user record at the
start of every turn and never persisted. Each tool category has its own
predicate; grants are independent (holding one never implies another), and
the primary administrator identity holds all of them.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional, Tuple

from .models import MemoryScope, User, UserRole


class ToolCategory(str, Enum):
    SEARCH = "search"
    WORKSPACE_READ = "workspace-read"
    WORKSPACE_WRITE = "workspace-write"
    DEVICE_CONTROL = "device-control"
    SPRINT_READ = "sprint-read"
    SPRINT_WRITE = "sprint-write"
    BACKLOG_WRITE = "backlog-write"
    ADMIN_SCAN = "admin-scan"


# Categories whose invocations are written to the audit log
PRIVILEGED_CATEGORIES = frozenset({
    ToolCategory.WORKSPACE_WRITE,
    ToolCategory.SPRINT_WRITE,
    ToolCategory.BACKLOG_WRITE,
    ToolCategory.ADMIN_SCAN,
})


@dataclass(frozen=True)
class ToolPermissionContext:
    user_id: str
    email: Optional[str]
    role: UserRole
    is_primary_admin: bool
    is_agent: bool
    elevated: bool
    can_read_sprints: bool
    can_write_sprints: bool
    can_write_backlog: bool
    workspace_connected: bool
    lighting_connected: bool
    default_memory_scope: MemoryScope
    allowed_memory_scopes: Tuple[MemoryScope, ...]

    @classmethod
    def from_user(cls, user: User, primary_admin_email: Optional[str] = None) -> "ToolPermissionContext":
        primary = bool(
            primary_admin_email and user.email
            and user.email.strip().lower() == primary_admin_email.strip().lower()
        )
        is_agent = user.user_type.is_agent
        settings = user.settings

        if user.memory_scope:
            scopes = tuple(user.memory_scope)
        elif is_agent:
            scopes = (MemoryScope.ENGINEERING,)
        else:
            scopes = (MemoryScope.COMPANION,)

        return cls(
            user_id=user.id,
            email=user.email,
            role=user.role,
            is_primary_admin=primary,
            is_agent=is_agent,
            elevated=primary or user.god_mode,
            can_read_sprints=primary or user.sprint_assignment_access,
            can_write_sprints=primary or (is_agent and user.sprint_assignment_access),
            can_write_backlog=primary or user.backlog_write_access,
            workspace_connected=bool(settings.workspace and settings.workspace.connected),
            lighting_connected=bool(settings.lighting and settings.lighting.connected),
            default_memory_scope=scopes[0],
            allowed_memory_scopes=scopes,
        )

    @property
    def is_workforce(self) -> bool:
        """Qualifies for the engineering-workforce prompt section."""
        return self.is_primary_admin or self.is_agent or self.can_read_sprints or self.can_write_backlog

    def allows(self, category: ToolCategory) -> bool:
        return _PREDICATES[category](self)


_PREDICATES: Dict[ToolCategory, Callable[[ToolPermissionContext], bool]] = {
    ToolCategory.SEARCH: lambda ctx: True,
    ToolCategory.WORKSPACE_READ: lambda ctx: ctx.workspace_connected,
    ToolCategory.WORKSPACE_WRITE: lambda ctx: ctx.workspace_connected,
    ToolCategory.DEVICE_CONTROL: lambda ctx: ctx.lighting_connected,
    ToolCategory.SPRINT_READ: lambda ctx: ctx.can_read_sprints and ctx.workspace_connected,
    ToolCategory.SPRINT_WRITE: lambda ctx: ctx.can_write_sprints and ctx.workspace_connected,
    ToolCategory.BACKLOG_WRITE: lambda ctx: ctx.can_write_backlog and ctx.workspace_connected,
    ToolCategory.ADMIN_SCAN: lambda ctx: ctx.elevated,
}
