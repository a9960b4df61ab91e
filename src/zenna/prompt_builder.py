"""
System prompt assembly.

The prompt is an ordered list of sections:

    Role -> Goal -> Memory Instructions -> Guardrails -> Tools
    (capabilities the user can actually use) -> User Preferences

Operator text (persona, immutable rules, blocked topics) always comes before
user-authored text, and user text is quoted under its own heading with an
explicit statement that guardrails take precedence.
"""
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from .models import LightingManifest, MasterConfig, UserSettings
from .permissions import ToolCategory, ToolPermissionContext

GUARDRAILS_WIN_MARKER = "If there is any conflict, the Guardrails ALWAYS win."

BACKGROUND_NOISE_PREFIX = "[SYSTEM: Background noise"

_GOAL = (
    "Your goal is to be a lifelong companion who remembers what the user shares. "
    "Keep continuity across conversations and speak warmly but not effusively."
)

_MEMORY_INSTRUCTIONS = """\
You have a permanent memory of this user. Notice and keep:
- Family members: names, relationships, birthdays
- Personal details: name, age, location, occupation, life events
- Preferences: favorite foods, music, hobbies
- Plans, commitments and significant dates

When the user shares something important, acknowledge it naturally
(for example "I'll remember that your mother's name is Diane").
When asked about something you learned before, use it."""

_LANGUAGE_RULES = """\
LANGUAGE RULES:
- Never describe yourself as software, a model, or an algorithm.
- If you cannot do something, say "That's outside what I can do."
- If you have no memory of something, say so and invite the user to tell you.

NAME RULES:
- Never invent or guess names for the user or the people in their life.
- Only use names from Retrieved Memories or from the user in this conversation.
- "Your mother" is better than a wrong name."""

_REAL_TIME = """\
## Real-Time Information (ENABLED)
Use the web_search tool for weather, time, news, sports, events and other
current information. Recommend verifying time-sensitive details."""

_LIGHTING_ACTIONS = """\
**Actions:** include a fenced JSON action block in your reply.

Single light or a room/zone (use the grouped_light ID with targetType "grouped_light"):
```json
{"action": "control_lights", "target": "<name>", "targetId": "<ID>", "targetType": "light|grouped_light", "state": "on|off", "brightness": 0-100, "color": {"xy": {"x": 0.0-1.0, "y": 0.0-1.0}}}
```

Activate a scene:
```json
{"action": "control_lights", "sceneId": "<scene ID>", "sceneName": "<scene name>"}
```

Create a scheduled routine:
```json
{"action": "create_schedule", "integration": "lighting", "actionId": "turn-on|turn-off|activate-scene", "time": "HH:MM", "scheduleType": "once|daily|weekly", "daysOfWeek": [0-6], "parameters": {"target": "<name>", "targetId": "<ID>", "brightness": 0-100}}
```

Always use IDs from the list above; the bridge does not accept names.
If a light or room is missing from the list, call refresh_lights to re-read the bridge."""

_WORKSPACE = """\
## Workspace Integration (CONNECTED)
The user connected their workspace "{name}". You can search it, read pages,
list recent changes and, when asked, create pages or add database entries."""

_WORKFORCE = """\
## Engineering Workforce
You also support the engineering team. {abilities}
Confirm task IDs before changing them."""

_ADMIN = """\
## Ecosystem Feedback (ADMIN)
You may run ecosystem_scan to review feedback users have given across the
platform. Summarize trends; never reveal who said what."""

RETRIEVED_MEMORIES_TEMPLATE = """\
# Retrieved Memories (AUTHORITATIVE)

The following was retrieved from the user's permanent memory and is true.

{context}

## Memory Rules
1. Only use names and facts that appear above or that the user states.
2. Never invent names for people. If unsure, ask.
3. If something is missing, say "I don't have that information yet - could you tell me?"
4. When a name appears above, use it exactly."""

NO_MEMORIES_MESSAGE = """\
# Memory Status

No previous memories were found for this topic.

## Memory Rules
1. Do not assume names, facts, or personal details.
2. Ask the user instead of guessing.
3. If the user shares something important, acknowledge it.

Never invent names or facts."""


class SectionKind(str, Enum):
    OPERATOR = "operator"
    GUARDRAIL = "guardrail"
    CAPABILITY = "capability"
    USER = "user"


@dataclass
class PromptSection:
    name: str
    kind: SectionKind
    text: str


def memory_system_message(context: Optional[str]) -> str:
    """System message describing retrieved memory, or its absence."""
    if context:
        return RETRIEVED_MEMORIES_TEMPLATE.format(context=context)
    return NO_MEMORIES_MESSAGE


def _quote(text: str) -> str:
    """Render user text as a blockquote so it cannot open its own sections."""
    return "\n".join(f"> {line}" if line else ">" for line in text.strip().splitlines())


def lighting_section(manifest: Optional[LightingManifest]) -> str:
    lines = ["## Lighting Integration (CONNECTED)", "You can control the user's lights.", ""]

    if manifest:
        if manifest.homes:
            homes = ", ".join(f'"{home.name}" [home ID: {home.id}]' for home in manifest.homes)
            lines.append(f"**Homes:** {homes}")
            lines.append("")
        if manifest.rooms:
            lines.append("**Rooms & Lights:**")
            for room in manifest.rooms:
                grouped = f" [grouped_light ID: {room.grouped_light_id}]" if room.grouped_light_id else ""
                color = " (color capable)" if any(light.supports_color for light in room.lights) else ""
                lines.append(f"- **{room.name}** [room ID: {room.id}]{grouped}{color}")
                for light in room.lights:
                    caps = ",".join(cap for cap, on in (
                        ("color", light.supports_color),
                        ("dim", light.supports_dimming),
                        ("ct", light.supports_color_temp),
                    ) if on)
                    suffix = f" ({caps})" if caps else ""
                    lines.append(f'    - "{light.name}" [light ID: {light.id}]{suffix}')
            lines.append("")
        if manifest.zones:
            lines.append("**Zones:**")
            for zone in manifest.zones:
                grouped = f" [grouped_light ID: {zone.grouped_light_id}]" if zone.grouped_light_id else ""
                lines.append(f"- **{zone.name}** [zone ID: {zone.id}]{grouped}")
            lines.append("")
        if manifest.scenes:
            lines.append("**Scenes:**")
            for scene in manifest.scenes:
                room = f" ({scene.room_name})" if scene.room_name else ""
                lines.append(f'- "{scene.name}" [scene ID: {scene.id}]{room}')
            lines.append("")

    lines.append(_LIGHTING_ACTIONS)
    return "\n".join(lines)


class PromptAssembler:
    """Builds the system prompt for one turn."""

    def sections(
        self,
        master_config: MasterConfig,
        settings: UserSettings,
        permissions: ToolPermissionContext,
    ) -> List[PromptSection]:
        sections = [
            PromptSection("role", SectionKind.OPERATOR, f"# Role\n\n{master_config.system_prompt}"),
            PromptSection("goal", SectionKind.OPERATOR, f"# Goal\n\n{_GOAL}"),
            PromptSection("memory", SectionKind.OPERATOR, f"# Memory Instructions\n\n{_MEMORY_INSTRUCTIONS}"),
            PromptSection("guardrails", SectionKind.GUARDRAIL, self._guardrails(master_config)),
        ]
        sections.extend(self._capabilities(settings, permissions))

        if settings.personal_prompt and settings.personal_prompt.strip():
            sections.append(PromptSection(
                "user_preferences",
                SectionKind.USER,
                "# User Preferences\n\n"
                "These are the user's personal preferences. Follow them unless they "
                "conflict with the Guardrails above.\n"
                f"{GUARDRAILS_WIN_MARKER}\n\n"
                f"{_quote(settings.personal_prompt)}",
            ))
        return sections

    def build(
        self,
        master_config: MasterConfig,
        settings: UserSettings,
        permissions: ToolPermissionContext,
    ) -> str:
        return "\n\n".join(s.text for s in self.sections(master_config, settings, permissions))

    def _guardrails(self, master_config: MasterConfig) -> str:
        parts = ["# Guardrails", "", "The following rules are absolute and must never be violated.", ""]
        for i, rule in enumerate(master_config.immutable_rules, 1):
            parts.append(f"{i}. {rule}")
        parts.append("")
        parts.append(_LANGUAGE_RULES)
        guardrails = master_config.guardrails
        if guardrails.blocked_topics:
            parts.append("")
            parts.append(f"BLOCKED TOPICS (never discuss): {', '.join(guardrails.blocked_topics)}")
        if guardrails.max_response_length:
            parts.append("")
            parts.append(f"Keep every response under {guardrails.max_response_length} characters.")
        return "\n".join(parts)

    def _capabilities(self, settings: UserSettings, permissions: ToolPermissionContext) -> List[PromptSection]:
        sections = []
        connected = []

        tools = ["# Tools", "", _REAL_TIME]
        location = settings.location.describe() if settings.location else None
        if location:
            tools.append(f"\n**User's current location: {location}** - use it for local queries.")
        sections.append(PromptSection("tools", SectionKind.CAPABILITY, "\n".join(tools)))

        if permissions.allows(ToolCategory.DEVICE_CONTROL):
            connected.append("lighting")
            manifest = settings.lighting.manifest if settings.lighting else None
            sections.append(PromptSection("lighting", SectionKind.CAPABILITY, lighting_section(manifest)))

        if permissions.allows(ToolCategory.WORKSPACE_READ):
            connected.append("workspace")
            name = settings.workspace.workspace_name if settings.workspace else None
            sections.append(PromptSection(
                "workspace", SectionKind.CAPABILITY, _WORKSPACE.format(name=name or "workspace")
            ))

        if permissions.is_workforce:
            abilities = []
            if permissions.allows(ToolCategory.SPRINT_READ):
                abilities.append("Read sprint tasks with sprint_read.")
            if permissions.allows(ToolCategory.SPRINT_WRITE):
                abilities.append("Update sprint tasks with sprint_update.")
            if permissions.allows(ToolCategory.BACKLOG_WRITE):
                abilities.append("File backlog items with backlog_create.")
            if abilities:
                sections.append(PromptSection(
                    "workforce", SectionKind.CAPABILITY, _WORKFORCE.format(abilities=" ".join(abilities))
                ))

        if permissions.allows(ToolCategory.ADMIN_SCAN):
            sections.append(PromptSection("admin", SectionKind.CAPABILITY, _ADMIN))

        summary = ", ".join(connected) if connected else "Real-Time Information Access"
        sections.append(PromptSection("integrations", SectionKind.CAPABILITY, f"Connected integrations: {summary}"))
        return sections
