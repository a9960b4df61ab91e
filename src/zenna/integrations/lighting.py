"""
Lighting bridge client (CLIP v2 style REST API).

Commands name their target by resource id or by human name. Name resolution
walks a fixed order and stops at the first hit:

    manifest rooms -> manifest zones -> manifest lights -> live light list

Rooms and zones resolve to their grouped_light resource. A target that
survives every step is reported as a NOT_FOUND integration error.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from zenna_shared.errors import IntegrationError, IntegrationErrorKind

from ..models import HomeInfo, LightInfo, LightingIntegration, LightingManifest, RoomInfo, SceneInfo, utcnow

logger = structlog.get_logger()

SERVICE_NAME = "Lighting"


class XYColor(BaseModel):
    x: float
    y: float


class LightColor(BaseModel):
    xy: Optional[XYColor] = None
    mirek: Optional[int] = None


class LightCommand(BaseModel):
    """A control_lights request, from an action block or a tool call."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    target: Optional[str] = None
    target_id: Optional[str] = None
    target_type: Optional[str] = None
    state: Optional[str] = None
    brightness: Optional[int] = Field(default=None, ge=0, le=100)
    color: Optional[LightColor] = None
    color_temp: Optional[LightColor] = Field(default=None, alias="color_temp")
    scene_id: Optional[str] = None
    scene_name: Optional[str] = None

    def state_update(self) -> Dict[str, Any]:
        update: Dict[str, Any] = {}
        if self.state in ("on", "off"):
            update["on"] = {"on": self.state == "on"}
        if self.brightness is not None:
            update["dimming"] = {"brightness": self.brightness}
        if self.color and self.color.xy:
            update["color"] = {"xy": self.color.xy.model_dump()}
        mirek = (self.color.mirek if self.color else None) or (self.color_temp.mirek if self.color_temp else None)
        if mirek:
            update["color_temperature"] = {"mirek": mirek}
        return update

    def describe_result(self, resource_id: str) -> str:
        """Past-tense summary, e.g. "turned on the Kitchen to 40% brightness"."""
        if self.state == "on":
            verb = "turned on"
        elif self.state == "off":
            verb = "turned off"
        else:
            verb = "adjusted"
        details = ""
        if self.brightness is not None:
            details += f" to {self.brightness}% brightness"
        if self.color and self.color.xy:
            details += " with the requested color"
        return f"{verb} the {self.target or resource_id}{details}"


class ResolveStep(str, Enum):
    EXPLICIT = "explicit"
    MANIFEST_ROOM = "manifest_room"
    MANIFEST_ZONE = "manifest_zone"
    MANIFEST_LIGHT = "manifest_light"
    LIVE_LIGHT = "live_light"


@dataclass
class ResolvedTarget:
    resource_type: str
    resource_id: str
    step: ResolveStep


def resolve_from_manifest(manifest: Optional[LightingManifest], target: str) -> Optional[ResolvedTarget]:
    """Resolve a human name against the cached manifest (substring match)."""
    if manifest is None:
        return None
    needle = target.lower()

    for room in manifest.rooms:
        if needle in room.name.lower() and room.grouped_light_id:
            return ResolvedTarget("grouped_light", room.grouped_light_id, ResolveStep.MANIFEST_ROOM)
    for zone in manifest.zones:
        if needle in zone.name.lower() and zone.grouped_light_id:
            return ResolvedTarget("grouped_light", zone.grouped_light_id, ResolveStep.MANIFEST_ZONE)
    for room in [*manifest.rooms, *manifest.zones]:
        for light in room.lights:
            if needle in light.name.lower():
                return ResolvedTarget("light", light.id, ResolveStep.MANIFEST_LIGHT)
    return None


class LightingClient:
    """Stateless client; credentials come from each user's integration settings."""

    def __init__(self, base_url: str, timeout: float = 10.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=transport)

    async def close(self):
        await self.client.aclose()

    @staticmethod
    def _headers(integration: LightingIntegration) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {integration.access_token}",
            "hue-application-key": integration.username or "",
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, path: str, integration: LightingIntegration,
                       what: str, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if not integration.connected:
            raise IntegrationError(
                SERVICE_NAME,
                IntegrationErrorKind.UNAUTHORIZED,
                "I'd love to help with the lights, but the lighting connection needs "
                "to be set up first. You can connect it in Settings > Integrations.",
            )
        try:
            response = await self.client.request(method, path, headers=self._headers(integration), json=json)
        except httpx.TransportError as e:
            logger.warning("lighting_network_error", path=path, error=str(e))
            raise IntegrationError.from_transport(SERVICE_NAME, e) from e

        if response.is_error:
            logger.warning("lighting_api_error", path=path, status_code=response.status_code)
            raise IntegrationError.from_status(SERVICE_NAME, response.status_code, what=what,
                                               detail=response.text[:200])
        return response.json() if response.content else {}

    async def list_lights(self, integration: LightingIntegration) -> list:
        data = await self._request("GET", "/light", integration, what="your lights")
        return data.get("data", [])

    async def resolve(self, integration: LightingIntegration, command: LightCommand) -> ResolvedTarget:
        if command.target_id:
            return ResolvedTarget(command.target_type or "light", command.target_id, ResolveStep.EXPLICIT)

        if command.target:
            resolved = resolve_from_manifest(integration.manifest, command.target)
            if resolved is not None:
                return resolved

            # The manifest may be stale; ask the bridge
            needle = command.target.lower()
            for light in await self.list_lights(integration):
                name = (light.get("metadata") or {}).get("name", "")
                if needle in name.lower():
                    return ResolvedTarget("light", light["id"], ResolveStep.LIVE_LIGHT)

        raise IntegrationError(
            SERVICE_NAME,
            IntegrationErrorKind.NOT_FOUND,
            f'I couldn\'t find a light or room called "{command.target}". '
            'Your device list may be outdated; try asking me to refresh your lights.',
        )

    async def recall_scene(self, integration: LightingIntegration, scene_id: str,
                           scene_name: Optional[str] = None) -> str:
        await self._request("PUT", f"/scene/{scene_id}", integration, what="that scene",
                            json={"recall": {"action": "active"}})
        return f'Activated scene "{scene_name or scene_id}"'

    async def execute(self, integration: LightingIntegration, command: LightCommand) -> str:
        """Apply a command. Returns a past-tense description of what happened."""
        if command.scene_id:
            return await self.recall_scene(integration, command.scene_id, command.scene_name)

        target = await self.resolve(integration, command)
        logger.info(
            "lighting_command",
            resource_type=target.resource_type,
            resource_id=target.resource_id,
            resolved_by=target.step.value,
        )
        await self._request(
            "PUT",
            f"/{target.resource_type}/{target.resource_id}",
            integration,
            what="that light",
            json=command.state_update(),
        )
        return command.describe_result(target.resource_id)

    async def fetch_manifest(self, integration: LightingIntegration) -> LightingManifest:
        """Read homes, rooms, zones, lights and scenes from the bridge."""
        resources = {}
        for kind in ("bridge_home", "room", "zone", "light", "scene"):
            data = await self._request("GET", f"/{kind}", integration, what="your lighting setup")
            resources[kind] = data.get("data", [])
        manifest = build_manifest(**resources)
        logger.info(
            "lighting_manifest_fetched",
            rooms=len(manifest.rooms),
            zones=len(manifest.zones),
            scenes=len(manifest.scenes),
        )
        return manifest


def _name(resource: Dict[str, Any]) -> str:
    return (resource.get("metadata") or {}).get("name", "")


def _grouped_light_id(group: Dict[str, Any]) -> Optional[str]:
    for service in group.get("services") or []:
        if service.get("rtype") == "grouped_light":
            return service.get("rid")
    return None


def _light_info(light: Dict[str, Any]) -> LightInfo:
    return LightInfo(
        id=light["id"],
        name=_name(light),
        supports_color="color" in light,
        supports_dimming="dimming" in light,
        supports_color_temp="color_temperature" in light,
        product_name=(light.get("product_data") or {}).get("product_name"),
    )


def build_manifest(bridge_home: list, room: list, zone: list, light: list, scene: list) -> LightingManifest:
    """
    Assemble a manifest from raw resource lists.

    Room children are devices, so room lights are matched through each
    light's owning device. Zone children are lights.
    """
    lights_by_id = {item["id"]: _light_info(item) for item in light}
    lights_by_device = {}
    for item in light:
        owner = (item.get("owner") or {}).get("rid")
        if owner:
            lights_by_device.setdefault(owner, []).append(lights_by_id[item["id"]])

    def group(resource: Dict[str, Any], by_device: bool) -> RoomInfo:
        members = []
        for child in resource.get("children") or []:
            if by_device and child.get("rtype") == "device":
                members.extend(lights_by_device.get(child.get("rid"), []))
            elif child.get("rtype") == "light" and child.get("rid") in lights_by_id:
                members.append(lights_by_id[child["rid"]])
        return RoomInfo(
            id=resource["id"],
            name=_name(resource),
            grouped_light_id=_grouped_light_id(resource),
            lights=members,
        )

    rooms = [group(item, by_device=True) for item in room]
    room_names = {item.id: item.name for item in rooms}
    return LightingManifest(
        homes=[HomeInfo(id=item["id"], name=_name(item) or "Home") for item in bridge_home],
        rooms=rooms,
        zones=[group(item, by_device=False) for item in zone],
        scenes=[
            SceneInfo(
                id=item["id"],
                name=_name(item),
                room_name=room_names.get((item.get("group") or {}).get("rid")),
                type=item.get("type"),
            )
            for item in scene
        ],
        fetched_at=utcnow(),
    )
