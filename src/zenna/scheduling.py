"""
Routine scheduling through the admin backend.

A routine is a persisted rule ("every weekday at 06:30 turn on the bedroom
lights") that the backend executes; this service only creates them.
"""
from typing import Any, Dict, List, Optional

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from zenna_shared.errors import IntegrationError

logger = structlog.get_logger()

SERVICE_NAME = "Routines"


class ScheduleRequest(BaseModel):
    """A create_schedule action block."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    integration: str = "lighting"
    action_id: str
    time: str = Field(pattern=r"^\d{1,2}:\d{2}$")
    schedule_type: str = "daily"
    days_of_week: List[int] = Field(default_factory=list)
    parameters: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("schedule_type", mode="before")
    @classmethod
    def _known_type(cls, value: str) -> str:
        return value if value in ("once", "daily", "weekly") else "daily"

    def confirmation(self) -> str:
        if self.action_id == "turn-on":
            verb = "turn on"
        elif self.action_id == "turn-off":
            verb = "turn off"
        else:
            verb = "control"
        target = self.parameters.get("target") or "lights"
        return f"I've set up a {self.schedule_type} schedule to {verb} your {target} at {self.time}."


class Routine(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    id: str
    user_id: str
    action_id: str
    time: str
    schedule_type: str
    enabled: bool = True


class SchedulingClient:

    def __init__(self, admin_url: str, api_key: str, timeout: float = 5.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.client = httpx.AsyncClient(
            base_url=admin_url.rstrip("/"),
            headers={"X-API-Key": api_key},
            timeout=timeout,
            transport=transport,
        )

    async def close(self):
        await self.client.aclose()

    async def create_routine(self, user_id: str, request: ScheduleRequest) -> Routine:
        body = {"userId": user_id, **request.model_dump(by_alias=True)}
        try:
            response = await self.client.post("/api/routines", json=body)
        except httpx.TransportError as e:
            raise IntegrationError.from_transport(SERVICE_NAME, e) from e
        if response.is_error:
            raise IntegrationError.from_status(SERVICE_NAME, response.status_code, what="that routine",
                                               detail=response.text[:200])
        routine = Routine.model_validate(response.json())
        logger.info("routine_created", routine_id=routine.id, action_id=routine.action_id,
                    schedule_type=routine.schedule_type)
        return routine
