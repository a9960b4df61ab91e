"""
Unit tests for the admin-backend clients (identity and routines).
"""
import json

import httpx
import pytest

from zenna_shared.errors import IntegrationError, IntegrationErrorKind, ServiceUnavailableError

from zenna.identity import IdentityClient
from zenna.models import UserType
from zenna.scheduling import ScheduleRequest, SchedulingClient


def identity_client(handler):
    return IdentityClient("http://admin.test/", "svc-key", transport=httpx.MockTransport(handler))


class TestIdentityClient:

    @pytest.mark.asyncio
    async def test_authenticate(self):
        def handler(request):
            assert request.headers["X-API-Key"] == "svc-key"
            assert json.loads(request.content) == {"token": "tok"}
            return httpx.Response(200, json={"userId": "user-1"})

        assert await identity_client(handler).authenticate("tok") == "user-1"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [401, 403, 404])
    async def test_invalid_session(self, status):
        client = identity_client(lambda request: httpx.Response(status))
        assert await client.authenticate("tok") is None

    @pytest.mark.asyncio
    async def test_empty_token_skips_backend(self):
        def handler(request):
            raise AssertionError("backend called")

        assert await identity_client(handler).authenticate("") is None

    @pytest.mark.asyncio
    async def test_get_user_camel_case(self):
        client = identity_client(lambda request: httpx.Response(200, json={
            "id": "agent-1",
            "username": "builder",
            "userType": "worker_agent",
            "sprintAssignmentAccess": True,
        }))

        user = await client.get_user("agent-1")

        assert user.user_type == UserType.WORKER_AGENT
        assert user.sprint_assignment_access

    @pytest.mark.asyncio
    async def test_unknown_user(self):
        assert await identity_client(lambda request: httpx.Response(404)).get_user("ghost") is None

    @pytest.mark.asyncio
    async def test_master_config_cached(self):
        calls = []

        def handler(request):
            calls.append(request.url.path)
            return httpx.Response(200, json={"systemPrompt": "Be warm.", "immutableRules": ["No secrets."]})

        client = identity_client(handler)
        first = await client.get_master_config()
        second = await client.get_master_config()

        assert first.system_prompt == "Be warm."
        assert second is first
        assert calls == ["/api/config/master"]

    @pytest.mark.asyncio
    async def test_unreachable_backend(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(ServiceUnavailableError):
            await identity_client(handler).get_user("user-1")

    @pytest.mark.asyncio
    async def test_audit_entry(self):
        entries = []

        def handler(request):
            entries.append(json.loads(request.content))
            return httpx.Response(201, json={})

        await identity_client(handler).record_audit("admin-1", "workspace_add_entry", target="db-1")

        assert entries[0]["userId"] == "admin-1"
        assert entries[0]["action"] == "workspace_add_entry"
        assert entries[0]["details"] == {}
        assert "timestamp" in entries[0]

    @pytest.mark.asyncio
    async def test_audit_failure_raises(self):
        with pytest.raises(httpx.HTTPStatusError):
            await identity_client(lambda request: httpx.Response(500)).record_audit("u", "x")

    @pytest.mark.asyncio
    async def test_health_check_swallows_network_errors(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        assert await identity_client(handler).health_check() is False


class TestSchedulingClient:

    def test_unknown_schedule_type_becomes_daily(self):
        request = ScheduleRequest.model_validate({"actionId": "turn-on", "time": "7:00", "scheduleType": "hourly"})
        assert request.schedule_type == "daily"
        assert request.confirmation() == "I've set up a daily schedule to turn on your lights at 7:00."

    def test_missing_schedule_type_is_daily(self):
        request = ScheduleRequest.model_validate({"actionId": "turn-off", "time": "22:00"})
        assert request.schedule_type == "daily"

    def test_one_off_schedule_kept(self):
        request = ScheduleRequest.model_validate({"actionId": "turn-on", "time": "7:00", "scheduleType": "once"})
        assert request.schedule_type == "once"

    @pytest.mark.asyncio
    async def test_create_routine(self):
        bodies = []

        def handler(request):
            body = json.loads(request.content)
            bodies.append(body)
            return httpx.Response(201, json={"id": "r1", **body})

        client = SchedulingClient("http://admin.test", "svc-key", transport=httpx.MockTransport(handler))
        request = ScheduleRequest(action_id="turn-off", time="22:30", schedule_type="daily",
                                  parameters={"target": "bedroom"})

        routine = await client.create_routine("user-1", request)

        assert routine.id == "r1"
        assert bodies[0]["userId"] == "user-1"
        assert bodies[0]["scheduleType"] == "daily"
        assert bodies[0]["actionId"] == "turn-off"

    @pytest.mark.asyncio
    async def test_backend_error_typed(self):
        client = SchedulingClient("http://admin.test", "svc-key", transport=httpx.MockTransport(
            lambda request: httpx.Response(500, text="boom")
        ))

        with pytest.raises(IntegrationError) as exc_info:
            await client.create_routine("user-1", ScheduleRequest(action_id="turn-on", time="06:30"))

        assert exc_info.value.kind == IntegrationErrorKind.SERVER_ERROR
