"""
Identity client for the admin backend.

Resolves session tokens, loads user records and the deployment master
config, applies settings patches, and writes audit entries. Uses
service-to-service authentication with an API key.
"""
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx
import structlog

from zenna_shared.errors import ServiceUnavailableError

from .models import MasterConfig, User

logger = structlog.get_logger()


class IdentityClient:
    """Client for identity and configuration records in the admin API."""

    def __init__(
        self,
        admin_url: str,
        api_key: str,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.admin_url = admin_url.rstrip("/")
        self.client = httpx.AsyncClient(
            base_url=self.admin_url,
            headers={"X-API-Key": api_key},
            timeout=timeout,
            transport=transport,
        )

        # Master config cache (60-second TTL)
        self._cache_ttl = 60
        self._master_config_cache: Optional[MasterConfig] = None
        self._master_config_cache_time = 0.0

    async def close(self):
        await self.client.aclose()

    async def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            return await self.client.request(method, path, **kwargs)
        except httpx.TransportError as e:
            logger.error("identity_backend_unreachable", path=path, error=str(e))
            raise ServiceUnavailableError("Identity service unavailable", detail=type(e).__name__) from e

    async def authenticate(self, token: str) -> Optional[str]:
        """
        Resolve a session token to a user id.

        Returns:
            The user id, or None if the token is invalid or expired
        """
        if not token:
            return None
        response = await self._send("POST", "/api/sessions/verify", json={"token": token})
        if response.status_code in (401, 403, 404):
            return None
        response.raise_for_status()
        return response.json().get("userId")

    async def get_user(self, user_id: str) -> Optional[User]:
        response = await self._send("GET", f"/api/users/{user_id}")
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return User.model_validate(response.json())

    async def get_master_config(self) -> MasterConfig:
        now = time.time()
        if self._master_config_cache and (now - self._master_config_cache_time) < self._cache_ttl:
            return self._master_config_cache

        response = await self._send("GET", "/api/config/master")
        response.raise_for_status()
        config = MasterConfig.model_validate(response.json())
        self._master_config_cache = config
        self._master_config_cache_time = now
        return config

    async def update_settings(self, user_id: str, patch: Dict[str, Any]) -> User:
        response = await self._send("PATCH", f"/api/users/{user_id}/settings", json=patch)
        response.raise_for_status()
        logger.info("user_settings_updated", user_id=user_id, keys=sorted(patch))
        return User.model_validate(response.json())

    async def record_audit(
        self,
        user_id: str,
        action: str,
        target: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Write one audit entry. Raises on failure; callers decide what to do."""
        entry = {
            "userId": user_id,
            "action": action,
            "target": target,
            "details": details or {},
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        response = await self._send("POST", "/api/audit-log", json=entry)
        response.raise_for_status()

    async def health_check(self) -> bool:
        try:
            response = await self.client.get("/health")
            return response.status_code == 200
        except httpx.HTTPError:
            return False
