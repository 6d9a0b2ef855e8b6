"""
HTTP side of the editor agent: session reports, commit counts and the
caller's stats summary.
"""

import logging
from typing import Any, Dict, Optional

import httpx

from devradar.client.config import ClientSettings

REQUEST_TIMEOUT_SECONDS = 10


class StatsApiError(RuntimeError):
    def __init__(self, status_code: int, code: Optional[str], message: str):
        super().__init__(message)
        self.status_code = status_code
        self.code = code


class StatsClient:
    def __init__(
        self,
        settings: ClientSettings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.settings = settings
        self.transport = transport
        self.logger = logger or logging.getLogger("devradar.client.api")

    def _headers(self) -> Dict[str, str]:
        if not self.settings.token:
            raise StatsApiError(401, "credential_missing", "No auth token configured")
        return {"Authorization": f"Bearer {self.settings.token}"}

    async def _request(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        async with httpx.AsyncClient(
            base_url=self.settings.server_url,
            timeout=REQUEST_TIMEOUT_SECONDS,
            transport=self.transport,
        ) as client:
            response = await client.request(method, path, json=json, headers=self._headers())
        if response.is_success:
            return response.json()["data"]

        code = None
        message = response.text
        try:
            error = response.json().get("error") or {}
            code = error.get("code")
            message = error.get("message") or message
        except ValueError:
            pass
        self.logger.warning(f"[client] {method} {path} failed: {response.status_code} {code}")
        raise StatsApiError(response.status_code, code, message)

    async def report_session(
        self,
        seconds: int,
        *,
        language: Optional[str] = None,
        project: Optional[str] = None,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {"sessionDuration": max(0, min(int(seconds), 86400))}
        if language:
            body["language"] = language
        if project:
            body["project"] = project
        return await self._request("POST", "/v1/stats/session", body)

    async def report_commits(self, count: int) -> int:
        data = await self._request("POST", "/v1/stats/commits", {"count": count})
        return int(data["weeklyCommits"])

    async def my_stats(self) -> Dict[str, Any]:
        return await self._request("GET", "/v1/stats/me")
