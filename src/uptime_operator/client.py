"""UptimeRobot v3 API client.

Every call goes through the RetryingRequestExecutor. Delete operations are
idempotent: a 404 means the object is already gone and counts as success,
which is what the cleanup orchestrator requires of its delete action.
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Any

import httpx

from .cleanup import CleanupAction
from .config import DEFAULT_API_URL, BackoffParameters, OperatorConfig
from .errors import RemoteError, UptimeOperatorError, is_not_found
from .models import (
    KIND_MAINTENANCE_WINDOW,
    KIND_MONITOR,
    KIND_MONITOR_GROUP,
    KIND_SLACK_INTEGRATION,
    ResourceRecord,
)
from .retry import RequestSpec, RetryingRequestExecutor

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT = 5.0


class UptimeRobotClient:
    """Async client for the UptimeRobot v3 API."""

    def __init__(
        self,
        api_key: str,
        base_url: str | None = None,
        retry: BackoffParameters | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        url = base_url or os.environ.get("UPTIME_ROBOT_API") or DEFAULT_API_URL
        self._http = httpx.AsyncClient(
            base_url=url.rstrip("/") + "/",
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
                "Cache-Control": "no-cache",
            },
            timeout=httpx.Timeout(timeout, connect=min(DEFAULT_CONNECT_TIMEOUT, timeout)),
            transport=transport,
        )
        self._executor = RetryingRequestExecutor(self._http, retry)

    @classmethod
    def from_config(
        cls, config: OperatorConfig, transport: httpx.AsyncBaseTransport | None = None
    ) -> UptimeRobotClient:
        return cls(
            api_key=config.api_key,
            base_url=config.api_url,
            retry=config.retry,
            timeout=config.request_timeout_seconds,
            transport=transport,
        )

    @property
    def executor(self) -> RetryingRequestExecutor:
        return self._executor

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> UptimeRobotClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def request_json(
        self,
        method: str,
        endpoint: str,
        payload: Any = None,
        cancel: asyncio.Event | None = None,
    ) -> Any:
        """Send a request and decode the JSON response, if any."""
        spec = RequestSpec.with_json(method, endpoint.lstrip("/"), payload)
        response = await self._executor.execute(spec, cancel=cancel)
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise UptimeOperatorError(
                f"Invalid JSON in response to {method} {endpoint}: {e}"
            ) from e

    async def _delete(self, endpoint: str, cancel: asyncio.Event | None = None) -> None:
        try:
            await self.request_json("DELETE", endpoint, cancel=cancel)
        except RemoteError as e:
            if not is_not_found(e):
                raise
            logger.info("Already deleted", extra={"endpoint": endpoint})

    async def get_account_details(self) -> dict[str, Any]:
        """GET /user"""
        result = await self.request_json("GET", "user")
        return result if isinstance(result, dict) else {}

    async def delete_monitor(self, monitor_id: str, cancel: asyncio.Event | None = None) -> None:
        """DELETE /monitors/{id}"""
        await self._delete(f"monitors/{monitor_id}", cancel)

    async def delete_maintenance_window(
        self, window_id: str, cancel: asyncio.Event | None = None
    ) -> None:
        """DELETE /maintenance-windows/{id}"""
        await self._delete(f"maintenance-windows/{window_id}", cancel)

    async def delete_integration(
        self, integration_id: int | str, cancel: asyncio.Event | None = None
    ) -> None:
        """DELETE /integrations/{id}"""
        await self._delete(f"integrations/{integration_id}", cancel)

    async def delete_monitor_group(self, group_id: str, cancel: asyncio.Event | None = None) -> None:
        """DELETE /monitor-groups/{id}"""
        await self._delete(f"monitor-groups/{group_id}", cancel)

    def delete_action_for(
        self, record: ResourceRecord, cancel: asyncio.Event | None = None
    ) -> CleanupAction:
        """Build the idempotent delete action for a record.

        Records that never reached the API, or opted out of pruning, get a
        no-op action so their finalizer can be released.
        """
        external_id = record.status.id
        prune = record.spec.get("prune", True)

        async def noop() -> None:
            return None

        if not prune or not record.status.ready or not external_id:
            return noop

        deleters = {
            KIND_MONITOR: self.delete_monitor,
            KIND_MAINTENANCE_WINDOW: self.delete_maintenance_window,
            KIND_SLACK_INTEGRATION: self.delete_integration,
            KIND_MONITOR_GROUP: self.delete_monitor_group,
        }
        deleter = deleters.get(record.kind)
        if deleter is None:
            return noop

        async def delete() -> None:
            await deleter(external_id, cancel)

        return delete
