"""Coordinator boundary: protocol plus the HTTP client used in production."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Sequence

import httpx
from pydantic import BaseModel, Field, ValidationError

from taskagent.config import CoordinatorConfig
from taskagent.core.errors import (
    AuthenticationError,
    CoordinatorRequestError,
    CoordinatorUnavailableError,
)
from taskagent.core.models import (
    AgentHealth,
    Credentials,
    MetricsSnapshot,
    Task,
    TaskOutcome,
    utc_now,
)

logger = logging.getLogger(__name__)

_AUTH_STATUS_CODES = frozenset({401, 403})
_RETRYABLE_STATUS_CODES = frozenset({408, 425, 429})


class Coordinator(Protocol):
    """Remote service issuing tasks and receiving results."""

    async def register_agent(
        self, agent_id: str, capabilities: Sequence[str], credentials: Credentials
    ) -> None: ...

    async def poll_tasks(self, agent_id: str, credentials: Credentials) -> List[Task]: ...

    async def report_success(
        self, task_id: str, outcome: TaskOutcome, credentials: Credentials
    ) -> None: ...

    async def report_failure(
        self, task_id: str, reason: Dict[str, Any], credentials: Credentials
    ) -> None: ...

    async def send_heartbeat(
        self,
        agent_id: str,
        health: AgentHealth,
        metrics: MetricsSnapshot,
        credentials: Credentials,
    ) -> None: ...

    async def login(self, username: str, password: str) -> Credentials: ...


class TaskPayload(BaseModel):
    """Task as delivered on the wire."""

    id: str = Field(..., min_length=1)
    platform: str = Field(..., min_length=1, description="Target domain of the task")
    type: str = Field(..., min_length=1, description="Operation kind")
    params: Dict[str, Any] = Field(default_factory=dict)
    attempts: int = Field(default=0, ge=0)
    priority: int = 0
    createdAt: Optional[datetime] = None

    def to_task(self) -> Task:
        return Task(
            id=self.id,
            domain=self.platform,
            kind=self.type,
            parameters=self.params,
            attempts=self.attempts,
            issued_at=self.createdAt or utc_now(),
            priority=self.priority,
        )


class LoginResponse(BaseModel):
    token: str
    userId: Optional[str] = None


def parse_tasks(items: Any) -> List[Task]:
    """Validate a poll response, skipping items that do not parse."""
    if not isinstance(items, list):
        raise CoordinatorRequestError(f"Expected a list of tasks, got {type(items).__name__}")
    tasks: List[Task] = []
    for item in items:
        try:
            tasks.append(TaskPayload.model_validate(item).to_task())
        except (ValidationError, ValueError) as exc:
            logger.warning("Skipping malformed task payload %r: %s", item, exc)
    return tasks


class HttpCoordinatorClient:
    """httpx-backed coordinator client with bearer authentication."""

    def __init__(
        self,
        config: CoordinatorConfig,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._config = config
        self._client = httpx.AsyncClient(
            base_url=config.base_url.rstrip("/"),
            timeout=httpx.Timeout(config.request_timeout_seconds, connect=10.0),
            transport=transport,
            headers={"Content-Type": "application/json"},
        )

    async def register_agent(
        self, agent_id: str, capabilities: Sequence[str], credentials: Credentials
    ) -> None:
        await self._request(
            "POST",
            "/extension/register",
            credentials=credentials,
            json={
                "agentId": agent_id,
                "userId": credentials.user_id,
                "capabilities": list(capabilities),
            },
        )
        logger.info("Agent %s registered with coordinator", agent_id)

    async def poll_tasks(self, agent_id: str, credentials: Credentials) -> List[Task]:
        response = await self._request(
            "GET",
            "/extension/tasks",
            credentials=credentials,
            params={"agentId": agent_id},
        )
        return parse_tasks(_json_body(response))

    async def report_success(
        self, task_id: str, outcome: TaskOutcome, credentials: Credentials
    ) -> None:
        payload = {"taskId": task_id, **outcome.to_payload()}
        await self._request(
            "POST",
            f"/extension/tasks/{task_id}/results",
            credentials=credentials,
            json=payload,
        )

    async def report_failure(
        self, task_id: str, reason: Dict[str, Any], credentials: Credentials
    ) -> None:
        await self._request(
            "POST",
            f"/extension/tasks/{task_id}/failure",
            credentials=credentials,
            json={"taskId": task_id, "error": reason, "failedAt": utc_now().isoformat()},
        )

    async def send_heartbeat(
        self,
        agent_id: str,
        health: AgentHealth,
        metrics: MetricsSnapshot,
        credentials: Credentials,
    ) -> None:
        await self._request(
            "POST",
            "/extension/heartbeat",
            credentials=credentials,
            json={"agentId": agent_id, "health": health.to_payload(), "metrics": metrics.to_payload()},
        )

    async def login(self, username: str, password: str) -> Credentials:
        response = await self._request(
            "POST",
            "/auth/login",
            credentials=None,
            json={"email": username, "password": password},
        )
        try:
            data = LoginResponse.model_validate(_json_body(response))
        except ValidationError as exc:
            raise CoordinatorRequestError(f"Malformed login response: {exc}") from exc
        return Credentials(token=data.token, user_id=data.userId)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        credentials: Optional[Credentials],
        **kwargs: Any,
    ) -> httpx.Response:
        headers = credentials.authorization_header() if credentials is not None else {}
        if credentials is not None and not headers:
            raise AuthenticationError("No credentials available for coordinator call")
        try:
            response = await self._client.request(method, path, headers=headers, **kwargs)
        except httpx.TimeoutException as exc:
            raise CoordinatorUnavailableError(f"{method} {path} timed out") from exc
        except httpx.HTTPError as exc:
            raise CoordinatorUnavailableError(f"{method} {path} failed: {exc}") from exc

        status = response.status_code
        if status in _AUTH_STATUS_CODES:
            raise AuthenticationError(f"{method} {path} rejected credentials", status_code=status)
        if status >= 500 or status in _RETRYABLE_STATUS_CODES:
            raise CoordinatorUnavailableError(f"{method} {path} returned HTTP {status}", status_code=status)
        if status >= 400:
            raise CoordinatorRequestError(f"{method} {path} returned HTTP {status}", status_code=status)
        return response


def _json_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError as exc:
        raise CoordinatorRequestError(f"Coordinator returned invalid JSON: {exc}") from exc
