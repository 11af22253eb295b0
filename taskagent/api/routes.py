"""HTTP API exposing agent status and operator controls."""
from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from taskagent.core.models import AgentMessage, BreakerSnapshot, MessageKind
from taskagent.runtime import Agent, get_agent

router = APIRouter(prefix="/agent", tags=["agent"])


class ActiveTaskResponse(BaseModel):
    id: str
    domain: str
    kind: str
    attempts: int
    started_at: Optional[float] = None


class StatusResponse(BaseModel):
    agent_id: str
    status: str
    phase: str
    paused: bool
    registered: bool
    queue_size: int
    active_tasks: List[ActiveTaskResponse] = Field(default_factory=list)
    retry_pending: List[str] = Field(default_factory=list)
    outbox_size: int = 0
    last_error: Optional[str] = None


class MetricsResponse(BaseModel):
    tasks_completed: int
    tasks_failed: int
    tasks_retried: int
    tasks_timed_out: int
    average_latency_seconds: float
    tasks_per_minute: float
    success_rate: float
    last_activity_at: Optional[datetime] = None


class BreakerResponse(BaseModel):
    name: str
    state: str
    consecutive_failures: int
    consecutive_successes: int
    last_failure_at: Optional[float]
    total_failures: int
    total_successes: int
    trip_count: int

    @classmethod
    def from_snapshot(cls, snapshot: BreakerSnapshot) -> "BreakerResponse":
        return cls(
            name=snapshot.name,
            state=snapshot.state.value,
            consecutive_failures=snapshot.consecutive_failures,
            consecutive_successes=snapshot.consecutive_successes,
            last_failure_at=snapshot.last_failure_at,
            total_failures=snapshot.total_failures,
            total_successes=snapshot.total_successes,
            trip_count=snapshot.trip_count,
        )


@router.get("/status", response_model=StatusResponse)
async def get_status(agent: Agent = Depends(get_agent)) -> StatusResponse:
    return StatusResponse(**agent.runtime.describe())


@router.get("/metrics", response_model=MetricsResponse)
async def get_metrics(agent: Agent = Depends(get_agent)) -> MetricsResponse:
    snapshot = agent.runtime.metrics.snapshot()
    return MetricsResponse(
        tasks_completed=snapshot.tasks_completed,
        tasks_failed=snapshot.tasks_failed,
        tasks_retried=snapshot.tasks_retried,
        tasks_timed_out=snapshot.tasks_timed_out,
        average_latency_seconds=snapshot.average_latency_seconds,
        tasks_per_minute=snapshot.tasks_per_minute,
        success_rate=snapshot.success_rate,
        last_activity_at=snapshot.last_activity_at,
    )


@router.get("/breakers", response_model=Dict[str, BreakerResponse])
async def list_breakers(agent: Agent = Depends(get_agent)) -> Dict[str, BreakerResponse]:
    return {name: BreakerResponse.from_snapshot(snap) for name, snap in agent.breakers.snapshot().items()}


@router.post("/breakers/{name}/reset", response_model=BreakerResponse)
async def reset_breaker(name: str, agent: Agent = Depends(get_agent)) -> BreakerResponse:
    try:
        snapshot = await agent.breakers.reset(name)
    except KeyError as exc:
        detail = exc.args[0] if exc.args else str(exc)
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=detail) from exc
    return BreakerResponse.from_snapshot(snapshot)


@router.post("/pause", response_model=StatusResponse)
async def pause(agent: Agent = Depends(get_agent)) -> StatusResponse:
    agent.runtime.pause()
    return StatusResponse(**agent.runtime.describe())


@router.post("/resume", response_model=StatusResponse)
async def resume(agent: Agent = Depends(get_agent)) -> StatusResponse:
    agent.runtime.resume()
    return StatusResponse(**agent.runtime.describe())


@router.post("/poll", status_code=status.HTTP_202_ACCEPTED)
async def poll_now(agent: Agent = Depends(get_agent)) -> None:
    runtime = agent.runtime
    delivered = await agent.bus.send(
        AgentMessage(sender_id="api", recipient_id=runtime.component_id, kind=MessageKind.POLL_NOW),
    )
    if not delivered:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Agent runtime is not running")
