"""FastAPI entry-point hosting the agent and its control surface."""
from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI

from taskagent.api.auth import router as auth_router
from taskagent.api.routes import router as agent_router
from taskagent.runtime import Agent, get_agent, get_coordinator


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for FastAPI application."""
    # Startup: register, start polling and heartbeats
    agent = get_agent()
    await agent.start()
    yield
    # Shutdown: drain in-flight work, final heartbeat
    await agent.shutdown()
    await get_coordinator().aclose()


app = FastAPI(title="Task Agent", lifespan=lifespan)
app.include_router(agent_router)
app.include_router(auth_router)


@app.get("/health")
async def health(agent: Agent = Depends(get_agent)) -> dict:
    return {"status": agent.runtime.status.value, "phase": agent.runtime.phase.value}
