"""Login and logout against the coordinator on behalf of the agent."""
from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from taskagent.core.errors import AuthenticationError, CoordinatorError, CoordinatorUnavailableError
from taskagent.runtime import Agent, get_agent

router = APIRouter(prefix="/auth", tags=["auth"])


class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1, description="Coordinator account e-mail")
    password: str = Field(..., min_length=1)


class LoginResponse(BaseModel):
    user_id: Optional[str]
    status: str


class LogoutResponse(BaseModel):
    status: str
    dropped_tasks: List[str] = Field(default_factory=list)


@router.post("/login", response_model=LoginResponse)
async def login(request: LoginRequest, agent: Agent = Depends(get_agent)) -> LoginResponse:
    try:
        credentials = await agent.coordinator.login(request.username, request.password)
    except AuthenticationError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc
    except CoordinatorUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except CoordinatorError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc

    await agent.runtime.authenticate(credentials)
    return LoginResponse(user_id=credentials.user_id, status=agent.runtime.status.value)


@router.post("/logout", response_model=LogoutResponse)
async def logout(agent: Agent = Depends(get_agent)) -> LogoutResponse:
    dropped = await agent.runtime.logout()
    return LogoutResponse(status=agent.runtime.status.value, dropped_tasks=dropped)
