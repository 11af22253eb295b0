"""Tests for the shipped handlers and the sandbox context."""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

import httpx
import pytest

from taskagent.core.errors import (
    MalformedParametersError,
    NotApplicableError,
    TerminalTaskError,
    TransientTaskError,
)
from taskagent.core.models import OutcomeKind, Task
from taskagent.handlers.echo import EchoHandler
from taskagent.handlers.page_fetch import PageFetchHandler
from taskagent.services.sandbox import SandboxContext

BODY = (
    "We are hiring a senior Python engineer to build distributed task systems. "
    "You will own the agent runtime, design retry and backoff strategies, and work "
    "with the platform team on circuit breakers, observability and graceful shutdown. "
    "Experience with asyncio, httpx and FastAPI is expected, as is a habit of writing "
    "careful tests for concurrent code."
)

PAGE = f"""
<html><head>
<title>Careers</title>
<meta property="og:title" content="Senior Python Engineer">
<meta content="Senior Python role" name="description">
</head><body><article><h2>About the role</h2><p>{BODY}</p></article></body></html>
"""


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def _fetch_task(url: str = "https://jobs.example.com/123") -> Task:
    return Task(id="t1", domain="web", kind="detail", parameters={"url": url})


def _transport(status: int, body: str = PAGE) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, text=body, headers={"content-type": "text/html"})

    return httpx.MockTransport(handler)


@asynccontextmanager
async def _opened(context: SandboxContext) -> AsyncIterator[SandboxContext]:
    await context.open()
    try:
        yield context
    finally:
        await context.close()


@pytest.mark.anyio
async def test_page_fetch_extracts_metadata_and_text() -> None:
    task = _fetch_task()
    async with _opened(SandboxContext(task, transport=_transport(200))) as context:
        outcome = await PageFetchHandler().handle(task, context)

    assert outcome.kind is OutcomeKind.RECORDS
    record = outcome.records[0]
    assert record["title"] == "Senior Python Engineer"
    assert record["description"] == "Senior Python role"
    assert "senior Python engineer" in record["preview"]
    assert record["status"] == 200
    assert record["contentLength"] == len(PAGE.encode())


@pytest.mark.anyio
async def test_page_fetch_caps_body_size() -> None:
    task = _fetch_task()
    async with _opened(SandboxContext(task, transport=_transport(200))) as context:
        with pytest.raises(TerminalTaskError) as info:
            await PageFetchHandler(max_body_bytes=64).handle(task, context)
    assert info.value.reason_code == "page_too_large"


@pytest.mark.anyio
@pytest.mark.parametrize(
    ("status", "error"),
    [
        (404, NotApplicableError),
        (410, NotApplicableError),
        (503, TransientTaskError),
        (429, TransientTaskError),
        (400, TerminalTaskError),
    ],
)
async def test_page_fetch_maps_http_status(status: int, error: type) -> None:
    task = _fetch_task()
    async with _opened(SandboxContext(task, transport=_transport(status))) as context:
        with pytest.raises(error):
            await PageFetchHandler().handle(task, context)


@pytest.mark.anyio
async def test_page_fetch_network_error_is_transient() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    task = _fetch_task()
    async with _opened(SandboxContext(task, transport=httpx.MockTransport(handler))) as context:
        with pytest.raises(TransientTaskError):
            await PageFetchHandler().handle(task, context)


@pytest.mark.anyio
async def test_page_fetch_rejects_non_http_url() -> None:
    task = _fetch_task("file:///etc/passwd")
    async with _opened(SandboxContext(task, transport=_transport(200))) as context:
        with pytest.raises(MalformedParametersError):
            await PageFetchHandler().handle(task, context)


@pytest.mark.anyio
async def test_sandbox_close_removes_workdir() -> None:
    task = _fetch_task()
    context = SandboxContext(task)
    await context.open()
    workdir = context.workdir
    (workdir / "cookies.txt").write_text("session=1")

    await context.close()
    await context.close()
    assert context.closed is True
    assert not workdir.exists()


@pytest.mark.anyio
async def test_echo_handler_returns_parameters() -> None:
    task = Task(id="e1", domain="demo", kind="echo", parameters={"n": 3}, attempts=1)
    async with _opened(SandboxContext(task)) as context:
        outcome = await EchoHandler(min_delay=0, max_delay=0).handle(task, context)
    assert outcome.records == [{"taskId": "e1", "echo": {"n": 3}, "attempt": 1}]
