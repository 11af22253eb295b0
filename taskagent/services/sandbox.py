"""Disposable execution contexts in which task handlers run."""
from __future__ import annotations

import abc
import logging
import shutil
import tempfile
from pathlib import Path
from typing import Callable, Dict, Optional

import httpx

from taskagent.core.models import Task

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "Mozilla/5.0 (compatible; taskagent/0.1)"


class ExecutionContext(abc.ABC):
    """Isolated environment allocated for exactly one dispatch."""

    def __init__(self, task: Task) -> None:
        self.task = task
        self.closed = False

    @abc.abstractmethod
    async def open(self) -> None:
        """Allocate the context's resources."""

    @abc.abstractmethod
    async def close(self) -> None:
        """Release every resource; must be safe to call more than once."""


ContextFactory = Callable[[Task], ExecutionContext]


class SandboxContext(ExecutionContext):
    """Scratch directory plus a private HTTP session with its own cookie jar."""

    def __init__(
        self,
        task: Task,
        *,
        request_timeout_seconds: float = 30.0,
        headers: Optional[Dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(task)
        self._request_timeout_seconds = request_timeout_seconds
        self._headers = {"User-Agent": DEFAULT_USER_AGENT, **(headers or {})}
        self._transport = transport
        self._http: Optional[httpx.AsyncClient] = None
        self._workdir: Optional[Path] = None

    @property
    def http(self) -> httpx.AsyncClient:
        if self._http is None:
            raise RuntimeError("Execution context is not open")
        return self._http

    @property
    def workdir(self) -> Path:
        if self._workdir is None:
            raise RuntimeError("Execution context is not open")
        return self._workdir

    async def open(self) -> None:
        self._workdir = Path(tempfile.mkdtemp(prefix=f"taskagent-{self.task.id}-"))
        self._http = httpx.AsyncClient(
            timeout=httpx.Timeout(self._request_timeout_seconds, connect=10.0),
            headers=self._headers,
            transport=self._transport,
            follow_redirects=True,
        )

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            if self._http is not None:
                await self._http.aclose()
        finally:
            if self._workdir is not None:
                shutil.rmtree(self._workdir, ignore_errors=True)
            logger.debug("Torn down execution context for task %s", self.task.id)


def sandbox_factory(
    *,
    request_timeout_seconds: float = 30.0,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ContextFactory:
    """Build a context factory producing ``SandboxContext`` instances."""

    def _factory(task: Task) -> ExecutionContext:
        return SandboxContext(
            task,
            request_timeout_seconds=request_timeout_seconds,
            transport=transport,
        )

    return _factory
