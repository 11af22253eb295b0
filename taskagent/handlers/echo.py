"""Simple handler used in the demo and in tests."""
from __future__ import annotations

import asyncio
import random
from typing import Optional

from taskagent.core.models import Task, TaskOutcome
from taskagent.handlers.base import Handler
from taskagent.services.sandbox import ExecutionContext


class EchoHandler(Handler):
    """Echoes the task parameters back as a single record."""

    def __init__(self, *, min_delay: float = 0.05, max_delay: float = 0.2, seed: Optional[int] = None) -> None:
        self._min_delay = min_delay
        self._max_delay = max_delay
        self._random = random.Random(seed)  # noqa: S311

    async def handle(self, task: Task, context: ExecutionContext) -> TaskOutcome:
        await asyncio.sleep(self._random.uniform(self._min_delay, self._max_delay))  # Simulate work
        return TaskOutcome.from_records(
            [{"taskId": task.id, "echo": dict(task.parameters), "attempt": task.attempts}],
        )
