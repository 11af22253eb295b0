"""Handler capability implemented by every (domain, kind) executor."""
from __future__ import annotations

import abc
from typing import ClassVar, Tuple

from taskagent.core.models import Task, TaskOutcome
from taskagent.services.sandbox import ExecutionContext


class Handler(abc.ABC):
    """Executes one kind of task inside a disposable execution context.

    Handlers only see the frozen task and the context they were given; they
    report problems by raising ``TaskError`` subclasses.
    """

    required_parameters: ClassVar[Tuple[str, ...]] = ()

    @abc.abstractmethod
    async def handle(self, task: Task, context: ExecutionContext) -> TaskOutcome:
        """Run the task and return its structured outcome."""
