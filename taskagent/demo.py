"""CLI demonstration of an agent working against an in-memory coordinator."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import NoReturn

from taskagent.config import Config, RuntimeConfig
from taskagent.core.models import Credentials, Task
from taskagent.runtime import build_agent
from taskagent.services.memory_coordinator import InMemoryCoordinator


async def main() -> None:
    coordinator = InMemoryCoordinator(valid_tokens=("demo-token",))
    settings = replace(
        Config(agent_id="demo-agent"),
        runtime=RuntimeConfig(poll_interval_seconds=1.0, max_concurrent_tasks=2, tick_seconds=0.1),
    )
    agent = build_agent(settings, coordinator, credentials=Credentials(token="demo-token", user_id="demo-user"))

    for index in range(5):
        coordinator.issue(
            Task(id=f"demo-{index}", domain="demo", kind="echo", parameters={"n": index}, priority=index % 2),
        )
    coordinator.issue(Task(id="demo-unsupported", domain="mystery", kind="scrape"))

    await agent.start()
    print(f"Agent {settings.agent_id} started with capabilities {agent.dispatcher.capabilities()}")
    await asyncio.sleep(2)

    for task_id in ["demo-0", "demo-1", "demo-2", "demo-3", "demo-4", "demo-unsupported"]:
        print(f"{task_id}: {coordinator.state_of(task_id).value}")

    summary = await agent.reporter.shutdown()
    metrics = agent.runtime.metrics.snapshot()
    print(f"Completed {metrics.tasks_completed}, failed {metrics.tasks_failed}, aborted {len(summary.aborted)}")
    print(f"Heartbeats received by coordinator: {len(coordinator.heartbeats)}")
    print(f"Final status: {agent.runtime.status.value}")


def run() -> NoReturn:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    asyncio.run(main())


if __name__ == "__main__":
    run()
