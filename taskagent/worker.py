"""Standalone agent process without the HTTP surface."""
from __future__ import annotations

import asyncio
import logging
from typing import NoReturn

from taskagent.config import config
from taskagent.runtime import build_agent, get_coordinator

logger = logging.getLogger(__name__)


async def main() -> None:
    coordinator = get_coordinator()
    agent = build_agent(config, coordinator)
    await agent.start()
    agent.reporter.install_signal_handlers()
    logger.info("Agent %s running against %s", config.agent_id, config.coordinator.base_url)
    try:
        await agent.reporter.wait_shutdown()
    finally:
        await coordinator.aclose()


def run() -> NoReturn:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    asyncio.run(main())


if __name__ == "__main__":
    run()
