"""
Temporal Worker — registers the test-gate workflow and activity, then polls for tasks.

Usage:
    python worker.py
"""

from __future__ import annotations

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor

from temporalio.client import Client
from temporalio.worker import Worker

import config
from activities.test_run import run_workspace_tests
from workflows.test_gate import WorkspaceTestWorkflow

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    datefmt="%H:%M:%S",
)
log = logging.getLogger(__name__)

ALL_ACTIVITIES = [
    run_workspace_tests,
]

MAX_CONCURRENT_WORKSPACES = 4


async def main():
    log.info("Connecting to Temporal at %s", config.TEMPORAL_HOST)
    client = await Client.connect(config.TEMPORAL_HOST, namespace=config.TEMPORAL_NAMESPACE)

    log.info("Starting worker on queue: %s", config.TEMPORAL_TASK_QUEUE)
    with ThreadPoolExecutor(max_workers=MAX_CONCURRENT_WORKSPACES) as activity_executor:
        worker = Worker(
            client,
            task_queue=config.TEMPORAL_TASK_QUEUE,
            workflows=[WorkspaceTestWorkflow],
            activities=ALL_ACTIVITIES,
            activity_executor=activity_executor,
        )
        log.info("Worker ready — listening for tasks")
        await worker.run()


if __name__ == "__main__":
    asyncio.run(main())
