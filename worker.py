"""
Temporal Worker — registers the card workflows and activities, then polls for tasks.

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
from activities.card_activities import CardActivities, Services
from features.cards import db as card_db
from features.runs import RunJournal
from features.runs import db as run_db
from workflows.manager import ALL_WORKFLOWS, WorkflowManager

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    datefmt="%H:%M:%S",
)
log = logging.getLogger(__name__)


async def main():
    card_db.init_db()
    run_db.init_db()

    log.info("Connecting to Temporal at %s", config.TEMPORAL_HOST)
    client = await Client.connect(config.TEMPORAL_HOST, namespace=config.TEMPORAL_NAMESPACE)

    activities = CardActivities(Services.from_config(use_db=True))
    # Launcher activities start further workflows through this manager.
    WorkflowManager(activities, client=client, journal=RunJournal(persist=True))

    log.info("Starting worker on queue: %s", config.TEMPORAL_TASK_QUEUE)
    with ThreadPoolExecutor(max_workers=config.ACTIVITY_WORKERS) as executor:
        worker = Worker(
            client,
            task_queue=config.TEMPORAL_TASK_QUEUE,
            workflows=ALL_WORKFLOWS,
            activities=activities.all(),
            activity_executor=executor,
        )
        log.info("Worker ready, listening for tasks")
        await worker.run()


if __name__ == "__main__":
    asyncio.run(main())
