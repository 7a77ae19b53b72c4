"""Temporal worker entry point for the menuscan workflows."""

from __future__ import annotations

import argparse
import asyncio
import logging

from dotenv import load_dotenv
from temporalio.client import Client
from temporalio.worker import Worker

from ..activities import extract_menu_activity, store_outcome_activity
from ..config import DEFAULT_TEMPORAL_ADDRESS, DEFAULT_TEMPORAL_NAMESPACE, DEFAULT_TEMPORAL_TASK_QUEUE
from ..workflows import MenuExtractionWorkflow


def build_worker(client: Client, task_queue: str) -> Worker:
    """Register the extraction workflow and its activities on ``task_queue``."""

    return Worker(
        client,
        task_queue=task_queue,
        workflows=[MenuExtractionWorkflow],
        activities=[
            extract_menu_activity,
            store_outcome_activity,
        ],
    )


async def run_worker(address: str, namespace: str, task_queue: str) -> None:
    client = await Client.connect(address, namespace=namespace)
    await build_worker(client, task_queue).run()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Run the Temporal worker for the menuscan workflows",
    )
    parser.add_argument(
        "--address",
        default=DEFAULT_TEMPORAL_ADDRESS,
        help="Temporal server address (host:port)",
    )
    parser.add_argument(
        "--namespace",
        default=DEFAULT_TEMPORAL_NAMESPACE,
        help="Temporal namespace",
    )
    parser.add_argument(
        "--task-queue",
        default=DEFAULT_TEMPORAL_TASK_QUEUE,
        help="Temporal task queue",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Logging level for pipeline telemetry",
    )
    return parser


def main() -> None:
    load_dotenv()
    parser = build_parser()
    args = parser.parse_args()
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    asyncio.run(run_worker(args.address, args.namespace, args.task_queue))


if __name__ == "__main__":  # pragma: no cover
    main()
