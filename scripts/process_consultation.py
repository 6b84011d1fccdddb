"""
CLI tool to run a consultation recording through the document pipeline.

Usage:
    python scripts/process_consultation.py <consultation_id>
    python scripts/process_consultation.py <consultation_id> --inline

Examples:
    # Queue for the worker (Redis)
    python scripts/process_consultation.py 7f3c...

    # Run all three stages in this process, without Redis or a worker
    python scripts/process_consultation.py 7f3c... --inline
"""

import argparse
import asyncio
import os
import sys

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from dotenv import load_dotenv
load_dotenv(".env.local")

from src.errors import PipelineError
from src.logging_config import setup_logging, get_logger
from src.services.job_queue import InMemoryJobQueue, RedisJobQueue
from src.services.pipeline_orchestrator import PipelineOrchestrator, pipeline_status

setup_logging()
logger = get_logger(__name__)


async def process(consultation_id: str, inline: bool = False, actor: str = "cli") -> None:
    """Start the pipeline for a single consultation."""
    queue = InMemoryJobQueue() if inline else RedisJobQueue()
    if isinstance(queue, RedisJobQueue):
        await queue.initialize()

    orchestrator = PipelineOrchestrator(queue)

    try:
        try:
            job = await orchestrator.start(consultation_id, actor=actor)
        except PipelineError as e:
            print(f"Cannot start pipeline: {e}")
            return
        print(f"Queued {job.stage.value} job {job.job_id}")

        if not inline:
            print("Start the worker to process it: python -m src.workers.pipeline_worker")
            return

        # Retries are scheduled in the future; keep draining until idle
        while await queue.size():
            if not await orchestrator.drain():
                await asyncio.sleep(orchestrator.settings.worker_poll_interval_seconds)

        status = await pipeline_status(orchestrator.db, consultation_id)
        print(f"Processing status: {status['processing_status']}")
        print(f"Documents generated: {status['document_count']}")
        if status["error_message"]:
            print(f"Error: {status['error_message']}")

    finally:
        await queue.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Run a consultation recording through the document pipeline")
    parser.add_argument("consultation_id", help="Consultation UUID from DB")
    parser.add_argument("--inline", action="store_true", help="Run every stage in this process")
    parser.add_argument("--actor", default="cli", help="Name recorded in the audit log")

    args = parser.parse_args()

    asyncio.run(process(
        consultation_id=args.consultation_id,
        inline=args.inline,
        actor=args.actor,
    ))


if __name__ == "__main__":
    main()
