"""
Pipeline Worker.

Polls the Redis job queue and runs due pipeline jobs (transcription,
extraction, document generation) on a bounded pool of concurrent
asyncio tasks. Runs as a long-lived background process.

Start with:
    python -m src.workers.pipeline_worker
"""

from __future__ import annotations

import asyncio
import os
import signal
import sys

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "..")))

from dotenv import load_dotenv
load_dotenv(".env.local")

from src.config import get_settings
from src.logging_config import generate_trace_id, get_logger, setup_logging, trace_id_var
from src.schemas.job import PipelineJob
from src.services.job_queue import JobQueue, RedisJobQueue
from src.services.pipeline_orchestrator import PipelineOrchestrator

setup_logging()
logger = get_logger(__name__)


class PipelineWorker:
    """
    Continuously polls the job queue and dispatches pipeline jobs.

    At most ``concurrency`` jobs run at once. Jobs for different
    consultations run side by side; jobs for one consultation never
    overlap because each stage is only queued after the previous one
    finished.
    """

    def __init__(
        self,
        orchestrator: PipelineOrchestrator,
        queue: JobQueue,
        concurrency: int | None = None,
        poll_interval: float | None = None,
    ) -> None:
        settings = get_settings()
        self._orchestrator = orchestrator
        self._queue = queue
        self._concurrency = concurrency or settings.worker_concurrency
        self._poll_interval = poll_interval or settings.worker_poll_interval_seconds
        self._semaphore = asyncio.Semaphore(self._concurrency)
        self._in_flight: set[asyncio.Task[None]] = set()
        self._running = False

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    async def start(self) -> None:
        """Start the polling loop."""
        self._running = True
        logger.info(
            "pipeline_worker_started",
            poll_interval=self._poll_interval,
            concurrency=self._concurrency,
        )

        while self._running:
            try:
                dispatched = await self._poll_and_dispatch()
                if not dispatched:
                    await asyncio.sleep(self._poll_interval)
            except Exception as e:
                logger.error("worker_poll_error", error=str(e))
                await asyncio.sleep(self._poll_interval)

        await self._wait_for_in_flight()
        logger.info("pipeline_worker_stopped")

    async def stop(self) -> None:
        """Stop polling; in-flight jobs are allowed to finish."""
        self._running = False

    async def _poll_and_dispatch(self) -> bool:
        """
        Claim the next due job and start it in the background.

        Returns True if a job was dispatched, False if the queue had
        nothing due.
        """
        await self._semaphore.acquire()
        try:
            job = await self._queue.dequeue_due()
        except Exception:
            self._semaphore.release()
            raise

        if job is None:
            self._semaphore.release()
            return False

        task = asyncio.create_task(self._run_job(job))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)
        return True

    async def _run_job(self, job: PipelineJob) -> None:
        trace_id_var.set(generate_trace_id())
        try:
            await self._orchestrator.run_job(job)
        except Exception as e:
            logger.error(
                "pipeline_job_failed",
                job_id=job.job_id,
                consultation_id=job.consultation_id,
                stage=job.stage.value,
                attempt=job.attempt,
                error_type=type(e).__name__,
                error=str(e),
            )
        finally:
            self._semaphore.release()

    async def _wait_for_in_flight(self) -> None:
        if self._in_flight:
            logger.info("waiting_for_in_flight_jobs", count=len(self._in_flight))
            await asyncio.gather(*self._in_flight, return_exceptions=True)


async def main() -> None:
    queue = RedisJobQueue()
    await queue.initialize()
    worker = PipelineWorker(PipelineOrchestrator(queue), queue)

    loop = asyncio.get_running_loop()

    def shutdown_handler() -> None:
        logger.info("shutdown_signal_received")
        asyncio.ensure_future(worker.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, shutdown_handler)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass

    try:
        await worker.start()
    except KeyboardInterrupt:
        await worker.stop()
    finally:
        await queue.close()


if __name__ == "__main__":
    asyncio.run(main())
