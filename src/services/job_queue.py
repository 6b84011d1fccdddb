"""
Pipeline Job Queue.

Durable queue of ``PipelineJob`` items ordered by the time they become
due. Retries are scheduled by enqueueing with a future ``ready_at``.

A dequeued job is *claimed*, not deleted: it stays visible to
``has_active_job()`` until the orchestrator acknowledges it with
``ack()``. A claim older than the claim timeout is treated as lost
(the worker running it died), so the consultation can be restarted.

``RedisJobQueue`` is used by the worker and the API; jobs live in a
sorted set scored by ready time plus one JSON string per job.
``InMemoryJobQueue`` runs the whole pipeline in a single process
(local development, scripts and tests).
"""

from __future__ import annotations

import heapq
import itertools
import time
from typing import Optional

import redis.asyncio as aioredis

from src.config import Settings, get_settings
from src.logging_config import get_logger
from src.schemas.job import PipelineJob

logger = get_logger(__name__)

DEFAULT_CLAIM_TIMEOUT_SECONDS = 1800.0


class JobQueue:
    """Interface shared by the queue backends."""

    async def enqueue(self, job: PipelineJob) -> None:
        raise NotImplementedError

    async def dequeue_due(self, now: float | None = None) -> PipelineJob | None:
        """Claim the earliest job whose ``ready_at`` has passed, if any."""
        raise NotImplementedError

    async def ack(self, job: PipelineJob) -> None:
        """Release a claimed job once it has finished, successfully or not."""
        raise NotImplementedError

    async def has_active_job(self, consultation_id: str, now: float | None = None) -> bool:
        """True if a job for the consultation is queued or claimed within the claim timeout."""
        raise NotImplementedError

    async def size(self) -> int:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class InMemoryJobQueue(JobQueue):
    def __init__(self, claim_timeout_seconds: float = DEFAULT_CLAIM_TIMEOUT_SECONDS) -> None:
        self._heap: list[tuple[float, int, PipelineJob]] = []
        self._counter = itertools.count()
        self._claimed: dict[str, tuple[float, PipelineJob]] = {}
        self._claim_timeout = claim_timeout_seconds

    async def enqueue(self, job: PipelineJob) -> None:
        heapq.heappush(self._heap, (job.ready_at, next(self._counter), job))

    async def dequeue_due(self, now: float | None = None) -> PipelineJob | None:
        now = time.time() if now is None else now
        if not self._heap or self._heap[0][0] > now:
            return None
        job = heapq.heappop(self._heap)[2]
        self._claimed[job.job_id] = (now, job)
        return job

    async def ack(self, job: PipelineJob) -> None:
        self._claimed.pop(job.job_id, None)

    async def has_active_job(self, consultation_id: str, now: float | None = None) -> bool:
        now = time.time() if now is None else now
        if any(job.consultation_id == consultation_id for _, _, job in self._heap):
            return True
        return any(
            job.consultation_id == consultation_id and now - claimed_at < self._claim_timeout
            for claimed_at, job in self._claimed.values()
        )

    async def size(self) -> int:
        return len(self._heap)

    @property
    def jobs(self) -> list[PipelineJob]:
        """Pending jobs in the order they will be dequeued."""
        return [job for _, _, job in sorted(self._heap, key=lambda item: item[:2])]

    @property
    def claimed(self) -> list[PipelineJob]:
        return [job for _, job in self._claimed.values()]


class RedisJobQueue(JobQueue):
    """
    Redis-backed queue.

    Keys:
        <prefix>:jobs        sorted set, member = job_id, score = ready_at
        <prefix>:claimed     hash, job_id -> claim time
        <prefix>:job:<id>    JSON-encoded PipelineJob, deleted on ack
    A job is claimed by whichever worker removes it from the sorted set.
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._redis: Optional[aioredis.Redis] = None
        prefix = self._settings.queue_key_prefix
        self._queue_key = f"{prefix}:jobs"
        self._claimed_key = f"{prefix}:claimed"
        self._job_key = f"{prefix}:job:{{}}"

    async def initialize(self) -> None:
        self._redis = aioredis.from_url(self._settings.redis_url, decode_responses=True)
        logger.info("job_queue_initialized", queue_key=self._queue_key)

    async def close(self) -> None:
        if self._redis:
            await self._redis.close()

    @property
    def redis(self) -> aioredis.Redis:
        if not self._redis:
            raise RuntimeError("RedisJobQueue not initialized. Call initialize() first.")
        return self._redis

    async def enqueue(self, job: PipelineJob) -> None:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.set(self._job_key.format(job.job_id), job.model_dump_json())
            pipe.zadd(self._queue_key, {job.job_id: job.ready_at})
            await pipe.execute()

    async def dequeue_due(self, now: float | None = None) -> PipelineJob | None:
        now = time.time() if now is None else now
        due = await self.redis.zrangebyscore(self._queue_key, "-inf", now, start=0, num=1)
        if not due:
            return None

        job_id = due[0]
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.zrem(self._queue_key, job_id)
            pipe.hsetnx(self._claimed_key, job_id, now)
            removed, _ = await pipe.execute()
        if not removed:
            # Another worker claimed it first
            return None

        payload = await self.redis.get(self._job_key.format(job_id))
        if payload is None:
            logger.error("job_payload_missing", job_id=job_id)
            await self.redis.hdel(self._claimed_key, job_id)
            return None
        return PipelineJob.model_validate_json(payload)

    async def ack(self, job: PipelineJob) -> None:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hdel(self._claimed_key, job.job_id)
            pipe.delete(self._job_key.format(job.job_id))
            await pipe.execute()

    async def has_active_job(self, consultation_id: str, now: float | None = None) -> bool:
        now = time.time() if now is None else now
        queued = await self.redis.zrange(self._queue_key, 0, -1)
        claims = await self.redis.hgetall(self._claimed_key)
        live_claims = [
            job_id for job_id, claimed_at in claims.items()
            if now - float(claimed_at) < self._settings.job_claim_timeout_seconds
        ]

        job_ids = [*queued, *live_claims]
        if not job_ids:
            return False
        payloads = await self.redis.mget([self._job_key.format(job_id) for job_id in job_ids])
        return any(
            payload is not None and PipelineJob.model_validate_json(payload).consultation_id == consultation_id
            for payload in payloads
        )

    async def size(self) -> int:
        return await self.redis.zcard(self._queue_key)
