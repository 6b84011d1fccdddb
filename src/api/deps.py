"""
Shared FastAPI dependencies.

Routers receive the orchestrator and review service through
``Depends`` so tests can override them with in-memory versions.
"""

from __future__ import annotations

from src.db import get_db
from src.services.document_review import DocumentReviewService
from src.services.job_queue import RedisJobQueue
from src.services.pipeline_orchestrator import PipelineOrchestrator

# Shared orchestrator instance (initialized on first use)
_orchestrator: PipelineOrchestrator | None = None


async def get_orchestrator() -> PipelineOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        queue = RedisJobQueue()
        await queue.initialize()
        _orchestrator = PipelineOrchestrator(queue)
    return _orchestrator


async def close_orchestrator() -> None:
    global _orchestrator
    if _orchestrator is not None:
        await _orchestrator.queue.close()
        _orchestrator = None


def get_review_service() -> DocumentReviewService:
    return DocumentReviewService(get_db())
