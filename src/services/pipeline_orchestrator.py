"""
Pipeline Orchestrator.

Chains the three stage tasks for a consultation:

    transcription -> extraction -> document_generation

A successful stage enqueues exactly one successor job. A failed stage is
retried as a whole with exponential backoff until the attempt budget is
spent; then its failure handler marks the records ``failed`` once and
the error is re-raised to the worker. ``MissingInputError`` skips the
retries because the precondition will not change between attempts.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Optional

from src.config import Settings, get_settings
from src.db import DatabaseClient, get_db
from src.errors import ConsultationNotFoundError, InvalidTransitionError, MissingInputError
from src.logging_config import consultation_id_var, get_logger, stage_var
from src.schemas.consultation import ConsultationStatus, ProcessingStatus
from src.schemas.job import PipelineJob, PipelineStage
from src.services import pipeline_state
from src.services.ai_client import ExternalAIClient
from src.services.audit_service import AuditService
from src.services.document_generation import DocumentGenerationTask
from src.services.extraction import ExtractionTask
from src.services.job_queue import JobQueue
from src.services.pipeline_task import PipelineTask
from src.services.transcription import TranscriptionTask

logger = get_logger(__name__)


class JobOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    RETRY_SCHEDULED = "retry_scheduled"


def build_default_tasks(
    db: DatabaseClient,
    audit: AuditService,
    settings: Settings,
    ai_client: ExternalAIClient | None = None,
) -> dict[PipelineStage, PipelineTask]:
    ai_client = ai_client or ExternalAIClient(settings)
    return {
        PipelineStage.TRANSCRIPTION: TranscriptionTask(db=db, ai_client=ai_client, audit=audit, settings=settings),
        PipelineStage.EXTRACTION: ExtractionTask(db=db, ai_client=ai_client, audit=audit),
        PipelineStage.DOCUMENT_GENERATION: DocumentGenerationTask(db=db, ai_client=ai_client, audit=audit),
    }


class PipelineOrchestrator:
    def __init__(
        self,
        queue: JobQueue,
        db: DatabaseClient | None = None,
        tasks: dict[PipelineStage, PipelineTask] | None = None,
        audit: AuditService | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.queue = queue
        self.settings = settings or get_settings()
        self.db = db or get_db()
        self.audit = audit or AuditService(self.db)
        self.tasks = tasks or build_default_tasks(self.db, self.audit, self.settings)

    # -- Entry point --

    async def start(self, consultation_id: str, actor: str = "system") -> PipelineJob:
        """
        Queue a consultation for processing.

        Consultations that are ``pending`` or ``failed`` can (re)start, and
        so can one stuck in a working state with no live job left for it.
        A recording must already be stored.
        """
        consultation = await self.db.get_consultation(consultation_id)
        if consultation is None:
            raise ConsultationNotFoundError(f"Consultation {consultation_id} not found")
        if not consultation.recording_url:
            raise MissingInputError(f"No audio recording for consultation {consultation_id}")

        previous = consultation.processing_status
        stalled = (
            previous in pipeline_state.WORKING
            and not await self.queue.has_active_job(consultation_id)
        )
        target = pipeline_state.reset(previous, stalled=stalled)
        if stalled:
            logger.warning("stalled_consultation_restarted", consultation_id=consultation_id, previous=previous.value)

        updates: dict[str, str] = {"processing_status": target.value}
        if consultation.status == ConsultationStatus.SCHEDULED:
            updates["status"] = ConsultationStatus.IN_PROGRESS.value
        await self.db.update_consultation(consultation_id, updates)

        await self.audit.record(
            action="start_processing",
            entity_type="consultation",
            entity_id=consultation_id,
            actor=actor,
            changes={
                "processing_status": [previous.value, target.value],
                "recording_url": consultation.recording_url,
            },
        )
        logger.info("pipeline_started", consultation_id=consultation_id, actor=actor, previous=previous.value)
        return await self.enqueue(PipelineStage.TRANSCRIPTION, consultation_id)

    # -- Scheduling --

    async def enqueue(
        self,
        stage: PipelineStage,
        consultation_id: str,
        attempt: int = 1,
        delay_seconds: float = 0.0,
    ) -> PipelineJob:
        now = time.time()
        job = PipelineJob(
            stage=stage,
            consultation_id=consultation_id,
            attempt=attempt,
            enqueued_at=now,
            ready_at=now + delay_seconds,
        )
        await self.queue.enqueue(job)
        logger.info(
            "stage_enqueued",
            consultation_id=consultation_id,
            stage=stage.value,
            attempt=attempt,
            delay_seconds=delay_seconds,
        )
        return job

    def backoff_delay(self, attempt: int) -> float:
        """Delay before ``attempt + 1``: base, 4x base, 16x base, ..."""
        return self.settings.retry_base_delay_seconds * (4 ** (attempt - 1))

    # -- Execution --

    async def run_job(self, job: PipelineJob) -> JobOutcome:
        """Run one claimed job; the claim is released however the job ends."""
        consultation_token = consultation_id_var.set(job.consultation_id)
        stage_token = stage_var.set(job.stage.value)
        try:
            return await self._run(job)
        finally:
            await self.queue.ack(job)
            stage_var.reset(stage_token)
            consultation_id_var.reset(consultation_token)

    async def _run(self, job: PipelineJob) -> JobOutcome:
        task = self.tasks[job.stage]
        max_attempts = self.settings.max_task_attempts

        logger.info("stage_started", attempt=job.attempt, max_attempts=max_attempts)
        try:
            result = await task.run(job.consultation_id)
        except InvalidTransitionError as e:
            # The consultation moved on (or was never started); nothing to mark.
            logger.error("stage_rejected_by_state_machine", error=str(e))
            raise
        except Exception as e:
            retryable = getattr(e, "retryable", True)
            if retryable and job.attempt < max_attempts:
                delay = self.backoff_delay(job.attempt)
                logger.warning(
                    "stage_retry_scheduled",
                    attempt=job.attempt,
                    next_attempt=job.attempt + 1,
                    delay_seconds=delay,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                await self.enqueue(job.stage, job.consultation_id, job.attempt + 1, delay)
                return JobOutcome.RETRY_SCHEDULED

            logger.error(
                "stage_failed",
                attempt=job.attempt,
                retryable=retryable,
                error_type=type(e).__name__,
                error=str(e),
            )
            await task.handle_failure(job.consultation_id, e)
            raise

        for warning in result.warnings:
            logger.warning("stage_warning", kind=warning.kind, detail=warning.message)

        successor = pipeline_state.next_stage(job.stage)
        if successor is not None:
            await self.enqueue(successor, job.consultation_id)
        logger.info("stage_succeeded", attempt=job.attempt, next_stage=successor.value if successor else None)
        return JobOutcome.SUCCEEDED

    async def drain(self, max_jobs: Optional[int] = None) -> int:
        """
        Run every job that is due right now, in order, in this process.

        Failures are logged and swallowed per job so one bad consultation
        doesn't stop the rest. Returns the number of jobs run.
        """
        processed = 0
        while max_jobs is None or processed < max_jobs:
            job = await self.queue.dequeue_due()
            if job is None:
                break
            processed += 1
            try:
                await self.run_job(job)
            except Exception as e:
                logger.error(
                    "pipeline_job_failed",
                    consultation_id=job.consultation_id,
                    stage=job.stage.value,
                    error=str(e),
                )
        return processed


async def pipeline_status(db: DatabaseClient, consultation_id: str) -> dict[str, object]:
    """Snapshot of a consultation's progress for the API and CLI."""
    consultation = await db.get_consultation(consultation_id)
    if consultation is None:
        raise ConsultationNotFoundError(f"Consultation {consultation_id} not found")
    transcript = await db.get_transcript(consultation_id)
    documents = await db.list_documents(consultation_id)
    return {
        "consultation_id": consultation_id,
        "processing_status": consultation.processing_status.value,
        "transcript_status": transcript.processing_status.value if transcript else None,
        "error_message": transcript.error_message if transcript else None,
        "document_count": len(documents),
        "ready_for_review": consultation.processing_status == ProcessingStatus.READY_FOR_REVIEW,
    }
