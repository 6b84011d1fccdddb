from __future__ import annotations

import pytest

from src.errors import (
    ConsultationNotFoundError,
    InvalidTransitionError,
    MalformedResponseError,
    MissingInputError,
    ProviderError,
)
from src.schemas.consultation import ConsultationStatus, ProcessingStatus as S
from src.schemas.document import DocumentType
from src.schemas.job import PipelineJob, PipelineStage
from src.schemas.transcript import TranscriptStatus
from src.services.job_queue import InMemoryJobQueue
from src.services.pipeline_orchestrator import (
    JobOutcome,
    PipelineOrchestrator,
    build_default_tasks,
    pipeline_status,
)

from tests.conftest import extraction_json

ORDERED_STATUSES = [S.PENDING, S.TRANSCRIBING, S.EXTRACTING, S.GENERATING_DOCUMENTS, S.READY_FOR_REVIEW]


def is_subsequence(visited, ordered) -> bool:
    remaining = iter(ordered)
    return all(status in remaining for status in visited)


async def test_end_to_end_reaches_ready_for_review(db, ai, orchestrator, queue, consultation):
    ai.generations = [extraction_json(), "SOAP note content"]

    job = await orchestrator.start(consultation.id)
    assert job.stage == PipelineStage.TRANSCRIPTION

    assert await orchestrator.drain() == 3

    assert db.consultations[consultation.id].processing_status == S.READY_FOR_REVIEW
    assert db.consultations[consultation.id].status == ConsultationStatus.IN_PROGRESS
    documents = db.documents_for(consultation.id)
    assert [(d.document_type, d.content) for d in documents] == [(DocumentType.SOAP_NOTE, "SOAP note content")]
    transcript = db.transcripts[consultation.id]
    assert transcript.processing_status == TranscriptStatus.COMPLETED
    assert transcript.structured_data["letters_required"] == []
    assert await queue.size() == 0


async def test_status_only_moves_forward(db, ai, orchestrator, consultation):
    ai.generations = [extraction_json(letters_required=["GP letter"])]

    await orchestrator.start(consultation.id)
    await orchestrator.drain()

    visited = db.statuses_visited(consultation.id)
    assert visited == ORDERED_STATUSES
    assert is_subsequence(visited, ORDERED_STATUSES)


async def test_status_subsequence_holds_through_retries(db, ai, orchestrator, consultation):
    ai.generations = [
        MalformedResponseError("invalid JSON", "I could not find"),
        extraction_json(),
        ProviderError("anthropic", status_code=503, body="overloaded"),
    ]

    await orchestrator.start(consultation.id)
    await orchestrator.drain()

    visited = db.statuses_visited(consultation.id)
    assert is_subsequence(visited, ORDERED_STATUSES)
    assert visited[-1] == S.READY_FOR_REVIEW


async def test_audit_trail_records_each_status_change(db, ai, orchestrator, consultation):
    ai.generations = [extraction_json()]

    await orchestrator.start(consultation.id, actor="dr.jones")
    await orchestrator.drain()

    actions = [e.action for e in db.audit_entries]
    assert actions[0] == "start_processing"
    assert db.audit_entries[0].actor == "dr.jones"
    assert "generate_clinical_document" in actions
    final = [e for e in db.audit_entries if e.action == "update_processing_status"][-1]
    assert final.changes["processing_status"] == ["generating_documents", "ready_for_review"]


async def test_transient_failure_is_retried(db, ai, orchestrator, queue, consultation):
    ai.generations = [ProviderError("anthropic", status_code=500, body="err"), extraction_json()]

    await orchestrator.start(consultation.id)
    assert await orchestrator.drain() == 4

    assert db.consultations[consultation.id].processing_status == S.READY_FOR_REVIEW
    assert S.FAILED not in db.status_history[consultation.id]


async def test_retries_stop_after_max_attempts(db, ai, orchestrator, queue, settings, consultation):
    ai.generations = [MalformedResponseError("invalid JSON", "nope")] * settings.max_task_attempts

    await orchestrator.start(consultation.id)
    processed = await orchestrator.drain()

    # transcription + three extraction attempts
    assert processed == 1 + settings.max_task_attempts
    assert db.consultations[consultation.id].processing_status == S.FAILED
    assert db.transcripts[consultation.id].processing_status == TranscriptStatus.FAILED
    assert "nope" in db.transcripts[consultation.id].error_message
    assert db.documents_for(consultation.id) == []
    assert await queue.size() == 0


async def test_failure_handler_runs_once(db, ai, orchestrator, settings, consultation):
    ai.transcription = ProviderError("openai", status_code=500, body="down")

    await orchestrator.start(consultation.id)
    await orchestrator.drain()

    failures = [
        e for e in db.audit_entries
        if e.action == "update_processing_status" and e.changes["processing_status"][1] == "failed"
    ]
    assert len(failures) == 1
    assert ai.transcribe_calls == settings.max_task_attempts


async def test_missing_input_is_not_retried(db, ai, orchestrator, queue, patient):
    consultation = db.add_consultation(patient, recording_url="/uploads/recordings/deleted.mp3")

    await orchestrator.start(consultation.id)
    job = await queue.dequeue_due()

    with pytest.raises(MissingInputError):
        await orchestrator.run_job(job)

    assert await queue.size() == 0
    assert db.consultations[consultation.id].processing_status == S.FAILED
    assert db.transcripts[consultation.id].processing_status == TranscriptStatus.FAILED


async def test_retry_is_scheduled_with_backoff(db, ai, audit, queue, consultation, orchestrator):
    orchestrator.settings = orchestrator.settings.model_copy(update={"retry_base_delay_seconds": 3.0})
    ai.transcription = ProviderError("openai", status_code=502, body="bad gateway")

    await orchestrator.start(consultation.id)
    job = await queue.dequeue_due()
    outcome = await orchestrator.run_job(job)

    assert outcome == JobOutcome.RETRY_SCHEDULED
    [retry] = queue.jobs
    assert retry.stage == PipelineStage.TRANSCRIPTION
    assert retry.attempt == 2
    assert retry.ready_at - retry.enqueued_at == pytest.approx(3.0)
    # Not due yet
    assert await queue.dequeue_due() is None


def test_backoff_grows_exponentially(orchestrator):
    orchestrator.settings = orchestrator.settings.model_copy(update={"retry_base_delay_seconds": 3.0})
    assert [orchestrator.backoff_delay(n) for n in (1, 2, 3)] == [3.0, 12.0, 48.0]


async def test_success_enqueues_exactly_one_successor(ai, orchestrator, queue, consultation):
    await orchestrator.start(consultation.id)
    job = await queue.dequeue_due()

    assert await orchestrator.run_job(job) == JobOutcome.SUCCEEDED

    assert [(j.stage, j.attempt) for j in queue.jobs] == [(PipelineStage.EXTRACTION, 1)]


async def test_invalid_transition_drops_job(db, ai, orchestrator, queue, consultation):
    db.consultations[consultation.id] = consultation.model_copy(update={"processing_status": S.READY_FOR_REVIEW})
    job = PipelineJob(stage=PipelineStage.TRANSCRIPTION, consultation_id=consultation.id)

    with pytest.raises(InvalidTransitionError):
        await orchestrator.run_job(job)

    assert await queue.size() == 0
    assert db.consultations[consultation.id].processing_status == S.READY_FOR_REVIEW
    assert ai.transcribe_calls == 0


async def test_start_unknown_consultation(orchestrator):
    with pytest.raises(ConsultationNotFoundError):
        await orchestrator.start("does-not-exist")


async def test_start_requires_recording(db, orchestrator, queue, patient):
    consultation = db.add_consultation(patient, recording_url=None)

    with pytest.raises(MissingInputError):
        await orchestrator.start(consultation.id)

    assert await queue.size() == 0


@pytest.mark.parametrize("status", [S.READY_FOR_REVIEW, S.APPROVED])
async def test_start_rejected_after_pipeline_finished(db, orchestrator, queue, consultation, status):
    db.consultations[consultation.id] = consultation.model_copy(update={"processing_status": status})

    with pytest.raises(InvalidTransitionError):
        await orchestrator.start(consultation.id)

    assert await queue.size() == 0


async def test_failed_consultation_can_be_restarted(db, ai, orchestrator, consultation):
    ai.transcription = ProviderError("openai", status_code=500, body="down")
    await orchestrator.start(consultation.id)
    await orchestrator.drain()
    assert db.consultations[consultation.id].processing_status == S.FAILED

    ai.transcription = type(ai)().transcription
    ai.generations = [extraction_json()]
    await orchestrator.start(consultation.id)
    await orchestrator.drain()

    assert db.consultations[consultation.id].processing_status == S.READY_FOR_REVIEW
    assert db.transcripts[consultation.id].processing_status == TranscriptStatus.COMPLETED
    assert db.transcripts[consultation.id].error_message is None


async def test_pipeline_status_snapshot(db, ai, orchestrator, consultation):
    ai.generations = [extraction_json(letters_required=["Patient letter"])]
    await orchestrator.start(consultation.id)
    await orchestrator.drain()

    snapshot = await pipeline_status(db, consultation.id)

    assert snapshot == {
        "consultation_id": consultation.id,
        "processing_status": "ready_for_review",
        "transcript_status": "completed",
        "error_message": None,
        "document_count": 2,
        "ready_for_review": True,
    }


async def test_consultations_progress_independently(db, ai, orchestrator, patient, audio_file):
    first = db.add_consultation(patient)
    second = db.add_consultation(patient, recording_url="/uploads/recordings/missing.mp3")
    ai.generations = [extraction_json()]

    await orchestrator.start(first.id)
    await orchestrator.start(second.id)
    await orchestrator.drain()

    assert db.consultations[first.id].processing_status == S.READY_FOR_REVIEW
    assert db.consultations[second.id].processing_status == S.FAILED


class SuccessorLossQueue(InMemoryJobQueue):
    """Loses the first enqueue of ``lose_stage``, as if Redis dropped the connection."""

    def __init__(self, lose_stage: PipelineStage) -> None:
        super().__init__()
        self.lose_stage: PipelineStage | None = lose_stage

    async def enqueue(self, job: PipelineJob) -> None:
        if job.stage == self.lose_stage:
            self.lose_stage = None
            raise ConnectionError("redis connection lost")
        await super().enqueue(job)


async def test_consultation_stalled_by_lost_successor_can_be_restarted(db, ai, audit, settings, consultation):
    queue = SuccessorLossQueue(lose_stage=PipelineStage.EXTRACTION)
    orchestrator = PipelineOrchestrator(
        queue,
        db=db,
        tasks=build_default_tasks(db, audit, settings, ai_client=ai),
        audit=audit,
        settings=settings,
    )

    await orchestrator.start(consultation.id)
    job = await queue.dequeue_due()
    with pytest.raises(ConnectionError):
        await orchestrator.run_job(job)

    assert db.consultations[consultation.id].processing_status == S.EXTRACTING
    assert await queue.size() == 0
    assert queue.claimed == []

    ai.generations = [extraction_json(), "SOAP note content"]
    restart = await orchestrator.start(consultation.id)
    assert restart.stage == PipelineStage.TRANSCRIPTION
    assert db.consultations[consultation.id].processing_status == S.PENDING

    await orchestrator.drain()
    assert db.consultations[consultation.id].processing_status == S.READY_FOR_REVIEW


async def test_start_rejected_while_job_is_queued(db, orchestrator, queue, consultation):
    db.consultations[consultation.id] = consultation.model_copy(update={"processing_status": S.EXTRACTING})
    await orchestrator.enqueue(PipelineStage.EXTRACTION, consultation.id)

    with pytest.raises(InvalidTransitionError):
        await orchestrator.start(consultation.id)

    assert [j.stage for j in queue.jobs] == [PipelineStage.EXTRACTION]


async def test_start_rejected_while_job_is_running(db, orchestrator, queue, consultation):
    db.consultations[consultation.id] = consultation.model_copy(update={"processing_status": S.TRANSCRIBING})
    await orchestrator.enqueue(PipelineStage.TRANSCRIPTION, consultation.id)
    running = await queue.dequeue_due()

    with pytest.raises(InvalidTransitionError):
        await orchestrator.start(consultation.id)

    await queue.ack(running)
    await orchestrator.start(consultation.id)
    assert db.consultations[consultation.id].processing_status == S.PENDING


async def test_finished_jobs_release_their_claim(ai, orchestrator, queue, consultation):
    ai.generations = [extraction_json()]

    await orchestrator.start(consultation.id)
    await orchestrator.drain()

    assert queue.claimed == []
    assert not await queue.has_active_job(consultation.id)


async def test_job_for_deleted_consultation_writes_nothing(db, orchestrator, queue):
    job = PipelineJob(stage=PipelineStage.TRANSCRIPTION, consultation_id="deleted-1")

    with pytest.raises(ConsultationNotFoundError):
        await orchestrator.run_job(job)

    assert db.transcripts == {}
    assert db.audit_entries == []
    assert await queue.size() == 0


async def test_extraction_job_for_deleted_consultation_writes_nothing(db, orchestrator):
    job = PipelineJob(stage=PipelineStage.EXTRACTION, consultation_id="deleted-2")

    with pytest.raises(ConsultationNotFoundError):
        await orchestrator.run_job(job)

    assert db.transcripts == {}
