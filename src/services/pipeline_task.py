"""
Pipeline Task base class.

Shared plumbing for the three stages: loading records, driving the
processing_status state machine, writing audit entries and the default
failure handling. Subclasses implement ``run()`` for their stage.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from src.db import DatabaseClient, get_db
from src.errors import ConsultationNotFoundError, MissingInputError, PipelineWarning
from src.logging_config import get_logger
from src.schemas.consultation import ConsultationRecord, PatientRecord, ProcessingStatus
from src.schemas.document import ClinicalDocument
from src.schemas.job import PipelineStage
from src.schemas.transcript import TranscriptRecord, TranscriptStatus
from src.services import pipeline_state
from src.services.ai_client import ExternalAIClient
from src.services.audit_service import AuditService

logger = get_logger(__name__)


@dataclass
class StageResult:
    stage: PipelineStage
    consultation_id: str
    warnings: list[PipelineWarning] = field(default_factory=list)
    documents: list[ClinicalDocument] = field(default_factory=list)


class PipelineTask:
    """One stage of the transcription -> extraction -> generation chain."""

    stage: PipelineStage

    def __init__(
        self,
        db: DatabaseClient | None = None,
        ai_client: ExternalAIClient | None = None,
        audit: AuditService | None = None,
    ) -> None:
        self.db = db or get_db()
        self.ai_client = ai_client or ExternalAIClient()
        self.audit = audit or AuditService(self.db)

    async def run(self, consultation_id: str) -> StageResult:
        raise NotImplementedError

    async def handle_failure(self, consultation_id: str, error: Exception) -> None:
        """Runs once, after the last attempt. Marks the consultation failed."""
        await self._mark_consultation_failed(consultation_id, error)

    # -- Loading --

    async def _load_consultation(self, consultation_id: str) -> ConsultationRecord:
        consultation = await self.db.get_consultation(consultation_id)
        if consultation is None:
            raise ConsultationNotFoundError(f"Consultation {consultation_id} not found")
        return consultation

    async def _load_patient(self, consultation: ConsultationRecord) -> PatientRecord:
        patient = await self.db.get_patient(consultation.patient_id)
        if patient is None:
            raise MissingInputError(
                f"Patient {consultation.patient_id} not found for consultation {consultation.id}"
            )
        return patient

    # -- Status transitions --

    async def _enter(self, consultation: ConsultationRecord) -> ConsultationRecord:
        target = pipeline_state.enter_stage(self.stage, consultation.processing_status)
        return await self._set_status(consultation, target)

    async def _complete(self, consultation: ConsultationRecord) -> ConsultationRecord:
        target = pipeline_state.complete_stage(self.stage, consultation.processing_status)
        return await self._set_status(consultation, target)

    async def _set_status(
        self,
        consultation: ConsultationRecord,
        target: ProcessingStatus,
        error: Optional[str] = None,
    ) -> ConsultationRecord:
        previous = consultation.processing_status
        updated = await self.db.update_consultation(
            consultation.id, {"processing_status": target.value}
        )
        changes: dict[str, Any] = {"processing_status": [previous.value, target.value]}
        if error:
            changes["error"] = error
        await self.audit.record(
            action="update_processing_status",
            entity_type="consultation",
            entity_id=consultation.id,
            changes=changes,
        )
        logger.info(
            "processing_status_changed",
            consultation_id=consultation.id,
            stage=self.stage.value,
            previous=previous.value,
            current=target.value,
        )
        return updated

    async def _mark_consultation_failed(self, consultation_id: str, error: Exception) -> None:
        consultation = await self.db.get_consultation(consultation_id)
        if consultation is None:
            logger.warning("failure_for_unknown_consultation", consultation_id=consultation_id)
            return
        if not pipeline_state.can_transition(consultation.processing_status, ProcessingStatus.FAILED):
            logger.warning(
                "failure_status_not_applied",
                consultation_id=consultation_id,
                processing_status=consultation.processing_status.value,
            )
            return
        await self._set_status(consultation, ProcessingStatus.FAILED, error=str(error))

    async def _mark_transcript_failed(self, consultation_id: str, error: Exception) -> None:
        # A transcript row must belong to an existing consultation
        if await self.db.get_consultation(consultation_id) is None:
            logger.warning("transcript_failure_skipped", consultation_id=consultation_id, error=str(error))
            return
        transcript = await self.db.get_transcript(consultation_id)
        if transcript is None:
            transcript = TranscriptRecord(consultation_id=consultation_id)
        transcript.processing_status = TranscriptStatus.FAILED
        transcript.error_message = str(error)
        await self.db.save_transcript(transcript)
