"""
Transcription Task.

First pipeline stage: loads the consultation's stored recording, sends
it to the speech-to-text provider and stores the raw transcript with its
time-aligned segments.
"""

from __future__ import annotations

from src.config import Settings, get_settings
from src.db import DatabaseClient
from src.errors import MissingInputError
from src.logging_config import get_logger
from src.schemas.job import PipelineStage
from src.schemas.transcript import TranscriptRecord, TranscriptStatus
from src.services.ai_client import ExternalAIClient
from src.services.audio_storage import AudioStorage, recording_filename
from src.services.audit_service import AuditService
from src.services.pipeline_task import PipelineTask, StageResult

logger = get_logger(__name__)


class TranscriptionTask(PipelineTask):
    stage = PipelineStage.TRANSCRIPTION

    def __init__(
        self,
        db: DatabaseClient | None = None,
        ai_client: ExternalAIClient | None = None,
        audit: AuditService | None = None,
        storage: AudioStorage | None = None,
        settings: Settings | None = None,
    ) -> None:
        super().__init__(db=db, ai_client=ai_client, audit=audit)
        self.settings = settings or get_settings()
        self.storage = storage or AudioStorage(self.settings)

    async def run(self, consultation_id: str) -> StageResult:
        consultation = await self._load_consultation(consultation_id)
        consultation = await self._enter(consultation)

        transcript = await self.db.get_transcript(consultation_id)
        if transcript is None:
            transcript = TranscriptRecord(consultation_id=consultation_id)
        transcript.processing_status = TranscriptStatus.PROCESSING
        transcript.error_message = None
        transcript = await self.db.save_transcript(transcript)

        if not consultation.recording_url:
            raise MissingInputError(f"No audio recording for consultation {consultation_id}")

        logger.info("transcription_started", consultation_id=consultation_id)
        audio = await self.storage.read(consultation.recording_url)

        result = await self.ai_client.transcribe(
            audio,
            self.settings.transcription_language,
            filename=recording_filename(consultation.recording_url),
        )

        transcript.raw_transcript = result.text
        transcript.speaker_segments = result.segments
        transcript.processing_status = TranscriptStatus.COMPLETED
        transcript.error_message = None
        await self.db.save_transcript(transcript)

        await self._complete(consultation)

        logger.info(
            "transcription_completed",
            consultation_id=consultation_id,
            characters=len(result.text),
            segments=len(result.segments),
        )
        return StageResult(stage=self.stage, consultation_id=consultation_id)

    async def handle_failure(self, consultation_id: str, error: Exception) -> None:
        await self._mark_transcript_failed(consultation_id, error)
        await self._mark_consultation_failed(consultation_id, error)
