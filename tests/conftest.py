"""
Shared fixtures: an in-memory stand-in for the Supabase gateway, a
scripted AI client, and a wired-up orchestrator running on an
in-process queue.
"""

from __future__ import annotations

import json
import uuid
from collections import defaultdict
from datetime import date, datetime, timezone
from typing import Any, Callable, Optional

import pytest

from src.config import Settings
from src.schemas.audit import AuditEntry
from src.schemas.consultation import ConsultationRecord, PatientRecord, ProcessingStatus
from src.schemas.document import ClinicalDocument
from src.schemas.transcript import SpeechSegment, TranscriptRecord
from src.services.ai_client import TranscriptionResult
from src.services.audit_service import AuditService
from src.services.job_queue import InMemoryJobQueue
from src.services.pipeline_orchestrator import PipelineOrchestrator, build_default_tasks

RECORDING_URL = "/uploads/recordings/consultation_1_20260218093000.mp3"

TRANSCRIPT_TEXT = (
    "Patient presents with headache for three days, worse in the mornings. "
    "No visual disturbance. Blood pressure 128 over 82. Likely tension-type headache."
)

EXTRACTED_DATA: dict[str, Any] = {
    "presenting_complaint": "Headache for three days",
    "history": "Worse in the mornings, no visual disturbance",
    "examination_findings": "BP 128/82, neurological exam normal",
    "diagnosis": "Tension-type headache",
    "treatment_plan": "Paracetamol 1g QDS PRN, hydration",
    "follow_up_plan": "Review in two weeks if not improving",
    "billing_triggers": ["Initial consultation"],
    "letters_required": [],
}


def extraction_json(**overrides: Any) -> str:
    return json.dumps({**EXTRACTED_DATA, **overrides})


def _now() -> datetime:
    return datetime.now(timezone.utc)


class FakeDatabase:
    """Implements the DatabaseClient methods the pipeline uses, in memory."""

    def __init__(self) -> None:
        self.patients: dict[str, PatientRecord] = {}
        self.consultations: dict[str, ConsultationRecord] = {}
        self.transcripts: dict[str, TranscriptRecord] = {}
        self.documents: dict[str, ClinicalDocument] = {}
        self.audit_entries: list[AuditEntry] = []
        self.status_history: dict[str, list[ProcessingStatus]] = defaultdict(list)
        self.fail_document_creation_on: Optional[Callable[[ClinicalDocument], bool]] = None

    # -- seeding helpers --

    def add_patient(self, name: str = "Margaret Ellis", date_of_birth: Optional[date] = None) -> PatientRecord:
        patient = PatientRecord(id=uuid.uuid4().hex, name=name, date_of_birth=date_of_birth)
        self.patients[patient.id] = patient
        return patient

    def add_consultation(self, patient: PatientRecord, **fields: Any) -> ConsultationRecord:
        data: dict[str, Any] = {
            "id": uuid.uuid4().hex,
            "patient_id": patient.id,
            "user_id": "clinician-1",
            "consultation_date": date(2026, 2, 18),
            "consultation_type": "Initial consultation",
            "recording_url": RECORDING_URL,
        }
        data.update(fields)
        consultation = ConsultationRecord.model_validate(data)
        self.consultations[consultation.id] = consultation
        return consultation

    def documents_for(self, consultation_id: str) -> list[ClinicalDocument]:
        return [d for d in self.documents.values() if d.consultation_id == consultation_id]

    def statuses_visited(self, consultation_id: str) -> list[ProcessingStatus]:
        """Status writes with consecutive repeats collapsed."""
        visited: list[ProcessingStatus] = []
        for status in self.status_history[consultation_id]:
            if not visited or visited[-1] != status:
                visited.append(status)
        return visited

    # -- DatabaseClient interface --

    async def get_consultation(self, consultation_id: str) -> ConsultationRecord | None:
        return self.consultations.get(consultation_id)

    async def update_consultation(self, consultation_id: str, updates: dict[str, Any]) -> ConsultationRecord:
        current = self.consultations[consultation_id]
        updated = ConsultationRecord.model_validate({**current.model_dump(), **updates, "updated_at": _now()})
        self.consultations[consultation_id] = updated
        if "processing_status" in updates:
            self.status_history[consultation_id].append(updated.processing_status)
        return updated

    async def get_patient(self, patient_id: str) -> PatientRecord | None:
        return self.patients.get(patient_id)

    async def get_transcript(self, consultation_id: str) -> TranscriptRecord | None:
        transcript = self.transcripts.get(consultation_id)
        return transcript.model_copy(deep=True) if transcript else None

    async def save_transcript(self, transcript: TranscriptRecord) -> TranscriptRecord:
        stored = TranscriptRecord.model_validate({
            **transcript.model_dump(),
            "id": transcript.id or uuid.uuid4().hex,
            "updated_at": _now(),
        })
        self.transcripts[transcript.consultation_id] = stored
        return stored.model_copy(deep=True)

    async def create_document(self, document: ClinicalDocument) -> ClinicalDocument:
        if self.fail_document_creation_on and self.fail_document_creation_on(document):
            raise RuntimeError(f"insert into clinical_documents failed ({document.document_type.value})")
        stored = document.model_copy(update={"id": uuid.uuid4().hex, "created_at": _now()})
        self.documents[stored.id] = stored
        return stored

    async def get_document(self, document_id: str) -> ClinicalDocument | None:
        return self.documents.get(document_id)

    async def update_document(self, document_id: str, updates: dict[str, Any]) -> ClinicalDocument:
        current = self.documents[document_id]
        updated = ClinicalDocument.model_validate({**current.model_dump(), **updates, "updated_at": _now()})
        self.documents[document_id] = updated
        return updated

    async def list_documents(self, consultation_id: str) -> list[ClinicalDocument]:
        return self.documents_for(consultation_id)

    async def insert_audit_entry(self, entry: AuditEntry) -> None:
        self.audit_entries.append(entry)


class FakeAIClient:
    """
    Scripted ExternalAIClient.

    ``transcription`` is returned (or raised) on every transcribe call.
    ``generations`` are consumed in order; once empty, ``default_generation``
    is returned.
    """

    def __init__(self) -> None:
        self.transcription: TranscriptionResult | Exception = TranscriptionResult(
            text=TRANSCRIPT_TEXT,
            segments=[
                SpeechSegment(id=0, start=0.0, end=4.2, text="Patient presents with headache for three days,"),
                SpeechSegment(id=1, start=4.2, end=9.8, text="worse in the mornings."),
            ],
        )
        self.generations: list[str | Exception] = []
        self.default_generation = "Generated clinical document."
        self.transcribe_calls = 0
        self.prompts: list[str] = []

    async def transcribe(
        self,
        audio_bytes: bytes,
        language_hint: Optional[str] = None,
        filename: str = "recording.mp3",
    ) -> TranscriptionResult:
        self.transcribe_calls += 1
        if isinstance(self.transcription, Exception):
            raise self.transcription
        return self.transcription

    async def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if not self.generations:
            return self.default_generation
        response = self.generations.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        audio_storage_root=str(tmp_path),
        retry_base_delay_seconds=0,
        max_task_attempts=3,
        worker_poll_interval_seconds=0.01,
    )


@pytest.fixture
def db() -> FakeDatabase:
    return FakeDatabase()


@pytest.fixture
def ai() -> FakeAIClient:
    return FakeAIClient()


@pytest.fixture
def audit(db: FakeDatabase) -> AuditService:
    return AuditService(db)


@pytest.fixture
def queue() -> InMemoryJobQueue:
    return InMemoryJobQueue()


@pytest.fixture
def orchestrator(db, ai, audit, queue, settings) -> PipelineOrchestrator:
    return PipelineOrchestrator(
        queue,
        db=db,
        tasks=build_default_tasks(db, audit, settings, ai_client=ai),
        audit=audit,
        settings=settings,
    )


@pytest.fixture
def patient(db: FakeDatabase) -> PatientRecord:
    return db.add_patient(date_of_birth=date(1958, 3, 14))


@pytest.fixture
def audio_file(tmp_path):
    path = tmp_path / RECORDING_URL.lstrip("/")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"ID3\x03\x00fake-mp3-frames")
    return path


@pytest.fixture
def consultation(db: FakeDatabase, patient: PatientRecord, audio_file) -> ConsultationRecord:
    return db.add_consultation(patient)


def set_stage_inputs(
    db: FakeDatabase,
    consultation: ConsultationRecord,
    processing_status: ProcessingStatus,
    raw_transcript: Optional[str] = TRANSCRIPT_TEXT,
    structured_data: Optional[dict[str, Any]] = None,
) -> None:
    """Put a consultation in the state a later stage expects to find it in."""
    db.consultations[consultation.id] = consultation.model_copy(update={"processing_status": processing_status})
    db.transcripts[consultation.id] = TranscriptRecord(
        id=uuid.uuid4().hex,
        consultation_id=consultation.id,
        raw_transcript=raw_transcript,
        structured_data=structured_data,
    )

