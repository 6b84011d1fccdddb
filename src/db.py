"""
Supabase Database Client.

Provides a singleton instance of the Supabase client and typed helper
methods for the records the pipeline reads and writes: consultations,
patients, transcripts, clinical documents and audit entries.

Reads return ``None`` when a row is missing. Write failures are logged
and re-raised so the task layer can retry the whole stage.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from supabase import Client, create_client

from src.config import get_settings
from src.logging_config import get_logger
from src.schemas.audit import AuditEntry
from src.schemas.consultation import ConsultationRecord, PatientRecord
from src.schemas.document import ClinicalDocument
from src.schemas.transcript import TranscriptRecord

logger = get_logger(__name__)

CONSULTATIONS = "consultations"
PATIENTS = "patients"
TRANSCRIPTS = "transcripts"
DOCUMENTS = "clinical_documents"
AUDIT_ENTRIES = "audit_entries"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class DatabaseClient:
    """Wrapper around the official Supabase Python client."""

    _instance: Optional[DatabaseClient] = None
    _client: Client

    def __new__(cls) -> DatabaseClient:
        """Singleton pattern to ensure only one client instance."""
        if cls._instance is None:
            instance = super().__new__(cls)
            settings = get_settings()

            if not settings.supabase_url or not settings.supabase_service_key:
                logger.warning(
                    "Supabase credentials missing. Database operations will fail.",
                    url=bool(settings.supabase_url),
                    key=bool(settings.supabase_service_key),
                )

            try:
                instance._client = create_client(
                    settings.supabase_url,
                    settings.supabase_service_key,
                )
                logger.info("Supabase client initialized", url=settings.supabase_url)
            except Exception as e:
                logger.error("Failed to initialize Supabase client", error=str(e))
                raise
            cls._instance = instance

        return cls._instance

    @property
    def client(self) -> Client:
        """Access the raw Supabase client."""
        return self._client

    def _first(self, table: str, column: str, value: str) -> dict[str, Any] | None:
        response = (
            self.client.table(table)
            .select("*")
            .eq(column, value)
            .limit(1)
            .execute()
        )
        return response.data[0] if response.data else None

    def _update(self, table: str, row_id: str, updates: dict[str, Any]) -> dict[str, Any]:
        response = (
            self.client.table(table)
            .update({**updates, "updated_at": _now()})
            .eq("id", row_id)
            .execute()
        )
        if not response.data:
            raise LookupError(f"{table} row {row_id} not found")
        return response.data[0]

    # -- Consultations & patients --

    async def get_consultation(self, consultation_id: str) -> ConsultationRecord | None:
        try:
            row = self._first(CONSULTATIONS, "id", consultation_id)
        except Exception as e:
            logger.error("Error fetching consultation", id=consultation_id, error=str(e))
            raise
        return ConsultationRecord.model_validate(row) if row else None

    async def update_consultation(
        self, consultation_id: str, updates: dict[str, Any]
    ) -> ConsultationRecord:
        try:
            row = self._update(CONSULTATIONS, consultation_id, updates)
        except Exception as e:
            logger.error("Error updating consultation", id=consultation_id, error=str(e))
            raise
        return ConsultationRecord.model_validate(row)

    async def get_patient(self, patient_id: str) -> PatientRecord | None:
        try:
            row = self._first(PATIENTS, "id", patient_id)
        except Exception as e:
            logger.error("Error fetching patient", id=patient_id, error=str(e))
            raise
        return PatientRecord.model_validate(row) if row else None

    # -- Transcripts --

    async def get_transcript(self, consultation_id: str) -> TranscriptRecord | None:
        try:
            row = self._first(TRANSCRIPTS, "consultation_id", consultation_id)
        except Exception as e:
            logger.error("Error fetching transcript", consultation_id=consultation_id, error=str(e))
            raise
        return TranscriptRecord.model_validate(row) if row else None

    async def save_transcript(self, transcript: TranscriptRecord) -> TranscriptRecord:
        """Insert or update the single transcript owned by a consultation."""
        payload = transcript.model_dump(mode="json", exclude={"id", "created_at", "updated_at"})
        payload["updated_at"] = _now()
        try:
            response = (
                self.client.table(TRANSCRIPTS)
                .upsert(payload, on_conflict="consultation_id")
                .execute()
            )
        except Exception as e:
            logger.error(
                "Error saving transcript",
                consultation_id=transcript.consultation_id,
                error=str(e),
            )
            raise
        return TranscriptRecord.model_validate(response.data[0])

    # -- Clinical documents --

    async def create_document(self, document: ClinicalDocument) -> ClinicalDocument:
        payload = document.model_dump(mode="json", exclude={"id", "created_at", "updated_at"})
        try:
            response = self.client.table(DOCUMENTS).insert(payload).execute()
        except Exception as e:
            logger.error(
                "Error creating clinical document",
                consultation_id=document.consultation_id,
                document_type=document.document_type.value,
                error=str(e),
            )
            raise
        return ClinicalDocument.model_validate(response.data[0])

    async def get_document(self, document_id: str) -> ClinicalDocument | None:
        try:
            row = self._first(DOCUMENTS, "id", document_id)
        except Exception as e:
            logger.error("Error fetching clinical document", id=document_id, error=str(e))
            raise
        return ClinicalDocument.model_validate(row) if row else None

    async def update_document(self, document_id: str, updates: dict[str, Any]) -> ClinicalDocument:
        try:
            row = self._update(DOCUMENTS, document_id, updates)
        except Exception as e:
            logger.error("Error updating clinical document", id=document_id, error=str(e))
            raise
        return ClinicalDocument.model_validate(row)

    async def list_documents(self, consultation_id: str) -> list[ClinicalDocument]:
        try:
            response = (
                self.client.table(DOCUMENTS)
                .select("*")
                .eq("consultation_id", consultation_id)
                .order("created_at")
                .execute()
            )
        except Exception as e:
            logger.error("Error listing clinical documents", consultation_id=consultation_id, error=str(e))
            raise
        return [ClinicalDocument.model_validate(row) for row in response.data or []]

    # -- Audit --

    async def insert_audit_entry(self, entry: AuditEntry) -> None:
        self.client.table(AUDIT_ENTRIES).insert(entry.model_dump(mode="json")).execute()


# Global accessor
def get_db() -> DatabaseClient:
    return DatabaseClient()
