"""
Data models for patients and consultations as seen by the pipeline.
"""

from datetime import date, datetime, time
from enum import Enum
from typing import Optional

from pydantic import BaseModel


class ConsultationStatus(str, Enum):
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ProcessingStatus(str, Enum):
    """Pipeline progress of a consultation's recording."""
    PENDING = "pending"
    TRANSCRIBING = "transcribing"
    EXTRACTING = "extracting"
    GENERATING_DOCUMENTS = "generating_documents"
    READY_FOR_REVIEW = "ready_for_review"
    APPROVED = "approved"
    FAILED = "failed"


class PatientRecord(BaseModel):
    id: str
    name: str
    date_of_birth: Optional[date] = None

    @property
    def age(self) -> Optional[int]:
        if self.date_of_birth is None:
            return None
        today = date.today()
        born = self.date_of_birth
        return today.year - born.year - ((today.month, today.day) < (born.month, born.day))


class ConsultationRecord(BaseModel):
    id: str
    patient_id: str
    user_id: Optional[str] = None
    consultation_date: date
    consultation_time: Optional[time] = None
    consultation_type: str
    status: ConsultationStatus = ConsultationStatus.SCHEDULED
    processing_status: ProcessingStatus = ProcessingStatus.PENDING
    recording_url: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
