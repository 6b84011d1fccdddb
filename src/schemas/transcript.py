"""
Data models for consultation transcripts.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class TranscriptStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class SpeechSegment(BaseModel):
    """One time-aligned chunk of speech, offsets in seconds."""
    id: Optional[int] = None
    start: float
    end: float
    text: str


class TranscriptRecord(BaseModel):
    id: Optional[str] = None
    consultation_id: str
    raw_transcript: Optional[str] = None
    speaker_segments: list[SpeechSegment] = Field(default_factory=list)
    structured_data: Optional[dict[str, Any]] = None
    processing_status: TranscriptStatus = TranscriptStatus.PENDING
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
