"""
Data models for queued pipeline jobs.
"""

import time
import uuid
from enum import Enum

from pydantic import BaseModel, Field


class PipelineStage(str, Enum):
    TRANSCRIPTION = "transcription"
    EXTRACTION = "extraction"
    DOCUMENT_GENERATION = "document_generation"


class PipelineJob(BaseModel):
    """One unit of queued work: run ``stage`` for ``consultation_id``."""
    job_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    stage: PipelineStage
    consultation_id: str
    attempt: int = Field(default=1, ge=1)
    enqueued_at: float = Field(default_factory=time.time)
    ready_at: float = Field(default_factory=time.time)
