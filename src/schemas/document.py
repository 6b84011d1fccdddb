"""
Data models for generated clinical documents.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class DocumentType(str, Enum):
    SOAP_NOTE = "soap_note"
    PATIENT_LETTER = "patient_letter"
    GP_LETTER = "gp_letter"
    REFERRAL_LETTER = "referral_letter"
    INSURANCE_LETTER = "insurance_letter"


class DocumentStatus(str, Enum):
    DRAFT = "draft"
    APPROVED = "approved"
    SENT = "sent"


class ClinicalDocument(BaseModel):
    id: Optional[str] = None
    consultation_id: str
    document_type: DocumentType
    content: str
    status: DocumentStatus = DocumentStatus.DRAFT
    version: int = Field(default=1, ge=1)
    approved_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class DocumentEdit(BaseModel):
    """Content change submitted by a reviewer."""
    content: str = Field(min_length=1)
    edited_by: str = "admin"


class DocumentApproval(BaseModel):
    approved_by: str = "admin"
