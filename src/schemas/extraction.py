"""
Data model for the structured clinical record extracted from a transcript.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Keys the extraction prompt asks for, in prompt order.
REQUIRED_KEYS: tuple[str, ...] = (
    "presenting_complaint",
    "history",
    "examination_findings",
    "diagnosis",
    "treatment_plan",
    "follow_up_plan",
    "billing_triggers",
    "letters_required",
)


class StructuredClinicalData(BaseModel):
    """Fixed-schema payload stored on ``TranscriptRecord.structured_data``."""

    model_config = ConfigDict(extra="ignore")

    presenting_complaint: Optional[str] = None
    history: Optional[str] = None
    examination_findings: Optional[str] = None
    diagnosis: Optional[str] = None
    treatment_plan: Optional[str] = None
    follow_up_plan: Optional[str] = None
    billing_triggers: list[str] = Field(default_factory=list)
    letters_required: list[str] = Field(default_factory=list)

    @field_validator("billing_triggers", "letters_required", mode="before")
    @classmethod
    def _null_list_is_empty(cls, value: Any) -> Any:
        # The model answers null for "not mentioned"
        return [] if value is None else value
