"""
Extraction Task.

Second pipeline stage: asks the generation model to turn the raw
consultation transcript into the fixed-schema ``StructuredClinicalData``
record, validates the JSON it returns and stores it on the transcript.
"""

from __future__ import annotations

import json
import re
from typing import Any

from pydantic import ValidationError

from src.errors import MalformedResponseError, MissingInputError, SchemaWarning
from src.logging_config import get_logger
from src.schemas.consultation import ConsultationRecord, PatientRecord
from src.schemas.extraction import REQUIRED_KEYS, StructuredClinicalData
from src.schemas.job import PipelineStage
from src.schemas.transcript import TranscriptStatus
from src.services.pipeline_task import PipelineTask, StageResult

logger = get_logger(__name__)

_OPENING_FENCE = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_CLOSING_FENCE = re.compile(r"\s*```$")


# Literal JSON braces in the template, so fields are filled with
# str.replace rather than str.format.
EXTRACTION_PROMPT = """You are a medical AI assistant helping to extract structured information from a consultation transcript.

CONSULTATION DETAILS:
- Type: {consultation_type}
- Date: {consultation_date}
- Patient: {patient_name}

TRANSCRIPT:
{transcript}

TASK:
Extract the following information from the consultation transcript and return it as a JSON object. Be thorough but concise. If information is not mentioned, use null.

Return ONLY valid JSON in this exact format:
{
  "presenting_complaint": "Brief description of why the patient attended",
  "history": "Relevant medical history, symptoms timeline, and patient narrative",
  "examination_findings": "Physical examination findings if mentioned",
  "diagnosis": "Working diagnosis or impression",
  "treatment_plan": "Medications, procedures, or treatments prescribed",
  "follow_up_plan": "Follow-up appointments, monitoring, or next steps",
  "billing_triggers": ["List of billable items like 'Initial consultation', 'ECG', 'Blood test' etc"],
  "letters_required": ["Types of letters needed like 'GP referral letter', 'Insurance report' etc"]
}

Be accurate and only extract information explicitly mentioned in the transcript."""


def build_extraction_prompt(
    transcript: str,
    consultation: ConsultationRecord,
    patient: PatientRecord,
) -> str:
    return (
        EXTRACTION_PROMPT
        .replace("{consultation_type}", consultation.consultation_type)
        .replace("{consultation_date}", consultation.consultation_date.isoformat())
        .replace("{patient_name}", patient.name)
        .replace("{transcript}", transcript)
    )


def strip_code_fences(content: str) -> str:
    """Remove a ```json ... ``` (or bare ```) wrapper around model output."""
    text = content.strip()
    text = _OPENING_FENCE.sub("", text)
    text = _CLOSING_FENCE.sub("", text)
    return text.strip()


def parse_extraction_response(content: str) -> tuple[StructuredClinicalData, list[SchemaWarning]]:
    """
    Parse model output into structured clinical data.

    Missing keys are tolerated and reported as a ``SchemaWarning``.
    Anything that is not a JSON object with correctly-typed values raises
    ``MalformedResponseError`` carrying the raw response.
    """
    try:
        parsed: Any = json.loads(strip_code_fences(content))
    except json.JSONDecodeError as e:
        logger.error("extraction_json_parse_error", error=str(e), response=content)
        raise MalformedResponseError(f"invalid JSON: {e.msg}", content) from e

    if not isinstance(parsed, dict):
        raise MalformedResponseError(f"expected a JSON object, got {type(parsed).__name__}", content)

    warnings: list[SchemaWarning] = []
    missing = tuple(key for key in REQUIRED_KEYS if key not in parsed)
    if missing:
        logger.warning("extraction_missing_fields", missing_fields=list(missing))
        warnings.append(SchemaWarning(
            message=f"Missing fields in extracted data: {', '.join(missing)}",
            missing_keys=missing,
        ))

    try:
        data = StructuredClinicalData.model_validate(parsed)
    except ValidationError as e:
        raise MalformedResponseError(
            f"schema mismatch: {e.error_count()} invalid field(s)", content
        ) from e

    return data, warnings


class ExtractionTask(PipelineTask):
    stage = PipelineStage.EXTRACTION

    async def run(self, consultation_id: str) -> StageResult:
        consultation = await self._load_consultation(consultation_id)

        transcript = await self.db.get_transcript(consultation_id)
        if transcript is None or not (transcript.raw_transcript or "").strip():
            raise MissingInputError(f"No transcript available for consultation {consultation_id}")

        consultation = await self._enter(consultation)
        patient = await self._load_patient(consultation)

        logger.info(
            "extraction_started",
            consultation_id=consultation_id,
            transcript_length=len(transcript.raw_transcript or ""),
        )

        prompt = build_extraction_prompt(transcript.raw_transcript or "", consultation, patient)
        response = await self.ai_client.generate(prompt)
        data, warnings = parse_extraction_response(response)

        transcript.structured_data = data.model_dump()
        transcript.processing_status = TranscriptStatus.COMPLETED
        transcript.error_message = None
        await self.db.save_transcript(transcript)

        await self._complete(consultation)

        logger.info(
            "extraction_completed",
            consultation_id=consultation_id,
            letters_required=len(data.letters_required),
            billing_triggers=len(data.billing_triggers),
            warnings=len(warnings),
        )
        return StageResult(stage=self.stage, consultation_id=consultation_id, warnings=list(warnings))

    async def handle_failure(self, consultation_id: str, error: Exception) -> None:
        await self._mark_transcript_failed(consultation_id, error)
        await self._mark_consultation_failed(consultation_id, error)
