"""
Document Generation Task.

Final pipeline stage: turns the structured clinical data into draft
clinical documents. Every run produces exactly one SOAP note plus one
letter per recognised ``letters_required`` entry.

Each document is committed as soon as it is generated. A retried run
starts again from the SOAP note, so documents written by an earlier
failed attempt are not reused and will be duplicated.
"""

from __future__ import annotations

from pydantic import ValidationError

from src.errors import MissingInputError, UnclassifiedLetterTypeWarning
from src.logging_config import get_logger
from src.schemas.consultation import ConsultationRecord, PatientRecord
from src.schemas.document import ClinicalDocument, DocumentStatus, DocumentType
from src.schemas.extraction import StructuredClinicalData
from src.schemas.job import PipelineStage
from src.services.letter_classifier import classify_letter
from src.services.pipeline_task import PipelineTask, StageResult

logger = get_logger(__name__)


def _patient_line(patient: PatientRecord) -> str:
    if patient.date_of_birth:
        return f"{patient.name} (DOB: {patient.date_of_birth.isoformat()})"
    return patient.name


def build_soap_prompt(
    consultation: ConsultationRecord,
    patient: PatientRecord,
    data: StructuredClinicalData,
) -> str:
    age_line = f"\n- Age: {patient.age}" if patient.age is not None else ""
    return f"""Generate a professional SOAP note (Subjective, Objective, Assessment, Plan) based on the following structured data from a medical consultation.

CONSULTATION DETAILS:
- Date: {consultation.consultation_date.isoformat()}
- Type: {consultation.consultation_type}
- Patient: {patient.name}{age_line}

EXTRACTED DATA:
- Presenting Complaint: {data.presenting_complaint}
- History: {data.history}
- Examination: {data.examination_findings}
- Diagnosis: {data.diagnosis}
- Treatment: {data.treatment_plan}
- Follow-up: {data.follow_up_plan}

Generate a complete, professional SOAP note following standard medical documentation format. Be clear, concise, and clinically appropriate."""


def _gp_letter_prompt(consultation: ConsultationRecord, patient: PatientRecord, data: StructuredClinicalData) -> str:
    return f"""Generate a professional letter to the patient's GP summarizing a recent consultation.

PATIENT: {_patient_line(patient)}
CONSULTATION DATE: {consultation.consultation_date.isoformat()}

CLINICAL SUMMARY:
- Presenting Complaint: {data.presenting_complaint}
- Diagnosis: {data.diagnosis}
- Treatment: {data.treatment_plan}
- Follow-up: {data.follow_up_plan}

Generate a formal letter addressed "Dear Dr. [GP Name]," with proper formatting for UK medical correspondence.
Include all relevant clinical information and management plan."""


def _patient_letter_prompt(consultation: ConsultationRecord, patient: PatientRecord, data: StructuredClinicalData) -> str:
    return f"""Generate a patient-friendly letter summarizing the consultation and next steps.

PATIENT: {patient.name}
CONSULTATION DATE: {consultation.consultation_date.isoformat()}

KEY POINTS:
- Why they attended: {data.presenting_complaint}
- What we found: {data.diagnosis}
- Treatment plan: {data.treatment_plan}
- Next steps: {data.follow_up_plan}

Write in clear, non-medical language that the patient can understand. Be reassuring and informative.
Start with "Dear {patient.name},\""""


def _referral_letter_prompt(consultation: ConsultationRecord, patient: PatientRecord, data: StructuredClinicalData) -> str:
    return f"""Generate a specialist referral letter based on consultation findings.

PATIENT: {_patient_line(patient)}
CONSULTATION DATE: {consultation.consultation_date.isoformat()}

CLINICAL DETAILS:
- Presenting Complaint: {data.presenting_complaint}
- History: {data.history}
- Examination: {data.examination_findings}
- Working Diagnosis: {data.diagnosis}

Generate a formal referral letter addressed "Dear Colleague," with clear reason for referral and relevant clinical information."""


def _insurance_letter_prompt(consultation: ConsultationRecord, patient: PatientRecord, data: StructuredClinicalData) -> str:
    return f"""Generate a medical report for insurance purposes documenting the consultation.

PATIENT: {_patient_line(patient)}
CONSULTATION DATE: {consultation.consultation_date.isoformat()}

CLINICAL FINDINGS:
- Presenting Complaint: {data.presenting_complaint}
- Diagnosis: {data.diagnosis}
- Treatment: {data.treatment_plan}

Generate a factual, objective medical report suitable for insurance documentation.
Use formal medical language and include all relevant clinical details."""


LETTER_PROMPTS = {
    DocumentType.GP_LETTER: _gp_letter_prompt,
    DocumentType.PATIENT_LETTER: _patient_letter_prompt,
    DocumentType.REFERRAL_LETTER: _referral_letter_prompt,
    DocumentType.INSURANCE_LETTER: _insurance_letter_prompt,
}


def build_letter_prompt(
    document_type: DocumentType,
    consultation: ConsultationRecord,
    patient: PatientRecord,
    data: StructuredClinicalData,
) -> str:
    try:
        builder = LETTER_PROMPTS[document_type]
    except KeyError:
        raise ValueError(f"{document_type.value} is not a letter type") from None
    return builder(consultation, patient, data)


class DocumentGenerationTask(PipelineTask):
    stage = PipelineStage.DOCUMENT_GENERATION

    async def run(self, consultation_id: str) -> StageResult:
        consultation = await self._load_consultation(consultation_id)

        transcript = await self.db.get_transcript(consultation_id)
        if transcript is None or transcript.structured_data is None:
            raise MissingInputError(f"No structured data available for consultation {consultation_id}")
        try:
            data = StructuredClinicalData.model_validate(transcript.structured_data)
        except ValidationError as e:
            raise MissingInputError(
                f"Structured data for consultation {consultation_id} does not match the schema: {e}"
            ) from e

        consultation = await self._enter(consultation)
        patient = await self._load_patient(consultation)

        logger.info(
            "document_generation_started",
            consultation_id=consultation_id,
            letters_requested=len(data.letters_required),
        )

        result = StageResult(stage=self.stage, consultation_id=consultation_id)

        soap_prompt = build_soap_prompt(consultation, patient, data)
        result.documents.append(
            await self._create_document(consultation, DocumentType.SOAP_NOTE, soap_prompt)
        )

        for descriptor in data.letters_required:
            document_type = classify_letter(descriptor)
            if document_type is None:
                logger.warning("unknown_letter_type_skipped", consultation_id=consultation_id, letter_type=descriptor)
                result.warnings.append(UnclassifiedLetterTypeWarning(
                    message=f"Unknown letter type: {descriptor}, skipping",
                    descriptor=descriptor,
                ))
                continue

            prompt = build_letter_prompt(document_type, consultation, patient, data)
            result.documents.append(
                await self._create_document(consultation, document_type, prompt)
            )

        await self._complete(consultation)

        logger.info(
            "document_generation_completed",
            consultation_id=consultation_id,
            documents=[d.document_type.value for d in result.documents],
            skipped=len(result.warnings),
        )
        return result

    async def _create_document(
        self,
        consultation: ConsultationRecord,
        document_type: DocumentType,
        prompt: str,
    ) -> ClinicalDocument:
        logger.info("generating_document", consultation_id=consultation.id, document_type=document_type.value)
        content = await self.ai_client.generate(prompt)

        document = await self.db.create_document(ClinicalDocument(
            consultation_id=consultation.id,
            document_type=document_type,
            content=content,
            status=DocumentStatus.DRAFT,
            version=1,
        ))
        await self.audit.record(
            action="generate_clinical_document",
            entity_type="clinical_document",
            entity_id=document.id or "",
            changes={"consultation_id": consultation.id, "document_type": document_type, "version": 1},
        )
        return document
