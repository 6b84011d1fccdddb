"""
API Router: Consultation Pipeline Endpoints.

Triggers processing of an uploaded recording and reports pipeline
progress. Consultation CRUD lives elsewhere.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from src.api.deps import get_orchestrator, get_review_service
from src.errors import ConsultationNotFoundError, InvalidTransitionError, MissingInputError
from src.logging_config import get_logger
from src.services.document_review import DocumentReviewService
from src.services.pipeline_orchestrator import PipelineOrchestrator, pipeline_status

logger = get_logger(__name__)
router = APIRouter(prefix="/consultations", tags=["Consultations"])


class ProcessRequest(BaseModel):
    requested_by: str = "admin"


class ProcessResponse(BaseModel):
    consultation_id: str
    job_id: str
    stage: str
    processing_status: str = "pending"


@router.post("/{consultation_id}/process", response_model=ProcessResponse, status_code=202)
async def process_consultation(
    consultation_id: str,
    body: ProcessRequest | None = None,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
) -> ProcessResponse:
    """Queue a consultation's recording for transcription and document generation."""
    actor = body.requested_by if body else "admin"
    try:
        job = await orchestrator.start(consultation_id, actor=actor)
    except ConsultationNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except MissingInputError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))

    return ProcessResponse(
        consultation_id=consultation_id,
        job_id=job.job_id,
        stage=job.stage.value,
    )


@router.get("/{consultation_id}/pipeline")
async def get_pipeline_status(
    consultation_id: str,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Current processing status, transcript status and document count."""
    try:
        return await pipeline_status(orchestrator.db, consultation_id)
    except ConsultationNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/{consultation_id}/documents")
async def list_documents(
    consultation_id: str,
    review: DocumentReviewService = Depends(get_review_service),
) -> dict[str, Any]:
    documents = await review.list_documents(consultation_id)
    return {
        "data": [d.model_dump(mode="json") for d in documents],
        "total": len(documents),
    }
