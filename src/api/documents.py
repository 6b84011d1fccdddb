"""
API Router: Clinical Document Review Endpoints.

Edit drafts, approve, and start a new version of an approved document.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException

from src.api.deps import get_review_service
from src.errors import (
    DocumentAlreadyApprovedError,
    DocumentError,
    DocumentLockedError,
    DocumentNotFoundError,
)
from src.logging_config import get_logger
from src.schemas.document import DocumentApproval, DocumentEdit
from src.services.document_review import DocumentReviewService

logger = get_logger(__name__)
router = APIRouter(prefix="/documents", tags=["Documents"])


def _to_http(error: DocumentError) -> HTTPException:
    if isinstance(error, DocumentNotFoundError):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, (DocumentAlreadyApprovedError, DocumentLockedError)):
        return HTTPException(status_code=409, detail=str(error))
    return HTTPException(status_code=422, detail=str(error))


@router.get("/{document_id}")
async def get_document(
    document_id: str,
    review: DocumentReviewService = Depends(get_review_service),
) -> dict[str, Any]:
    try:
        document = await review.get_document(document_id)
    except DocumentError as e:
        raise _to_http(e)
    return document.model_dump(mode="json")


@router.patch("/{document_id}")
async def edit_document(
    document_id: str,
    body: DocumentEdit,
    review: DocumentReviewService = Depends(get_review_service),
) -> dict[str, Any]:
    """Edit a draft document's content."""
    try:
        document = await review.edit_document(document_id, body.content, body.edited_by)
    except DocumentError as e:
        raise _to_http(e)
    return document.model_dump(mode="json")


@router.post("/{document_id}/approve")
async def approve_document(
    document_id: str,
    body: DocumentApproval | None = None,
    review: DocumentReviewService = Depends(get_review_service),
) -> dict[str, Any]:
    """Approve a draft. Approval is final."""
    approved_by = body.approved_by if body else "admin"
    try:
        document = await review.approve_document(document_id, approved_by)
    except DocumentError as e:
        raise _to_http(e)
    return document.model_dump(mode="json")


@router.post("/{document_id}/revise", status_code=201)
async def revise_document(
    document_id: str,
    body: DocumentApproval | None = None,
    review: DocumentReviewService = Depends(get_review_service),
) -> dict[str, Any]:
    """Create a new draft version from an approved document."""
    actor = body.approved_by if body else "admin"
    try:
        document = await review.revise_document(document_id, actor)
    except DocumentError as e:
        raise _to_http(e)
    return document.model_dump(mode="json")
