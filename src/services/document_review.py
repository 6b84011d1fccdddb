"""
Document Review Service.

Clinician review of generated documents: editing drafts, one-way
approval, and creating a new draft version of an approved document.
When every document of a consultation is approved the consultation's
processing_status moves from ``ready_for_review`` to ``approved``.
"""

from __future__ import annotations

from datetime import datetime, timezone

from src.db import DatabaseClient, get_db
from src.errors import (
    DocumentAlreadyApprovedError,
    DocumentError,
    DocumentLockedError,
    DocumentNotFoundError,
)
from src.logging_config import get_logger
from src.schemas.consultation import ProcessingStatus
from src.schemas.document import ClinicalDocument, DocumentStatus
from src.services import pipeline_state
from src.services.audit_service import AuditService

logger = get_logger(__name__)

_FINAL_STATUSES = (DocumentStatus.APPROVED, DocumentStatus.SENT)


class DocumentReviewService:
    def __init__(self, db: DatabaseClient | None = None, audit: AuditService | None = None) -> None:
        self.db = db or get_db()
        self.audit = audit or AuditService(self.db)

    async def list_documents(self, consultation_id: str) -> list[ClinicalDocument]:
        return await self.db.list_documents(consultation_id)

    async def get_document(self, document_id: str) -> ClinicalDocument:
        document = await self.db.get_document(document_id)
        if document is None:
            raise DocumentNotFoundError(f"Clinical document {document_id} not found")
        return document

    async def edit_document(self, document_id: str, content: str, edited_by: str) -> ClinicalDocument:
        """Change draft content. Each content change bumps the version."""
        document = await self.get_document(document_id)
        if document.status in _FINAL_STATUSES:
            raise DocumentLockedError("Cannot edit an approved document. Create a new version instead.")
        if content == document.content:
            return document

        updated = await self.db.update_document(document_id, {
            "content": content,
            "version": document.version + 1,
        })
        await self.audit.record(
            action="update_clinical_document",
            entity_type="clinical_document",
            entity_id=document_id,
            actor=edited_by,
            changes={"version": [document.version, updated.version]},
        )
        logger.info("document_edited", document_id=document_id, version=updated.version)
        return updated

    async def approve_document(self, document_id: str, approved_by: str) -> ClinicalDocument:
        document = await self.get_document(document_id)
        if document.status in _FINAL_STATUSES:
            raise DocumentAlreadyApprovedError("Document is already approved")

        approved = await self.db.update_document(document_id, {
            "status": DocumentStatus.APPROVED.value,
            "approved_at": datetime.now(timezone.utc).isoformat(),
            "approved_by": approved_by,
        })
        await self.audit.record(
            action="approve_clinical_document",
            entity_type="clinical_document",
            entity_id=document_id,
            actor=approved_by,
            changes={"status": [document.status.value, DocumentStatus.APPROVED.value]},
        )
        logger.info("document_approved", document_id=document_id, approved_by=approved_by)

        await self._roll_up_consultation(approved.consultation_id, approved_by)
        return approved

    async def revise_document(self, document_id: str, revised_by: str) -> ClinicalDocument:
        """
        Start a new draft from an approved document; the approved one is kept.

        The consultation roll-up only goes one way: a consultation already
        ``approved`` stays ``approved`` while the new draft is reviewed.
        """
        document = await self.get_document(document_id)
        if document.status not in _FINAL_STATUSES:
            raise DocumentError("Only approved documents can be revised; edit the draft instead")

        revision = await self.db.create_document(ClinicalDocument(
            consultation_id=document.consultation_id,
            document_type=document.document_type,
            content=document.content,
            status=DocumentStatus.DRAFT,
            version=document.version + 1,
        ))
        await self.audit.record(
            action="revise_clinical_document",
            entity_type="clinical_document",
            entity_id=revision.id or "",
            actor=revised_by,
            changes={"revision_of": document_id, "version": revision.version},
        )
        return revision

    async def _roll_up_consultation(self, consultation_id: str, actor: str) -> None:
        documents = await self.db.list_documents(consultation_id)
        if any(d.status not in _FINAL_STATUSES for d in documents):
            return

        consultation = await self.db.get_consultation(consultation_id)
        if consultation is None or consultation.processing_status != ProcessingStatus.READY_FOR_REVIEW:
            return

        target = pipeline_state.transition(consultation.processing_status, ProcessingStatus.APPROVED)
        await self.db.update_consultation(consultation_id, {"processing_status": target.value})
        await self.audit.record(
            action="update_processing_status",
            entity_type="consultation",
            entity_id=consultation_id,
            actor=actor,
            changes={"processing_status": [consultation.processing_status.value, target.value]},
        )
        logger.info("consultation_documents_approved", consultation_id=consultation_id)
