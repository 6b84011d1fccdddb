"""
Pipeline State Machine.

Explicit transition table for ``ConsultationRecord.processing_status``.
Each pipeline stage owns exactly three transitions: enter, complete and
fail. Everything else (external reset, approval roll-up) goes through
``transition()`` and is checked against the same table.

    pending -> transcribing -> extracting -> generating_documents
            -> ready_for_review -> approved

``failed`` is reachable from the three working states and only left
through an external reset back to ``pending``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from src.errors import InvalidTransitionError
from src.schemas.consultation import ProcessingStatus
from src.schemas.job import PipelineStage

S = ProcessingStatus

ALLOWED_TRANSITIONS: dict[ProcessingStatus, frozenset[ProcessingStatus]] = {
    S.PENDING: frozenset({S.TRANSCRIBING}),
    S.TRANSCRIBING: frozenset({S.EXTRACTING, S.FAILED}),
    S.EXTRACTING: frozenset({S.GENERATING_DOCUMENTS, S.FAILED}),
    S.GENERATING_DOCUMENTS: frozenset({S.READY_FOR_REVIEW, S.FAILED}),
    S.READY_FOR_REVIEW: frozenset({S.APPROVED}),
    S.APPROVED: frozenset(),
    S.FAILED: frozenset({S.PENDING}),
}

# States from which an operator may restart the pipeline.
RESTARTABLE: frozenset[ProcessingStatus] = frozenset({S.PENDING, S.FAILED})

# States a stage job is responsible for moving on.
WORKING: frozenset[ProcessingStatus] = frozenset({S.TRANSCRIBING, S.EXTRACTING, S.GENERATING_DOCUMENTS})


@dataclass(frozen=True)
class StageTransition:
    entry: ProcessingStatus
    exit: ProcessingStatus
    next_stage: Optional[PipelineStage]


STAGES: dict[PipelineStage, StageTransition] = {
    PipelineStage.TRANSCRIPTION: StageTransition(
        entry=S.TRANSCRIBING,
        exit=S.EXTRACTING,
        next_stage=PipelineStage.EXTRACTION,
    ),
    PipelineStage.EXTRACTION: StageTransition(
        entry=S.EXTRACTING,
        exit=S.GENERATING_DOCUMENTS,
        next_stage=PipelineStage.DOCUMENT_GENERATION,
    ),
    PipelineStage.DOCUMENT_GENERATION: StageTransition(
        entry=S.GENERATING_DOCUMENTS,
        exit=S.READY_FOR_REVIEW,
        next_stage=None,
    ),
}


def can_transition(current: ProcessingStatus, target: ProcessingStatus) -> bool:
    """Re-setting the current status is always allowed (retries re-issue writes)."""
    return target == current or target in ALLOWED_TRANSITIONS[current]


def transition(current: ProcessingStatus, target: ProcessingStatus) -> ProcessingStatus:
    if not can_transition(current, target):
        raise InvalidTransitionError(current.value, target.value)
    return target


def enter_stage(stage: PipelineStage, current: ProcessingStatus) -> ProcessingStatus:
    return transition(current, STAGES[stage].entry)


def complete_stage(stage: PipelineStage, current: ProcessingStatus) -> ProcessingStatus:
    return transition(current, STAGES[stage].exit)


def fail_stage(current: ProcessingStatus) -> ProcessingStatus:
    return transition(current, S.FAILED)


def next_stage(stage: PipelineStage) -> Optional[PipelineStage]:
    return STAGES[stage].next_stage


def reset(current: ProcessingStatus, stalled: bool = False) -> ProcessingStatus:
    """
    External re-entry: pending or failed consultations may restart.

    A consultation left in a working state with no job queued or running
    for it (``stalled``) may restart too; nothing else would move it on.
    """
    if current not in RESTARTABLE and not (stalled and current in WORKING):
        raise InvalidTransitionError(current.value, S.PENDING.value)
    return S.PENDING
