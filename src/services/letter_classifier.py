"""
Letter type classification.

``letters_required`` entries are free text written by the extraction
model ("GP referral letter", "Insurance report", ...). They are mapped
to a document type with an ordered rule table: the first rule with a
keyword group fully contained in the lower-cased descriptor wins.
Unmatched descriptors return ``None`` and are skipped by the caller.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from src.schemas.document import DocumentType


@dataclass(frozen=True)
class LetterRule:
    document_type: DocumentType
    # Any group matches when all of its keywords are substrings.
    keyword_groups: tuple[tuple[str, ...], ...]

    def matches(self, descriptor: str) -> bool:
        return any(all(k in descriptor for k in group) for group in self.keyword_groups)


LETTER_RULES: tuple[LetterRule, ...] = (
    LetterRule(DocumentType.GP_LETTER, (("gp", "letter"), ("referral", "gp"))),
    LetterRule(DocumentType.PATIENT_LETTER, (("patient", "letter"),)),
    LetterRule(DocumentType.REFERRAL_LETTER, (("referral", "letter"),)),
    LetterRule(DocumentType.INSURANCE_LETTER, (("insurance",),)),
)


def classify_letter(descriptor: str) -> Optional[DocumentType]:
    text = descriptor.lower()
    for rule in LETTER_RULES:
        if rule.matches(text):
            return rule.document_type
    return None
