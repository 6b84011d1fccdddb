from __future__ import annotations

import pytest

from src.schemas.document import DocumentType
from src.services.letter_classifier import classify_letter


@pytest.mark.parametrize(
    "descriptor,expected",
    [
        ("GP referral letter", DocumentType.GP_LETTER),
        ("Letter to GP", DocumentType.GP_LETTER),
        ("Referral back to GP", DocumentType.GP_LETTER),
        ("Patient summary letter", DocumentType.PATIENT_LETTER),
        ("patient letter", DocumentType.PATIENT_LETTER),
        ("Cardiology referral letter", DocumentType.REFERRAL_LETTER),
        ("Insurance report", DocumentType.INSURANCE_LETTER),
        ("INSURANCE", DocumentType.INSURANCE_LETTER),
    ],
)
def test_known_descriptors(descriptor, expected):
    assert classify_letter(descriptor) == expected


@pytest.mark.parametrize(
    "descriptor",
    ["xyz unknown", "", "Sick note", "Referral to physiotherapy", "Patient information leaflet"],
)
def test_unknown_descriptors(descriptor):
    assert classify_letter(descriptor) is None


def test_first_matching_rule_wins():
    # Matches both the patient and GP rules; GP is checked first.
    assert classify_letter("Patient letter, copy to GP") == DocumentType.GP_LETTER
