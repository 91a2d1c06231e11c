"""
Finding normalizer tests.

Tests cover:
  1. Never raises on odd input
  2. Defaults and keyword mapping
  3. Dates, amounts and the action-required rule
  4. Stable ids and batch de-duplication
"""

import pytest

from conftest import ADVERSE_FINDINGS
from diligence.extraction.amounts import find_amounts, parse_amount
from diligence.extraction.normalizer import FindingNormalizer, normalize_date, normalize_probability
from diligence.extraction.schema import (
    FindingCategory,
    FindingStatus,
    ImpactLevel,
    Severity,
    TimelineImpact,
    VerificationLevel,
)


@pytest.fixture
def normalizer():
    return FindingNormalizer()


# ============================================================================
# ROBUSTNESS & DEFAULTS
# ============================================================================

@pytest.mark.parametrize("raw", [
    None,
    42,
    [],
    "Free text finding about a delayed project",
    {},
    {"severity": 5, "status": ["x"], "amount": object()},
    {"business_impact": "high", "date": 20230315},
    {"title": None, "description": None, "amount": "not a number"},
])
def test_never_raises(normalizer, raw):
    finding = normalizer.normalize(raw)

    assert finding.id.startswith("finding_")
    assert isinstance(finding.category, FindingCategory)
    assert isinstance(finding.severity, Severity)
    assert finding.title


def test_defaults(normalizer):
    finding = normalizer.normalize({"title": "Something happened"})

    assert finding.category == FindingCategory.OTHER
    assert finding.severity == Severity.MEDIUM
    assert finding.status == FindingStatus.UNKNOWN
    assert finding.verification_level == VerificationLevel.LOW
    assert finding.business_impact.financial_risk == ImpactLevel.LOW
    assert finding.business_impact.probability_of_occurrence is None
    assert finding.timeline_impact == TimelineImpact.LONG_TERM
    assert finding.description == "Something happened"


def test_keyword_mapping(normalizer):
    finding = normalizer.normalize({"category": "court case", "severity": "major", "status": "sub judice"})

    assert finding.category == FindingCategory.LEGAL_PROCEEDINGS
    assert finding.severity == Severity.HIGH
    assert finding.status == FindingStatus.PENDING
    assert finding.timeline_impact == TimelineImpact.SHORT_TERM


def test_exact_values_are_kept(normalizer):
    finding = normalizer.normalize(ADVERSE_FINDINGS[0])

    assert finding.category == FindingCategory.FINANCIAL_CRIME
    assert finding.severity == Severity.CRITICAL
    assert finding.status == FindingStatus.UNDER_INVESTIGATION
    assert finding.verification_level == VerificationLevel.HIGH
    assert finding.details == "ECIR/MBZO/12/2023"
    assert finding.timeline_impact == TimelineImpact.IMMEDIATE


# ============================================================================
# DATES, AMOUNTS, ACTION REQUIRED
# ============================================================================

@pytest.mark.parametrize("value,expected", [
    ("15 March 2023", "2023-03-15"),
    ("2023-03-15T10:00:00Z", "2023-03-15"),
    ("15/03/2023", "2023-03-15"),
    ("March 2023", "2023-03-01"),
    ("FY 2022-23", "FY 2022-23"),
    ("", None),
    (None, None),
])
def test_normalize_date(value, expected):
    assert normalize_date(value) == expected


def test_indian_amount_units():
    assert parse_amount("₹50 crore").inr == 500_000_000
    assert parse_amount("Rs. 2.5 lakh").inr == 250_000
    assert parse_amount("INR 1,20,000").inr == 120_000
    assert parse_amount(None) is None
    assert [amount.text for amount in find_amounts("Case 2019 of 2021 for Rs 3 crore")] == ["Rs 3 crore"]


def test_amount_fields(normalizer):
    finding = normalizer.normalize({"title": "Attachment", "amount": "₹50 crore", "severity": "LOW",
                                    "status": "Resolved"})

    assert finding.amount == "₹50 crore"
    assert finding.amount_numeric == 500_000_000
    assert finding.currency == "INR"
    assert finding.amount_inr == 500_000_000
    assert finding.action_required


@pytest.mark.parametrize("raw,expected", [
    ({"title": "Small dues", "severity": "LOW", "status": "Resolved", "amount": "Rs 50 lakh"}, False),
    ({"title": "Large dues", "severity": "LOW", "status": "Resolved", "amount": "Rs 2 crore"}, True),
    ({"title": "Open notice", "severity": "LOW", "status": "Active"}, True),
    ({"title": "Serious matter", "severity": "HIGH", "status": "Resolved"}, True),
])
def test_action_required(normalizer, raw, expected):
    assert normalizer.normalize(raw).action_required is expected


def test_probability_is_a_percentage():
    assert normalize_probability(0.4) == 40.0
    assert normalize_probability("65%") == 65.0
    assert normalize_probability(250) == 100.0
    assert normalize_probability("likely") == 75.0
    assert normalize_probability(None) is None


# ============================================================================
# IDS
# ============================================================================

def test_ids_are_stable(normalizer):
    first = normalizer.normalize(ADVERSE_FINDINGS[1])
    second = normalizer.normalize(dict(ADVERSE_FINDINGS[1]))

    assert first.id == second.id
    assert normalizer.normalize({"id": "given-id", "title": "x"}).id == "given-id"


def test_normalize_many_drops_duplicates(normalizer):
    findings = normalizer.normalize_many(ADVERSE_FINDINGS + [ADVERSE_FINDINGS[0]])

    assert len(findings) == 2
    assert findings[0].severity == Severity.CRITICAL
    assert normalizer.normalize_many(None) == []
