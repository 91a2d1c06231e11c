"""
Findings consolidator tests.

Tests cover:
  1. Zero findings
  2. Idempotence and order independence (fingerprint)
  3. Director, litigation and regulatory classification (one list per job type)
  4. Related-entity matching
  5. Overall risk level thresholds
"""

import random

import pytest

from conftest import ADVERSE_FINDINGS, COMPANY_NAME
from diligence.analysis.consolidator import (
    Consolidator,
    JobSnapshot,
    confidence_level,
    overall_risk_level,
)
from diligence.extraction.normalizer import FindingNormalizer
from diligence.search.query_builder import extract_entity_context

DIRECTOR_FINDINGS = [
    {
        "category": "Governance Issues",
        "severity": "HIGH",
        "title": "Director Ravi Kumar disqualified under section 164",
        "description": "MCA disqualified Ravi Kumar for non-filing at a struck-off company",
        "status": "Active",
        "verification_level": "High",
        "details": "MCA order 2021",
    },
    {
        "category": "Business Performance",
        "severity": "LOW",
        "title": "Board expanded with two independent members",
        "description": "Routine board change",
        "status": "Resolved",
    },
]

LEGAL_FINDINGS = [
    {
        "category": "Legal Proceedings",
        "severity": "MEDIUM",
        "title": "Supplier suit in High Court",
        "description": "Civil suit before the Bombay High Court for Rs 2.5 crore",
        "amount": "Rs 2.5 crore",
        "status": "Pending",
    },
    {
        "category": "Legal Proceedings",
        "severity": "HIGH",
        "title": "Insolvency petition against Acme Roads Pvt Ltd",
        "description": "Operational creditor petition before the NCLT Mumbai bench",
        "status": "Active",
    },
]

REGULATORY_FINDINGS = [
    {
        "category": "Regulatory Compliance",
        "severity": "MEDIUM",
        "title": "SEBI adjudication order",
        "description": "SEBI imposed a penalty of Rs 10 lakh for late disclosures",
        "amount": "Rs 10 lakh",
        "status": "Resolved",
        "date": "12 January 2022",
    },
]


def _snapshots():
    return [
        JobSnapshot.from_payload("job-d", "directors_research", {"structured_findings": DIRECTOR_FINDINGS}),
        JobSnapshot.from_payload("job-l", "legal_research", {"structured_findings": LEGAL_FINDINGS}),
        JobSnapshot.from_payload("job-n", "negative_news", {"structured_findings": ADVERSE_FINDINGS}),
        JobSnapshot.from_payload("job-r", "regulatory_research", {"structured_findings": REGULATORY_FINDINGS}),
    ]


@pytest.fixture
def context(company_data):
    return extract_entity_context(company_data)


# ============================================================================
# EMPTY & IDEMPOTENT
# ============================================================================

def test_zero_findings():
    snapshots = [JobSnapshot.from_payload(f"job-{index}", job_type, {})
                 for index, job_type in enumerate(("directors_research", "legal_research"))]
    consolidated = Consolidator().consolidate("req-1", snapshots, company_name=COMPANY_NAME)
    assessment = consolidated.overall_risk_assessment

    assert consolidated.all_findings == []
    assert assessment.overall_risk_level == "Low"
    assert assessment.requires_immediate_attention is False
    assert assessment.credit_recommendation == "Approve"
    assert assessment.confidence_level == "Low"
    assert assessment.risk_score == 0


def test_consolidation_is_idempotent(context):
    consolidator = Consolidator()
    first = consolidator.consolidate("req-1", _snapshots(), context=context)
    second = consolidator.consolidate("req-1", _snapshots(), context=context)

    assert first.to_dict() == second.to_dict()
    assert first.fingerprint == second.fingerprint


def test_snapshot_order_does_not_matter(context):
    snapshots = _snapshots()
    shuffled = list(snapshots)
    random.Random(7).shuffle(shuffled)

    consolidator = Consolidator()
    assert (consolidator.consolidate("req-1", snapshots, context=context).fingerprint
            == consolidator.consolidate("req-1", shuffled, context=context).fingerprint)


def test_duplicate_findings_are_merged():
    payload = {"structured_findings": ADVERSE_FINDINGS}
    snapshots = [JobSnapshot.from_payload("job-a", "negative_news", payload),
                 JobSnapshot.from_payload("job-b", "legal_research", payload)]

    consolidated = Consolidator().consolidate("req-1", snapshots)

    assert len(consolidated.all_findings) == len(ADVERSE_FINDINGS)


# ============================================================================
# CLASSIFICATION
# ============================================================================

def test_director_records(context):
    consolidated = Consolidator().consolidate("req-1", _snapshots(), context=context)

    assert len(consolidated.directors) == 1
    director = consolidated.directors[0]
    assert director.entity_name == "Ravi Kumar"
    assert director.designation == "Managing Director"
    assert director.risk_level == "High"
    assert director.verification_status == "Verified"


def test_litigation_and_regulatory_history(context):
    consolidated = Consolidator().consolidate("req-1", _snapshots(), context=context)

    courts = [item.court for item in consolidated.litigation_history]
    assert courts == ["High Court", "NCLT"]
    assert consolidated.litigation_history[0].amount_involved == 25_000_000

    regulatory = consolidated.regulatory_history[0]
    assert regulatory.authority == "SEBI"
    assert regulatory.date == "2022-01-12"
    assert regulatory.status == "Resolved"

    follow_up = consolidated.overall_risk_assessment.follow_up_required
    assert "Review regulatory compliance status" in follow_up
    assert "Legal assessment of ongoing litigation" in follow_up


def test_findings_stay_on_primary_entity(context):
    consolidated = Consolidator().consolidate("req-1", _snapshots(), context=context)
    total = len(DIRECTOR_FINDINGS) + len(LEGAL_FINDINGS) + len(ADVERSE_FINDINGS) + len(REGULATORY_FINDINGS)

    assert len(consolidated.all_findings) == total
    assert consolidated.primary_entity.entity_name == COMPANY_NAME
    assert consolidated.job_types == ["directors_research", "legal_research", "negative_news",
                                      "regulatory_research"]


def test_related_entities_matched_by_name(context):
    consolidated = Consolidator().consolidate("req-1", _snapshots(), context=context)

    subsidiary = consolidated.subsidiaries[0]
    assert subsidiary.entity_name == "Acme Roads Pvt Ltd"
    assert [finding.title for finding in subsidiary.findings] == ["Insolvency petition against Acme Roads Pvt Ltd"]
    assert subsidiary.risk_level == "Medium"
    assert consolidated.associates[0].findings == []


def test_job_type_picks_one_history_list(context):
    finding = dict(LEGAL_FINDINGS[0], title="Director Ravi Kumar named in supplier suit")
    snapshots = [JobSnapshot.from_payload("job-l", "legal_research", {"structured_findings": [finding]})]

    consolidated = Consolidator().consolidate("req-1", snapshots, context=context)

    finding_id = consolidated.all_findings[0].id
    assert consolidated.directors == []
    assert [item.finding_id for item in consolidated.litigation_history] == [finding_id]
    assert consolidated.regulatory_history == []


def test_critical_finding_drives_assessment(context):
    assessment = Consolidator().consolidate("req-1", _snapshots(), context=context).overall_risk_assessment

    assert assessment.overall_risk_level == "Critical"
    assert assessment.requires_immediate_attention
    assert assessment.credit_recommendation == "Decline"
    assert assessment.primary_risk_factors[0] == ADVERSE_FINDINGS[0]["title"]
    assert "Immediate escalation required for critical findings" in assessment.follow_up_required


# ============================================================================
# THRESHOLDS
# ============================================================================

def _findings(*severities):
    normalizer = FindingNormalizer()
    return [normalizer.normalize({"title": f"Finding {index}", "severity": severity})
            for index, severity in enumerate(severities)]


@pytest.mark.parametrize("severities,expected", [
    ((), "Low"),
    (("MEDIUM",) * 3, "Low"),
    (("MEDIUM",) * 4, "Medium"),
    (("HIGH",), "Medium"),
    (("HIGH",) * 2, "Medium"),
    (("HIGH",) * 3, "High"),
    (("LOW", "CRITICAL"), "Critical"),
])
def test_overall_risk_level(severities, expected):
    assert overall_risk_level(_findings(*severities)).value == expected


@pytest.mark.parametrize("completeness,expected", [(0.9, "High"), (0.7, "Medium"), (0.5, "Medium"),
                                                   (0.4, "Low")])
def test_confidence_level(completeness, expected):
    assert confidence_level(completeness) == expected
