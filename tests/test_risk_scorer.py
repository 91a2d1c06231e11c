"""
Risk scorer tests.

Tests cover:
  1. Empty input and score bounds
  2. Severity monotonicity
  3. Determinism
  4. Credit decision table and immediate-attention rules
  5. Alerts contributing to the score
"""

import itertools

import pytest

from diligence.analysis.risk_scorer import CreditRecommendation, RiskScorer, finding_weight
from diligence.extraction.alert_detector import AlertDetector
from diligence.extraction.normalizer import FindingNormalizer

SEVERITIES = ("CRITICAL", "HIGH", "MEDIUM", "LOW", "INFO")
STATUSES = ("Active", "Resolved", "Unknown")

normalizer = FindingNormalizer()
scorer = RiskScorer()


def _finding(severity, status="Unknown", index=0, **extra):
    raw = {"title": f"Finding {index}", "severity": severity, "status": status}
    raw.update(extra)
    return normalizer.normalize(raw)


# ============================================================================
# BOUNDS & PROPERTIES
# ============================================================================

def test_empty_input():
    result = scorer.score([], [])

    assert result.risk_score == 0
    assert result.credit_recommendation == CreditRecommendation.APPROVE
    assert result.requires_immediate_attention is False
    assert result.alert_score == 0


def test_scores_stay_in_bounds():
    impacts = ({}, {"business_impact": {"financial_risk": "High", "operational_risk": "High",
                                        "credit_impact": "Negative"}, "amount": "Rs 50 crore"})
    for severity, status, impact in itertools.product(SEVERITIES, STATUSES, impacts):
        findings = [_finding(severity, status, index, **impact) for index in range(3)]
        assert 0 <= scorer.score(findings).risk_score <= 100


def test_raising_severity_never_lowers_score():
    for rest_severity, rest_status, status in itertools.product(SEVERITIES, STATUSES, STATUSES):
        rest = [_finding(rest_severity, rest_status, index=1)]
        low = scorer.score(rest + [_finding("LOW", status, index=2)]).risk_score
        critical = scorer.score(rest + [_finding("CRITICAL", status, index=2)]).risk_score
        assert critical >= low, (rest_severity, rest_status, status)


def test_scoring_is_deterministic():
    findings = [_finding(severity, index=index) for index, severity in enumerate(SEVERITIES)]
    alerts = AlertDetector().detect("A civil suit is pending before the High Court.").alerts

    first = scorer.score(findings, alerts)
    second = scorer.score(list(findings), list(alerts))

    assert first.to_dict() == second.to_dict()


def test_probability_scales_weight_not_score():
    unlikely = _finding("HIGH", index=1, business_impact={"probability_of_occurrence": 10})
    low = _finding("LOW", index=2)

    alone = scorer.score([unlikely]).risk_score
    mixed = scorer.score([unlikely, low]).risk_score

    assert alone == 70
    assert mixed < 40
    assert finding_weight(unlikely) == pytest.approx(0.25)
    assert finding_weight(low) == 1.5


# ============================================================================
# DECISIONS
# ============================================================================

def test_critical_director_finding_declines():
    finding = _finding("CRITICAL", "Active", category="Governance Issues",
                       title="Managing director arrested in fraud case")
    result = scorer.score([finding])

    assert result.risk_score >= 90
    assert result.credit_recommendation == CreditRecommendation.DECLINE
    assert result.requires_immediate_attention
    assert result.critical_count == 1


@pytest.mark.parametrize("findings,expected", [
    ([("LOW", "Unknown")], CreditRecommendation.APPROVE),
    ([("MEDIUM", "Unknown")], CreditRecommendation.CONDITIONAL_APPROVE),
    ([("HIGH", "Resolved")], CreditRecommendation.CONDITIONAL_APPROVE),
    ([("HIGH", "Resolved")] * 3, CreditRecommendation.FURTHER_REVIEW),
    ([("HIGH", "Unknown")], CreditRecommendation.FURTHER_REVIEW),
    ([("HIGH", "Active")] * 2, CreditRecommendation.DECLINE),
    ([("CRITICAL", "Resolved")], CreditRecommendation.DECLINE),
])
def test_decision_table(findings, expected):
    built = [_finding(severity, status, index) for index, (severity, status) in enumerate(findings)]

    assert scorer.score(built).credit_recommendation == expected


def test_immediate_attention_rules():
    two_high = [_finding("HIGH", "Resolved", index) for index in range(2)]
    large_amount = [_finding("LOW", "Resolved", amount="Rs 12 crore")]
    minor = [_finding("LOW", "Resolved")]

    assert scorer.score(two_high).requires_immediate_attention
    assert scorer.score(large_amount).requires_immediate_attention
    assert not scorer.score(minor).requires_immediate_attention


def test_critical_alert_forces_decline():
    alerts = AlertDetector().detect("The promoter was arrested by the CBI in a bank fraud case.").alerts
    result = scorer.score([], alerts)

    assert result.alert_count == len(alerts)
    assert result.credit_recommendation == CreditRecommendation.DECLINE
    assert result.requires_immediate_attention
    assert result.risk_score > 0
