"""
Critical alert detector tests.

Tests cover:
  1. Enforcement Directorate money laundering scenario
  2. Rule order, truncation and total match count
  3. Empty and clean text
  4. Negation and confidence bounds
  5. Auxiliary alert score
"""

from conftest import ADVERSE_RESEARCH, CLEAN_RESEARCH
from config.settings import settings
from diligence.extraction.alert_detector import (
    RULESET_VERSION,
    AlertDetector,
    alert_risk_score,
    build_ruleset,
    default_ruleset,
)
from diligence.extraction.schema import Severity


# ============================================================================
# DETECTION
# ============================================================================

def test_money_laundering_scenario():
    result = AlertDetector().detect(ADVERSE_RESEARCH)

    first = result.alerts[0]
    assert first.rule_id == "money_laundering"
    assert first.severity == Severity.CRITICAL
    assert first.category == "Money Laundering"
    assert first.financial_impact == "₹50 crore"
    assert first.confidence_score >= 70
    assert "Enforcement Directorate" in first.source_evidence
    assert result.ruleset_version == RULESET_VERSION == "2024.2"

    rule_ids = [alert.rule_id for alert in result.alerts]
    assert "enforcement_action" in rule_ids
    assert "litigation" in rule_ids
    assert result.critical_count >= 1
    assert not result.truncated


def test_alerts_follow_rule_order_then_position():
    result = AlertDetector().detect(ADVERSE_RESEARCH)
    order = {rule_id: index for index, rule_id in enumerate(default_ruleset().rule_ids)}

    keys = [(order[alert.rule_id], alert.position) for alert in result.alerts]
    assert keys == sorted(keys)


def test_alert_list_is_truncated():
    text = " ".join(["Auditors reported fraud."] * 30)
    result = AlertDetector().detect(text)

    assert len(result.alerts) == settings.MAX_ALERTS
    assert result.total_matches == 30
    assert result.truncated


def test_empty_and_clean_text_raise_nothing():
    detector = AlertDetector()

    for text in (None, "", CLEAN_RESEARCH):
        result = detector.detect(text)
        assert result.alerts == []
        assert result.total_matches == 0


def test_evidence_window_is_bounded():
    padding = "x" * 500
    text = f"{padding} The company is under insolvency proceedings. {padding}"
    alert = AlertDetector(window=100).detect(text).alerts[0]

    assert alert.rule_id == "insolvency"
    assert len(alert.source_evidence) <= len("insolvency") + 200


# ============================================================================
# CONFIDENCE
# ============================================================================

def test_negation_lowers_confidence():
    detector = AlertDetector()
    negated = detector.detect("Searches found no evidence of money laundering by the company.").alerts[0]
    asserted = detector.detect("Searches found fresh evidence of money laundering by the company.").alerts[0]

    assert negated.rule_id == asserted.rule_id == "money_laundering"
    assert asserted.confidence_score - negated.confidence_score == 30


def test_confidence_is_bounded():
    texts = [
        ADVERSE_RESEARCH,
        "fraud " * 5,
        "Not arrested. No FIR. Never convicted. Denied any fraud.",
        "Rs 10 crore NPA with the consortium bank; lender initiated SARFAESI recovery of Rs 4 crore.",
    ]
    detector = AlertDetector()
    for text in texts:
        for alert in detector.detect(text).alerts:
            assert 0 <= alert.confidence_score <= 100


def test_ruleset_is_versioned_and_stable():
    first = build_ruleset()
    second = build_ruleset()

    assert first.fingerprint == second.fingerprint
    assert build_ruleset("2025.1").fingerprint != first.fingerprint
    assert first.rule_ids[0] == "money_laundering"


# ============================================================================
# ALERT SCORE
# ============================================================================

def test_alert_risk_score():
    alerts = AlertDetector().detect(ADVERSE_RESEARCH).alerts

    assert alert_risk_score([]) == 0
    assert 0 < alert_risk_score(alerts) <= 100
