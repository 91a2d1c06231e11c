"""
Risk Scorer

One 0-100 risk score per finding set, as a weighted average so that a pile
of low-impact findings cannot drown out (or inflate past) a serious one.

Per finding:
    score  = base[severity] x multipliers
    weight = weight[severity] x probability_of_occurrence / 100 (when given)

    severity   base  weight
    CRITICAL    90    3.0
    HIGH        70    2.5
    MEDIUM      45    2.0
    LOW         25    1.5
    INFO         5    0.5

    multipliers: financial risk High x1.3 / Medium x1.1
                 operational risk High x1.2 / Medium x1.05
                 credit impact Negative x1.25
                 status Active/Pending x1.2, Resolved x0.7
                 amount above 10 / 5 / 1 crore x1.4 / x1.2 / x1.1

Per alert:
    score  = base[severity] x confidence / 100   (95 / 75 / 50)
    weight = 3.0 / 2.5 / 2.0

Final score = round(sum(score x weight) / sum(weight)), clamped to 0..100.

Probability scales the weight rather than the score: a finding that is
unlikely to materialize counts for less of the average, but a CRITICAL
finding never scores below the LOW finding it replaces.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from config.logging_config import get_logger
from diligence.extraction.alert_detector import ALERT_BASE_SCORES, ALERT_WEIGHTS, alert_risk_score
from diligence.extraction.amounts import CRORE
from diligence.extraction.schema import (
    CreditImpact,
    CriticalAlert,
    FindingStatus,
    ImpactLevel,
    Severity,
    StructuredFinding,
)

logger = get_logger(__name__)

SEVERITY_SCORES = {
    Severity.CRITICAL: 90,
    Severity.HIGH: 70,
    Severity.MEDIUM: 45,
    Severity.LOW: 25,
    Severity.INFO: 5,
}

SEVERITY_WEIGHTS = {
    Severity.CRITICAL: 3.0,
    Severity.HIGH: 2.5,
    Severity.MEDIUM: 2.0,
    Severity.LOW: 1.5,
    Severity.INFO: 0.5,
}

# (threshold in INR, multiplier), largest first
AMOUNT_TIERS = (
    (10 * CRORE, 1.4),
    (5 * CRORE, 1.2),
    (1 * CRORE, 1.1),
)

IMMEDIATE_ATTENTION_SCORE = 75
IMMEDIATE_ATTENTION_AMOUNT_INR = 5 * CRORE


class CreditRecommendation(str, Enum):
    APPROVE = "Approve"
    CONDITIONAL_APPROVE = "Conditional Approve"
    FURTHER_REVIEW = "Further Review"
    DECLINE = "Decline"


RECOMMENDATION_ACTIONS = {
    CreditRecommendation.DECLINE: [
        "Decline credit exposure pending resolution of critical findings",
        "Escalate to the credit committee with the supporting evidence",
    ],
    CreditRecommendation.FURTHER_REVIEW: [
        "Refer to senior credit review before any decision",
        "Obtain management clarification on high-severity findings",
    ],
    CreditRecommendation.CONDITIONAL_APPROVE: [
        "Approve subject to covenants addressing the identified risks",
        "Schedule periodic monitoring of open matters",
    ],
    CreditRecommendation.APPROVE: [
        "Proceed with standard credit terms",
        "Continue routine annual monitoring",
    ],
}


@dataclass
class ScoreContribution:
    kind: str
    reference: str
    severity: str
    score: float
    weight: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "reference": self.reference,
            "severity": self.severity,
            "score": round(self.score, 2),
            "weight": round(self.weight, 3),
        }


@dataclass
class RiskScore:
    """Outcome of one scoring pass."""
    risk_score: int
    credit_recommendation: CreditRecommendation
    requires_immediate_attention: bool
    alert_score: int = 0
    finding_count: int = 0
    alert_count: int = 0
    critical_count: int = 0
    high_count: int = 0
    contributions: List[ScoreContribution] = field(default_factory=list)

    @property
    def recommended_actions(self) -> List[str]:
        return list(RECOMMENDATION_ACTIONS[self.credit_recommendation])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "risk_score": self.risk_score,
            "credit_recommendation": self.credit_recommendation.value,
            "requires_immediate_attention": self.requires_immediate_attention,
            "alert_score": self.alert_score,
            "finding_count": self.finding_count,
            "alert_count": self.alert_count,
            "critical_count": self.critical_count,
            "high_count": self.high_count,
            "recommended_actions": self.recommended_actions,
            "contributions": [item.to_dict() for item in self.contributions],
        }


def finding_multiplier(finding: StructuredFinding) -> float:
    impact = finding.business_impact
    multiplier = 1.0

    if impact.financial_risk == ImpactLevel.HIGH:
        multiplier *= 1.3
    elif impact.financial_risk == ImpactLevel.MEDIUM:
        multiplier *= 1.1

    if impact.operational_risk == ImpactLevel.HIGH:
        multiplier *= 1.2
    elif impact.operational_risk == ImpactLevel.MEDIUM:
        multiplier *= 1.05

    if impact.credit_impact == CreditImpact.NEGATIVE:
        multiplier *= 1.25

    if finding.status in (FindingStatus.ACTIVE, FindingStatus.PENDING):
        multiplier *= 1.2
    elif finding.status == FindingStatus.RESOLVED:
        multiplier *= 0.7

    amount = finding.amount_inr or 0
    for threshold, tier_multiplier in AMOUNT_TIERS:
        if amount > threshold:
            multiplier *= tier_multiplier
            break

    return multiplier


def finding_weight(finding: StructuredFinding) -> float:
    """
    Severity weight, scaled by probability of occurrence when one is given.

    Probability scales the weight in the weighted average, not the finding's
    base score, so a less likely finding counts for less without ever
    lowering the score of a more severe one below a less severe one.
    """
    weight = SEVERITY_WEIGHTS[finding.severity]
    probability = finding.business_impact.probability_of_occurrence
    if probability is not None:
        weight *= probability / 100
    return weight


class RiskScorer:
    """
    Deterministic risk scoring and credit decision.

    Usage:
        >>> scorer = RiskScorer()
        >>> result = scorer.score(findings, alerts)
        >>> result.risk_score, result.credit_recommendation.value
        (94, 'Decline')
    """

    def score(
        self,
        findings: Sequence[StructuredFinding],
        alerts: Optional[Sequence[CriticalAlert]] = None,
    ) -> RiskScore:
        alerts = list(alerts or [])
        contributions: List[ScoreContribution] = []

        for finding in findings:
            contributions.append(ScoreContribution(
                kind="finding",
                reference=finding.id,
                severity=finding.severity.value,
                score=SEVERITY_SCORES[finding.severity] * finding_multiplier(finding),
                weight=finding_weight(finding),
            ))

        for alert in alerts:
            base = ALERT_BASE_SCORES.get(alert.severity)
            if base is None:
                continue
            contributions.append(ScoreContribution(
                kind="alert",
                reference=alert.rule_id,
                severity=alert.severity.value,
                score=base * alert.confidence_score / 100,
                weight=ALERT_WEIGHTS[alert.severity],
            ))

        risk_score = self.weighted_average(contributions)
        recommendation = self.recommend(risk_score, findings, alerts)
        attention = self.requires_immediate_attention(risk_score, findings, alerts)

        result = RiskScore(
            risk_score=risk_score,
            credit_recommendation=recommendation,
            requires_immediate_attention=attention,
            alert_score=alert_risk_score(alerts),
            finding_count=len(findings),
            alert_count=len(alerts),
            critical_count=self._count(findings, Severity.CRITICAL)
            + sum(1 for alert in alerts if alert.severity == Severity.CRITICAL),
            high_count=self._count(findings, Severity.HIGH),
            contributions=contributions,
        )

        logger.debug(
            "Risk scored",
            extra={
                "risk_score": risk_score,
                "recommendation": recommendation.value,
                "findings": len(findings),
                "alerts": len(alerts),
            },
        )
        return result

    @staticmethod
    def weighted_average(contributions: Sequence[ScoreContribution]) -> int:
        total_weight = sum(item.weight for item in contributions)
        if total_weight <= 0:
            return 0
        weighted = sum(item.score * item.weight for item in contributions)
        return max(0, min(100, round(weighted / total_weight)))

    @staticmethod
    def _count(findings: Sequence[StructuredFinding], severity: Severity) -> int:
        return sum(1 for finding in findings if finding.severity == severity)

    def recommend(
        self,
        risk_score: int,
        findings: Sequence[StructuredFinding],
        alerts: Sequence[CriticalAlert],
    ) -> CreditRecommendation:
        """Decision table, evaluated top-down; first match wins."""
        has_critical = (
            any(finding.severity == Severity.CRITICAL for finding in findings)
            or any(alert.severity == Severity.CRITICAL for alert in alerts)
        )
        high_count = self._count(findings, Severity.HIGH)

        if has_critical:
            return CreditRecommendation.DECLINE
        if risk_score > 80:
            return CreditRecommendation.DECLINE
        if risk_score > 65:
            return CreditRecommendation.FURTHER_REVIEW
        if high_count >= 3:
            return CreditRecommendation.FURTHER_REVIEW
        if high_count >= 1:
            return CreditRecommendation.CONDITIONAL_APPROVE
        if risk_score > 40:
            return CreditRecommendation.CONDITIONAL_APPROVE
        return CreditRecommendation.APPROVE

    def requires_immediate_attention(
        self,
        risk_score: int,
        findings: Sequence[StructuredFinding],
        alerts: Sequence[CriticalAlert],
    ) -> bool:
        if risk_score > IMMEDIATE_ATTENTION_SCORE:
            return True
        if any(finding.severity == Severity.CRITICAL for finding in findings):
            return True
        if any(alert.severity == Severity.CRITICAL for alert in alerts):
            return True
        urgent_high = sum(
            1 for finding in findings
            if finding.severity == Severity.HIGH and (finding.is_open or finding.action_required)
        )
        if urgent_high >= 2:
            return True
        return any((finding.amount_inr or 0) > IMMEDIATE_ATTENTION_AMOUNT_INR for finding in findings)


__all__ = [
    "SEVERITY_SCORES",
    "SEVERITY_WEIGHTS",
    "AMOUNT_TIERS",
    "CreditRecommendation",
    "RECOMMENDATION_ACTIONS",
    "ScoreContribution",
    "RiskScore",
    "RiskScorer",
    "finding_multiplier",
    "finding_weight",
]
