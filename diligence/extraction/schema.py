"""
Finding & Alert Schema

Closed vocabularies and the record types produced by extraction:

- ``StructuredFinding``: one normalized finding with its business impact
- ``CriticalAlert``: one deterministic keyword-rule match with its evidence
- ``BusinessImpact``: impact levels used by the risk scorer

Every enum value is the exact string stored in the database and rendered in
reports, so ``Severity.CRITICAL.value == "CRITICAL"`` and
``FindingCategory.LEGAL_PROCEEDINGS.value == "Legal Proceedings"``.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class Severity(str, Enum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"
    INFO = "INFO"


SEVERITY_RANK = {
    Severity.CRITICAL: 4,
    Severity.HIGH: 3,
    Severity.MEDIUM: 2,
    Severity.LOW: 1,
    Severity.INFO: 0,
}


class FindingCategory(str, Enum):
    REGULATORY_COMPLIANCE = "Regulatory Compliance"
    LEGAL_PROCEEDINGS = "Legal Proceedings"
    FINANCIAL_CONDUCT = "Financial Conduct"
    OPERATIONAL_RISK = "Operational Risk"
    GOVERNANCE_ISSUES = "Governance Issues"
    REPUTATIONAL_RISK = "Reputational Risk"
    BUSINESS_PERFORMANCE = "Business Performance"
    CRIMINAL_ACTIVITY = "Criminal Activity"
    FINANCIAL_CRIME = "Financial Crime"
    OTHER = "Other"


class FindingStatus(str, Enum):
    ACTIVE = "Active"
    RESOLVED = "Resolved"
    PENDING = "Pending"
    UNDER_INVESTIGATION = "Under Investigation"
    UNKNOWN = "Unknown"


# Statuses that keep a finding open
OPEN_STATUSES = (FindingStatus.ACTIVE, FindingStatus.PENDING, FindingStatus.UNDER_INVESTIGATION)


class ImpactLevel(str, Enum):
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"


class VerificationLevel(str, Enum):
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"


class CreditImpact(str, Enum):
    NEGATIVE = "Negative"
    NEUTRAL = "Neutral"
    POSITIVE = "Positive"


class TimelineImpact(str, Enum):
    IMMEDIATE = "Immediate"
    SHORT_TERM = "Short-term"
    LONG_TERM = "Long-term"


class RiskLevel(str, Enum):
    """Consolidated risk level of an entity or a whole request."""
    CRITICAL = "Critical"
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"


@dataclass
class BusinessImpact:
    """
    Business impact of a finding.

    ``probability_of_occurrence`` is a percentage (0-100) or None when the
    source gave no estimate.
    """
    financial_risk: ImpactLevel = ImpactLevel.LOW
    operational_risk: ImpactLevel = ImpactLevel.LOW
    reputational_risk: ImpactLevel = ImpactLevel.LOW
    regulatory_risk: ImpactLevel = ImpactLevel.LOW
    credit_impact: CreditImpact = CreditImpact.NEUTRAL
    probability_of_occurrence: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "financial_risk": self.financial_risk.value,
            "operational_risk": self.operational_risk.value,
            "reputational_risk": self.reputational_risk.value,
            "regulatory_risk": self.regulatory_risk.value,
            "credit_impact": self.credit_impact.value,
            "probability_of_occurrence": self.probability_of_occurrence,
        }


@dataclass
class StructuredFinding:
    """
    One normalized finding.

    Amounts keep the source text (``amount``), the number in its own currency
    (``amount_numeric``), the ISO currency code and the rupee equivalent
    (``amount_inr``) used for materiality thresholds.
    """
    id: str
    category: FindingCategory
    severity: Severity
    title: str
    description: str
    status: FindingStatus = FindingStatus.UNKNOWN
    verification_level: VerificationLevel = VerificationLevel.LOW
    timeline_impact: TimelineImpact = TimelineImpact.LONG_TERM
    business_impact: BusinessImpact = field(default_factory=BusinessImpact)
    action_required: bool = False
    details: Optional[str] = None
    amount: Optional[str] = None
    amount_numeric: Optional[float] = None
    currency: Optional[str] = None
    amount_inr: Optional[float] = None
    date: Optional[str] = None
    source: Optional[str] = None
    regulatory_implications: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "category": self.category.value,
            "severity": self.severity.value,
            "title": self.title,
            "description": self.description,
            "status": self.status.value,
            "verification_level": self.verification_level.value,
            "timeline_impact": self.timeline_impact.value,
            "business_impact": self.business_impact.to_dict(),
            "action_required": self.action_required,
            "details": self.details,
            "amount": self.amount,
            "amount_numeric": self.amount_numeric,
            "currency": self.currency,
            "amount_inr": self.amount_inr,
            "date": self.date,
            "source": self.source,
            "regulatory_implications": self.regulatory_implications,
        }


@dataclass(frozen=True)
class CriticalAlert:
    """
    A deterministic alert raised by one rule match.

    ``source_evidence`` is the research text around the match (up to the
    configured window on each side); ``financial_impact`` is the monetary
    amount found near the match, or an empty string.
    """
    rule_id: str
    severity: Severity
    category: str
    title: str
    description: str
    source_evidence: str
    confidence_score: int
    financial_impact: str = ""
    position: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "severity": self.severity.value,
            "category": self.category,
            "title": self.title,
            "description": self.description,
            "source_evidence": self.source_evidence,
            "confidence_score": self.confidence_score,
            "financial_impact": self.financial_impact,
            "position": self.position,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CriticalAlert":
        try:
            severity = Severity(str(data.get("severity", "MEDIUM")).upper())
        except ValueError:
            severity = Severity.MEDIUM
        try:
            confidence = int(data.get("confidence_score") or 0)
        except (TypeError, ValueError):
            confidence = 0
        return cls(
            rule_id=str(data.get("rule_id") or "unknown"),
            severity=severity,
            category=str(data.get("category") or "Other"),
            title=str(data.get("title") or data.get("category") or "Alert"),
            description=str(data.get("description") or ""),
            source_evidence=str(data.get("source_evidence") or ""),
            confidence_score=max(0, min(100, confidence)),
            financial_impact=str(data.get("financial_impact") or ""),
            position=int(data.get("position") or 0),
        )


__all__ = [
    "Severity",
    "SEVERITY_RANK",
    "FindingCategory",
    "FindingStatus",
    "OPEN_STATUSES",
    "ImpactLevel",
    "VerificationLevel",
    "CreditImpact",
    "TimelineImpact",
    "RiskLevel",
    "BusinessImpact",
    "StructuredFinding",
    "CriticalAlert",
]
