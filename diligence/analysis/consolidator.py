"""
Findings Consolidator

Merges the findings of every completed job of a request into one
entity-centric view and recomputes the overall risk assessment over the
union.

Merge rules (by job type):
- every finding          -> primary entity (the company), deduplicated by id
- directors_research     -> director records, for findings whose category
                            or title mentions "director"
- legal_research         -> litigation history
- regulatory_research    -> regulatory history
- subsidiaries/associates from the company profile, with any finding that
  names them

Classification is best-effort, not a partition. Every finding sits under
the company; its job type then places it in at most one of the director
records, litigation history or regulatory history. A finding that names a
subsidiary or associate is also listed under that entity.

Overall risk level:
    Critical  any CRITICAL finding
    High      more than 2 HIGH findings
    Medium    at least 1 HIGH, or more than 3 MEDIUM
    Low       otherwise

Consolidation is a pure function of its inputs: jobs are processed in
(job_type, job_id) order, so the same snapshot always yields the same
structure and the same fingerprint.
"""

import hashlib
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from config.logging_config import get_logger
from diligence.analysis.risk_scorer import RiskScorer
from diligence.extraction.normalizer import FindingNormalizer
from diligence.extraction.schema import (
    CriticalAlert,
    RiskLevel,
    Severity,
    StructuredFinding,
    VerificationLevel,
)

logger = get_logger(__name__)

MAX_PRIMARY_RISK_FACTORS = 7
MAX_MITIGATING_FACTORS = 5

FOLLOW_UP_CRITICAL = (
    "Immediate escalation required for critical findings",
    "Detailed verification of critical issues needed",
)
FOLLOW_UP_HIGH = "Enhanced due diligence for high-risk areas"
FOLLOW_UP_REGULATORY = "Review regulatory compliance status"
FOLLOW_UP_LITIGATION = "Legal assessment of ongoing litigation"

_AUTHORITIES = (
    ("sebi", "SEBI"),
    ("rbi", "RBI"),
    ("reserve bank", "RBI"),
    ("mca", "MCA"),
    ("registrar of companies", "MCA"),
    ("enforcement directorate", "Enforcement Directorate"),
    ("income tax", "Income Tax Department"),
    ("it department", "Income Tax Department"),
    ("gst", "GST Department"),
    ("pollution control", "Pollution Control Board"),
)

_COURTS = (
    ("supreme court", "Supreme Court"),
    ("high court", "High Court"),
    ("district court", "District Court"),
    ("nclat", "NCLAT"),
    ("nclt", "NCLT"),
    ("drt", "Debt Recovery Tribunal"),
    ("consumer", "Consumer Forum"),
)


# ============================================================================
# INPUT
# ============================================================================

@dataclass(frozen=True)
class JobSnapshot:
    """The parts of one completed job that consolidation reads."""
    job_id: str
    job_type: str
    findings: tuple = ()
    alerts: tuple = ()

    @classmethod
    def from_payload(cls, job_id: str, job_type: str, payload: Optional[Dict[str, Any]],
                     normalizer: Optional[FindingNormalizer] = None) -> "JobSnapshot":
        """
        Build a snapshot from a stored ``findings`` payload:
        ``{"structured_findings": [...], "critical_alerts": [...]}``.
        """
        normalizer = normalizer or FindingNormalizer()
        payload = payload if isinstance(payload, dict) else {}
        findings = normalizer.normalize_many(payload.get("structured_findings") or payload.get("findings") or [])
        alerts = [CriticalAlert.from_dict(item) for item in payload.get("critical_alerts") or []
                  if isinstance(item, dict)]
        return cls(job_id=job_id, job_type=job_type, findings=tuple(findings), alerts=tuple(alerts))

    @classmethod
    def from_job(cls, job: Any, normalizer: Optional[FindingNormalizer] = None) -> "JobSnapshot":
        return cls.from_payload(job.id, job.job_type, job.findings, normalizer)


# ============================================================================
# OUTPUT
# ============================================================================

@dataclass
class EntityFindings:
    entity_id: str
    entity_name: str
    entity_type: str
    findings: List[StructuredFinding] = field(default_factory=list)
    risk_level: str = RiskLevel.LOW.value
    verification_status: str = "Partial"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_id": self.entity_id,
            "entity_name": self.entity_name,
            "entity_type": self.entity_type,
            "findings": [finding.to_dict() for finding in self.findings],
            "risk_level": self.risk_level,
            "verification_status": self.verification_status,
            "total_issues": len(self.findings),
        }


@dataclass
class DirectorFindings(EntityFindings):
    designation: str = "Director"

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["director_name"] = self.entity_name
        data["designation"] = self.designation
        return data


@dataclass
class RelatedEntityFindings(EntityFindings):
    relationship_type: str = "Subsidiary"

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["relationship_type"] = self.relationship_type
        return data


@dataclass
class RegulatoryFinding:
    finding_id: str
    authority: str
    action_type: str
    penalty_amount: Optional[float]
    status: str
    date: Optional[str]
    description: str
    severity: str

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


@dataclass
class LitigationFinding:
    finding_id: str
    case_type: str
    court: str
    amount_involved: Optional[float]
    status: str
    date_filed: Optional[str]
    description: str
    severity: str

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


@dataclass
class ComprehensiveRiskAssessment:
    overall_risk_level: str
    primary_risk_factors: List[str]
    mitigating_factors: List[str]
    data_completeness: int
    confidence_level: str
    requires_immediate_attention: bool
    follow_up_required: List[str]
    risk_score: int = 0
    credit_recommendation: str = "Approve"
    alert_risk_score: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "overall_risk_level": self.overall_risk_level,
            "primary_risk_factors": list(self.primary_risk_factors),
            "mitigating_factors": list(self.mitigating_factors),
            "data_completeness": self.data_completeness,
            "confidence_level": self.confidence_level,
            "requires_immediate_attention": self.requires_immediate_attention,
            "follow_up_required": list(self.follow_up_required),
            "risk_score": self.risk_score,
            "credit_recommendation": self.credit_recommendation,
            "alert_risk_score": self.alert_risk_score,
        }


@dataclass
class ConsolidatedFindings:
    request_id: str
    primary_entity: EntityFindings
    directors: List[DirectorFindings]
    subsidiaries: List[RelatedEntityFindings]
    associates: List[RelatedEntityFindings]
    regulatory_history: List[RegulatoryFinding]
    litigation_history: List[LitigationFinding]
    critical_alerts: List[CriticalAlert]
    overall_risk_assessment: ComprehensiveRiskAssessment
    job_ids: List[str] = field(default_factory=list)
    job_types: List[str] = field(default_factory=list)

    @property
    def all_findings(self) -> List[StructuredFinding]:
        return self.primary_entity.findings

    def to_dict(self, include_fingerprint: bool = True) -> Dict[str, Any]:
        data = {
            "request_id": self.request_id,
            "primary_entity": self.primary_entity.to_dict(),
            "directors": [item.to_dict() for item in self.directors],
            "subsidiaries": [item.to_dict() for item in self.subsidiaries],
            "associates": [item.to_dict() for item in self.associates],
            "regulatory_history": [item.to_dict() for item in self.regulatory_history],
            "litigation_history": [item.to_dict() for item in self.litigation_history],
            "critical_alerts": [alert.to_dict() for alert in self.critical_alerts],
            "overall_risk_assessment": self.overall_risk_assessment.to_dict(),
            "job_ids": list(self.job_ids),
            "job_types": list(self.job_types),
        }
        if include_fingerprint:
            data["fingerprint"] = self.fingerprint
        return data

    @property
    def fingerprint(self) -> str:
        """sha256 of the canonical JSON form; equal structures share it."""
        payload = json.dumps(self.to_dict(include_fingerprint=False), sort_keys=True, default=str)
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()


# ============================================================================
# CLASSIFICATION HELPERS
# ============================================================================

def _lookup_name(text: str, table) -> Optional[str]:
    lowered = text.lower()
    for needle, name in table:
        if needle in lowered:
            return name
    return None


def extract_authority(finding: StructuredFinding) -> str:
    text = f"{finding.title} {finding.description}"
    return _lookup_name(text, _AUTHORITIES) or "Regulatory Authority"


def extract_court(finding: StructuredFinding) -> str:
    text = f"{finding.title} {finding.description}"
    return _lookup_name(text, _COURTS) or "Court"


def overall_risk_level(findings: Sequence[StructuredFinding]) -> RiskLevel:
    critical = sum(1 for f in findings if f.severity == Severity.CRITICAL)
    high = sum(1 for f in findings if f.severity == Severity.HIGH)
    medium = sum(1 for f in findings if f.severity == Severity.MEDIUM)

    if critical > 0:
        return RiskLevel.CRITICAL
    if high > 2:
        return RiskLevel.HIGH
    if high >= 1 or medium > 3:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def data_completeness(findings: Sequence[StructuredFinding]) -> float:
    """Share of findings with supporting details (0-1); half credit without."""
    if not findings:
        return 0.0
    return sum(1.0 if finding.details else 0.5 for finding in findings) / len(findings)


def confidence_level(completeness: float) -> str:
    if completeness > 0.7:
        return "High"
    if completeness > 0.4:
        return "Medium"
    return "Low"


def _is_director_finding(finding: StructuredFinding) -> bool:
    return "director" in finding.category.value.lower() or "director" in finding.title.lower()


def _director_name(finding: StructuredFinding, known_directors: Sequence[Any]) -> Tuple:
    text = f"{finding.title} {finding.description}".lower()
    for director in known_directors:
        if director.name and director.name.lower() in text:
            return director.name, director.designation
    return finding.title or "Unknown Director", "Director"


# ============================================================================
# CONSOLIDATOR
# ============================================================================

class Consolidator:
    """
    Builds ConsolidatedFindings from completed-job snapshots.

    Usage:
        >>> consolidator = Consolidator()
        >>> consolidated = consolidator.consolidate("req-1", snapshots, company_name="Acme Ltd")
        >>> consolidated.overall_risk_assessment.overall_risk_level
        'Low'
    """

    def __init__(self, scorer: Optional[RiskScorer] = None):
        self.scorer = scorer or RiskScorer()

    def consolidate(
        self,
        request_id: str,
        snapshots: Sequence[JobSnapshot],
        company_name: Optional[str] = None,
        context: Any = None,
    ) -> ConsolidatedFindings:
        """
        Args:
            request_id: Request the jobs belong to
            snapshots: Completed jobs (any order)
            company_name: Name for the primary entity
            context: Optional EntityResearchContext for directors and related entities
        """
        ordered = sorted(snapshots, key=lambda snapshot: (snapshot.job_type, snapshot.job_id))
        known_directors = list(getattr(context, "directors", ()) or ())
        company_name = company_name or getattr(context, "company_name", None) or "Primary Company"

        all_findings: List[StructuredFinding] = []
        seen_ids = set()
        alerts: List[CriticalAlert] = []
        seen_alerts = set()
        directors: Dict[str, DirectorFindings] = {}
        regulatory: List[RegulatoryFinding] = []
        litigation: List[LitigationFinding] = []

        for snapshot in ordered:
            for finding in snapshot.findings:
                if finding.id in seen_ids:
                    continue
                seen_ids.add(finding.id)
                all_findings.append(finding)

                if snapshot.job_type == "directors_research" and _is_director_finding(finding):
                    name, designation = _director_name(finding, known_directors)
                    key = name.lower()
                    if key not in directors:
                        directors[key] = DirectorFindings(
                            entity_id=f"director_{finding.id}",
                            entity_name=name,
                            entity_type="director",
                            designation=designation,
                        )
                    directors[key].findings.append(finding)
                elif snapshot.job_type == "legal_research":
                    litigation.append(LitigationFinding(
                        finding_id=finding.id,
                        case_type=finding.category.value,
                        court=extract_court(finding),
                        amount_involved=finding.amount_numeric,
                        status=finding.status.value,
                        date_filed=finding.date,
                        description=finding.description,
                        severity=finding.severity.value,
                    ))
                elif snapshot.job_type == "regulatory_research":
                    regulatory.append(RegulatoryFinding(
                        finding_id=finding.id,
                        authority=extract_authority(finding),
                        action_type=finding.category.value,
                        penalty_amount=finding.amount_numeric,
                        status=finding.status.value,
                        date=finding.date,
                        description=finding.description,
                        severity=finding.severity.value,
                    ))

            for alert in snapshot.alerts:
                key = (alert.rule_id, alert.position, alert.source_evidence)
                if key in seen_alerts:
                    continue
                seen_alerts.add(key)
                alerts.append(alert)

        for director in directors.values():
            director.risk_level = self._director_risk_level(director.findings)
            director.verification_status = self._verification_status(director.findings)

        assessment = self.assess(all_findings, alerts, regulatory, litigation)
        primary = EntityFindings(
            entity_id=f"company_{request_id}",
            entity_name=company_name,
            entity_type="company",
            findings=all_findings,
            risk_level=assessment.overall_risk_level,
            verification_status=self._verification_status(all_findings),
        )

        consolidated = ConsolidatedFindings(
            request_id=request_id,
            primary_entity=primary,
            directors=list(directors.values()),
            subsidiaries=self._related(getattr(context, "subsidiaries", ()), all_findings, "subsidiary"),
            associates=self._related(getattr(context, "associates", ()), all_findings, "associate"),
            regulatory_history=regulatory,
            litigation_history=litigation,
            critical_alerts=alerts,
            overall_risk_assessment=assessment,
            job_ids=[snapshot.job_id for snapshot in ordered],
            job_types=sorted({snapshot.job_type for snapshot in ordered}),
        )

        logger.info(
            "Findings consolidated",
            extra={
                "request_id": request_id,
                "jobs": len(ordered),
                "findings": len(all_findings),
                "directors": len(directors),
                "risk_level": assessment.overall_risk_level,
            },
        )
        return consolidated

    def assess(
        self,
        findings: Sequence[StructuredFinding],
        alerts: Sequence[CriticalAlert] = (),
        regulatory: Sequence[RegulatoryFinding] = (),
        litigation: Sequence[LitigationFinding] = (),
    ) -> ComprehensiveRiskAssessment:
        """Overall assessment over the full finding list."""
        critical = [f for f in findings if f.severity == Severity.CRITICAL]
        high = [f for f in findings if f.severity == Severity.HIGH]

        primary_factors = [f.title for f in critical] + [f.title for f in high[:3]]
        mitigating = [f.title for f in findings if f.severity in (Severity.LOW, Severity.INFO)]

        follow_up: List[str] = []
        if critical:
            follow_up.extend(FOLLOW_UP_CRITICAL)
        if high:
            follow_up.append(FOLLOW_UP_HIGH)
        if regulatory:
            follow_up.append(FOLLOW_UP_REGULATORY)
        if litigation:
            follow_up.append(FOLLOW_UP_LITIGATION)

        completeness = data_completeness(findings)
        score = self.scorer.score(findings, alerts)

        return ComprehensiveRiskAssessment(
            overall_risk_level=overall_risk_level(findings).value,
            primary_risk_factors=primary_factors[:MAX_PRIMARY_RISK_FACTORS],
            mitigating_factors=mitigating[:MAX_MITIGATING_FACTORS],
            data_completeness=round(completeness * 100),
            confidence_level=confidence_level(completeness),
            requires_immediate_attention=score.requires_immediate_attention,
            follow_up_required=follow_up,
            risk_score=score.risk_score,
            credit_recommendation=score.credit_recommendation.value,
            alert_risk_score=score.alert_score,
        )

    @staticmethod
    def _director_risk_level(findings: Sequence[StructuredFinding]) -> str:
        if any(f.severity in (Severity.CRITICAL, Severity.HIGH) for f in findings):
            return RiskLevel.HIGH.value
        return RiskLevel.MEDIUM.value

    @staticmethod
    def _verification_status(findings: Sequence[StructuredFinding]) -> str:
        if findings and all(f.verification_level == VerificationLevel.HIGH for f in findings):
            return "Verified"
        return "Partial"

    @staticmethod
    def _related(entities: Sequence[Any], findings: Sequence[StructuredFinding],
                 entity_type: str) -> List[RelatedEntityFindings]:
        related = []
        for index, entity in enumerate(entities or ()):
            name = entity.name
            matched = [
                f for f in findings
                if name and name.lower() in f"{f.title} {f.description}".lower()
            ]
            related.append(RelatedEntityFindings(
                entity_id=f"{entity_type}_{index + 1}",
                entity_name=name,
                entity_type=entity_type,
                findings=matched,
                risk_level=overall_risk_level(matched).value,
                relationship_type=entity.relationship_type,
            ))
        return related


__all__ = [
    "JobSnapshot",
    "EntityFindings",
    "DirectorFindings",
    "RelatedEntityFindings",
    "RegulatoryFinding",
    "LitigationFinding",
    "ComprehensiveRiskAssessment",
    "ConsolidatedFindings",
    "Consolidator",
    "overall_risk_level",
    "data_completeness",
    "confidence_level",
    "extract_authority",
    "extract_court",
]
