"""
Deterministic report section templates.

Every section the assembler asks the synthesis service for has a template
here built from the same consolidated data, so a failed or empty synthesis
response never leaves a section blank.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from diligence.analysis.consolidator import ConsolidatedFindings
from diligence.extraction.schema import Severity, StructuredFinding

RISK_LEVEL_RECOMMENDATIONS = {
    "Critical": [
        "Do not proceed without senior credit committee review",
        "Obtain independent verification of every critical finding",
        "Require full disclosure from promoters on open enforcement matters",
    ],
    "High": [
        "Proceed only with enhanced due diligence",
        "Add protective covenants and tighter monitoring",
        "Re-verify litigation and regulatory status before sanction",
    ],
    "Medium": [
        "Proceed with standard covenants and periodic monitoring",
        "Track open matters to resolution",
    ],
    "Low": [
        "Proceed under standard credit terms",
        "Continue routine annual review",
    ],
}

SECTION_TITLES = {
    "company_overview": "Company Overview",
    "directors_analysis": "Directors Analysis",
    "legal_regulatory": "Legal & Regulatory",
    "negative_incidents": "Negative Incidents",
    "regulatory_compliance": "Regulatory Compliance",
    "risk_assessment": "Risk Assessment",
    "detailed_findings": "Detailed Findings",
    "recommendations": "Recommendations",
    "data_quality": "Data Quality",
    "verification_summary": "Verification Summary",
}

MAX_LISTED = 10


@dataclass
class ReportData:
    """Inputs shared by every section."""
    company_name: str
    consolidated: ConsolidatedFindings
    data_quality_score: Optional[float] = None
    jobs: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def assessment(self):
        return self.consolidated.overall_risk_assessment

    @property
    def findings(self) -> List[StructuredFinding]:
        return self.consolidated.all_findings


def _bullet(items: Sequence[str], empty: str) -> str:
    items = [item for item in items if item]
    if not items:
        return empty
    return "\n".join(f"- {item}" for item in items[:MAX_LISTED])


def _finding_line(finding: StructuredFinding) -> str:
    line = f"[{finding.severity.value}] {finding.title}"
    if finding.amount:
        line += f" ({finding.amount})"
    if finding.status.value != "Unknown":
        line += f", {finding.status.value}"
    return line


def severity_counts(findings: Sequence[StructuredFinding]) -> Dict[str, int]:
    counts = {severity.value: 0 for severity in Severity}
    for finding in findings:
        counts[finding.severity.value] += 1
    return counts


# ============================================================================
# SECTIONS
# ============================================================================

def company_overview(data: ReportData) -> str:
    counts = severity_counts(data.findings)
    return (
        f"{data.company_name} was researched across {len(data.consolidated.job_types)} research areas "
        f"({', '.join(job.replace('_', ' ') for job in data.consolidated.job_types) or 'none'}). "
        f"The research recorded {len(data.findings)} findings: {counts['CRITICAL']} critical, "
        f"{counts['HIGH']} high, {counts['MEDIUM']} medium and {counts['LOW'] + counts['INFO']} low or informational. "
        f"Overall risk is assessed as {data.assessment.overall_risk_level}."
    )


def directors_analysis(data: ReportData) -> str:
    directors = data.consolidated.directors
    if not directors:
        return "No adverse findings were recorded against the directors."
    lines = [
        f"{director.entity_name} ({director.designation}): {len(director.findings)} finding(s), "
        f"risk {director.risk_level}"
        for director in directors
    ]
    return "Director-level findings:\n" + _bullet(lines, "")


def legal_regulatory(data: ReportData) -> str:
    litigation = [
        f"{item.court}: {item.description or item.case_type} [{item.severity}, {item.status}]"
        for item in data.consolidated.litigation_history
    ]
    regulatory = [
        f"{item.authority}: {item.description or item.action_type} [{item.severity}, {item.status}]"
        for item in data.consolidated.regulatory_history
    ]
    return (
        "Litigation:\n" + _bullet(litigation, "No litigation recorded.")
        + "\n\nRegulatory actions:\n" + _bullet(regulatory, "No regulatory actions recorded.")
    )


def negative_incidents(data: ReportData) -> str:
    adverse = [f for f in data.findings if f.severity in (Severity.CRITICAL, Severity.HIGH)]
    alerts = [f"{alert.title} [{alert.severity.value}]" for alert in data.consolidated.critical_alerts]
    return (
        "High-severity findings:\n" + _bullet([_finding_line(f) for f in adverse], "None recorded.")
        + "\n\nPattern-detected alerts:\n" + _bullet(alerts, "None detected.")
    )


def regulatory_compliance(data: ReportData) -> str:
    history = data.consolidated.regulatory_history
    if not history:
        return "No regulatory enforcement or compliance failures were identified."
    open_items = [item for item in history if item.status in ("Active", "Pending", "Under Investigation")]
    authorities = sorted({item.authority for item in history})
    return (
        f"{len(history)} regulatory matter(s) recorded with {', '.join(authorities)}; "
        f"{len(open_items)} remain open."
    )


def risk_assessment(data: ReportData) -> str:
    assessment = data.assessment
    return (
        f"Overall risk level: {assessment.overall_risk_level} (score {assessment.risk_score}/100). "
        f"Credit recommendation: {assessment.credit_recommendation}. "
        f"Immediate attention required: {'Yes' if assessment.requires_immediate_attention else 'No'}.\n\n"
        "Primary risk factors:\n" + _bullet(assessment.primary_risk_factors, "None identified.")
        + "\n\nMitigating factors:\n" + _bullet(assessment.mitigating_factors, "None identified.")
    )


def detailed_findings(data: ReportData) -> str:
    return _bullet([_finding_line(f) for f in data.findings], "No findings were recorded.")


def recommendations(data: ReportData) -> str:
    level = data.assessment.overall_risk_level
    items = list(data.assessment.follow_up_required) + RISK_LEVEL_RECOMMENDATIONS.get(level, [])
    return _bullet(items, "No further action required.")


def data_quality(data: ReportData) -> str:
    assessment = data.assessment
    text = (
        f"Data completeness: {assessment.data_completeness}%. "
        f"Confidence level: {assessment.confidence_level}."
    )
    if data.data_quality_score is not None:
        text += f" Average research data-quality score: {round(data.data_quality_score * 100)}%."
    fallback_jobs = [job["job_type"] for job in data.jobs if job.get("fallback_iterations")]
    if fallback_jobs:
        text += f" Reduced-scope or fallback research was used for: {', '.join(fallback_jobs)}."
    return text


def verification_summary(data: ReportData) -> str:
    counts: Dict[str, int] = {}
    for finding in data.findings:
        counts[finding.verification_level.value] = counts.get(finding.verification_level.value, 0) + 1
    if not counts:
        return "No findings required verification."
    parts = [f"{counts[level]} {level.lower()}" for level in ("High", "Medium", "Low") if level in counts]
    return f"Verification levels across findings: {', '.join(parts)}."


def executive_summary(data: ReportData) -> str:
    assessment = data.assessment
    summary = (
        f"{data.company_name}: overall risk {assessment.overall_risk_level}, "
        f"risk score {assessment.risk_score}/100, recommendation {assessment.credit_recommendation}."
    )
    if assessment.primary_risk_factors:
        summary += " Key risks: " + "; ".join(assessment.primary_risk_factors[:3]) + "."
    if assessment.requires_immediate_attention:
        summary += " Immediate attention is required."
    return summary


SECTION_TEMPLATES: Dict[str, Callable[[ReportData], str]] = {
    "company_overview": company_overview,
    "directors_analysis": directors_analysis,
    "legal_regulatory": legal_regulatory,
    "negative_incidents": negative_incidents,
    "regulatory_compliance": regulatory_compliance,
    "risk_assessment": risk_assessment,
    "detailed_findings": detailed_findings,
    "recommendations": recommendations,
    "data_quality": data_quality,
    "verification_summary": verification_summary,
}


def render_template(section: str, data: ReportData) -> str:
    return SECTION_TEMPLATES[section](data)


__all__ = [
    "ReportData",
    "RISK_LEVEL_RECOMMENDATIONS",
    "SECTION_TITLES",
    "SECTION_TEMPLATES",
    "render_template",
    "executive_summary",
    "severity_counts",
]
