"""
Finding Extractor

Turns raw research text into normalized structured findings through the
synthesis service, and degrades to alert-derived findings when synthesis
is unavailable or returns nothing usable.

Flow:
1. Build the extraction prompt (job type, company, schema, research text)
2. Synthesis call (retries live in the synthesis client)
3. Resolve the response to a ParseResult at the boundary
4. StrictJSON / ExtractedCodeblockJSON -> candidate records -> normalizer
5. OpaqueText, no records, or a failed call -> one finding per alert,
   verification level Low
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from config.settings import settings
from config.logging_config import get_logger
from diligence.extraction.normalizer import FindingNormalizer
from diligence.extraction.parsing import (
    OpaqueText,
    candidate_records,
    json_value,
    parse_synthesis_response,
)
from diligence.extraction.schema import CriticalAlert, StructuredFinding

logger = get_logger(__name__)

MAX_RESEARCH_CHARS = 12000
MAX_FINDINGS = 25

ALERT_FINDING_SOURCE = "Automated pattern detection"


@dataclass
class ExtractionOutcome:
    """Findings for one iteration and how they were obtained."""
    findings: List[StructuredFinding] = field(default_factory=list)
    parse_kind: str = "none"
    used_fallback: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "findings": [finding.to_dict() for finding in self.findings],
            "parse_kind": self.parse_kind,
            "used_fallback": self.used_fallback,
            "error": self.error,
        }


def alert_to_record(alert: CriticalAlert) -> Dict[str, Any]:
    """Raw finding record for one critical alert."""
    return {
        "category": alert.category,
        "severity": alert.severity.value,
        "title": alert.title,
        "description": alert.description,
        "details": alert.source_evidence,
        "amount": alert.financial_impact or None,
        "status": "Unknown",
        "verification_level": "Low",
        "source": ALERT_FINDING_SOURCE,
    }


class FindingExtractor:
    """
    Synthesis-backed finding extraction.

    Args:
        synthesizer: Object with ``async synthesize(prompt, system_prompt=None) -> str``.
            Defaults to the Claude client when a synthesis key is configured,
            otherwise every extraction uses the alert fallback.
        normalizer: Finding normalizer

    Example:
        >>> extractor = FindingExtractor()
        >>> outcome = await extractor.extract(text, "Acme Ltd", "legal_research", alerts)
        >>> outcome.parse_kind
        'strict_json'
    """

    def __init__(self, synthesizer: Any = None, normalizer: Optional[FindingNormalizer] = None):
        if synthesizer is None and settings.synthesis_enabled:
            from diligence.models.claude_client import ClaudeClient
            synthesizer = ClaudeClient()
        self.synthesizer = synthesizer
        self.normalizer = normalizer or FindingNormalizer()

    async def extract(
        self,
        content: str,
        company_name: str,
        job_type: str,
        alerts: Sequence[CriticalAlert] = (),
    ) -> ExtractionOutcome:
        """Extract findings; never raises for synthesis failures."""
        if self.synthesizer is None:
            return self._fallback(alerts, "opaque_text", "Synthesis service not configured")

        prompt = self.build_prompt(content, company_name, job_type)
        try:
            response = await self.synthesizer.synthesize(prompt)
        except Exception as e:
            logger.warning(
                "Finding synthesis failed, using alert-derived findings",
                extra={"company": company_name, "job_type": job_type, "error_type": type(e).__name__},
            )
            return self._fallback(alerts, "none", str(e))

        result = parse_synthesis_response(response)
        if isinstance(result, OpaqueText):
            return self._fallback(alerts, result.kind, "Synthesis response was not JSON")

        records = candidate_records(json_value(result))
        findings = self.normalizer.normalize_many(records)[:MAX_FINDINGS]

        logger.info(
            "Findings extracted",
            extra={
                "company": company_name,
                "job_type": job_type,
                "parse_kind": result.kind,
                "records": len(records),
                "findings": len(findings),
            },
        )
        return ExtractionOutcome(findings=findings, parse_kind=result.kind)

    def _fallback(self, alerts: Sequence[CriticalAlert], parse_kind: str, reason: str) -> ExtractionOutcome:
        findings = self.normalizer.normalize_many(alert_to_record(alert) for alert in alerts)
        return ExtractionOutcome(
            findings=findings[:MAX_FINDINGS],
            parse_kind=parse_kind,
            used_fallback=True,
            error=reason,
        )

    @staticmethod
    def build_prompt(content: str, company_name: str, job_type: str) -> str:
        job_label = (job_type or "research").replace("_", " ")
        research = (content or "")[:MAX_RESEARCH_CHARS]
        return f"""Extract structured due-diligence findings about {company_name} from this {job_label} output.

RESEARCH OUTPUT:
{research}

For every specific adverse matter, return one object with:
- "category": one of Regulatory Compliance, Legal Proceedings, Financial Conduct, Operational Risk,
  Governance Issues, Reputational Risk, Business Performance, Criminal Activity, Financial Crime, Other
- "severity": CRITICAL, HIGH, MEDIUM, LOW or INFO
- "title": short headline naming the entity and the matter
- "description": what happened, with the authority or court involved
- "amount": the amount exactly as written, with its currency (omit if none)
- "date": the date of the matter (omit if unknown)
- "status": Active, Resolved, Pending, Under Investigation or Unknown
- "source": where it was reported
- "verification_level": High, Medium or Low
- "details": case number, order reference or other specifics
- "business_impact": {{"financial_risk": "High|Medium|Low", "operational_risk": "High|Medium|Low",
  "reputational_risk": "High|Medium|Low", "regulatory_risk": "High|Medium|Low",
  "credit_impact": "Negative|Neutral|Positive", "probability_of_occurrence": 0-100}}

RULES:
- Only matters stated in the research output; do not infer or speculate
- One matter per object; do not merge separate cases
- If the research reports no adverse matters, return []

Return ONLY a JSON array, no markdown formatting."""


__all__ = ["FindingExtractor", "ExtractionOutcome", "alert_to_record", "ALERT_FINDING_SOURCE"]
