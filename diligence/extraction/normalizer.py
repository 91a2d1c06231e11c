"""
Finding Normalizer

Maps any raw finding-like record (synthesis output, stored rows, partial
dicts, even a bare string) onto a ``StructuredFinding`` with closed
vocabularies. Normalization never raises: every field has a documented
default.

Defaults:
- category: Other
- severity: MEDIUM
- status: Unknown
- verification_level: Low
- business impact levels: Low, credit impact Neutral

Derived fields:
- action_required: severity CRITICAL/HIGH, an open status
  (Active, Pending, Under Investigation) or an amount above 1 crore
- timeline_impact (when not given): CRITICAL -> Immediate,
  HIGH -> Short-term, otherwise Long-term
- id (when not given): stable hash of category, title and description,
  so re-normalizing the same record yields the same finding
"""

import hashlib
import re
from datetime import datetime
from enum import Enum
from typing import Any, Iterable, List, Optional, Sequence, Tuple, TypeVar

from config.logging_config import get_logger
from diligence.extraction.amounts import CRORE, parse_amount, rate_to_inr
from diligence.extraction.schema import (
    BusinessImpact,
    CreditImpact,
    FindingCategory,
    FindingStatus,
    ImpactLevel,
    OPEN_STATUSES,
    Severity,
    StructuredFinding,
    TimelineImpact,
    VerificationLevel,
)

logger = get_logger(__name__)

E = TypeVar("E")

# ============================================================================
# KEYWORD TABLES (ordered; first match wins)
# ============================================================================

CATEGORY_KEYWORDS: Sequence[Tuple[Tuple[str, ...], FindingCategory]] = (
    (("money laundering", "laundering", "pmla", "financial crime", "fraud", "embezzle",
      "hawala", "ponzi", "siphon"), FindingCategory.FINANCIAL_CRIME),
    (("criminal", "arrest", "chargesheet", "charge sheet", "fir ", "conviction", "police",
      "cbi"), FindingCategory.CRIMINAL_ACTIVITY),
    (("regulat", "compliance", "sebi", "rbi", "mca", "gst", "tax", "licen",
      "penalty", "sanction"), FindingCategory.REGULATORY_COMPLIANCE),
    (("legal", "litigation", "court", "lawsuit", "case", "dispute", "proceeding",
      "insolvency", "nclt", "tribunal", "arbitration"), FindingCategory.LEGAL_PROCEEDINGS),
    (("financial", "default", "debt", "loan", "credit", "npa", "insider"),
     FindingCategory.FINANCIAL_CONDUCT),
    (("governance", "director", "board", "management", "related party", "promoter"),
     FindingCategory.GOVERNANCE_ISSUES),
    (("operational", "operation", "safety", "accident", "labour", "labor", "environment",
      "supply", "plant"), FindingCategory.OPERATIONAL_RISK),
    (("reputation", "media", "news", "complaint", "controversy", "allegation"),
     FindingCategory.REPUTATIONAL_RISK),
    (("business", "performance", "revenue", "profit", "market", "growth"),
     FindingCategory.BUSINESS_PERFORMANCE),
)

SEVERITY_KEYWORDS: Sequence[Tuple[Tuple[str, ...], Severity]] = (
    (("critical", "severe", "extreme", "very high"), Severity.CRITICAL),
    (("high", "major", "significant", "serious"), Severity.HIGH),
    (("medium", "moderate", "mid"), Severity.MEDIUM),
    (("low", "minor"), Severity.LOW),
    (("info", "none", "neutral", "positive", "nil"), Severity.INFO),
)

STATUS_KEYWORDS: Sequence[Tuple[Tuple[str, ...], FindingStatus]] = (
    (("under investigation", "investigat", "probe", "inquiry", "enquiry"),
     FindingStatus.UNDER_INVESTIGATION),
    (("pending", "sub judice", "awaiting", "adjourned", "reserved"), FindingStatus.PENDING),
    (("resolved", "closed", "settled", "dismissed", "disposed", "withdrawn", "quashed",
      "acquitted", "completed", "paid"), FindingStatus.RESOLVED),
    (("active", "ongoing", "open", "current", "continuing"), FindingStatus.ACTIVE),
)

LEVEL_KEYWORDS: Sequence[Tuple[Tuple[str, ...], ImpactLevel]] = (
    (("high", "critical", "severe", "significant"), ImpactLevel.HIGH),
    (("medium", "moderate"), ImpactLevel.MEDIUM),
    (("low", "minor", "minimal", "none"), ImpactLevel.LOW),
)

CREDIT_KEYWORDS: Sequence[Tuple[Tuple[str, ...], CreditImpact]] = (
    (("negative", "adverse", "unfavourable", "unfavorable", "downgrade"), CreditImpact.NEGATIVE),
    (("positive", "favourable", "favorable", "upgrade"), CreditImpact.POSITIVE),
    (("neutral", "none", "no impact"), CreditImpact.NEUTRAL),
)

TIMELINE_KEYWORDS: Sequence[Tuple[Tuple[str, ...], TimelineImpact]] = (
    (("immediate", "urgent", "now"), TimelineImpact.IMMEDIATE),
    (("short",), TimelineImpact.SHORT_TERM),
    (("long", "medium-term", "medium term"), TimelineImpact.LONG_TERM),
)

DATE_FORMATS = (
    "%Y-%m-%d",
    "%d-%m-%Y",
    "%d/%m/%Y",
    "%Y/%m/%d",
    "%d.%m.%Y",
    "%d %B %Y",
    "%d %b %Y",
    "%B %d, %Y",
    "%b %d, %Y",
    "%B %d %Y",
    "%b %d %Y",
    "%B %Y",
    "%b %Y",
)

# 1 crore; above this a finding always requires action
ACTION_AMOUNT_THRESHOLD_INR = CRORE


def _lookup(value: Any, enum_cls, table: Sequence[Tuple[Tuple[str, ...], E]], default: E) -> E:
    """Exact enum value first (case-insensitive), then the first keyword hit."""
    if value is None:
        return default
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, Enum):
        value = value.value
    text = str(value).strip().lower()
    if not text:
        return default
    for member in enum_cls:
        if member.value.lower() == text:
            return member
    for keywords, member in table:
        if any(_starts_word(keyword, text) for keyword in keywords):
            return member
    return default


def _starts_word(keyword: str, text: str) -> bool:
    return re.search(r"\b" + re.escape(keyword), text) is not None


def normalize_category(value: Any) -> FindingCategory:
    return _lookup(value, FindingCategory, CATEGORY_KEYWORDS, FindingCategory.OTHER)


def normalize_severity(value: Any) -> Severity:
    return _lookup(value, Severity, SEVERITY_KEYWORDS, Severity.MEDIUM)


def normalize_status(value: Any) -> FindingStatus:
    return _lookup(value, FindingStatus, STATUS_KEYWORDS, FindingStatus.UNKNOWN)


def normalize_level(value: Any, default: ImpactLevel = ImpactLevel.LOW) -> ImpactLevel:
    return _lookup(value, ImpactLevel, LEVEL_KEYWORDS, default)


def normalize_verification(value: Any) -> VerificationLevel:
    level = _lookup(value, ImpactLevel, LEVEL_KEYWORDS, None)
    if level is None:
        text = str(value or "").lower()
        if "verified" in text and "unverified" not in text:
            return VerificationLevel.HIGH
        return VerificationLevel.LOW
    return VerificationLevel(level.value)


def normalize_credit_impact(value: Any) -> CreditImpact:
    return _lookup(value, CreditImpact, CREDIT_KEYWORDS, CreditImpact.NEUTRAL)


def normalize_date(value: Any) -> Optional[str]:
    """
    Re-emit parseable dates as ISO calendar dates; pass anything else through.

    Example:
        >>> normalize_date("15 March 2023")
        '2023-03-15'
        >>> normalize_date("FY 2022-23")
        'FY 2022-23'
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    text = str(value).strip()
    if not text:
        return None
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date().isoformat()
    except ValueError:
        pass
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date().isoformat()
        except ValueError:
            continue
    return text


def normalize_probability(value: Any) -> Optional[float]:
    """Percentage 0-100; fractions below 1 are read as proportions."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        match = re.search(r"\d+(?:\.\d+)?", value)
        if not match:
            return _WORD_PROBABILITY.get(value.strip().lower())
        number = float(match.group(0))
        if "%" not in value and number < 1:
            number *= 100
    elif isinstance(value, (int, float)):
        number = float(value)
        if 0 < number < 1:
            number *= 100
    else:
        return None
    return max(0.0, min(100.0, number))


_WORD_PROBABILITY = {"high": 75.0, "likely": 75.0, "medium": 50.0, "possible": 50.0,
                     "low": 25.0, "unlikely": 25.0}


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        value = "; ".join(str(item) for item in value if item is not None)
    text = str(value).strip()
    return text or None


def finding_id(category: FindingCategory, title: str, description: str) -> str:
    digest = hashlib.sha1(f"{category.value}|{title}|{description}".lower().encode("utf-8")).hexdigest()
    return f"finding_{digest[:16]}"


def derive_action_required(
    severity: Severity,
    status: FindingStatus,
    amount_inr: Optional[float],
) -> bool:
    if severity in (Severity.CRITICAL, Severity.HIGH):
        return True
    if status in OPEN_STATUSES:
        return True
    return bool(amount_inr and amount_inr > ACTION_AMOUNT_THRESHOLD_INR)


def derive_timeline(severity: Severity) -> TimelineImpact:
    if severity == Severity.CRITICAL:
        return TimelineImpact.IMMEDIATE
    if severity == Severity.HIGH:
        return TimelineImpact.SHORT_TERM
    return TimelineImpact.LONG_TERM


class FindingNormalizer:
    """
    Normalizes raw finding records.

    Usage:
        >>> normalizer = FindingNormalizer()
        >>> finding = normalizer.normalize({"category": "court case", "severity": "major"})
        >>> finding.category.value, finding.severity.value
        ('Legal Proceedings', 'HIGH')
    """

    def normalize(self, raw: Any) -> StructuredFinding:
        """Normalize one record. Never raises."""
        try:
            return self._normalize(raw)
        except Exception as e:
            logger.warning(
                "Finding normalization fell back to minimal record",
                extra={"error": str(e), "raw_type": type(raw).__name__},
            )
            description = str(raw)[:500] if raw is not None else "Unparseable finding"
            return StructuredFinding(
                id=finding_id(FindingCategory.OTHER, "Unclassified finding", description),
                category=FindingCategory.OTHER,
                severity=Severity.MEDIUM,
                title="Unclassified finding",
                description=description,
            )

    def normalize_many(self, records: Iterable[Any]) -> List[StructuredFinding]:
        """Normalize a batch, dropping duplicates by id (first occurrence wins)."""
        findings = []
        seen = set()
        for record in records or []:
            finding = self.normalize(record)
            if finding.id in seen:
                continue
            seen.add(finding.id)
            findings.append(finding)
        return findings

    def _normalize(self, raw: Any) -> StructuredFinding:
        if isinstance(raw, StructuredFinding):
            return raw
        if isinstance(raw, str):
            raw = {"description": raw}
        if not isinstance(raw, dict):
            raw = {}

        category = normalize_category(raw.get("category") or raw.get("type"))
        severity = normalize_severity(raw.get("severity") or raw.get("risk_level"))
        status = normalize_status(raw.get("status"))

        description = _text(raw.get("description") or raw.get("summary") or raw.get("content"))
        title = _text(raw.get("title") or raw.get("headline"))
        if not title:
            title = (description or "Untitled finding")[:80]
        if not description:
            description = title

        amount_source = raw.get("amount")
        if amount_source is None:
            amount_source = raw.get("amount_numeric")
        parsed = parse_amount(amount_source)
        amount_inr = parsed.inr if parsed else None
        if parsed and raw.get("currency"):
            currency = str(raw["currency"]).strip().upper()
        else:
            currency = parsed.currency if parsed else None
        if parsed and currency and isinstance(amount_source, (int, float)):
            amount_inr = parsed.value * rate_to_inr(currency)
        if raw.get("amount_inr") is not None:
            try:
                amount_inr = float(raw["amount_inr"])
            except (TypeError, ValueError):
                pass

        impact_raw = raw.get("business_impact") if isinstance(raw.get("business_impact"), dict) else {}
        business_impact = BusinessImpact(
            financial_risk=normalize_level(impact_raw.get("financial_risk")),
            operational_risk=normalize_level(impact_raw.get("operational_risk")),
            reputational_risk=normalize_level(impact_raw.get("reputational_risk")),
            regulatory_risk=normalize_level(impact_raw.get("regulatory_risk")),
            credit_impact=normalize_credit_impact(impact_raw.get("credit_impact")),
            probability_of_occurrence=normalize_probability(
                impact_raw.get("probability_of_occurrence", raw.get("probability_of_occurrence"))
            ),
        )

        timeline_raw = raw.get("timeline_impact")
        timeline = _lookup(timeline_raw, TimelineImpact, TIMELINE_KEYWORDS, None) if timeline_raw else None

        return StructuredFinding(
            id=_text(raw.get("id")) or finding_id(category, title, description),
            category=category,
            severity=severity,
            title=title,
            description=description,
            status=status,
            verification_level=normalize_verification(raw.get("verification_level")),
            timeline_impact=timeline or derive_timeline(severity),
            business_impact=business_impact,
            action_required=derive_action_required(severity, status, amount_inr),
            details=_text(raw.get("details")),
            amount=_text(raw.get("amount")) if raw.get("amount") is not None else (parsed.text if parsed else None),
            amount_numeric=parsed.value if parsed else None,
            currency=currency,
            amount_inr=amount_inr,
            date=normalize_date(raw.get("date") or raw.get("date_filed")),
            source=_text(raw.get("source") or raw.get("sources")),
            regulatory_implications=_text(raw.get("regulatory_implications")),
        )


__all__ = [
    "FindingNormalizer",
    "normalize_category",
    "normalize_severity",
    "normalize_status",
    "normalize_level",
    "normalize_verification",
    "normalize_credit_impact",
    "normalize_date",
    "normalize_probability",
    "finding_id",
    "derive_action_required",
    "derive_timeline",
]
