"""
Critical Alert Detector

Deterministic keyword-rule matching over raw research text. It runs
independently of synthesis, so red flags surface even when the synthesis
service is down or returns garbage.

Rules are compiled once into an immutable, versioned ``AlertRuleset``.
Each match produces one ``CriticalAlert`` carrying:
- source evidence: the text around the match (window on each side)
- financial impact: the first monetary amount near the match
- confidence (0-100): base 50, +20 with a nearby amount, +10 per
  corroborating keyword (max 3), +10 for a multi-word match,
  -30 when the match is negated ("no evidence of ...")

At most ``MAX_ALERTS`` alerts are kept per text, ordered by rule order
(rules are listed most severe first) and then by position.
"""

import hashlib
import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Dict, List, Optional, Tuple

from config.settings import settings
from config.logging_config import get_logger
from diligence.extraction.amounts import find_amounts
from diligence.extraction.schema import CriticalAlert, Severity

logger = get_logger(__name__)

RULESET_VERSION = "2024.2"

# Amounts further than this from the match are still accepted as the
# financial impact when the evidence window holds none
_IMPACT_SEARCH_RADIUS = 300
_NEGATION_PATTERN = re.compile(
    r"\b(?:no|not|never|without|none|nil|neither|nor|denied|denies|cleared of)\b[^.]{0,40}$",
    re.IGNORECASE,
)

# Alert severities weigh into the auxiliary score
ALERT_WEIGHTS = {Severity.CRITICAL: 3.0, Severity.HIGH: 2.5, Severity.MEDIUM: 2.0}
ALERT_BASE_SCORES = {Severity.CRITICAL: 95, Severity.HIGH: 75, Severity.MEDIUM: 50}


@dataclass(frozen=True)
class AlertRule:
    """One compiled alert rule."""
    rule_id: str
    pattern: "re.Pattern"
    severity: Severity
    category: str
    title: str
    corroborating: Tuple[str, ...] = ()

    @property
    def weight(self) -> float:
        return ALERT_WEIGHTS[self.severity]


@dataclass(frozen=True)
class AlertRuleset:
    """Immutable, versioned set of alert rules."""
    version: str
    rules: Tuple[AlertRule, ...]
    fingerprint: str = field(default="")

    def __len__(self) -> int:
        return len(self.rules)

    @property
    def rule_ids(self) -> Tuple[str, ...]:
        return tuple(rule.rule_id for rule in self.rules)


# (rule_id, pattern, flags, severity, category, title, corroborating keywords)
_RULE_DEFINITIONS = (
    (
        "money_laundering",
        r"money[\s-]+laundering|\bPMLA\b|prevention of money[\s-]+laundering",
        re.IGNORECASE,
        Severity.CRITICAL,
        "Money Laundering",
        "Money laundering allegation",
        ("enforcement directorate", " ed ", "attached", "attachment", "raid", "hawala", "shell compan", "crore"),
    ),
    (
        "financial_fraud",
        r"\b(?:fraud(?:ulent)?|embezzle(?:ment|d)?|misappropriat(?:ion|ed)|siphon(?:ing|ed)?|ponzi|forgery|cheating)\b",
        re.IGNORECASE,
        Severity.CRITICAL,
        "Financial Fraud",
        "Fraud or misappropriation",
        ("investors", "funds", "forensic", "sfio", "complaint", "bank"),
    ),
    (
        "criminal_proceedings",
        r"(?i:\b(?:arrested|convicted|conviction|charge-?sheet(?:ed)?|criminal (?:case|complaint|proceedings?)|"
        r"first information report)\b)|\bFIR\b|\bCBI\b",
        0,
        Severity.CRITICAL,
        "Criminal Proceedings",
        "Criminal proceedings",
        ("police", "court", "bail", "custody", "ipc", "accused"),
    ),
    (
        "director_disqualification",
        r"\bdisqualif(?:ied|ication)\b[^.]{0,60}\bdirectors?\b|\bdirectors?\b[^.]{0,60}\bdisqualif(?:ied|ication)\b|"
        r"\bDIN\b[^.]{0,30}\b(?:deactivated|disqualified|cancelled)\b",
        re.IGNORECASE,
        Severity.CRITICAL,
        "Director Disqualification",
        "Director disqualification",
        ("section 164", "mca", "struck off", "roc"),
    ),
    (
        "insolvency",
        r"\b(?:insolvency|bankruptcy|bankrupt|liquidation|winding[\s-]up|CIRP)\b",
        re.IGNORECASE,
        Severity.CRITICAL,
        "Insolvency",
        "Insolvency or liquidation proceedings",
        ("nclt", "ibc", "resolution professional", "creditors", "admitted", "moratorium"),
    ),
    (
        "enforcement_action",
        r"(?i:\benforcement directorate\b)|\bED\b(?=\s+(?i:raids?|search(?:es)?|attach(?:ed|ment)?|probe|case|summons|chargesheet))",
        0,
        Severity.HIGH,
        "Enforcement Action",
        "Enforcement agency action",
        ("attached", "raid", "pmla", "fema", "summons", "crore"),
    ),
    (
        "credit_default",
        r"\bwil(?:l)?ful defaulter\b|\bnon-performing asset\b|\bNPA\b|\bloan defaults?\b|\bdefaulted on\b",
        re.IGNORECASE,
        Severity.HIGH,
        "Credit Default",
        "Credit default",
        ("bank", "lender", "crore", "consortium", "repayment", "sarfaesi"),
    ),
    (
        "regulatory_penalty",
        r"\b(?:SEBI|RBI|MCA|CCI|IRDAI|SFIO)\b[^.]{0,80}\b(?:penalt(?:y|ies)|fined?|ban(?:ned)?|show[\s-]cause|"
        r"adjudicat\w*|debarred|barred)\b|\b(?:penalty|fine) (?:of|amounting to|imposed)\b",
        re.IGNORECASE,
        Severity.HIGH,
        "Regulatory Penalty",
        "Regulatory penalty or sanction",
        ("order", "violation", "regulations", "crore", "lakh"),
    ),
    (
        "tax_evasion",
        r"\btax evasion\b|\bGST (?:evasion|fraud)\b|\bincome[\s-]tax (?:raids?|search(?:es)?|survey)\b|\bevaded\b[^.]{0,40}\btax",
        re.IGNORECASE,
        Severity.HIGH,
        "Tax Evasion",
        "Tax evasion",
        ("demand", "notice", "dggi", "crore", "input tax credit"),
    ),
    (
        "license_action",
        r"\blicen[cs]es?\b[^.]{0,40}\b(?:suspended|revoked|cancell?ed|canceled)\b|"
        r"\b(?:suspension|revocation|cancellation) of (?:its |the )?licen[cs]es?\b",
        re.IGNORECASE,
        Severity.HIGH,
        "License Action",
        "License suspended or revoked",
        ("regulator", "authority", "order", "operations"),
    ),
    (
        "litigation",
        r"\b(?:lawsuits?|litigation|civil suits?|writ petitions?|arbitration proceedings?|legal disputes?|sued)\b",
        re.IGNORECASE,
        Severity.MEDIUM,
        "Litigation",
        "Litigation",
        ("high court", "supreme court", "district court", "nclt", "petition", "crore"),
    ),
    (
        "compliance_violation",
        r"\b(?:violations?|non[\s-]compliance|breach(?:ed)?)\b[^.]{0,60}\b(?:environment\w*|labou?r|pollution|safety|"
        r"act|regulations?|norms|rules)\b",
        re.IGNORECASE,
        Severity.MEDIUM,
        "Compliance Violation",
        "Compliance violation",
        ("notice", "penalty", "inspection", "closure"),
    ),
    (
        "financial_distress",
        r"\b(?:rating downgrade|downgraded|delayed (?:salary|salaries|payments?)|unpaid (?:dues|wages)|cash crunch|"
        r"liquidity crisis|going concern)\b",
        re.IGNORECASE,
        Severity.MEDIUM,
        "Financial Distress",
        "Financial distress indicator",
        ("creditors", "lenders", "crisil", "icra", "care ratings", "default"),
    ),
)


def build_ruleset(version: str = RULESET_VERSION) -> AlertRuleset:
    """Compile the rule definitions into an immutable ruleset."""
    rules = []
    digest = hashlib.sha256(version.encode("utf-8"))
    for rule_id, pattern, flags, severity, category, title, corroborating in _RULE_DEFINITIONS:
        rules.append(AlertRule(
            rule_id=rule_id,
            pattern=re.compile(pattern, flags),
            severity=severity,
            category=category,
            title=title,
            corroborating=tuple(corroborating),
        ))
        digest.update(f"|{rule_id}:{pattern}:{severity.value}".encode("utf-8"))
    return AlertRuleset(version=version, rules=tuple(rules), fingerprint=digest.hexdigest()[:12])


@lru_cache(maxsize=1)
def default_ruleset() -> AlertRuleset:
    """The process-wide ruleset, compiled once."""
    ruleset = build_ruleset()
    logger.debug("Alert ruleset loaded", extra={"version": ruleset.version, "rules": len(ruleset)})
    return ruleset


@dataclass
class AlertDetectionResult:
    alerts: List[CriticalAlert]
    ruleset_version: str
    total_matches: int

    @property
    def critical_count(self) -> int:
        return sum(1 for alert in self.alerts if alert.severity == Severity.CRITICAL)

    @property
    def truncated(self) -> bool:
        return self.total_matches > len(self.alerts)

    def to_dict(self) -> Dict[str, object]:
        return {
            "alerts": [alert.to_dict() for alert in self.alerts],
            "ruleset_version": self.ruleset_version,
            "total_matches": self.total_matches,
        }


class AlertDetector:
    """
    Scans research text for critical alerts.

    Usage:
        >>> detector = AlertDetector()
        >>> result = detector.detect("The ED filed a money laundering case involving ₹50 crore.")
        >>> result.alerts[0].category
        'Money Laundering'
    """

    def __init__(
        self,
        ruleset: Optional[AlertRuleset] = None,
        max_alerts: Optional[int] = None,
        window: Optional[int] = None,
    ):
        self.ruleset = ruleset or default_ruleset()
        self.max_alerts = max_alerts if max_alerts is not None else settings.MAX_ALERTS
        self.window = window if window is not None else settings.ALERT_EVIDENCE_WINDOW

    def detect(self, text: Optional[str]) -> AlertDetectionResult:
        """Every rule match in ``text``, truncated to ``max_alerts``."""
        if not text:
            return AlertDetectionResult(alerts=[], ruleset_version=self.ruleset.version, total_matches=0)

        alerts = []
        total = 0
        for rule in self.ruleset.rules:
            for match in rule.pattern.finditer(text):
                total += 1
                if len(alerts) < self.max_alerts:
                    alerts.append(self._build_alert(rule, match, text))

        if total > len(alerts):
            logger.info(
                "Alert list truncated",
                extra={"matches": total, "kept": len(alerts), "ruleset": self.ruleset.version},
            )
        return AlertDetectionResult(alerts=alerts, ruleset_version=self.ruleset.version, total_matches=total)

    def _build_alert(self, rule: AlertRule, match: "re.Match", text: str) -> CriticalAlert:
        start, end = match.span()
        evidence = text[max(0, start - self.window):min(len(text), end + self.window)]
        evidence = " ".join(evidence.split())

        window_amounts = find_amounts(evidence)
        if window_amounts:
            financial_impact = window_amounts[0].text
        else:
            wider = text[max(0, start - _IMPACT_SEARCH_RADIUS):min(len(text), end + _IMPACT_SEARCH_RADIUS)]
            wider_amounts = find_amounts(wider)
            financial_impact = wider_amounts[0].text if wider_amounts else ""

        confidence = self._confidence(rule, match, text, evidence, bool(window_amounts))
        matched = " ".join(match.group(0).split())

        return CriticalAlert(
            rule_id=rule.rule_id,
            severity=rule.severity,
            category=rule.category,
            title=rule.title,
            description=f"{rule.category} indicator: '{matched}'",
            source_evidence=evidence,
            confidence_score=confidence,
            financial_impact=financial_impact,
            position=start,
        )

    def _confidence(
        self,
        rule: AlertRule,
        match: "re.Match",
        text: str,
        evidence: str,
        amount_nearby: bool,
    ) -> int:
        score = 50
        if amount_nearby:
            score += 20
        lowered = evidence.lower()
        hits = sum(1 for keyword in rule.corroborating if keyword in lowered)
        score += 10 * min(3, hits)
        if len(match.group(0).split()) > 1:
            score += 10

        preceding = text[max(0, match.start() - 60):match.start()]
        if _NEGATION_PATTERN.search(preceding):
            score -= 30

        return max(0, min(100, score))


def alert_risk_score(alerts: List[CriticalAlert]) -> int:
    """
    Auxiliary weighted score over alerts (0-100), reported alongside the
    main risk score.
    """
    if not alerts:
        return 0
    weighted = 0.0
    weights = 0.0
    for alert in alerts:
        weight = ALERT_WEIGHTS.get(alert.severity, 1.0)
        weighted += ALERT_BASE_SCORES.get(alert.severity, 25) * alert.confidence_score / 100 * weight
        weights += weight
    return max(0, min(100, round(weighted / weights)))


__all__ = [
    "RULESET_VERSION",
    "ALERT_WEIGHTS",
    "ALERT_BASE_SCORES",
    "AlertRule",
    "AlertRuleset",
    "AlertDetectionResult",
    "AlertDetector",
    "build_ruleset",
    "default_ruleset",
    "alert_risk_score",
]
