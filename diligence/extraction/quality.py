"""
Research data quality validation.

Scores one iteration's research payload on five 0-100 metrics and averages
them into an overall score:

- completeness: share of content, findings and analysis that is present
- accuracy: 30 with error indicators, 60 with limited-data indicators, else 85
- consistency: 50 when contradictions are mentioned, else 90
- timeliness: 90 (research is collected at run time)
- reliability: 40 for unverified/rumoured sources, 90 for verified/official, else 70

A payload is valid when it raises no errors and scores at least 40 overall.
"""

import json
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List

MIN_VALID_SCORE = 40
_KEY_FIELDS = ("content", "findings", "analysis")


@dataclass
class DataQualityMetrics:
    completeness: float = 0.0
    accuracy: float = 0.0
    consistency: float = 0.0
    timeliness: float = 0.0
    reliability: float = 0.0
    overall_score: float = 0.0

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)


@dataclass
class ValidationResult:
    is_valid: bool
    data_quality: DataQualityMetrics
    confidence: float
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "data_quality": self.data_quality.to_dict(),
            "confidence": self.confidence,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "recommendations": list(self.recommendations),
        }


def _present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, (list, tuple, dict, set)):
        return len(value) > 0
    return len(str(value).strip()) > 0


def calculate_metrics(data: Dict[str, Any]) -> DataQualityMetrics:
    if not data:
        return DataQualityMetrics()

    present = [name for name in _KEY_FIELDS if _present(data.get(name))]
    completeness = len(present) / len(_KEY_FIELDS) * 100

    text = json.dumps(data, default=str).lower()

    if "error" in text or "failed" in text:
        accuracy = 30.0
    elif "limited" in text or "unavailable" in text:
        accuracy = 60.0
    else:
        accuracy = 85.0

    consistency = 50.0 if ("contradiction" in text or "conflict" in text) else 90.0
    timeliness = 90.0

    if "unverified" in text or "rumor" in text or "rumour" in text:
        reliability = 40.0
    elif "verified" in text or "official" in text:
        reliability = 90.0
    else:
        reliability = 70.0

    overall = (completeness + accuracy + consistency + timeliness + reliability) / 5
    return DataQualityMetrics(
        completeness=round(completeness, 2),
        accuracy=accuracy,
        consistency=consistency,
        timeliness=timeliness,
        reliability=reliability,
        overall_score=round(overall, 2),
    )


def _recommendations(metrics: DataQualityMetrics, errors: List[str]) -> List[str]:
    recommendations = []
    if metrics.completeness < 60:
        recommendations.append("Enhance data collection from additional sources")
    if metrics.accuracy < 80:
        recommendations.append("Implement additional verification steps")
    if metrics.consistency < 80:
        recommendations.append("Cross-reference information across multiple sources")
    if metrics.reliability < 70:
        recommendations.append("Prioritize official and verified information sources")
    if errors:
        recommendations.append("Address critical data quality issues before proceeding")
    return recommendations


def validate_data_quality(data: Dict[str, Any]) -> ValidationResult:
    """
    Validate one research payload.

    Example:
        >>> result = validate_data_quality({"content": "Verified filing", "findings": [{}], "analysis": "ok"})
        >>> result.is_valid
        True
    """
    metrics = calculate_metrics(data)
    errors: List[str] = []
    warnings: List[str] = []

    if metrics.completeness < 30:
        errors.append("Data completeness below minimum threshold")
    elif metrics.completeness < 60:
        warnings.append("Limited data completeness may affect analysis quality")

    if metrics.accuracy < 50:
        errors.append("Data accuracy concerns detected")
    elif metrics.accuracy < 80:
        warnings.append("Some data accuracy issues identified")

    if metrics.consistency < 70:
        warnings.append("Data consistency issues may affect reliability")

    return ValidationResult(
        is_valid=not errors and metrics.overall_score >= MIN_VALID_SCORE,
        data_quality=metrics,
        confidence=max(0.0, min(1.0, metrics.overall_score / 100)),
        errors=errors,
        warnings=warnings,
        recommendations=_recommendations(metrics, errors),
    )


__all__ = ["DataQualityMetrics", "ValidationResult", "calculate_metrics", "validate_data_quality"]
