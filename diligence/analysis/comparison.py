"""
Iteration comparison: what changed between two iterations of one job.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from diligence.extraction.normalizer import FindingNormalizer
from diligence.extraction.schema import Severity, StructuredFinding

_COMPARED_FIELDS = ("severity", "status", "category", "description", "amount_numeric", "date")


@dataclass
class FindingDifference:
    type: str  # new | modified | removed
    finding_id: str
    description: str
    significance: str

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


@dataclass
class IterationComparison:
    job_id: str
    iteration_1: int
    iteration_2: int
    differences: List[FindingDifference] = field(default_factory=list)
    confidence_improvement: float = 0.0
    data_quality_improvement: float = 0.0
    significance_level: str = "Low"
    recommendation: str = ""

    def _count(self, kind: str) -> int:
        return sum(1 for diff in self.differences if diff.type == kind)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "iteration_1": self.iteration_1,
            "iteration_2": self.iteration_2,
            "differences": [diff.to_dict() for diff in self.differences],
            "confidence_improvement": self.confidence_improvement,
            "data_quality_improvement": self.data_quality_improvement,
            "new_findings_count": self._count("new"),
            "modified_findings_count": self._count("modified"),
            "removed_findings_count": self._count("removed"),
            "significance_level": self.significance_level,
            "recommendation": self.recommendation,
        }


def finding_significance(finding: StructuredFinding) -> str:
    if finding.severity in (Severity.CRITICAL, Severity.HIGH):
        return "High"
    if finding.severity == Severity.MEDIUM:
        return "Medium"
    return "Low"


def _changed_fields(before: StructuredFinding, after: StructuredFinding) -> List[str]:
    return [name for name in _COMPARED_FIELDS if getattr(before, name) != getattr(after, name)]


def _improvement(before: Optional[float], after: Optional[float]) -> float:
    # Unknown scores compare as no change
    if before is None or after is None:
        return 0.0
    return round(after - before, 4)


def diff_findings(before: Sequence[StructuredFinding], after: Sequence[StructuredFinding]) -> List[FindingDifference]:
    """new / modified / removed, keyed by finding id, in the order of ``after`` then ``before``."""
    old = {finding.id: finding for finding in before}
    new = {finding.id: finding for finding in after}
    differences = []

    for finding_id, finding in new.items():
        if finding_id not in old:
            differences.append(FindingDifference(
                type="new",
                finding_id=finding_id,
                description=f"New finding: {finding.title}",
                significance=finding_significance(finding),
            ))
            continue
        changed = _changed_fields(old[finding_id], finding)
        if changed:
            significance = finding_significance(finding)
            if "severity" in changed and significance == "Low":
                significance = "Medium"
            differences.append(FindingDifference(
                type="modified",
                finding_id=finding_id,
                description=f"Updated {', '.join(changed)}: {finding.title}",
                significance=significance,
            ))

    for finding_id, finding in old.items():
        if finding_id not in new:
            differences.append(FindingDifference(
                type="removed",
                finding_id=finding_id,
                description=f"No longer reported: {finding.title}",
                significance=finding_significance(finding),
            ))
    return differences


def overall_significance(differences: Sequence[FindingDifference], confidence_improvement: float) -> str:
    if any(diff.significance == "High" for diff in differences) or abs(confidence_improvement) >= 0.2:
        return "High"
    if differences or abs(confidence_improvement) >= 0.1:
        return "Medium"
    return "Low"


def comparison_recommendation(significance: str, confidence_improvement: float,
                              differences: Sequence[FindingDifference]) -> str:
    if not differences and abs(confidence_improvement) < 0.05:
        return "Research has converged; further iterations are unlikely to add findings"
    if significance == "High":
        if any(diff.type == "new" and diff.significance == "High" for diff in differences):
            return "Later iteration surfaced high-severity findings; review them before relying on earlier results"
        return "Material changes between iterations; re-validate the affected findings"
    if confidence_improvement < 0:
        return "Confidence dropped in the later iteration; verify findings against primary sources"
    return "Incremental refinement only; the later iteration can be used as is"


def compare_iterations(
    job_id: str,
    first: Any,
    second: Any,
    normalizer: Optional[FindingNormalizer] = None,
) -> IterationComparison:
    """
    Compare two stored iterations (objects with ``iteration_number``,
    ``structured_findings``, ``confidence_score`` and ``data_quality_score``).
    """
    normalizer = normalizer or FindingNormalizer()
    before = normalizer.normalize_many(first.structured_findings or [])
    after = normalizer.normalize_many(second.structured_findings or [])

    differences = diff_findings(before, after)
    confidence = _improvement(first.confidence_score, second.confidence_score)
    quality = _improvement(first.data_quality_score, second.data_quality_score)
    significance = overall_significance(differences, confidence)

    return IterationComparison(
        job_id=job_id,
        iteration_1=first.iteration_number,
        iteration_2=second.iteration_number,
        differences=differences,
        confidence_improvement=confidence,
        data_quality_improvement=quality,
        significance_level=significance,
        recommendation=comparison_recommendation(significance, confidence, differences),
    )


__all__ = [
    "FindingDifference",
    "IterationComparison",
    "compare_iterations",
    "diff_findings",
    "overall_significance",
]
