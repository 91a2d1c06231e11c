"""
Iteration Pipeline

One research iteration, end to end, without persistence:

    build query -> collect research -> detect alerts -> extract findings
                -> score risk -> validate data quality

Collaborator failures never escape: the collector degrades to reduced
scope or a professional response, and the extractor degrades to
alert-derived findings. What does escape (a bug, an invalid job type)
fails the iteration.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence

from config.logging_config import get_logger
from diligence.analysis.risk_scorer import RiskScore, RiskScorer
from diligence.core.error_handler import ErrorContext
from diligence.core.state_manager import focus_for_iteration
from diligence.extraction.alert_detector import AlertDetectionResult, AlertDetector, alert_risk_score
from diligence.extraction.extractor import ExtractionOutcome, FindingExtractor
from diligence.extraction.quality import ValidationResult, validate_data_quality
from diligence.search.collector import CollectedResearch, ResearchCollector
from diligence.search.query_builder import EntityResearchContext, QueryBuilder, ResearchQuery

logger = get_logger(__name__)


@dataclass
class IterationOutcome:
    """Everything one iteration produced."""
    iteration_number: int
    query: ResearchQuery
    research: CollectedResearch
    detection: AlertDetectionResult
    extraction: ExtractionOutcome
    risk: RiskScore
    quality: ValidationResult

    @property
    def findings(self):
        return self.extraction.findings

    @property
    def alerts(self):
        return self.detection.alerts

    @property
    def confidence(self) -> Optional[float]:
        """Research confidence, None when the service did not report one."""
        return self.research.confidence_score

    @property
    def effective_confidence(self) -> float:
        if self.research.confidence_score is not None:
            return self.research.confidence_score
        return self.quality.confidence

    @property
    def data_quality_score(self) -> float:
        return round(self.quality.data_quality.overall_score / 100, 4)

    @property
    def alert_risk_score(self) -> int:
        return alert_risk_score(self.detection.alerts)

    def iteration_fields(self) -> Dict[str, Any]:
        """Full column set for the iteration row."""
        return {
            "raw_content": self.research.content,
            "structured_findings": [finding.to_dict() for finding in self.findings],
            "critical_alerts": [alert.to_dict() for alert in self.alerts],
            "citations": self.research.citations,
            "search_depth": self.research.search_depth,
            "fallback_mode": self.research.fallback_mode,
            "confidence_score": self.confidence,
            "data_quality_score": self.data_quality_score,
            "risk_score": self.risk.risk_score,
            "alert_risk_score": self.alert_risk_score,
            "tokens_used": self.research.tokens_used,
        }

    def reduced_iteration_fields(self) -> Dict[str, Any]:
        """Minimal column set, used when the full write is rejected."""
        return {
            "structured_findings": [finding.to_dict() for finding in self.findings],
            "confidence_score": self.confidence,
            "tokens_used": self.research.tokens_used,
        }


class IterationPipeline:
    """
    Runs one iteration through every stage.

    Example:
        >>> pipeline = IterationPipeline(collector=ResearchCollector(client=fake_client))
        >>> outcome = await pipeline.run(context, "legal_research", 1, 3)
        >>> outcome.risk.credit_recommendation.value
        'Approve'
    """

    def __init__(
        self,
        query_builder: Optional[QueryBuilder] = None,
        collector: Optional[ResearchCollector] = None,
        detector: Optional[AlertDetector] = None,
        extractor: Optional[FindingExtractor] = None,
        scorer: Optional[RiskScorer] = None,
    ):
        self.query_builder = query_builder or QueryBuilder()
        self.collector = collector or ResearchCollector()
        self.detector = detector or AlertDetector()
        self.extractor = extractor or FindingExtractor()
        self.scorer = scorer or RiskScorer()

    async def run(
        self,
        context: EntityResearchContext,
        job_type: str,
        iteration_number: int,
        max_iterations: int,
        research_scope: Optional[Dict[str, Any]] = None,
        prior_findings: Sequence[str] = (),
        budget_tokens: Optional[int] = None,
        error_context: Optional[ErrorContext] = None,
    ) -> IterationOutcome:
        query = self.query_builder.build(
            context,
            job_type,
            iteration_number,
            max_iterations,
            research_scope=research_scope,
            prior_findings=prior_findings,
            budget_tokens=budget_tokens,
        )
        error_context = error_context or ErrorContext(
            job_type=job_type,
            company_name=context.company_name,
            iteration_number=iteration_number,
        )

        research = await self.collector.collect(query, error_context)
        detection = self.detector.detect(research.content)
        extraction = await self.extractor.extract(
            research.content,
            context.company_name,
            job_type,
            alerts=detection.alerts,
        )
        risk = self.scorer.score(extraction.findings, detection.alerts)
        quality = validate_data_quality({
            "content": research.content,
            "findings": [finding.to_dict() for finding in extraction.findings],
            "analysis": research.verification_level or research.search_depth,
            "confidence": research.confidence_score,
            "citations": research.citations,
            "fallback_mode": research.fallback_mode,
        })

        logger.info(
            "Iteration pipeline finished",
            extra={
                "job_id": error_context.job_id,
                "job_type": job_type,
                "iteration": iteration_number,
                "focus": focus_for_iteration(iteration_number).value,
                "findings": len(extraction.findings),
                "alerts": len(detection.alerts),
                "risk_score": risk.risk_score,
                "fallback_mode": research.fallback_mode,
            },
        )

        return IterationOutcome(
            iteration_number=iteration_number,
            query=query,
            research=research,
            detection=detection,
            extraction=extraction,
            risk=risk,
            quality=quality,
        )


__all__ = ["IterationOutcome", "IterationPipeline"]
