"""
Research Collector

Calls the research service for one built query and always comes back with
research content. Failure handling is one explicit chain:

1. Attempt the query under a timeout, retrying retryable errors
   (rate limit, timeout, 5xx, network) with exponential backoff
2. Once attempts are exhausted, issue the reduced-scope variant once
3. If that fails too, return a professional fallback response

Authentication/configuration errors skip straight to the manual-review
response: retrying or narrowing the query cannot fix them.

Citation count and confidence are ``None`` when the service does not
report them; they are unknown, not zero.
"""

import asyncio
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from config.settings import settings
from config.logging_config import get_logger
from diligence.core.error_handler import (
    ErrorCategory,
    ErrorContext,
    ProfessionalResponse,
    categorize_error,
    manual_review_response,
    professional_fallback,
    reduced_scope_response,
)
from diligence.core.exceptions import CollaboratorTimeoutError
from diligence.core.retry import RetryPolicy
from diligence.search.query_builder import ResearchQuery

logger = get_logger(__name__)

REDUCED_SCOPE_CONFIDENCE = 0.70


@dataclass
class CollectedResearch:
    """Research content for one iteration, from the service or a fallback."""
    content: str
    search_depth: str
    tokens_used: int = 0
    citations: Optional[int] = None
    confidence_score: Optional[float] = None
    fallback_mode: Optional[str] = None
    data_completeness: Optional[int] = None
    verification_level: Optional[str] = None
    limitations: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    api_calls: int = 0
    duration_seconds: float = 0.0
    error_category: Optional[str] = None

    @property
    def used_fallback(self) -> bool:
        return self.fallback_mode is not None

    @property
    def is_manual_review(self) -> bool:
        return self.fallback_mode == "manual_review"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["content_length"] = len(self.content)
        del data["content"]
        return data


class ResearchCollector:
    """
    Runs research queries against the research service.

    Args:
        client: Object with ``async research(query) -> ModelResponse``
            (defaults to ``DeepResearchClient``)
        retry_policy: Retry schedule for the primary query
        timeout: Seconds allowed per attempt

    Example:
        >>> collector = ResearchCollector()
        >>> research = await collector.collect(query, ErrorContext(company_name="Acme Ltd"))
        >>> research.fallback_mode is None
        True
    """

    def __init__(
        self,
        client: Any = None,
        retry_policy: Optional[RetryPolicy] = None,
        timeout: Optional[float] = None,
    ):
        if client is None:
            from diligence.models.research_client import DeepResearchClient
            client = DeepResearchClient()
        self.client = client
        self.retry_policy = retry_policy or RetryPolicy.from_settings(name="research")
        self.timeout = timeout or settings.RESEARCH_TIMEOUT

    async def collect(self, query: ResearchQuery, context: Optional[ErrorContext] = None) -> CollectedResearch:
        """
        Collect research for ``query``. Never raises for collaborator failures.
        """
        context = context or ErrorContext(job_type=query.job_type, iteration_number=query.iteration_number)
        started = time.monotonic()
        calls = []

        async def fallback(error: BaseException) -> CollectedResearch:
            return await self._fallback(query, context, error, calls)

        policy = self.retry_policy.with_fallback(fallback)
        result = await policy.execute(self._attempt, query, calls)

        result.api_calls = len(calls)
        result.duration_seconds = time.monotonic() - started

        logger.info(
            "Research collected",
            extra={
                "job_id": context.job_id,
                "job_type": query.job_type,
                "iteration": query.iteration_number,
                "search_depth": result.search_depth,
                "fallback_mode": result.fallback_mode,
                "api_calls": result.api_calls,
                "tokens_used": result.tokens_used,
            },
        )
        return result

    async def _attempt(self, query: ResearchQuery, calls: list) -> CollectedResearch:
        calls.append(query.search_depth.value)
        try:
            response = await asyncio.wait_for(self.client.research(query), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise CollaboratorTimeoutError(
                f"Research call exceeded {self.timeout}s",
                collaborator="research",
            ) from e

        metadata = getattr(response, "metadata", None) or {}
        return CollectedResearch(
            content=response.content,
            search_depth=query.search_depth.value,
            tokens_used=int(getattr(response, "tokens_used", 0) or 0),
            citations=metadata.get("citations"),
            confidence_score=metadata.get("confidence"),
        )

    async def _fallback(
        self,
        query: ResearchQuery,
        context: ErrorContext,
        error: BaseException,
        calls: list,
    ) -> CollectedResearch:
        context.retry_count = len(calls)
        enhanced = categorize_error(error, context)

        if enhanced.category == ErrorCategory.AUTHENTICATION_ERROR:
            return self._from_professional(manual_review_response(context.company_name), query, enhanced.category)

        reduced = query.reduced()
        try:
            research = await self._attempt(reduced, calls)
        except Exception as reduced_error:
            logger.warning(
                "Reduced-scope research failed",
                extra={
                    "job_id": context.job_id,
                    "iteration": query.iteration_number,
                    "error_type": type(reduced_error).__name__,
                },
            )
            return self._from_professional(professional_fallback(enhanced), query, enhanced.category)

        template = reduced_scope_response(context.company_name or "the company", query.job_type)
        research.fallback_mode = "reduced_scope"
        research.error_category = enhanced.category.value
        if research.confidence_score is None:
            research.confidence_score = REDUCED_SCOPE_CONFIDENCE
        else:
            research.confidence_score = min(research.confidence_score, REDUCED_SCOPE_CONFIDENCE)
        research.data_completeness = template.data_completeness
        research.verification_level = template.verification_level
        research.limitations = list(template.limitations)
        research.recommendations = list(template.recommendations)
        return research

    @staticmethod
    def _from_professional(
        response: ProfessionalResponse,
        query: ResearchQuery,
        category: ErrorCategory,
    ) -> CollectedResearch:
        return CollectedResearch(
            content=response.content,
            search_depth=query.search_depth.value,
            confidence_score=response.confidence_score,
            fallback_mode=response.strategy.value,
            data_completeness=response.data_completeness,
            verification_level=response.verification_level,
            limitations=list(response.limitations),
            recommendations=list(response.recommendations),
            error_category=category.value,
        )


__all__ = ["CollectedResearch", "ResearchCollector", "REDUCED_SCOPE_CONFIDENCE"]
