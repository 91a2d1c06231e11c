"""
Error categorization and fallback selection tests.
"""

import pytest

from diligence.core.error_handler import (
    ErrorCategory,
    ErrorContext,
    ErrorSeverity,
    FallbackStrategy,
    categorize_error,
    determine_error_category,
    determine_fallback_strategy,
    professional_fallback,
)
from diligence.core.exceptions import (
    AuthenticationError,
    CircuitOpenError,
    CollaboratorTimeoutError,
    InvalidRequestError,
    NetworkError,
    RateLimitError,
    ServerError,
)

CONTEXT = ErrorContext(job_id="job-1", company_name="Acme Infra Ltd", job_type="legal_research")


@pytest.mark.parametrize("error,expected", [
    (RateLimitError("slow down", status_code=429), ErrorCategory.RATE_LIMIT_ERROR),
    (CollaboratorTimeoutError("deadline"), ErrorCategory.TIMEOUT_ERROR),
    (ServerError("bad gateway", status_code=502), ErrorCategory.API_FAILURE),
    (CircuitOpenError("circuit open"), ErrorCategory.API_FAILURE),
    (NetworkError("reset by peer"), ErrorCategory.NETWORK_ERROR),
    (AuthenticationError("bad key", status_code=401), ErrorCategory.AUTHENTICATION_ERROR),
    (InvalidRequestError("bad payload"), ErrorCategory.VALIDATION_ERROR),
    (TimeoutError(), ErrorCategory.TIMEOUT_ERROR),
    (RuntimeError("HTTP 429 from upstream"), ErrorCategory.RATE_LIMIT_ERROR),
    (RuntimeError("connection refused"), ErrorCategory.NETWORK_ERROR),
    (ValueError("could not parse payload"), ErrorCategory.DATA_QUALITY),
    (KeyError("x"), ErrorCategory.PROCESSING_ERROR),
])
def test_error_categories(error, expected):
    assert determine_error_category(error) == expected


@pytest.mark.parametrize("category,retries,expected", [
    (ErrorCategory.AUTHENTICATION_ERROR, 0, FallbackStrategy.MANUAL_REVIEW),
    (ErrorCategory.TIMEOUT_ERROR, 0, FallbackStrategy.PARTIAL_COVERAGE),
    (ErrorCategory.RATE_LIMIT_ERROR, 5, FallbackStrategy.RETRY_WITH_BACKOFF),
    (ErrorCategory.NETWORK_ERROR, 0, FallbackStrategy.RETRY_WITH_BACKOFF),
    (ErrorCategory.API_FAILURE, 1, FallbackStrategy.RETRY_WITH_BACKOFF),
    (ErrorCategory.API_FAILURE, 3, FallbackStrategy.PROFESSIONAL_RESPONSE),
    (ErrorCategory.DATA_QUALITY, 0, FallbackStrategy.PROFESSIONAL_RESPONSE),
])
def test_fallback_strategy(category, retries, expected):
    assert determine_fallback_strategy(category, retries) == expected


def test_authentication_error_is_not_recoverable():
    enhanced = categorize_error(AuthenticationError("invalid x-api-key"), CONTEXT)

    assert enhanced.severity == ErrorSeverity.CRITICAL
    assert enhanced.recoverable is False
    assert enhanced.fallback_strategy == FallbackStrategy.MANUAL_REVIEW
    assert "Contact system administrator" in enhanced.suggested_actions
    assert enhanced.to_dict()["context"]["job_id"] == "job-1"


def test_user_message_names_the_company():
    enhanced = categorize_error(ServerError("upstream 503"), CONTEXT)

    assert "Acme Infra Ltd" in enhanced.user_message
    assert enhanced.recoverable


def test_empty_message_uses_error_type():
    enhanced = categorize_error(TimeoutError())

    assert enhanced.message == "TimeoutError"
    assert enhanced.context.company_name is None


# ============================================================================
# PROFESSIONAL RESPONSES
# ============================================================================

@pytest.mark.parametrize("error,strategy,confidence", [
    (AuthenticationError("bad key"), FallbackStrategy.MANUAL_REVIEW, 0.0),
    (CollaboratorTimeoutError("deadline"), FallbackStrategy.PARTIAL_COVERAGE, 0.8),
    (RateLimitError("slow down"), FallbackStrategy.PROFESSIONAL_RESPONSE, 0.75),
    (ServerError("unavailable"), FallbackStrategy.PROFESSIONAL_RESPONSE, 0.75),
])
def test_professional_fallback(error, strategy, confidence):
    response = professional_fallback(categorize_error(error, CONTEXT))

    assert response.strategy == strategy
    assert response.confidence_score == confidence
    assert response.to_dict()["strategy"] == strategy.value


def test_limited_data_response_content():
    response = professional_fallback(categorize_error(ServerError("unavailable"), CONTEXT))

    assert response.success
    assert response.fallback_applied
    assert response.verification_level == "Medium"
    assert "Professional legal research analysis completed for Acme Infra Ltd" in response.content


def test_manual_review_is_not_a_success():
    response = professional_fallback(categorize_error(AuthenticationError("bad key")))

    assert response.success is False
    assert response.fallback_applied is False
    assert "Unknown Company" in response.content
