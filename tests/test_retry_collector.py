"""
Retry policy and research collector tests.

Tests cover:
  1. Retryable errors are retried, others stop immediately
  2. Fallback after exhaustion, re-raise without one
  3. Collector fallback chain: reduced scope, then professional response
  4. Authentication errors go straight to manual review
  5. Timeouts degrade to partial coverage
"""

import asyncio

import pytest

from conftest import COMPANY_NAME, FakeResearchClient
from diligence.core.error_handler import ErrorContext
from diligence.core.exceptions import AuthenticationError, RateLimitError
from diligence.core.retry import Backoff, RetryPolicy
from diligence.search.collector import ResearchCollector
from diligence.search.query_builder import QueryBuilder, SearchDepth, extract_entity_context


def _query(company_data, iteration=1):
    context = extract_entity_context(company_data)
    return QueryBuilder().build(context, "legal_research", iteration, 3)


def _context():
    return ErrorContext(job_id="job-1", job_type="legal_research", company_name=COMPANY_NAME, iteration_number=1)


# ============================================================================
# RETRY POLICY
# ============================================================================

def test_retryable_error_is_retried_until_success(fast_retry):
    calls = []

    async def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise RateLimitError("429 Too Many Requests")
        return "ok"

    assert asyncio.run(fast_retry.execute(flaky)) == "ok"
    assert len(calls) == 3


def test_non_retryable_error_goes_to_fallback(fast_retry):
    calls = []

    async def broken():
        calls.append(1)
        raise ValueError("bad payload")

    policy = fast_retry.with_fallback(lambda error: f"fallback: {type(error).__name__}")

    assert asyncio.run(policy.execute(broken)) == "fallback: ValueError"
    assert len(calls) == 1


def test_exhausted_retries_without_fallback_reraise(fast_retry):
    async def always_limited():
        raise RateLimitError("429")

    with pytest.raises(RateLimitError):
        asyncio.run(fast_retry.execute(always_limited))


def test_async_fallback_is_awaited(fast_retry):
    async def always_limited():
        raise RateLimitError("429")

    async def fallback(error):
        return "recovered"

    assert asyncio.run(fast_retry.with_fallback(fallback).execute(always_limited)) == "recovered"


def test_sync_execution_retries_configured_types():
    calls = []

    def write():
        calls.append(1)
        if len(calls) == 1:
            raise KeyError("transient")
        return "written"

    policy = RetryPolicy(max_attempts=2, backoff=Backoff(base=0.0, maximum=0.0), retry_on=(KeyError,))

    assert policy.execute_sync(write) == "written"
    assert len(calls) == 2


def test_backoff_doubles_and_caps():
    backoff = Backoff(base=1.0, maximum=5.0)

    assert [backoff.delay_for(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 5.0]


# ============================================================================
# COLLECTOR
# ============================================================================

def test_collect_success(company_data, fast_retry):
    client = FakeResearchClient()
    collector = ResearchCollector(client=client, retry_policy=fast_retry, timeout=5.0)

    research = asyncio.run(collector.collect(_query(company_data), _context()))

    assert not research.used_fallback
    assert research.citations == 4
    assert research.confidence_score == 0.9
    assert research.tokens_used == 1200
    assert research.api_calls == 1
    assert research.search_depth == "standard"


def test_unknown_metadata_stays_unknown(company_data, fast_retry):
    client = FakeResearchClient(metadata={})
    collector = ResearchCollector(client=client, retry_policy=fast_retry, timeout=5.0)

    research = asyncio.run(collector.collect(_query(company_data), _context()))

    assert research.citations is None
    assert research.confidence_score is None


def test_exhausted_retries_use_reduced_scope(company_data, fast_retry):
    client = FakeResearchClient(failures=3)
    collector = ResearchCollector(client=client, retry_policy=fast_retry, timeout=5.0)

    research = asyncio.run(collector.collect(_query(company_data, iteration=2), _context()))

    assert research.fallback_mode == "reduced_scope"
    assert research.confidence_score <= 0.7
    assert research.api_calls == 4
    assert client.queries[-1].search_depth == SearchDepth.REDUCED
    assert research.content == client.content


def test_reduced_scope_failure_gives_professional_response(company_data, fast_retry):
    client = FakeResearchClient(failures=99)
    collector = ResearchCollector(client=client, retry_policy=fast_retry, timeout=5.0)

    research = asyncio.run(collector.collect(_query(company_data), _context()))

    assert research.fallback_mode == "professional_response"
    assert COMPANY_NAME in research.content
    assert research.confidence_score == 0.75
    assert research.error_category == "api_failure"
    assert research.limitations


def test_authentication_error_requires_manual_review(company_data, fast_retry):
    client = FakeResearchClient(failures=99, error=AuthenticationError("401 Unauthorized", status_code=401))
    collector = ResearchCollector(client=client, retry_policy=fast_retry, timeout=5.0)

    research = asyncio.run(collector.collect(_query(company_data), _context()))

    assert research.is_manual_review
    assert research.confidence_score == 0.0
    assert len(client.queries) == 1


def test_timeout_degrades_to_partial_coverage(company_data):
    client = FakeResearchClient(delay=0.5)
    policy = RetryPolicy(max_attempts=1, backoff=Backoff(base=0.0, maximum=0.0), name="research")
    collector = ResearchCollector(client=client, retry_policy=policy, timeout=0.01)

    research = asyncio.run(collector.collect(_query(company_data), _context()))

    assert research.fallback_mode == "partial_coverage"
    assert research.error_category == "timeout_error"
    assert research.api_calls == 2
