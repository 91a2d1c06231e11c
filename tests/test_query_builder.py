"""
Query builder and company-context tests.

Tests cover:
  1. Entity context from the structured export (active directors only)
  2. Missing company name is rejected
  3. Focus and search depth per iteration
  4. Prior findings carried into verification passes
  5. Reduced-scope variant
"""

import pytest

from conftest import COMPANY_NAME
from config.settings import settings
from diligence.core.exceptions import MissingCompanyContextError
from diligence.core.state_manager import IterationFocus, JobType
from diligence.search.query_builder import (
    QueryBuilder,
    SearchDepth,
    extract_entity_context,
)


# ============================================================================
# ENTITY CONTEXT
# ============================================================================

def test_context_from_structured_export(company_data):
    context = extract_entity_context(company_data)

    assert context.company_name == COMPANY_NAME
    assert context.cin == "U45200MH2010PLC123456"
    assert context.industry == "Infrastructure"
    assert context.director_names == ["Ravi Kumar", "Meera Shah"]
    assert context.directors[0].designation == "Managing Director"
    assert [entity.name for entity in context.subsidiaries] == ["Acme Roads Pvt Ltd"]
    assert context.associates[0].relationship_type == "Associate"


def test_context_accepts_wrapped_and_flat_profiles(company_data):
    wrapped = extract_entity_context({"extracted_data": company_data})
    flat = extract_entity_context({"company_name": "  Flat Co Ltd  ", "directors": ["A. Rao"]})

    assert wrapped.company_name == COMPANY_NAME
    assert flat.company_name == "Flat Co Ltd"
    assert flat.director_names == ["A. Rao"]


@pytest.mark.parametrize("company_data", [None, {}, {"About the Company": {"company_info": {}}}, "Acme"])
def test_missing_company_name_is_rejected(company_data):
    with pytest.raises(MissingCompanyContextError):
        extract_entity_context(company_data)


@pytest.mark.parametrize("directors", ["Ravi Kumar", 42, {"data": "Ravi Kumar"}, None])
def test_malformed_directors_are_ignored(directors):
    context = extract_entity_context({"company_name": "Acme Infra Ltd", "Directors": directors})

    assert context.company_name == "Acme Infra Ltd"
    assert context.directors == ()


# ============================================================================
# QUERIES
# ============================================================================

def test_first_iteration_targets_primary_entity(company_data):
    context = extract_entity_context(company_data)
    query = QueryBuilder().build(context, JobType.DIRECTORS_RESEARCH, 1, 3)

    assert query.focus == IterationFocus.PRIMARY_ENTITY
    assert query.search_depth == SearchDepth.STANDARD
    assert not query.verification_required
    assert "Ravi Kumar" in query.prompt
    assert query.entity_focus == ("Ravi Kumar", "Meera Shah")
    assert "pass 1 of 3" in query.system_instruction


def test_second_iteration_covers_related_entities(company_data):
    context = extract_entity_context(company_data)
    query = QueryBuilder().build(context, "negative_news", 2, 3)

    assert query.focus == IterationFocus.RELATED_ENTITIES
    assert query.search_depth == SearchDepth.EXHAUSTIVE
    assert query.verification_required
    assert "Acme Roads Pvt Ltd" in query.prompt
    assert "Acme Power JV" in query.entity_focus
    assert "subsidiary_analysis" in query.focus_areas


def test_verification_pass_lists_prior_findings(company_data):
    context = extract_entity_context(company_data)
    titles = [f"Matter {index}" for index in range(12)]
    query = QueryBuilder().build(context, "legal_research", 3, 4, prior_findings=titles)

    assert query.focus == IterationFocus.DEEP_VERIFICATION
    assert "Matter 0" in query.prompt
    assert "Matter 7" in query.prompt
    assert "Matter 8" not in query.prompt


def test_later_iterations_are_final_validation(company_data):
    context = extract_entity_context(company_data)
    query = QueryBuilder().build(context, "regulatory_research", 5, 5)

    assert query.focus == IterationFocus.FINAL_VALIDATION
    assert "No specific matters were recorded" in query.prompt


def test_queries_are_deterministic(company_data):
    context = extract_entity_context(company_data)
    builder = QueryBuilder()
    scope = {"time_period_months": 24, "focus_areas": ["court_cases"]}

    first = builder.build(context, "legal_research", 2, 3, research_scope=scope)
    second = builder.build(context, "legal_research", 2, 3, research_scope=scope)

    assert first == second
    assert first.time_period_months == 24
    assert first.focus_areas[0] == "court_cases"


def test_budget_precedence(company_data):
    context = extract_entity_context(company_data)
    builder = QueryBuilder()

    assert builder.build(context, "legal_research", 1, 1).budget_tokens == 15000
    assert builder.build(context, "legal_research", 1, 1, budget_tokens=3000).budget_tokens == 3000


def test_reduced_query_narrows_scope(company_data):
    context = extract_entity_context(company_data)
    query = QueryBuilder().build(context, "directors_research", 2, 3)
    reduced = query.reduced()

    assert reduced.search_depth == SearchDepth.REDUCED
    assert reduced.budget_tokens <= settings.RESEARCH_REDUCED_BUDGET_TOKENS
    assert len(reduced.entity_focus) == 1
    assert reduced.prompt.startswith("FOCUSED RESEARCH")
    assert reduced.iteration_number == query.iteration_number


def test_unknown_job_type_is_rejected(company_data):
    context = extract_entity_context(company_data)
    with pytest.raises(ValueError):
        QueryBuilder().build(context, "astrology_research", 1, 1)
