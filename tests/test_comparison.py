"""
Iteration comparison tests.
"""

import asyncio
from types import SimpleNamespace

from diligence.analysis.comparison import compare_iterations
from diligence.core.workflow import ResearchOrchestrator

SUIT = {"category": "Legal Proceedings", "title": "Supplier recovery suit",
        "description": "Civil suit in the Bombay High Court", "severity": "MEDIUM"}
ORDER = {"category": "Regulatory Compliance", "title": "SEBI order",
         "description": "Penalty for late disclosure", "severity": "LOW"}
FRAUD = {"category": "Financial Crime", "title": "ED attachment",
         "description": "Assets attached under PMLA", "severity": "CRITICAL"}


def _iteration(number, findings, confidence=0.8, quality=70.0):
    return SimpleNamespace(iteration_number=number, structured_findings=findings,
                           confidence_score=confidence, data_quality_score=quality)


def test_identical_iterations_have_converged():
    comparison = compare_iterations("job-1", _iteration(1, [SUIT]), _iteration(2, [SUIT], confidence=0.82))

    assert comparison.differences == []
    assert comparison.significance_level == "Low"
    assert comparison.recommendation.startswith("Research has converged")


def test_new_high_severity_finding():
    comparison = compare_iterations("job-1", _iteration(1, [SUIT]), _iteration(2, [SUIT, FRAUD]))
    result = comparison.to_dict()

    assert result["new_findings_count"] == 1
    assert result["modified_findings_count"] == 0
    assert result["significance_level"] == "High"
    assert result["differences"][0]["description"] == "New finding: ED attachment"
    assert result["recommendation"].startswith("Later iteration surfaced high-severity findings")


def test_modified_and_removed_findings():
    escalated = dict(SUIT, severity="HIGH")
    comparison = compare_iterations("job-1", _iteration(1, [SUIT, ORDER]), _iteration(2, [escalated]))
    result = comparison.to_dict()

    assert result["modified_findings_count"] == 1
    assert result["removed_findings_count"] == 1
    assert result["differences"][0]["description"] == "Updated severity: Supplier recovery suit"
    assert result["differences"][1]["significance"] == "Low"


def test_confidence_drop():
    comparison = compare_iterations("job-1", _iteration(1, [ORDER], confidence=0.8),
                                    _iteration(2, [ORDER, dict(ORDER, title="SEBI show-cause notice")],
                                               confidence=0.7))

    assert comparison.confidence_improvement == -0.1
    assert comparison.significance_level == "Medium"
    assert comparison.recommendation.startswith("Confidence dropped")


def test_unknown_scores_compare_as_no_change():
    comparison = compare_iterations("job-1", _iteration(1, [], confidence=None, quality=None),
                                    _iteration(2, [ORDER], confidence=0.9, quality=None))

    assert comparison.confidence_improvement == 0
    assert comparison.data_quality_improvement == 0
    assert comparison.recommendation.startswith("Incremental refinement only")


def test_orchestrator_compares_stored_iterations(session_factory, company_data, make_pipeline, log_dir):
    orchestrator = ResearchOrchestrator(session_factory, pipeline=make_pipeline(), iteration_delay=0,
                                        log_dir=log_dir)
    started = orchestrator.start_research_job({"request_id": "req-1", "job_type": "legal_research",
                                               "company_data": company_data, "max_iterations": 2})
    asyncio.run(orchestrator.process_job(started["job_id"]))

    compared = orchestrator.compare_iterations(started["job_id"], 1, 2)
    missing = orchestrator.compare_iterations(started["job_id"], 1, 5)

    assert compared["success"]
    assert compared["comparison"]["iteration_1"] == 1
    assert compared["comparison"]["new_findings_count"] == 0
    assert missing == {"success": False, "comparison": None, "message": "Iteration not found"}
