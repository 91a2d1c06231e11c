#!/usr/bin/env python3
"""
Research Script - Due-Diligence Research for One Company

Runs the core research jobs (or a chosen subset) for a company profile,
drains the report outbox and prints or saves the resulting report.

Usage examples:
    python scripts/research.py company.json
    python scripts/research.py company.json --request-id req-42 --iterations 2
    python scripts/research.py company.json --jobs legal_research regulatory_research
    python scripts/research.py company.json --save --output reports/acme.json
"""

import sys
import json
import asyncio
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

# Setup Python path BEFORE any imports
script_dir = Path(__file__).parent.absolute()
project_root = script_dir.parent
sys.path.insert(0, str(project_root))

from config.logging_config import get_logger
from config.settings import configuration_warnings
from diligence.core.state_manager import CORE_JOB_TYPES
from diligence.core.workflow import ResearchOrchestrator
from diligence.database.connection import SessionLocal, get_db, init_db
from diligence.database.repository import ReportRepository

logger = get_logger(__name__)


# ============================================================================
# FORMATTING UTILITIES
# ============================================================================

def format_header(text: str, char: str = "=") -> str:
    """Format a header with decorative lines (80 chars)"""
    line = char * 80
    return f"\n{line}\n{text}\n{line}\n"


def format_section(text: str) -> str:
    """Format a section header (80 chars)"""
    return f"\n{text}\n{'-' * 80}"


def load_company(path: Path) -> Dict[str, Any]:
    with open(path, encoding="utf-8") as f:
        return json.load(f)


def report_to_dict(report) -> Dict[str, Any]:
    return {
        "id": report.id,
        "request_id": report.request_id,
        "title": report.title,
        "executive_summary": report.executive_summary,
        "risk_level": report.risk_level,
        "risk_score": report.risk_score,
        "credit_recommendation": report.credit_recommendation,
        "critical_findings_count": report.critical_findings_count,
        "findings_summary": report.findings_summary,
        "recommendations": report.recommendations,
        "sections": report.sections,
        "generated_at": report.generated_at.isoformat() if report.generated_at else None,
        "expires_at": report.expires_at.isoformat() if report.expires_at else None,
    }


def print_report(report: Dict[str, Any]) -> None:
    print(format_header(f"📊 {report['title']}"))
    print(f"  Risk Level:      {report['risk_level']}")
    print(f"  Risk Score:      {report['risk_score']}/100")
    print(f"  Recommendation:  {report['credit_recommendation']}")
    print(f"  Critical Items:  {report['critical_findings_count']}")

    print(format_section("EXECUTIVE SUMMARY"))
    print(report["executive_summary"])

    for section in (report["sections"] or {}).values():
        print(format_section(section["title"]))
        print(section["content"])


# ============================================================================
# RUN
# ============================================================================

async def run_research_async(
    company_path: Path,
    request_id: str,
    job_types: List[str],
    iterations: Optional[int],
    save: bool,
    output_path: Optional[Path],
) -> Optional[Dict[str, Any]]:
    print(format_header("🔍 DUE-DILIGENCE RESEARCH"))
    print(f"Company file:   {company_path}")
    print(f"Request:        {request_id}")
    print(f"Jobs:           {', '.join(job_types)}")
    for warning in configuration_warnings:
        print(f"⚠️  {warning}")

    init_db()
    orchestrator = ResearchOrchestrator(dispatch_reports=True)

    params = {"max_iterations": iterations} if iterations else {}
    results = await orchestrator.run_request(request_id, load_company(company_path), job_types, **params)

    print(format_section("JOBS"))
    for item in results:
        print(f"  {item['job_type']:.<28} {item['status']} ({item['progress'] or 0}%)")
        if item.get("error"):
            print(f"    ❌ {item['error']}")

    with get_db(SessionLocal) as db:
        report = ReportRepository.get_by_request(db, request_id)
        report_data = report_to_dict(report) if report is not None else None

    if report_data is None:
        print("\nNo report generated: every core job must complete first.")
        return None

    print_report(report_data)

    if save:
        filepath = output_path or Path("reports") / f"{request_id}.json"
        filepath.parent.mkdir(parents=True, exist_ok=True)
        with open(filepath, "w", encoding="utf-8") as f:
            json.dump(report_data, f, indent=2, ensure_ascii=False, default=str)
        print(f"\n💾 Report saved: {filepath}")

    return report_data


# ============================================================================
# CLI INTERFACE
# ============================================================================

def main():
    """Main entry point with argument parsing."""
    import argparse

    core = [job_type.value for job_type in CORE_JOB_TYPES]
    parser = argparse.ArgumentParser(
        description="Due-Diligence Research Engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/research.py company.json
  python scripts/research.py company.json --jobs legal_research -i 2
  python scripts/research.py company.json --save --output reports/acme.json
        """
    )
    parser.add_argument("company", help="Company profile JSON file")
    parser.add_argument("--request-id", help="Request id (default: random)")
    parser.add_argument("--jobs", nargs="+", choices=core, default=core, help="Job types to run")
    parser.add_argument("-i", "--iterations", type=int, help="Max iterations per job")
    parser.add_argument("-s", "--save", action="store_true", help="Save the report to JSON")
    parser.add_argument("--output", type=str, help="Specific output file path")

    args = parser.parse_args()

    company_path = Path(args.company)
    if not company_path.exists():
        parser.error(f"Company file not found: {company_path}")
    if args.iterations is not None and args.iterations < 1:
        parser.error("Iterations must be at least 1")

    result = asyncio.run(run_research_async(
        company_path=company_path,
        request_id=args.request_id or str(uuid.uuid4()),
        job_types=args.jobs,
        iterations=args.iterations,
        save=args.save,
        output_path=Path(args.output) if args.output else None,
    ))
    sys.exit(0 if result else 1)


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        print("\n⚠️  Interrupted by user")
        sys.exit(130)
