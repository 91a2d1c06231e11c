"""
Report Assembler

Turns a request's completed core jobs into one comprehensive report.

Generation runs only when every core job type (directors, legal, negative
news, regulatory) has a completed job for the request and no report exists
yet. The (request_id, report_version) unique constraint makes a second,
racing generation fail on insert; that failure is reported as "exists",
never as an error.

Each section is requested from the synthesis service; a failed call or an
empty response falls back to the section's deterministic template.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError

from config.settings import settings
from config.logging_config import get_logger
from diligence.analysis.consolidator import ConsolidatedFindings, Consolidator, JobSnapshot
from diligence.core import audit as audit_actions
from diligence.core.audit import AuditTrail
from diligence.core.exceptions import MissingCompanyContextError
from diligence.database.connection import SessionFactory, get_db
from diligence.database.repository import (
    ConsolidationRepository,
    IterationRepository,
    ReportRepository,
    ResearchJobRepository,
)
from diligence.extraction.parsing import parse_synthesis_response, section_text
from diligence.reporting.templates import (
    SECTION_TEMPLATES,
    SECTION_TITLES,
    ReportData,
    executive_summary,
    render_template,
    severity_counts,
)
from diligence.search.query_builder import extract_entity_context

logger = get_logger(__name__)

REPORT_VERSION = 1
MAX_CONTEXT_CHARS = 12000

REPORT_SYSTEM_PROMPT = (
    "You write sections of a comprehensive due-diligence report for a credit committee. "
    "Use only the facts provided. Return the section as plain prose, or as JSON with a "
    "\"content\" field."
)


@dataclass
class ReportOutcome:
    """What a generation attempt did."""
    status: str  # generated | exists | not_ready
    request_id: str
    report_id: Optional[str] = None
    synthesized_sections: List[str] = field(default_factory=list)
    templated_sections: List[str] = field(default_factory=list)

    @property
    def created(self) -> bool:
        return self.status == "generated"


class ReportAssembler:
    """
    Builds and stores the comprehensive report for a request.

    Example:
        >>> assembler = ReportAssembler(session_factory, synthesizer=claude)
        >>> outcome = await assembler.generate("req-1")
        >>> outcome.status
        'generated'
    """

    def __init__(
        self,
        session_factory: Optional[SessionFactory] = None,
        synthesizer: Any = None,
        consolidator: Optional[Consolidator] = None,
        audit: Optional[AuditTrail] = None,
    ):
        if synthesizer is None and settings.synthesis_enabled:
            from diligence.models.claude_client import ClaudeClient
            synthesizer = ClaudeClient()
        self.session_factory = session_factory
        self.synthesizer = synthesizer
        self.consolidator = consolidator or Consolidator()
        self.audit = audit or AuditTrail(session_factory)

    # ========================================================================
    # READINESS & CONSOLIDATION
    # ========================================================================

    def is_ready(self, request_id: str) -> bool:
        """All core jobs completed and no report stored yet."""
        with get_db(self.session_factory) as db:
            return (
                ResearchJobRepository.core_jobs_completed(db, request_id)
                and not ReportRepository.exists(db, request_id)
            )

    def consolidate(self, request_id: str) -> Tuple[ConsolidatedFindings, List[Dict[str, Any]]]:
        """
        Consolidate every completed job of the request and store the result.

        Returns:
            (consolidated findings, per-job summaries)
        """
        with get_db(self.session_factory) as db:
            jobs = ResearchJobRepository.list_completed(db, request_id)
            snapshots = [JobSnapshot.from_job(job) for job in jobs]
            company_name, context = self._company(jobs)

            summaries = []
            for job in jobs:
                iterations = IterationRepository.get_by_job(db, job.id)
                summaries.append({
                    "job_id": job.id,
                    "job_type": job.job_type,
                    "iterations": len(iterations),
                    "fallback_iterations": [it.iteration_number for it in iterations if it.fallback_mode],
                    "data_quality_scores": [
                        it.data_quality_score for it in iterations if it.data_quality_score is not None
                    ],
                })

        consolidated = self.consolidator.consolidate(request_id, snapshots, company_name, context)

        with get_db(self.session_factory) as db:
            ConsolidationRepository.save(
                db,
                {
                    "request_id": request_id,
                    "fingerprint": consolidated.fingerprint,
                    "job_ids": consolidated.job_ids,
                    "consolidated_findings": consolidated.to_dict(),
                    "risk_assessment": consolidated.overall_risk_assessment.to_dict(),
                    "risk_score": consolidated.overall_risk_assessment.risk_score,
                },
                self._entity_rows(consolidated),
            )

        self.audit.record(
            audit_actions.CONSOLIDATION_COMPLETED,
            {
                "jobs": consolidated.job_ids,
                "findings": len(consolidated.all_findings),
                "risk_level": consolidated.overall_risk_assessment.overall_risk_level,
                "fingerprint": consolidated.fingerprint,
            },
            request_id=request_id,
        )
        return consolidated, summaries

    @staticmethod
    def _company(jobs) -> Tuple[Optional[str], Any]:
        for job in jobs:
            try:
                context = extract_entity_context(job.company_data)
            except MissingCompanyContextError:
                continue
            return context.company_name, context
        names = [job.company_name for job in jobs if job.company_name]
        return (names[0] if names else None), None

    @staticmethod
    def _entity_rows(consolidated: ConsolidatedFindings) -> List[Dict[str, Any]]:
        entities = [consolidated.primary_entity] + consolidated.directors
        entities += consolidated.subsidiaries + consolidated.associates
        return [
            {
                "entity_type": entity.entity_type,
                "entity_id": entity.entity_id,
                "entity_name": entity.entity_name,
                "risk_level": entity.risk_level,
                "findings": [finding.id for finding in entity.findings],
            }
            for entity in entities
        ]

    # ========================================================================
    # GENERATION
    # ========================================================================

    async def generate(self, request_id: str) -> ReportOutcome:
        """
        Generate the request's report once.

        Raises:
            Exception: Consolidation or storage errors other than the
                duplicate-report constraint (the outbox retries them)
        """
        with get_db(self.session_factory) as db:
            if not ResearchJobRepository.core_jobs_completed(db, request_id):
                logger.info("Report not ready, core jobs incomplete", extra={"request_id": request_id})
                return ReportOutcome(status="not_ready", request_id=request_id)
            existing = ReportRepository.get_by_request(db, request_id)
            if existing is not None:
                return ReportOutcome(status="exists", request_id=request_id, report_id=existing.id)

        try:
            consolidated, jobs = self.consolidate(request_id)
            data = ReportData(
                company_name=consolidated.primary_entity.entity_name,
                consolidated=consolidated,
                data_quality_score=self._average_quality(jobs),
                jobs=jobs,
            )

            outcome = ReportOutcome(status="generated", request_id=request_id)
            sections: Dict[str, Dict[str, Any]] = {}
            for section in SECTION_TEMPLATES:
                content, source = await self._section(section, data)
                sections[section] = {"title": SECTION_TITLES[section], "content": content, "source": source}
                if source == "synthesis":
                    outcome.synthesized_sections.append(section)
                else:
                    outcome.templated_sections.append(section)

            summary, _ = await self._executive_summary(data)
            record = self._report_record(request_id, data, sections, summary)
        except Exception as e:
            self.audit.record(
                audit_actions.REPORT_GENERATION_FAILED,
                {"error": str(e), "error_type": type(e).__name__},
                request_id=request_id,
            )
            raise

        try:
            with get_db(self.session_factory) as db:
                report = ReportRepository.create(db, record)
                outcome.report_id = report.id
        except IntegrityError:
            logger.info("Report already generated by a concurrent run", extra={"request_id": request_id})
            return ReportOutcome(status="exists", request_id=request_id)

        logger.info(
            "Report generated",
            extra={
                "request_id": request_id,
                "report_id": outcome.report_id,
                "risk_level": record["risk_level"],
                "synthesized_sections": len(outcome.synthesized_sections),
                "templated_sections": len(outcome.templated_sections),
            },
        )
        self.audit.record(
            audit_actions.REPORT_GENERATED,
            {
                "report_id": outcome.report_id,
                "risk_level": record["risk_level"],
                "risk_score": record["risk_score"],
                "credit_recommendation": record["credit_recommendation"],
                "templated_sections": outcome.templated_sections,
            },
            request_id=request_id,
        )
        return outcome

    async def _section(self, section: str, data: ReportData) -> Tuple[str, str]:
        template = render_template(section, data)
        prompt = self._section_prompt(SECTION_TITLES[section], data, template)
        return await self._synthesize(prompt, template, section)

    async def _executive_summary(self, data: ReportData) -> Tuple[str, str]:
        template = executive_summary(data)
        prompt = self._section_prompt("Executive Summary (3-5 sentences)", data, template)
        return await self._synthesize(prompt, template, "executive_summary")

    async def _synthesize(self, prompt: str, template: str, section: str) -> Tuple[str, str]:
        if self.synthesizer is None:
            return template, "template"
        try:
            response = await self.synthesizer.synthesize(prompt, system_prompt=REPORT_SYSTEM_PROMPT)
        except Exception as e:
            logger.warning(
                "Section synthesis failed, using template",
                extra={"section": section, "error_type": type(e).__name__, "error": str(e)},
            )
            return template, "template"

        text = section_text(parse_synthesis_response(response))
        if not text:
            return template, "template"
        return text, "synthesis"

    @staticmethod
    def _section_prompt(title: str, data: ReportData, facts: str) -> str:
        context = json.dumps(
            {
                "company": data.company_name,
                "risk_assessment": data.assessment.to_dict(),
                "findings": [f.to_dict() for f in data.findings],
            },
            default=str,
        )[:MAX_CONTEXT_CHARS]
        return f"""Write the "{title}" section of the due-diligence report on {data.company_name}.

KEY FACTS:
{facts}

CONSOLIDATED DATA (JSON):
{context}
"""

    @staticmethod
    def _average_quality(jobs: List[Dict[str, Any]]) -> Optional[float]:
        scores = [score for job in jobs for score in job["data_quality_scores"]]
        if not scores:
            return None
        return round(sum(scores) / len(scores), 4)

    @staticmethod
    def _report_record(request_id: str, data: ReportData, sections: Dict[str, Any],
                       summary: str) -> Dict[str, Any]:
        assessment = data.assessment
        findings = data.findings
        categories: Dict[str, int] = {}
        for finding in findings:
            categories[finding.category.value] = categories.get(finding.category.value, 0) + 1

        generated_at = datetime.utcnow()
        counts = severity_counts(findings)
        return {
            "request_id": request_id,
            "report_version": REPORT_VERSION,
            "title": f"Comprehensive Due Diligence Report - {data.company_name}",
            "company_name": data.company_name,
            "executive_summary": summary,
            "sections": sections,
            "findings_summary": {
                "total_findings": len(findings),
                "by_severity": counts,
                "categories": categories,
                "risk_score": assessment.risk_score,
                "credit_recommendation": assessment.credit_recommendation,
                "data_quality_score": data.data_quality_score,
                "key_risk_factors": list(assessment.primary_risk_factors),
                "research_jobs_included": list(data.consolidated.job_types),
            },
            "recommendations": list(assessment.follow_up_required),
            "risk_level": assessment.overall_risk_level,
            "risk_score": assessment.risk_score,
            "credit_recommendation": assessment.credit_recommendation,
            "critical_findings_count": counts["CRITICAL"],
            "auto_generated": True,
            "generated_at": generated_at,
            "expires_at": generated_at + timedelta(days=settings.REPORT_EXPIRY_DAYS),
        }


__all__ = ["ReportAssembler", "ReportOutcome", "REPORT_VERSION"]
