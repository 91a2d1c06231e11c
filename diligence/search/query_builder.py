"""
Research Query Builder

Turns a company profile, a job type and an iteration number into the
research prompt and system instruction sent to the research service.
Pure functions only: no I/O, no clock, no randomness, so the same inputs
always build the same query.

Iteration progression (each pass builds on the previous ones):
1. PRIMARY_ENTITY     the company itself, job-specific question list
2. RELATED_ENTITIES   directors, subsidiaries, associates, cross-directorships
3. DEEP_VERIFICATION  verify earlier findings: case numbers, amounts, status
4+ FINAL_VALIDATION   resolve conflicts and confirm the current status

Search depth:
- standard for the first iteration
- exhaustive for verification passes
- reduced for the fallback query issued after repeated failures
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from config.settings import settings
from config.logging_config import get_logger
from diligence.core.exceptions import MissingCompanyContextError
from diligence.core.state_manager import IterationFocus, JobType, focus_for_iteration

logger = get_logger(__name__)

MAX_DIRECTORS = 10
MAX_RELATED_ENTITIES = 20
MAX_PRIOR_FINDINGS = 8


# ============================================================================
# ENUMS & PRESETS
# ============================================================================

class SearchDepth(str, Enum):
    """Search-depth hint passed to the research service."""
    REDUCED = "reduced"
    STANDARD = "standard"
    EXHAUSTIVE = "exhaustive"


@dataclass(frozen=True)
class ResearchPreset:
    """Default scope for one job type."""
    name: str
    description: str
    time_period_months: int
    focus_areas: tuple
    budget_tokens: int


RESEARCH_PRESETS: Dict[JobType, ResearchPreset] = {
    JobType.DIRECTORS_RESEARCH: ResearchPreset(
        name="Comprehensive Directors Research",
        description="Background verification of directors, management and key personnel",
        time_period_months=60,
        focus_areas=("criminal_charges", "regulatory_sanctions", "bankruptcy", "professional_history",
                     "cross_directorships", "financial_conduct"),
        budget_tokens=12000,
    ),
    JobType.LEGAL_RESEARCH: ResearchPreset(
        name="Comprehensive Legal Research",
        description="Legal cases, regulatory compliance and enforcement action analysis",
        time_period_months=60,
        focus_areas=("court_cases", "regulatory_violations", "tax_disputes", "compliance_issues",
                     "enforcement_actions", "insolvency_proceedings"),
        budget_tokens=15000,
    ),
    JobType.NEGATIVE_NEWS: ResearchPreset(
        name="Comprehensive Negative News Analysis",
        description="Adverse media coverage, incidents and reputational risk analysis",
        time_period_months=36,
        focus_areas=("project_failures", "customer_complaints", "safety_incidents",
                     "operational_disruptions", "management_issues", "financial_distress"),
        budget_tokens=10000,
    ),
    JobType.REGULATORY_RESEARCH: ResearchPreset(
        name="Comprehensive Regulatory Research",
        description="Regulatory compliance and enforcement actions across all authorities",
        time_period_months=60,
        focus_areas=("SEBI_actions", "RBI_enforcement", "tax_disputes", "environmental_violations",
                     "industry_compliance", "sectoral_regulations"),
        budget_tokens=12000,
    ),
}

ENTITY_RESEARCH_FOCUS_AREAS = {
    "directors_comprehensive": ("criminal_background", "regulatory_sanctions", "financial_misconduct",
                                "cross_directorships", "governance_failures", "reputation_analysis"),
    "corporate_structure": ("subsidiary_analysis", "ownership_mapping", "related_party_transactions",
                            "joint_ventures", "corporate_governance", "regulatory_compliance"),
    "related_parties": ("promoter_relationships", "transaction_analysis", "conflict_identification",
                        "governance_assessment", "compliance_evaluation", "risk_assessment"),
    "cross_directorship": ("network_mapping", "conflict_analysis", "governance_effectiveness",
                           "independence_assessment", "systemic_risks", "compliance_monitoring"),
}

# Entity template used for the related-entities pass of each job type
_RELATED_ENTITY_QUERY = {
    JobType.DIRECTORS_RESEARCH: "cross_directorship",
    JobType.LEGAL_RESEARCH: "related_parties",
    JobType.NEGATIVE_NEWS: "corporate_structure",
    JobType.REGULATORY_RESEARCH: "corporate_structure",
}


# ============================================================================
# ENTITY CONTEXT
# ============================================================================

@dataclass(frozen=True)
class DirectorInfo:
    name: str
    designation: str = "Director"
    din: Optional[str] = None
    pan: Optional[str] = None
    appointment_date: Optional[str] = None


@dataclass(frozen=True)
class RelatedEntity:
    name: str
    relationship_type: str
    cin: Optional[str] = None
    ownership_percentage: Optional[float] = None
    business_relationship: Optional[str] = None


@dataclass(frozen=True)
class EntityResearchContext:
    """Company profile the queries are built from."""
    company_name: str
    cin: Optional[str] = None
    pan: Optional[str] = None
    industry: Optional[str] = None
    directors: tuple = ()
    subsidiaries: tuple = ()
    associates: tuple = ()

    @property
    def director_names(self) -> List[str]:
        return [director.name for director in self.directors]

    @property
    def related_names(self) -> List[str]:
        return [entity.name for entity in self.subsidiaries + self.associates]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "company_name": self.company_name,
            "cin": self.cin,
            "pan": self.pan,
            "industry": self.industry,
            "directors": [vars(director) for director in self.directors],
            "subsidiaries": [vars(entity) for entity in self.subsidiaries],
            "associates": [vars(entity) for entity in self.associates],
        }


def _first(data: Dict[str, Any], *keys) -> Optional[Any]:
    for key in keys:
        value = data.get(key)
        if value not in (None, "", "-"):
            return value
    return None


def _is_active_director(director: Dict[str, Any]) -> bool:
    cessation = director.get("date_of_cessation")
    return cessation in (None, "", "-")


def _extract_directors(data: Dict[str, Any]) -> tuple:
    section = data.get("Directors") or data.get("directors") or []
    records = section.get("data", []) if isinstance(section, dict) else section
    if not isinstance(records, list):
        return ()
    directors = []
    for record in records:
        if isinstance(record, str):
            directors.append(DirectorInfo(name=record))
            continue
        if not isinstance(record, dict) or not _is_active_director(record):
            continue
        directors.append(DirectorInfo(
            name=str(_first(record, "name", "directorName") or "Unknown"),
            designation=str(_first(record, "present_designation", "designation", "position") or "Director"),
            din=_first(record, "din", "DIN"),
            pan=_first(record, "pan", "PAN"),
            appointment_date=_first(record, "present_designation_appointment_date", "appointment_date"),
        ))
    return tuple(directors[:MAX_DIRECTORS])


def _extract_related(data: Dict[str, Any], keys: Sequence[str], default_type: str) -> tuple:
    entities = []
    for key in keys:
        source = data.get(key)
        if not isinstance(source, list):
            continue
        for item in source:
            if isinstance(item, str):
                entities.append(RelatedEntity(name=item, relationship_type=default_type))
            elif isinstance(item, dict):
                entities.append(RelatedEntity(
                    name=str(_first(item, "name", "companyName") or "Unknown"),
                    relationship_type=str(_first(item, "relationshipType", "relationship_type") or default_type),
                    cin=_first(item, "cin", "CIN"),
                    ownership_percentage=_first(item, "ownershipPercentage", "shareholding"),
                    business_relationship=_first(item, "businessRelationship", "relationship"),
                ))
    return tuple(entities[:MAX_RELATED_ENTITIES])


def extract_entity_context(company_data: Optional[Dict[str, Any]]) -> EntityResearchContext:
    """
    Build the research context from extracted company data.

    Accepts the structured export ("About the Company" / "Directors"
    sections), the same wrapped under ``extracted_data``, or a flat profile
    with ``company_name``.

    Raises:
        MissingCompanyContextError: If no company name can be found
    """
    if not company_data or not isinstance(company_data, dict):
        raise MissingCompanyContextError("No extracted company data available for research")

    data = company_data.get("extracted_data") if isinstance(company_data.get("extracted_data"), dict) else company_data

    about = data.get("About the Company") if isinstance(data.get("About the Company"), dict) else {}
    info = about.get("company_info") if isinstance(about.get("company_info"), dict) else {}
    addresses = about.get("addresses") if isinstance(about.get("addresses"), dict) else {}
    business_address = addresses.get("business_address") if isinstance(addresses.get("business_address"), dict) else {}

    company_name = _first(info, "legal_name", "name") or _first(data, "company_name", "legal_name", "name")
    if not company_name or not str(company_name).strip():
        raise MissingCompanyContextError("Company name missing from extracted company data")

    return EntityResearchContext(
        company_name=str(company_name).strip(),
        cin=_first(info, "cin") or _first(data, "cin", "CIN"),
        pan=_first(info, "pan") or _first(data, "pan", "PAN"),
        industry=_first(business_address, "segment") or _first(data, "industry", "segment"),
        directors=_extract_directors(data),
        subsidiaries=_extract_related(data, ("subsidiaries", "subsidiaryCompanies", "groupCompanies"), "Subsidiary"),
        associates=_extract_related(data, ("associates", "associateCompanies", "jointVentures", "partnerships"),
                                    "Associate"),
    )


# ============================================================================
# QUERY
# ============================================================================

@dataclass(frozen=True)
class ResearchQuery:
    """One fully built research request."""
    job_type: str
    iteration_number: int
    focus: IterationFocus
    system_instruction: str
    prompt: str
    search_depth: SearchDepth
    budget_tokens: int
    time_period_months: int
    entity_focus: tuple = ()
    focus_areas: tuple = ()
    verification_required: bool = False

    def reduced(self) -> "ResearchQuery":
        """Narrower variant used once retries are exhausted."""
        return replace(
            self,
            prompt=(
                f"{_REDUCED_PREFIX}\n\n{self.prompt.splitlines()[0]}\n\n"
                "Report only matters recorded in official filings, court records or regulator orders, "
                "with amounts, dates and current status."
            ),
            search_depth=SearchDepth.REDUCED,
            budget_tokens=min(self.budget_tokens, settings.RESEARCH_REDUCED_BUDGET_TOKENS),
            entity_focus=self.entity_focus[:1],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_type": self.job_type,
            "iteration_number": self.iteration_number,
            "focus": self.focus.value,
            "search_depth": self.search_depth.value,
            "budget_tokens": self.budget_tokens,
            "time_period_months": self.time_period_months,
            "entity_focus": list(self.entity_focus),
            "focus_areas": list(self.focus_areas),
            "verification_required": self.verification_required,
        }


_REDUCED_PREFIX = "FOCUSED RESEARCH (primary sources only)"

_JOB_QUESTIONS = {
    JobType.DIRECTORS_RESEARCH: (
        "Research specific adverse findings about directors of \"{company}\":\nKEY PERSONS: {directors}",
        (
            "Criminal charges, arrests, or convictions",
            "Personal bankruptcy or insolvency cases",
            "Disqualification as company director",
            "Regulatory sanctions or penalties",
            "Civil litigation as defendant with significant amounts",
            "Tax evasion or financial fraud cases",
            "Association with failed or liquidated companies as director",
            "SEBI or other regulatory enforcement actions",
        ),
        ("Person's name and specific issue", "Case details and amounts involved",
         "Date and current status", "Credible source"),
        "No significant adverse findings identified for key personnel through public records search.",
    ),
    JobType.LEGAL_RESEARCH: (
        "Research specific legal and regulatory issues about \"{company}\":",
        (
            "Active court cases with case numbers and amounts claimed",
            "SEBI enforcement actions with penalty amounts",
            "Income tax disputes with amounts",
            "Labour law cases with penalty details",
            "Environmental law cases with fine amounts",
            "Contract breach cases with counterparty names and amounts",
            "Insolvency or bankruptcy proceedings (current or past)",
            "Regulatory license suspensions or revocations",
        ),
        ("Case number or reference", "Authority or court involved", "Amount or penalty involved",
         "Current status and date", "Specific allegation details"),
        "No significant legal or regulatory matters identified through public records search.",
    ),
    JobType.NEGATIVE_NEWS: (
        "Research specific negative incidents about \"{company}\" in the last {years} years:",
        (
            "Project failures, delays, or quality issues with client names and amounts",
            "Labour disputes, strikes, or workplace accidents",
            "Environmental incidents with penalty amounts",
            "Customer complaints filed with authorities",
            "Contract cancellations or disputes with major clients",
            "Financial distress indicators (delayed payments, credit downgrades)",
            "Corruption or bribery allegations with case details",
            "Safety incidents or accidents",
        ),
        ("Specific incident details", "Client or authority involved", "Financial impact or penalty amount",
         "Date and current status", "Credible news source"),
        "No significant negative incidents identified through media monitoring.",
    ),
    JobType.REGULATORY_RESEARCH: (
        "Research specific regulatory compliance issues about \"{company}\":",
        (
            "SEBI enforcement actions with penalty amounts",
            "RBI actions for financial services companies",
            "Environmental clearance matters with penalty details",
            "Labour law penalties",
            "GST or tax compliance issues with amounts due",
            "Industry-specific regulatory actions",
            "License suspensions or revocations",
            "Regulatory warnings or notices",
        ),
        ("Regulatory authority involved", "Specific matter details", "Penalty or fine amount",
         "Date and current status", "Compliance requirements"),
        "No significant regulatory matters identified through official records search.",
    ),
}

_FOCUS_INSTRUCTIONS = {
    IterationFocus.PRIMARY_ENTITY: (
        "Establish the baseline record for the company itself. Cover every question, "
        "cite a source for each matter and state amounts in their original currency."
    ),
    IterationFocus.RELATED_ENTITIES: (
        "Extend the research to the people and companies connected to the target: directors, "
        "subsidiaries, associates and other companies the directors control. Attribute every matter "
        "to the specific entity it concerns."
    ),
    IterationFocus.DEEP_VERIFICATION: (
        "Verify the matters already identified. Confirm case numbers, authorities, amounts and "
        "dates against official records, and flag anything that cannot be corroborated."
    ),
    IterationFocus.FINAL_VALIDATION: (
        "Validate the consolidated record. Resolve conflicting reports, confirm the current status "
        "of every open matter and note anything resolved, withdrawn or dismissed."
    ),
}


class QueryBuilder:
    """
    Builds research queries.

    Usage:
        >>> builder = QueryBuilder()
        >>> query = builder.build(context, JobType.LEGAL_RESEARCH, iteration_number=1, max_iterations=3)
        >>> query.focus, query.search_depth
        (<IterationFocus.PRIMARY_ENTITY: 'primary_entity'>, <SearchDepth.STANDARD: 'standard'>)
    """

    def build(
        self,
        context: EntityResearchContext,
        job_type: Any,
        iteration_number: int,
        max_iterations: int,
        research_scope: Optional[Dict[str, Any]] = None,
        prior_findings: Sequence[str] = (),
        budget_tokens: Optional[int] = None,
    ) -> ResearchQuery:
        job_type = JobType(job_type)
        scope = research_scope or {}
        preset = RESEARCH_PRESETS[job_type]
        focus = focus_for_iteration(iteration_number)

        time_period = int(scope.get("time_period_months") or preset.time_period_months)
        focus_areas = tuple(scope.get("focus_areas") or preset.focus_areas)

        sections = [self._job_section(job_type, context, time_period)]
        entity_focus: tuple = (context.company_name,)

        if focus == IterationFocus.PRIMARY_ENTITY and job_type == JobType.DIRECTORS_RESEARCH:
            sections.append(self._entity_section("directors_comprehensive", context))
            entity_focus = tuple(context.director_names) or entity_focus
        elif focus == IterationFocus.RELATED_ENTITIES:
            query_type = _RELATED_ENTITY_QUERY[job_type]
            sections.append(self._entity_section(query_type, context))
            entity_focus = tuple(context.director_names + context.related_names) or entity_focus
            focus_areas = focus_areas + ENTITY_RESEARCH_FOCUS_AREAS[query_type]
        elif focus in (IterationFocus.DEEP_VERIFICATION, IterationFocus.FINAL_VALIDATION):
            sections.append(self._prior_section(prior_findings))

        if focus_areas:
            sections.append("PRIORITY AREAS: " + ", ".join(area.replace("_", " ") for area in focus_areas))

        sections.append(f"Coverage window: the last {time_period} months, plus any matter still open.")

        return ResearchQuery(
            job_type=job_type.value,
            iteration_number=iteration_number,
            focus=focus,
            system_instruction=self.system_instruction(job_type, focus, iteration_number, max_iterations),
            prompt="\n\n".join(section for section in sections if section),
            search_depth=self.search_depth_for(focus),
            budget_tokens=int(budget_tokens or scope.get("budget_tokens") or preset.budget_tokens
                              or settings.RESEARCH_BUDGET_TOKENS),
            time_period_months=time_period,
            entity_focus=entity_focus,
            focus_areas=focus_areas,
            verification_required=focus != IterationFocus.PRIMARY_ENTITY,
        )

    @staticmethod
    def search_depth_for(focus: IterationFocus) -> SearchDepth:
        if focus == IterationFocus.PRIMARY_ENTITY:
            return SearchDepth.STANDARD
        return SearchDepth.EXHAUSTIVE

    @staticmethod
    def system_instruction(
        job_type: JobType,
        focus: IterationFocus,
        iteration_number: int,
        max_iterations: int,
    ) -> str:
        job_label = job_type.value.replace("_", " ")
        return (
            f"You are a senior due-diligence researcher performing {job_label} for a credit assessment. "
            f"This is research pass {iteration_number} of {max_iterations} "
            f"({focus.value.replace('_', ' ')}). {_FOCUS_INSTRUCTIONS[focus]} "
            "Report only factual, verifiable information from credible sources. Do not speculate. "
            "If information is limited or unavailable, say so plainly."
        )

    @staticmethod
    def _job_section(job_type: JobType, context: EntityResearchContext, time_period: int) -> str:
        header, questions, report_fields, empty_statement = _JOB_QUESTIONS[job_type]
        header = header.format(
            company=context.company_name,
            directors=", ".join(context.director_names[:5]) or "Directors listed in company filings",
            years=max(1, time_period // 12),
        )
        lines = [header, "", "Find and report any of these SPECIFIC matters:"]
        lines.extend(f"{index}. {question}" for index, question in enumerate(questions, start=1))
        lines.append("")
        lines.append("For each matter found, provide:")
        lines.extend(f"- {item}" for item in report_fields)
        lines.append("")
        lines.append(f"If nothing specific is found, state: \"{empty_statement}\"")
        return "\n".join(lines)

    @staticmethod
    def _entity_section(query_type: str, context: EntityResearchContext) -> str:
        lines = []
        if query_type == "directors_comprehensive":
            lines.append("DIRECTORS TO RESEARCH:")
            if context.directors:
                for director in context.directors:
                    din = f" - DIN: {director.din}" if director.din else ""
                    lines.append(f"- {director.name} ({director.designation}){din}")
            else:
                lines.append("- Extract director information from company filings")
            lines.append("For each director cover professional history, regulatory and compliance history, "
                         "other directorships and any failed companies during their tenure.")
        elif query_type == "cross_directorship":
            lines.append("CROSS-DIRECTORSHIP NETWORK:")
            lines.extend(f"- {name}" for name in context.director_names or ["Directors listed in company filings"])
            lines.append("Map the other companies each director serves, and report conflicts of interest, "
                         "common directorships with distressed companies and independence concerns.")
        elif query_type == "related_parties":
            lines.append("RELATED PARTIES:")
            lines.extend(f"- {name}" for name in context.related_names or ["Promoter group entities"])
            lines.append("Report related-party transactions, guarantees, promoter relationships and any "
                         "litigation between group entities.")
        else:
            lines.append("CORPORATE STRUCTURE:")
            for entity in context.subsidiaries + context.associates:
                share = f", {entity.ownership_percentage}%" if entity.ownership_percentage else ""
                lines.append(f"- {entity.name} ({entity.relationship_type}{share})")
            if not context.subsidiaries and not context.associates:
                lines.append("- Identify subsidiaries, associates and joint ventures from filings")
            lines.append("Report financial distress, regulatory action or failures in any group entity, "
                         "and cross-default or guarantee exposure back to the target.")

        header = [f"TARGET COMPANY: {context.company_name}"]
        if context.cin:
            header.append(f"CIN: {context.cin}")
        if context.industry:
            header.append(f"INDUSTRY: {context.industry}")
        return "\n".join(header + [""] + lines)

    @staticmethod
    def _prior_section(prior_findings: Sequence[str]) -> str:
        if not prior_findings:
            return ("No specific matters were recorded in earlier passes. Confirm this through official "
                    "registers and court records.")
        lines = ["MATTERS FROM EARLIER PASSES TO VERIFY:"]
        lines.extend(f"- {title}" for title in list(prior_findings)[:MAX_PRIOR_FINDINGS])
        return "\n".join(lines)


__all__ = [
    "SearchDepth",
    "ResearchPreset",
    "RESEARCH_PRESETS",
    "ENTITY_RESEARCH_FOCUS_AREAS",
    "DirectorInfo",
    "RelatedEntity",
    "EntityResearchContext",
    "extract_entity_context",
    "ResearchQuery",
    "QueryBuilder",
]
