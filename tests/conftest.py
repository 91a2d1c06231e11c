"""
Shared fixtures for the research engine tests.

Nothing here touches the network: the research and synthesis services are
replaced by in-process fakes, and every test gets its own SQLite file.
"""

import asyncio
import json
import sys
from pathlib import Path
from types import SimpleNamespace

import pytest

_PROJECT_ROOT = Path(__file__).parent.parent.resolve()
sys.path.insert(0, str(_PROJECT_ROOT))

from diligence.core.exceptions import ServerError  # noqa: E402
from diligence.core.retry import Backoff, RetryPolicy  # noqa: E402
from diligence.database.connection import create_session_factory  # noqa: E402
from diligence.extraction.extractor import FindingExtractor  # noqa: E402
from diligence.core.pipeline import IterationPipeline  # noqa: E402
from diligence.search.collector import ResearchCollector  # noqa: E402


# ============================================================================
# SAMPLE DATA
# ============================================================================

COMPANY_NAME = "Acme Infra Ltd"

ADVERSE_RESEARCH = (
    "The Enforcement Directorate has attached assets worth ₹50 crore belonging to Acme Infra Ltd "
    "in a money laundering case registered under PMLA. Separately, a civil suit was filed before "
    "the Bombay High Court by a supplier claiming Rs 2.5 crore in unpaid dues."
)

CLEAN_RESEARCH = "No significant legal or regulatory matters identified through public records search."

ADVERSE_FINDINGS = [
    {
        "category": "Financial Crime",
        "severity": "CRITICAL",
        "title": "ED money laundering case against Acme Infra Ltd",
        "description": "Enforcement Directorate attached assets under PMLA",
        "amount": "₹50 crore",
        "status": "Under Investigation",
        "details": "ECIR/MBZO/12/2023",
        "source": "Economic Times",
        "verification_level": "High",
    },
    {
        "category": "Legal Proceedings",
        "severity": "MEDIUM",
        "title": "Supplier recovery suit in Bombay High Court",
        "description": "Civil suit before the Bombay High Court for unpaid dues",
        "amount": "Rs 2.5 crore",
        "status": "Pending",
        "source": "Court records",
    },
]


def sample_company_data():
    """Structured company export with one former director."""
    return {
        "About the Company": {
            "company_info": {"legal_name": COMPANY_NAME, "cin": "U45200MH2010PLC123456", "pan": "AAACA1234B"},
            "addresses": {"business_address": {"segment": "Infrastructure"}},
        },
        "Directors": {
            "data": [
                {"name": "Ravi Kumar", "present_designation": "Managing Director", "din": "01234567",
                 "date_of_cessation": "-"},
                {"name": "Meera Shah", "present_designation": "Independent Director", "din": "07654321"},
                {"name": "Old Director", "present_designation": "Director", "date_of_cessation": "2019-03-31"},
            ]
        },
        "subsidiaries": [{"name": "Acme Roads Pvt Ltd", "ownershipPercentage": 100}],
        "associates": ["Acme Power JV"],
    }


# ============================================================================
# FAKE COLLABORATORS
# ============================================================================

class FakeResearchClient:
    """
    Research service stand-in.

    Fails the first ``failures`` calls with ``error``, then answers with
    ``content`` (a string, or a callable taking the query).
    """

    def __init__(self, content=ADVERSE_RESEARCH, failures=0, error=None, metadata=None, delay=0.0):
        self.content = content
        self.failures = failures
        self.error = error or ServerError("upstream returned 503", status_code=503, collaborator="research")
        self.metadata = metadata if metadata is not None else {"citations": 4, "confidence": 0.9}
        self.delay = delay
        self.queries = []

    async def research(self, query):
        self.queries.append(query)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failures > 0:
            self.failures -= 1
            raise self.error
        content = self.content(query) if callable(self.content) else self.content
        return SimpleNamespace(content=content, tokens_used=1200, metadata=dict(self.metadata))


class FakeSynthesizer:
    """
    Synthesis service stand-in.

    Extraction prompts get ``findings`` as a JSON array; report prompts get
    ``section_text``. ``error`` makes every call raise.
    """

    def __init__(self, findings=None, section_text="Synthesized section text.", error=None):
        self.findings = ADVERSE_FINDINGS if findings is None else findings
        self.section_text = section_text
        self.error = error
        self.prompts = []

    async def synthesize(self, prompt, system_prompt=None, **kwargs):
        self.prompts.append(prompt)
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        if prompt.startswith("Extract structured due-diligence findings"):
            findings = self.findings(prompt) if callable(self.findings) else self.findings
            return json.dumps(findings, ensure_ascii=False)
        return self.section_text


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def session_factory(tmp_path):
    return create_session_factory(f"sqlite:///{tmp_path / 'diligence_test.db'}", create_tables=True)


@pytest.fixture
def company_data():
    return sample_company_data()


@pytest.fixture
def fast_retry():
    """Three attempts, no backoff sleeps."""
    return RetryPolicy(max_attempts=3, backoff=Backoff(base=0.0, maximum=0.0), name="research")


@pytest.fixture
def make_pipeline(fast_retry):
    """Build an IterationPipeline wired to fake collaborators."""

    def factory(client=None, synthesizer=None, timeout=5.0):
        collector = ResearchCollector(client=client or FakeResearchClient(), retry_policy=fast_retry,
                                      timeout=timeout)
        extractor = FindingExtractor(synthesizer=synthesizer or FakeSynthesizer())
        return IterationPipeline(collector=collector, extractor=extractor)

    return factory


@pytest.fixture
def log_dir(tmp_path):
    path = tmp_path / "logs"
    path.mkdir()
    return str(path)
