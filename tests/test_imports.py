"""
Test that all imports work correctly.

This verifies the module structure is correct.
"""

import importlib

import pytest

MODULES = [
    "config.settings",
    "config.logging_config",
    "diligence.database.models",
    "diligence.database.connection",
    "diligence.database.repository",
    "diligence.core.exceptions",
    "diligence.core.error_handler",
    "diligence.core.retry",
    "diligence.core.audit",
    "diligence.core.state_manager",
    "diligence.core.pipeline",
    "diligence.core.state_machine",
    "diligence.core.workflow",
    "diligence.models.base_client",
    "diligence.models.research_client",
    "diligence.models.claude_client",
    "diligence.search.query_builder",
    "diligence.search.collector",
    "diligence.extraction.schema",
    "diligence.extraction.amounts",
    "diligence.extraction.normalizer",
    "diligence.extraction.parsing",
    "diligence.extraction.alert_detector",
    "diligence.extraction.quality",
    "diligence.extraction.extractor",
    "diligence.analysis.risk_scorer",
    "diligence.analysis.consolidator",
    "diligence.analysis.comparison",
    "diligence.reporting.templates",
    "diligence.reporting.assembler",
    "diligence.reporting.outbox",
]


@pytest.mark.parametrize("module", MODULES)
def test_module_imports(module):
    assert importlib.import_module(module) is not None


def test_settings_loaded():
    from config.settings import settings

    assert settings.MAX_ALERTS == 10
    assert settings.DATABASE_URL
    assert settings.get_model_costs()["claude"]["input_per_1k"] == settings.CLAUDE_INPUT_COST_PER_1M / 1000
    assert set(settings.get_all_api_keys_masked()) <= set(settings.API_KEY_FIELDS)
