"""Due-diligence research orchestration and risk consolidation engine."""

__version__ = "1.0.0"
