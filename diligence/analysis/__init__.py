"""Analysis module: risk scoring, consolidation, iteration comparison"""
from .risk_scorer import RiskScorer, RiskScore, CreditRecommendation
from .consolidator import Consolidator, ConsolidatedFindings, JobSnapshot
from .comparison import compare_iterations

__all__ = [
    "RiskScorer",
    "RiskScore",
    "CreditRecommendation",
    "Consolidator",
    "ConsolidatedFindings",
    "JobSnapshot",
    "compare_iterations",
]
