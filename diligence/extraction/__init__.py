"""Extraction module: findings schema, parsing, alerts, normalization"""
from .schema import StructuredFinding, CriticalAlert, BusinessImpact
from .normalizer import FindingNormalizer
from .alert_detector import AlertDetector
from .extractor import FindingExtractor

__all__ = ["StructuredFinding", "CriticalAlert", "BusinessImpact", "FindingNormalizer", "AlertDetector", "FindingExtractor"]
