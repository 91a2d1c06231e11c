"""Search module: query building and research collection"""
from .query_builder import QueryBuilder, ResearchQuery, EntityResearchContext, extract_entity_context
from .collector import ResearchCollector, CollectedResearch

__all__ = [
    "QueryBuilder",
    "ResearchQuery",
    "EntityResearchContext",
    "extract_entity_context",
    "ResearchCollector",
    "CollectedResearch",
]
