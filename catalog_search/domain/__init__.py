"""
Domain layer - Core business logic and entities.

This layer contains the business entities, value objects, and defines
the ports (interfaces) that the infrastructure layer must implement.

It has NO dependencies on web frameworks, databases, or search engines.
"""

from .entities import Asset, IndexDocument, SearchHit, RankedHit, SyncTask
from .value_objects import SearchFilters, SearchRequest, SearchPage, RankingWeights

__all__ = [
    # Entities
    "Asset",
    "IndexDocument",
    "SearchHit",
    "RankedHit",
    "SyncTask",
    # Value Objects
    "SearchFilters",
    "SearchRequest",
    "SearchPage",
    "RankingWeights",
]
