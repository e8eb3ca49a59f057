"""
Domain services package.

Services orchestrate domain logic that doesn't naturally belong to a single
entity. They coordinate between entities and ports to implement use cases.

Following Hexagonal Architecture principles, services depend only on domain
entities, value objects, and port protocols (never on concrete implementations).
"""

from .cache_layer import TieredCache, make_cache_key
from .experiments import ExperimentManager
from .index_admin_service import IndexAdminService
from .index_sync_queue import IndexSyncQueue
from .intelligent_search import IntelligentSearchService, RankedSearchPage
from .query_service import QueryExecutionService
from .ranking import rank
from .search_performance import SearchPerformanceTracker
from .suggestion_service import SuggestionService

__all__ = [
    "TieredCache",
    "make_cache_key",
    "ExperimentManager",
    "IndexAdminService",
    "IndexSyncQueue",
    "IntelligentSearchService",
    "RankedSearchPage",
    "QueryExecutionService",
    "rank",
    "SearchPerformanceTracker",
    "SuggestionService",
]
