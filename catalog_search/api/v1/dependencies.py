"""
FastAPI dependencies for dependency injection.

This module provides singleton instances of repositories and services
for use with FastAPI's Depends() system.

Note: We use module-level singletons instead of @lru_cache with Depends()
parameters, which is an antipattern that can cause unexpected behavior.
"""

import logging
import os
from pathlib import Path
from typing import Optional

from catalog_search.domain.ports import (
    AssetCatalogRepository,
    CacheBackend,
    FallbackSearchRepository,
    IndexEngine,
)
from catalog_search.domain.services import (
    ExperimentManager,
    IndexAdminService,
    IndexSyncQueue,
    IntelligentSearchService,
    QueryExecutionService,
    SearchPerformanceTracker,
    SuggestionService,
    TieredCache,
)
from catalog_search.domain.value_objects import PerformanceConfig, SyncQueueConfig
from catalog_search.infrastructure.cache import InMemoryCacheBackend, RedisCacheBackend
from catalog_search.infrastructure.db.sqlite_asset_catalog_repository import SqliteAssetCatalogRepository
from catalog_search.infrastructure.db.sqlite_fallback_search_repository import SqliteFallbackSearchRepository
from catalog_search.infrastructure.search import BM25IndexEngine, ElasticsearchIndexEngine

logger = logging.getLogger(__name__)

# Configuration from environment
DB_PATH = Path(os.getenv("CATALOG_DB_PATH", "data/catalog.db"))
INDEX_SNAPSHOT_PATH = Path(os.getenv("INDEX_SNAPSHOT_PATH", "data/indexes/asset_index.pkl"))
SEARCH_ENGINE_URL = os.getenv("SEARCH_ENGINE_URL")
SEARCH_INDEX_NAME = os.getenv("SEARCH_INDEX_NAME", "data-assets")
REDIS_URL = os.getenv("REDIS_URL")
SYNC_BATCH_SIZE = int(os.getenv("SYNC_BATCH_SIZE", "50"))
SYNC_TICK_SECONDS = float(os.getenv("SYNC_TICK_SECONDS", "5"))
SLOW_QUERY_MS = float(os.getenv("SLOW_QUERY_MS", "1000"))

# Module-level singletons (initialized lazily)
_catalog_repository: Optional[AssetCatalogRepository] = None
_fallback_repository: Optional[FallbackSearchRepository] = None
_index_engine: Optional[IndexEngine] = None
_cache: Optional[TieredCache] = None
_sync_queue: Optional[IndexSyncQueue] = None
_performance_tracker: Optional[SearchPerformanceTracker] = None
_query_service: Optional[QueryExecutionService] = None
_suggestion_service: Optional[SuggestionService] = None
_experiment_manager: Optional[ExperimentManager] = None
_intelligent_search_service: Optional[IntelligentSearchService] = None
_admin_service: Optional[IndexAdminService] = None


def get_catalog_repository() -> AssetCatalogRepository:
    """Provide a singleton instance of the asset catalog repository."""
    global _catalog_repository
    if _catalog_repository is None:
        _catalog_repository = SqliteAssetCatalogRepository(DB_PATH)
    return _catalog_repository


def get_fallback_repository() -> FallbackSearchRepository:
    """Provide a singleton instance of the relational fallback search."""
    global _fallback_repository
    if _fallback_repository is None:
        # The catalog repository owns schema creation
        get_catalog_repository()
        _fallback_repository = SqliteFallbackSearchRepository(DB_PATH)
    return _fallback_repository


def get_index_engine() -> IndexEngine:
    """
    Provide the index engine.

    Elasticsearch when SEARCH_ENGINE_URL is set, otherwise the in-process
    BM25 engine loaded from its snapshot if one exists.
    """
    global _index_engine
    if _index_engine is None:
        if SEARCH_ENGINE_URL:
            _index_engine = ElasticsearchIndexEngine(SEARCH_ENGINE_URL, index_name=SEARCH_INDEX_NAME)
        else:
            engine = BM25IndexEngine()
            if INDEX_SNAPSHOT_PATH.exists():
                engine.load_snapshot(str(INDEX_SNAPSHOT_PATH))
            engine.initialize()
            _index_engine = engine
    return _index_engine


def get_cache() -> TieredCache:
    """Provide the tiered cache (Redis when REDIS_URL is set, in-memory otherwise)."""
    global _cache
    if _cache is None:
        backend: CacheBackend
        if REDIS_URL:
            backend = RedisCacheBackend.from_url(REDIS_URL)
        else:
            backend = InMemoryCacheBackend()
        _cache = TieredCache(backend)
    return _cache


def get_sync_queue() -> IndexSyncQueue:
    """Provide the index synchronization queue (the worker is started by the app lifespan)."""
    global _sync_queue
    if _sync_queue is None:
        _sync_queue = IndexSyncQueue(
            catalog=get_catalog_repository(),
            engine=get_index_engine(),
            cache=get_cache(),
            config=SyncQueueConfig(batch_size=SYNC_BATCH_SIZE, tick_interval_s=SYNC_TICK_SECONDS),
        )
    return _sync_queue


def get_performance_tracker() -> SearchPerformanceTracker:
    """Provide the process-wide search performance tracker."""
    global _performance_tracker
    if _performance_tracker is None:
        _performance_tracker = SearchPerformanceTracker(PerformanceConfig(slow_query_ms=SLOW_QUERY_MS))
    return _performance_tracker


def get_query_service() -> QueryExecutionService:
    """Provide the Query Execution Service with all dependencies wired."""
    global _query_service
    if _query_service is None:
        _query_service = QueryExecutionService(
            engine=get_index_engine(),
            fallback=get_fallback_repository(),
            cache=get_cache(),
            performance=get_performance_tracker(),
        )
    return _query_service


def get_suggestion_service() -> SuggestionService:
    global _suggestion_service
    if _suggestion_service is None:
        _suggestion_service = SuggestionService(
            engine=get_index_engine(),
            fallback=get_fallback_repository(),
            cache=get_cache(),
        )
    return _suggestion_service


def get_experiment_manager() -> ExperimentManager:
    global _experiment_manager
    if _experiment_manager is None:
        _experiment_manager = ExperimentManager()
    return _experiment_manager


def get_intelligent_search_service() -> IntelligentSearchService:
    global _intelligent_search_service
    if _intelligent_search_service is None:
        _intelligent_search_service = IntelligentSearchService(
            query_service=get_query_service(),
            experiments=get_experiment_manager(),
        )
    return _intelligent_search_service


def get_admin_service() -> IndexAdminService:
    global _admin_service
    if _admin_service is None:
        _admin_service = IndexAdminService(
            engine=get_index_engine(),
            queue=get_sync_queue(),
            catalog=get_catalog_repository(),
            performance=get_performance_tracker(),
        )
    return _admin_service


def reset_dependencies() -> None:
    """
    Reset all singletons. Useful for testing.

    Stops the sync worker and the service thread pools before dropping them.
    """
    global _catalog_repository, _fallback_repository, _index_engine, _cache
    global _sync_queue, _performance_tracker, _query_service, _suggestion_service
    global _experiment_manager, _intelligent_search_service, _admin_service

    if _sync_queue is not None and _sync_queue.is_running():
        _sync_queue.stop()
    if _query_service is not None:
        _query_service.close()
    if _suggestion_service is not None:
        _suggestion_service.close()

    _catalog_repository = None
    _fallback_repository = None
    _index_engine = None
    _cache = None
    _sync_queue = None
    _performance_tracker = None
    _query_service = None
    _suggestion_service = None
    _experiment_manager = None
    _intelligent_search_service = None
    _admin_service = None
