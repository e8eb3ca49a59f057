"""
Operator-facing index administration.

Thin orchestration over the index engine and the synchronization queue:
index lifecycle (initialize, refresh, optimize), statistics, queue
inspection, resynchronization requests and search performance.
"""

import logging
from typing import Dict, List, Optional, Sequence

from ..entities import DeadLetterRecord
from ..ports import AssetCatalogRepository, IndexEngine
from ..value_objects import IndexStats, QueueMetrics, QueueStatus, SearchPerformanceStats
from .index_sync_queue import IndexSyncQueue
from .search_performance import SearchPerformanceTracker

logger = logging.getLogger(__name__)


class IndexAdminService:
    def __init__(
        self,
        engine: IndexEngine,
        queue: IndexSyncQueue,
        catalog: AssetCatalogRepository,
        performance: Optional[SearchPerformanceTracker] = None,
    ) -> None:
        self._engine = engine
        self._queue = queue
        self._catalog = catalog
        self._performance = performance

    def initialize_index(self) -> IndexStats:
        """Create the index if needed and return its stats."""
        self._engine.initialize()
        logger.info("Search index initialized")
        return self._engine.stats()

    def refresh_index(self) -> None:
        self._engine.refresh()

    def optimize_index(self) -> None:
        self._engine.optimize()
        logger.info("Search index optimized")

    def get_index_stats(self) -> IndexStats:
        return self._engine.stats()

    def get_queue_status(self) -> QueueStatus:
        return self._queue.status()

    def get_queue_metrics(self) -> QueueMetrics:
        return self._queue.metrics()

    def search_performance(self) -> SearchPerformanceStats:
        """Rolling search latency and degradation figures (empty when not tracked)."""
        if self._performance is None:
            return SearchPerformanceStats()
        return self._performance.snapshot()

    def dead_letters(self) -> List[DeadLetterRecord]:
        return self._queue.dead_letters()

    def resync(
        self,
        asset_ids: Optional[Sequence[str]] = None,
        full_sync: bool = False,
        priority: Optional[int] = None,
    ) -> List[str]:
        """
        Queue re-indexing of the given assets (or of the whole catalog).

        Returns:
            Ids of the queued sync tasks
        """
        return self._queue.schedule_bulk(asset_ids=asset_ids, full_sync=full_sync, priority=priority)

    def health(self) -> Dict[str, object]:
        """
        Component health summary.

        The service is 'ok' when the engine answers, 'degraded' otherwise
        (searches still run on the relational fallback).
        """
        engine_ok = self._engine.is_healthy()
        status = self._queue.status()
        health: Dict[str, object] = {
            "status": "ok" if engine_ok else "degraded",
            "index_engine": engine_ok,
            "sync_worker": self._queue.is_running(),
            "queue_length": status.queue_length,
            "dead_letters": status.dead_letters,
            "catalog_assets": self._catalog.count(),
        }
        if self._performance is not None:
            health["search"] = self._performance.snapshot().to_dict()
        return health
