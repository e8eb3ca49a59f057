"""
Query execution service.

Translates search requests into boosted structured queries, runs them
against the index engine under a timeout, and falls back to the relational
store when the engine is slow or failing (RNF graceful degradation). Results
from the engine are cached per tier; degraded results never are, so the next
request retries the engine.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout
from typing import Any, Callable, Dict, Optional

from ..errors import EngineTimeoutError, ServiceUnavailableError
from ..ports import FallbackSearchRepository, IndexEngine
from ..value_objects import (
    CacheTier,
    EngineResult,
    QueryConfig,
    SearchFilters,
    SearchPage,
    SearchRequest,
    SearchSort,
    StructuredQuery,
)
from .cache_layer import TieredCache
from .search_performance import SearchPerformanceTracker

logger = logging.getLogger(__name__)


class QueryExecutionService:
    """
    Executes searches with engine-first, fallback-second semantics.

    The engine call runs on a worker thread so a hung engine cannot hold the
    request past its timeout; the abandoned call is left to finish on its own.
    Fallback calls run on a separate pool: abandoned engine calls may occupy
    every engine worker, and the fallback must still get a thread.
    """

    def __init__(
        self,
        engine: IndexEngine,
        fallback: FallbackSearchRepository,
        cache: TieredCache,
        config: QueryConfig = QueryConfig(),
        executor: Optional[ThreadPoolExecutor] = None,
        fallback_executor: Optional[ThreadPoolExecutor] = None,
        performance: Optional[SearchPerformanceTracker] = None,
    ) -> None:
        self._engine = engine
        self._fallback = fallback
        self._cache = cache
        self._config = config
        self._performance = performance
        self._owned_executors = []
        if executor is None:
            executor = ThreadPoolExecutor(
                max_workers=config.max_workers, thread_name_prefix="search-exec"
            )
            self._owned_executors.append(executor)
        if fallback_executor is None:
            fallback_executor = ThreadPoolExecutor(
                max_workers=config.max_workers, thread_name_prefix="search-fallback"
            )
            self._owned_executors.append(fallback_executor)
        self._executor = executor
        self._fallback_executor = fallback_executor

    # ------------------------------------------------------------------
    # Query building
    # ------------------------------------------------------------------

    def build_query(self, request: SearchRequest) -> StructuredQuery:
        """
        Translate a search request into a structured engine query.

        Free text is matched against name^3, description^2, secondaryText^2
        and searchText with automatic fuzziness.
        """
        return StructuredQuery(
            text=request.query,
            field_boosts=self._config.field_boosts,
            filters=request.filters,
            fuzziness="AUTO",
            sort=request.sort,
            offset=request.offset,
            limit=request.page_size,
        )

    def build_live_query(self, text: str, size: int) -> StructuredQuery:
        """Structured query for as-you-type search: active assets only, one edit of fuzziness."""
        return StructuredQuery(
            text=text,
            field_boosts=self._config.live_field_boosts,
            filters=SearchFilters(statuses=(self._config.live_search_status,)),
            fuzziness=1,
            sort=SearchSort.RELEVANCE,
            offset=0,
            limit=size,
        )

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def search(self, request: SearchRequest) -> SearchPage:
        """
        Execute a paginated search.

        Args:
            request: Query text, filters, page and sort

        Returns:
            SearchPage with the same shape whether served by the engine or
            the fallback. Pages past the last match are empty.

        Raises:
            ServiceUnavailableError: If both the engine and the fallback fail
        """
        structured = self.build_query(request)
        params = {
            "op": "search",
            "query": request.query,
            "filters": request.filters.to_dict(),
            "page": request.page,
            "page_size": request.page_size,
            "sort": request.sort.value,
        }
        return self._cache.get_or_compute(
            CacheTier.SEARCH,
            params,
            lambda: self._execute(
                structured,
                page=request.page,
                page_size=request.page_size,
                timeout_s=self._config.search_timeout_s,
            ),
            cache_if=lambda page: page.source == "engine",
        )

    def live_search(self, text: str, size: int = 5) -> SearchPage:
        """
        As-you-type search over active assets with a tight timeout.

        Raises:
            ValueError: If size is outside 1-20
            ServiceUnavailableError: If both the engine and the fallback fail
        """
        if not (1 <= size <= 20):
            raise ValueError(f"size must be between 1 and 20, got {size}")

        structured = self.build_live_query(text, size)
        params = {"op": "live", "query": text, "size": size}
        return self._cache.get_or_compute(
            CacheTier.LIVE,
            params,
            lambda: self._execute(
                structured, page=1, page_size=size, timeout_s=self._config.live_timeout_s
            ),
            cache_if=lambda page: page.source == "engine",
        )

    def is_engine_healthy(self) -> bool:
        return self._engine.is_healthy()

    def close(self) -> None:
        """Release the worker threads (only the pools this service created)."""
        for executor in self._owned_executors:
            executor.shutdown(wait=False, cancel_futures=True)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _execute(
        self,
        structured: StructuredQuery,
        *,
        page: int,
        page_size: int,
        timeout_s: float,
    ) -> SearchPage:
        start_time = time.monotonic()

        try:
            result = self._call_with_timeout(
                self._executor, self._engine.query, structured, timeout_s
            )
        except Exception as engine_error:
            reason = self._describe_failure("Index engine", engine_error)
            logger.warning(f"{reason}; falling back to relational search for '{structured.text}'")
            try:
                result = self._call_with_timeout(
                    self._fallback_executor,
                    self._fallback.search,
                    structured,
                    self._config.fallback_timeout_s,
                )
            except Exception as fallback_error:
                logger.error(
                    f"Relational fallback also failed for '{structured.text}': {fallback_error}"
                )
                self._record("unavailable", structured, start_time)
                raise ServiceUnavailableError(
                    "Search is unavailable: index engine and relational fallback both failed"
                ) from fallback_error

            page_result = self._to_page(
                result,
                page=page,
                page_size=page_size,
                source="fallback",
                degradation_reason=reason,
                start_time=start_time,
            )
        else:
            page_result = self._to_page(
                result, page=page, page_size=page_size, source="engine", start_time=start_time
            )

        self._record(page_result.source, structured, start_time, page_result.latency_ms)
        return page_result

    def _record(
        self,
        source: str,
        structured: StructuredQuery,
        start_time: float,
        latency_ms: Optional[float] = None,
    ) -> None:
        if self._performance is None:
            return
        if latency_ms is None:
            latency_ms = (time.monotonic() - start_time) * 1000
        self._performance.record(source, latency_ms, query=structured.text)

    @staticmethod
    def _call_with_timeout(
        executor: ThreadPoolExecutor,
        fn: Callable[[StructuredQuery], EngineResult],
        structured: StructuredQuery,
        timeout_s: float,
    ) -> EngineResult:
        future = executor.submit(fn, structured)
        try:
            return future.result(timeout=timeout_s)
        except FuturesTimeout as e:
            future.cancel()
            raise EngineTimeoutError(f"no answer within {timeout_s:.3f}s") from e

    @staticmethod
    def _describe_failure(backend: str, error: Exception) -> str:
        if isinstance(error, EngineTimeoutError):
            return f"{backend} timed out ({error})"
        return f"{backend} failed ({error})"

    @staticmethod
    def _to_page(
        result: EngineResult,
        *,
        page: int,
        page_size: int,
        source: str,
        start_time: float,
        degradation_reason: Optional[str] = None,
    ) -> SearchPage:
        latency_ms = (time.monotonic() - start_time) * 1000
        return SearchPage(
            items=tuple(result.hits[:page_size]),
            total=result.total,
            page=page,
            page_size=page_size,
            source=source,
            degraded=source == "fallback",
            degradation_reason=degradation_reason,
            latency_ms=latency_ms,
        )


def page_to_dict(page: SearchPage) -> Dict[str, Any]:
    """Compact summary of a page, handy for logs and scripts."""
    return {
        "total": page.total,
        "page": page.page,
        "page_size": page.page_size,
        "total_pages": page.total_pages,
        "source": page.source,
        "ids": [hit.document.id for hit in page.items],
    }
