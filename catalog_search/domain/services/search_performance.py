"""
Search performance tracking.

Keeps a bounded window of recent search executions (which backend answered
and how long it took) and summarizes it on demand: fallback and error rates,
per-source average/p95/max latency, and the most recent slow queries.
"""

import logging
import threading
from collections import deque
from datetime import datetime, timezone
from typing import Callable, Deque, Dict, List, Tuple

from ..value_objects import PerformanceConfig, SearchPerformanceStats, SlowQuery, SourceLatency

logger = logging.getLogger(__name__)

SOURCES = ("engine", "fallback", "unavailable")


def percentile(sorted_values: List[float], fraction: float) -> float:
    """Nearest-rank percentile of an ascending list (0.0 when empty)."""
    if not sorted_values:
        return 0.0
    index = min(int(len(sorted_values) * fraction), len(sorted_values) - 1)
    return sorted_values[index]


class SearchPerformanceTracker:
    """Thread-safe rolling window of search latencies."""

    def __init__(
        self,
        config: PerformanceConfig = PerformanceConfig(),
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._config = config
        self._clock = clock
        self._window: Deque[Tuple[str, float]] = deque(maxlen=config.window_size)
        self._slow: Deque[SlowQuery] = deque(maxlen=config.max_slow_queries)
        self._lock = threading.Lock()

    def record(self, source: str, latency_ms: float, query: str = "") -> None:
        """
        Record one execution.

        Args:
            source: 'engine', 'fallback' or 'unavailable'
            latency_ms: Wall time of the execution
            query: Query text, kept only when the execution was slow

        Raises:
            ValueError: If source is unknown or latency is negative
        """
        if source not in SOURCES:
            raise ValueError(f"Unknown search source '{source}'")
        if latency_ms < 0:
            raise ValueError(f"latency_ms must be >= 0, got {latency_ms}")

        with self._lock:
            self._window.append((source, latency_ms))
            if latency_ms >= self._config.slow_query_ms:
                self._slow.appendleft(
                    SlowQuery(query=query, source=source, latency_ms=latency_ms, recorded_at=self._clock())
                )

        if latency_ms >= self._config.slow_query_ms:
            logger.warning(f"Slow search ({latency_ms:.0f}ms, {source}) for '{query}'")

    def snapshot(self) -> SearchPerformanceStats:
        with self._lock:
            window = list(self._window)
            slow = tuple(self._slow)

        if not window:
            return SearchPerformanceStats(slow_queries=slow)

        latencies: Dict[str, List[float]] = {}
        for source, latency_ms in window:
            latencies.setdefault(source, []).append(latency_ms)

        by_source = []
        for source in SOURCES:
            values = sorted(latencies.get(source, []))
            if not values:
                continue
            by_source.append(
                SourceLatency(
                    source=source,
                    requests=len(values),
                    average_ms=sum(values) / len(values),
                    p95_ms=percentile(values, 0.95),
                    max_ms=values[-1],
                )
            )

        total = len(window)
        return SearchPerformanceStats(
            total_requests=total,
            fallback_rate=len(latencies.get("fallback", [])) / total,
            error_rate=len(latencies.get("unavailable", [])) / total,
            average_ms=sum(latency for _, latency in window) / total,
            by_source=tuple(by_source),
            slow_queries=slow,
        )

    def reset(self) -> None:
        with self._lock:
            self._window.clear()
            self._slow.clear()
