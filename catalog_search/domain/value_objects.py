"""
Value objects for the domain layer.

Value objects are immutable objects that represent descriptive aspects
of the domain with no conceptual identity: query descriptions, result pages,
ranking weights, and the configuration of each service.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union


WEIGHT_SUM_TOLERANCE = 0.001
MAX_PAGE_SIZE = 100


class SearchSort(str, Enum):
    """Orderings supported by both the index engine and the relational fallback."""

    RELEVANCE = "relevance"
    NAME = "name"
    CREATED_AT = "created_at"
    QUALITY_SCORE = "quality_score"


class RankingSort(str, Enum):
    """Orderings applied by the ranking pipeline after scoring."""

    RELEVANCE = "relevance"
    PERSONALIZED = "personalized"
    POPULARITY = "popularity"
    RECENCY = "recency"
    QUALITY = "quality"
    CREATED = "created"


class CacheTier(str, Enum):
    """Cache namespaces, each with its own time-to-live."""

    LIVE = "live"
    SEARCH = "search"
    SUGGESTION = "suggestion"
    POPULAR = "popular"


DEFAULT_TIER_TTLS: Dict[CacheTier, int] = {
    CacheTier.LIVE: 30,
    CacheTier.SEARCH: 300,
    CacheTier.SUGGESTION: 1800,
    CacheTier.POPULAR: 3600,
}


@dataclass(frozen=True)
class SearchFilters:
    """
    Structured filters applied to a search.

    Groups are combined with AND; values inside a group are combined with OR.
    An empty group means "no restriction". When a quality range is given,
    documents without a quality score are excluded.
    """

    statuses: Tuple[str, ...] = ()
    """Accepted status values (e.g. 'active', 'deprecated')"""

    types: Tuple[str, ...] = ()
    """Accepted asset types (e.g. 'table', 'dashboard')"""

    category_id: Optional[str] = None
    """Exact category identifier"""

    quality_score_min: Optional[float] = None
    """Minimum quality score (inclusive, 0-10)"""

    quality_score_max: Optional[float] = None
    """Maximum quality score (inclusive, 0-10)"""

    def __post_init__(self) -> None:
        """Validate filter constraints."""
        for name in ("quality_score_min", "quality_score_max"):
            value = getattr(self, name)
            if value is not None and not (0.0 <= value <= 10.0):
                raise ValueError(f"{name} must be between 0 and 10, got {value}")

        if self.quality_score_min is not None and self.quality_score_max is not None:
            if self.quality_score_min > self.quality_score_max:
                raise ValueError(
                    f"quality_score_min ({self.quality_score_min}) cannot be greater than "
                    f"quality_score_max ({self.quality_score_max})"
                )

    def is_empty(self) -> bool:
        """Check if no filters are set."""
        return (
            not self.statuses
            and not self.types
            and self.category_id is None
            and self.quality_score_min is None
            and self.quality_score_max is None
        )

    def has_quality_range(self) -> bool:
        return self.quality_score_min is not None or self.quality_score_max is not None

    def matches(self, document: Any) -> bool:
        """
        Check whether an index document satisfies every filter group.

        Args:
            document: Anything exposing status, type, category_id and quality_score

        Returns:
            True if the document passes all non-empty filter groups
        """
        if self.statuses and document.status not in self.statuses:
            return False

        if self.types and document.type not in self.types:
            return False

        if self.category_id is not None and document.category_id != self.category_id:
            return False

        if self.has_quality_range():
            score = document.quality_score
            if score is None:
                return False
            if self.quality_score_min is not None and score < self.quality_score_min:
                return False
            if self.quality_score_max is not None and score > self.quality_score_max:
                return False

        return True

    def to_dict(self) -> Dict[str, Any]:
        """Plain representation, used for cache keys and engine requests."""
        return {
            "statuses": sorted(self.statuses),
            "types": sorted(self.types),
            "category_id": self.category_id,
            "quality_score_min": self.quality_score_min,
            "quality_score_max": self.quality_score_max,
        }


@dataclass(frozen=True)
class SearchRequest:
    """
    A paginated full-text search as issued by a caller.

    Empty query text is rejected at the HTTP boundary; the domain accepts it
    and simply finds nothing.
    """

    query: str
    """Free-text query"""

    filters: SearchFilters = field(default_factory=SearchFilters)
    """Structured filters"""

    page: int = 1
    """1-based page number"""

    page_size: int = 20
    """Number of items per page (1-100)"""

    sort: SearchSort = SearchSort.RELEVANCE
    """Result ordering"""

    def __post_init__(self) -> None:
        """Validate pagination constraints."""
        if self.page < 1:
            raise ValueError(f"page must be >= 1, got {self.page}")

        if self.page_size < 1:
            raise ValueError(f"page_size must be >= 1, got {self.page_size}")

        if self.page_size > MAX_PAGE_SIZE:
            raise ValueError(f"page_size cannot exceed {MAX_PAGE_SIZE}, got {self.page_size}")

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size


@dataclass(frozen=True)
class StructuredQuery:
    """
    Engine-neutral description of a boosted, filtered, paginated query.

    Both the index engine adapters and the relational fallback consume this
    object, which keeps their filter and pagination semantics aligned.
    """

    text: str
    """Free-text part of the query"""

    field_boosts: Tuple[Tuple[str, float], ...]
    """(index field, boost) pairs used for free-text matching"""

    filters: SearchFilters = field(default_factory=SearchFilters)
    """Structured filters"""

    fuzziness: Union[str, int] = "AUTO"
    """'AUTO' (edit distance derived from term length) or a fixed edit count (0-2)"""

    sort: SearchSort = SearchSort.RELEVANCE
    """Result ordering"""

    offset: int = 0
    """Number of matches to skip"""

    limit: int = 20
    """Maximum number of hits to return"""

    def __post_init__(self) -> None:
        """Validate query constraints."""
        if not self.field_boosts:
            raise ValueError("field_boosts cannot be empty")

        if self.fuzziness != "AUTO" and self.fuzziness not in (0, 1, 2):
            raise ValueError(f"fuzziness must be 'AUTO' or 0-2, got {self.fuzziness!r}")

        if self.offset < 0:
            raise ValueError(f"offset cannot be negative, got {self.offset}")

        if self.limit < 1:
            raise ValueError(f"limit must be >= 1, got {self.limit}")

    def max_edits(self, term: str) -> int:
        """Number of edits allowed when fuzzily matching ``term``."""
        if self.fuzziness != "AUTO":
            return int(self.fuzziness)
        if len(term) < 3:
            return 0
        if len(term) <= 5:
            return 1
        return 2


@dataclass(frozen=True)
class EngineResult:
    """Raw result of a single engine or fallback query."""

    hits: tuple
    """Tuple of SearchHit entities for the requested window"""

    total: int
    """Number of matching documents before pagination"""

    def __post_init__(self) -> None:
        if self.total < 0:
            raise ValueError(f"total cannot be negative, got {self.total}")


@dataclass(frozen=True)
class SearchPage:
    """
    One page of search results together with degradation metadata.

    The page has the same shape whether it was served by the index engine
    or by the relational fallback; ``source`` and ``degraded`` only report it.
    """

    items: tuple
    """Tuple of SearchHit entities"""

    total: int
    """Number of matching documents"""

    page: int
    """1-based page number"""

    page_size: int
    """Requested page size"""

    source: str = "engine"
    """Which backend served the page: 'engine' or 'fallback'"""

    degraded: bool = False
    """True if the fallback served this page"""

    degradation_reason: Optional[str] = None
    """Human-readable explanation of why degradation occurred"""

    latency_ms: Optional[float] = None
    """Execution time in milliseconds"""

    def __post_init__(self) -> None:
        """Validate page constraints."""
        if self.source not in {"engine", "fallback"}:
            raise ValueError(f"source must be 'engine' or 'fallback', got '{self.source}'")

        if self.degraded and self.degradation_reason is None:
            raise ValueError("degradation_reason is required when degraded=True")

        if self.total < 0:
            raise ValueError(f"total cannot be negative, got {self.total}")

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.page_size) if self.page_size else 0


@dataclass(frozen=True)
class RankingWeights:
    """
    Weights of the four ranking signals.

    Each weight lies in [0, 1] and the four must sum to 1 (within 0.001).
    A weight set belongs either to a user's defaults or to an experiment variant.
    """

    relevance: float
    popularity: float
    recency: float
    personalization: float

    name: str = "default"
    """Label for this weight set"""

    version: int = 1
    """Revision of this weight set"""

    def __post_init__(self) -> None:
        """Validate weight constraints."""
        for signal, value in self.as_dict().items():
            if not (0.0 <= value <= 1.0):
                raise ValueError(f"{signal} weight must be between 0 and 1, got {value}")

        total = sum(self.as_dict().values())
        if abs(total - 1.0) > WEIGHT_SUM_TOLERANCE:
            raise ValueError(f"ranking weights must sum to 1.0, got {total:.4f}")

        if self.version < 1:
            raise ValueError(f"version must be >= 1, got {self.version}")

    def as_dict(self) -> Dict[str, float]:
        return {
            "relevance": self.relevance,
            "popularity": self.popularity,
            "recency": self.recency,
            "personalization": self.personalization,
        }

    @staticmethod
    def normalized(
        relevance: float,
        popularity: float,
        recency: float,
        personalization: float,
        name: str = "custom",
    ) -> "RankingWeights":
        """
        Build a weight set from arbitrary non-negative values scaled to sum to 1.

        Raises:
            ValueError: If any value is negative or all values are zero
        """
        values = [relevance, popularity, recency, personalization]
        if any(v < 0 for v in values):
            raise ValueError("ranking weights cannot be negative")
        total = sum(values)
        if total <= 0:
            raise ValueError("at least one ranking weight must be positive")
        r, p, c, s = (v / total for v in values)
        # Absorb float drift into the last weight
        s = max(0.0, 1.0 - r - p - c)
        return RankingWeights(relevance=r, popularity=p, recency=c, personalization=s, name=name)


DEFAULT_RANKING_WEIGHTS = RankingWeights(
    relevance=0.4, popularity=0.3, recency=0.2, personalization=0.1, name="default"
)


@dataclass(frozen=True)
class PersonalizationContext:
    """
    What we know about the searching user's interests.

    Counts are raw interaction counts per category id and per tag; the ranking
    pipeline normalizes them against the user's own maximum.
    """

    user_id: Optional[str] = None
    category_interactions: Dict[str, int] = field(default_factory=dict)
    tag_interactions: Dict[str, int] = field(default_factory=dict)

    def is_empty(self) -> bool:
        return not self.category_interactions and not self.tag_interactions


@dataclass(frozen=True)
class SignalScores:
    """Normalized ranking signals and the weighted final score, all in [0, 1]."""

    relevance: float
    popularity: float
    recency: float
    personalization: float
    final: float


@dataclass(frozen=True)
class Suggestion:
    """A completion candidate for a partial query."""

    text: str
    """Suggested completion"""

    type: str
    """Where it came from: asset_name, category, tag, database, schema or table"""

    score: float
    """Tier score: exact 100, prefix 80-100, substring 60, fuzzy up to 40"""

    count: int = 1
    """Number of assets carrying this value"""


@dataclass(frozen=True)
class QueueStatus:
    """Snapshot of the index synchronization queue."""

    ready: int
    """Tasks eligible to run now"""

    delayed: int
    """Tasks waiting for their retry delay to elapse"""

    processing: bool
    """True while a batch is being processed"""

    dead_letters: int
    """Tasks that exhausted their retries"""

    upcoming: tuple = ()
    """Next tasks in processing order (SyncTask entities, at most 10)"""

    @property
    def queue_length(self) -> int:
        return self.ready + self.delayed


@dataclass(frozen=True)
class QueueMetrics:
    """Cumulative processing counters of the synchronization queue."""

    total_batches: int = 0
    total_tasks: int = 0
    succeeded: int = 0
    retried: int = 0
    dead_lettered: int = 0
    deduplicated: int = 0
    total_processing_ms: float = 0.0
    max_queue_length: int = 0

    @property
    def average_batch_ms(self) -> float:
        return self.total_processing_ms / self.total_batches if self.total_batches else 0.0


@dataclass(frozen=True)
class IndexStats:
    """Health and size information reported by an index engine."""

    exists: bool
    document_count: int
    size_bytes: int = 0
    health: str = "green"
    """'green', 'yellow' or 'red'"""


@dataclass(frozen=True)
class SourceLatency:
    """Latency figures of the searches one backend answered."""

    source: str
    """'engine', 'fallback' or 'unavailable' (both backends failed)"""

    requests: int
    average_ms: float
    p95_ms: float
    max_ms: float


@dataclass(frozen=True)
class SlowQuery:
    query: str
    source: str
    latency_ms: float
    recorded_at: datetime


@dataclass(frozen=True)
class SearchPerformanceStats:
    """
    Rolling search performance over the most recent executions.

    Cache hits are not executions and are not counted.
    """

    total_requests: int = 0
    fallback_rate: float = 0.0
    """Share of requests (0-1) answered by the relational fallback"""

    error_rate: float = 0.0
    """Share of requests (0-1) where both backends failed"""

    average_ms: float = 0.0
    by_source: Tuple[SourceLatency, ...] = ()
    slow_queries: Tuple[SlowQuery, ...] = ()
    """Most recent queries over the slow threshold, newest first"""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_requests": self.total_requests,
            "fallback_rate": round(self.fallback_rate, 4),
            "error_rate": round(self.error_rate, 4),
            "average_ms": round(self.average_ms, 2),
            "slow_queries": len(self.slow_queries),
        }


@dataclass(frozen=True)
class OutcomeMetrics:
    """Raw per-session measurements recorded for an experiment participant."""

    satisfaction: Optional[float] = None
    """Self-reported satisfaction, 1-5"""

    click_through_rate: Optional[float] = None
    """Clicked results / shown results, 0-1"""

    response_time_ms: Optional[float] = None
    """Observed search latency"""

    converted: bool = False
    """Whether the session ended in a successful outcome"""

    def __post_init__(self) -> None:
        """Validate metric ranges."""
        if self.satisfaction is not None and not (1.0 <= self.satisfaction <= 5.0):
            raise ValueError(f"satisfaction must be between 1 and 5, got {self.satisfaction}")

        if self.click_through_rate is not None and not (0.0 <= self.click_through_rate <= 1.0):
            raise ValueError(
                f"click_through_rate must be between 0 and 1, got {self.click_through_rate}"
            )

        if self.response_time_ms is not None and self.response_time_ms < 0:
            raise ValueError(f"response_time_ms cannot be negative, got {self.response_time_ms}")


@dataclass(frozen=True)
class VariantStats:
    """Aggregated outcomes of one experiment variant."""

    variant: str
    participants: int
    sessions: int
    conversions: int
    conversion_rate: float
    mean_satisfaction: Optional[float] = None
    mean_click_through_rate: Optional[float] = None
    mean_response_time_ms: Optional[float] = None


@dataclass(frozen=True)
class VariantComparison:
    """Significance of one variant's difference from the control variant."""

    variant: str
    metric: str
    control_mean: float
    variant_mean: float
    relative_change: float
    p_value: float
    significant: bool


@dataclass(frozen=True)
class ExperimentReport:
    """Experiment analysis, always computed from the raw outcome records."""

    experiment_id: str
    status: str
    variants: tuple
    """Tuple of VariantStats, control first"""

    comparisons: tuple = ()
    """Tuple of VariantComparison against the control"""

    winner: Optional[str] = None
    """Variant with a significant improvement, if any"""

    recommendation: str = "continue"
    """'rollout', 'rollback', 'continue' or 'redesign'"""


# =============================================================================
# Service configuration
# =============================================================================


SEARCH_FIELD_BOOSTS: Tuple[Tuple[str, float], ...] = (
    ("name", 3.0),
    ("description", 2.0),
    ("secondaryText", 2.0),
    ("searchText", 1.0),
)

LIVE_SEARCH_FIELD_BOOSTS: Tuple[Tuple[str, float], ...] = (
    ("name", 4.0),
    ("description", 2.0),
    ("searchText", 1.0),
)

HIGHLIGHT_FIELDS: Tuple[str, ...] = ("name", "description")
"""Document fields returned with matched terms wrapped in highlight tags"""

HIGHLIGHT_PRE_TAG = "<mark>"
HIGHLIGHT_POST_TAG = "</mark>"


@dataclass(frozen=True)
class QueryConfig:
    """Timeouts and boosts of the query execution service."""

    search_timeout_s: float = 2.0
    live_timeout_s: float = 0.2
    fallback_timeout_s: float = 3.0
    live_search_status: str = "active"
    max_workers: int = 8
    field_boosts: Tuple[Tuple[str, float], ...] = SEARCH_FIELD_BOOSTS
    live_field_boosts: Tuple[Tuple[str, float], ...] = LIVE_SEARCH_FIELD_BOOSTS

    def __post_init__(self) -> None:
        for name in ("search_timeout_s", "live_timeout_s", "fallback_timeout_s"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)}")


@dataclass(frozen=True)
class SyncQueueConfig:
    """Batching, deduplication and retry policy of the synchronization queue."""

    batch_size: int = 50
    tick_interval_s: float = 5.0
    dedup_window_s: float = 300.0
    retry_base: float = 2.0
    max_attempts: int = 4
    bulk_max_attempts: int = 3
    default_priority: int = 5
    delete_priority: int = 8
    status_preview_size: int = 10

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {self.batch_size}")
        if self.retry_base < 1:
            raise ValueError(f"retry_base must be >= 1, got {self.retry_base}")
        if self.max_attempts < 1 or self.bulk_max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.tick_interval_s <= 0:
            raise ValueError(f"tick_interval_s must be positive, got {self.tick_interval_s}")


@dataclass(frozen=True)
class RankingConfig:
    """Normalization constants of the ranking signals."""

    relevance_ceiling: float = 50.0
    """Raw engine score that maps to relevance 1.0 (log scale)"""

    popularity_ceiling: float = 1000.0
    """Interaction count that maps to popularity 1.0 (log scale)"""

    recency_half_life_days: float = 30.0
    """Age at which the recency signal halves"""

    neutral_personalization: float = 0.5
    """Personalization signal when nothing is known about the user"""

    category_affinity_weight: float = 0.6
    tag_affinity_weight: float = 0.4


@dataclass(frozen=True)
class SuggestionConfig:
    """Scoring thresholds and timeout of the suggestion service."""

    engine_timeout_s: float = 0.5
    fallback_timeout_s: float = 2.0
    min_fuzzy_similarity: float = 0.5
    max_size: int = 20
    terms_per_field: int = 1000


@dataclass(frozen=True)
class PerformanceConfig:
    """Window and alert threshold of the search performance tracker."""

    window_size: int = 1000
    """Number of most recent executions the statistics cover"""

    slow_query_ms: float = 1000.0
    max_slow_queries: int = 20

    def __post_init__(self) -> None:
        if self.window_size < 1:
            raise ValueError(f"window_size must be >= 1, got {self.window_size}")
        if self.slow_query_ms <= 0:
            raise ValueError(f"slow_query_ms must be positive, got {self.slow_query_ms}")


@dataclass(frozen=True)
class ExperimentConfig:
    """Statistical settings of the experimentation manager."""

    min_sample_size: int = 30
    significance_level: float = 0.05
    min_traffic_share: float = 0.1
    """Smallest traffic fraction a variant may receive"""
