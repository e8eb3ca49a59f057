"""
Request and response models of the v1 HTTP API.

Every endpoint answers with the ApiResponse envelope: ``{"success": true,
"data": ...}``. Errors use FastAPI's ``{"detail": ...}`` body with the
matching status code.
"""

from datetime import datetime
from typing import Generic, Literal, TypeVar

from pydantic import AwareDatetime, BaseModel, Field

T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    """Envelope shared by all successful responses."""

    success: bool = True
    data: T


# =============================================================================
# Search
# =============================================================================


class SearchFilters(BaseModel):
    """
    Filters that can be applied to a search query.
    """
    statuses: list[str] = Field(default_factory=list, description="Accepted status values")
    types: list[str] = Field(default_factory=list, description="Accepted asset types")
    category_id: str | None = None
    quality_score_min: float | None = Field(default=None, ge=0.0, le=10.0)
    quality_score_max: float | None = Field(default=None, ge=0.0, le=10.0)


class SearchRequest(BaseModel):
    """
    Request body for POST /search.
    """
    query: str = Field(min_length=1, description="The search query text")
    filters: SearchFilters = Field(default_factory=SearchFilters)
    page: int = Field(default=1, ge=1, description="1-based page number")
    page_size: int = Field(default=20, ge=1, le=100, description="Items per page (1-100)")
    sort: Literal["relevance", "name", "created_at", "quality_score"] = "relevance"


class LiveSearchRequest(BaseModel):
    """Request body for POST /search/live (search-as-you-type)."""
    query: str = Field(min_length=1)
    size: int = Field(default=5, ge=1, le=20)


class Asset(BaseModel):
    """
    API representation of an indexed asset.

    Maps from the domain IndexDocument for API responses.
    """

    id: str = Field(description="Asset identifier")
    name: str
    type: str = Field(description="Asset type, e.g. 'table' or 'dashboard'")
    status: str
    code: str | None = None
    description: str | None = None
    secondary_text: str | None = None
    category_id: str | None = None
    category_name: str | None = None
    tags: list[str] = Field(default_factory=list)
    hierarchy_level1: str | None = Field(default=None, description="Database")
    hierarchy_level2: str | None = Field(default=None, description="Schema")
    hierarchy_level3: str | None = Field(default=None, description="Table")
    quality_score: float | None = None
    popularity: int = 0
    created_at: datetime
    updated_at: datetime


class SearchHit(BaseModel):
    """A single search result with its engine score."""
    asset: Asset
    score: float = Field(description="Engine relevance score (uniform on the fallback)")
    rank: int = Field(description="Position in the full result list (1-indexed)")
    highlights: dict[str, list[str]] = Field(
        default_factory=dict,
        description="Matched fragments of name/description, matches wrapped in <mark> tags",
    )


class SearchPage(BaseModel):
    """
    One page of results with degradation metadata.
    """
    items: list[SearchHit]
    total: int = Field(ge=0)
    page: int
    page_size: int
    total_pages: int
    source: Literal["engine", "fallback"] = Field(description="Which backend served the page")
    degraded: bool = False
    degradation_reason: str | None = None
    latency_ms: float | None = None


# =============================================================================
# Intelligent search
# =============================================================================


class RankingWeights(BaseModel):
    """Weights of the four ranking signals; they must sum to 1."""
    relevance: float = Field(ge=0.0, le=1.0)
    popularity: float = Field(ge=0.0, le=1.0)
    recency: float = Field(ge=0.0, le=1.0)
    personalization: float = Field(ge=0.0, le=1.0)
    name: str = "custom"
    version: int = Field(default=1, ge=1)


class PersonalizationContext(BaseModel):
    category_interactions: dict[str, int] = Field(default_factory=dict)
    tag_interactions: dict[str, int] = Field(default_factory=dict)


class IntelligentSearchRequest(BaseModel):
    """
    Request body for POST /search/intelligent.

    Weight precedence: custom_weights, then the experiment variant of the
    user, then the user's saved weights, then the system defaults.
    """
    query: str = Field(min_length=1)
    filters: SearchFilters = Field(default_factory=SearchFilters)
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=20, ge=1, le=100)
    user_id: str | None = None
    sort_option: Literal[
        "relevance", "personalized", "popularity", "recency", "quality", "created"
    ] = "relevance"
    custom_weights: RankingWeights | None = None
    experiment_id: str | None = None
    context: PersonalizationContext | None = None


class SignalScores(BaseModel):
    relevance: float
    popularity: float
    recency: float
    personalization: float
    final: float


class RankedHit(BaseModel):
    asset: Asset
    score: float = Field(description="Engine relevance score")
    position: int = Field(description="Position after re-ranking (1-indexed)")
    signals: SignalScores
    explanation: str = ""
    highlights: dict[str, list[str]] = Field(default_factory=dict)


class IntelligentSearchPage(BaseModel):
    results: list[RankedHit]
    total: int
    page: int
    page_size: int
    total_pages: int
    source: Literal["engine", "fallback"]
    degraded: bool = False
    degradation_reason: str | None = None
    latency_ms: float | None = None
    weights: RankingWeights
    sort_option: str
    variant: str | None = Field(default=None, description="Experiment variant used, if any")


# =============================================================================
# Suggestions
# =============================================================================


class SuggestRequest(BaseModel):
    prefix: str = Field(min_length=1, description="Partial query text")
    size: int = Field(default=5, ge=1, le=20)


class Suggestion(BaseModel):
    text: str
    type: Literal["asset_name", "category", "tag", "database", "schema", "table"]
    score: float
    count: int = 1


# =============================================================================
# Administration
# =============================================================================


class SourceLatency(BaseModel):
    source: Literal["engine", "fallback", "unavailable"]
    requests: int
    average_ms: float
    p95_ms: float
    max_ms: float


class SlowQuery(BaseModel):
    query: str
    source: Literal["engine", "fallback", "unavailable"]
    latency_ms: float
    recorded_at: datetime


class SearchPerformance(BaseModel):
    """Rolling figures over the most recent search executions (cache hits excluded)."""
    total_requests: int
    fallback_rate: float = Field(ge=0, le=1)
    error_rate: float = Field(ge=0, le=1)
    average_ms: float
    by_source: list[SourceLatency]
    slow_queries: list[SlowQuery]


class IndexStats(BaseModel):
    exists: bool
    document_count: int
    size_bytes: int = 0
    health: str


class SyncTask(BaseModel):
    id: str
    type: Literal["create", "update", "delete", "bulk_update"]
    target_ids: list[str]
    priority: int
    attempt: int
    max_attempts: int
    status: str
    last_error: str | None = None


class QueueStatus(BaseModel):
    ready: int
    delayed: int
    queue_length: int
    processing: bool
    dead_letters: int
    upcoming: list[SyncTask] = Field(default_factory=list)
    total_batches: int = 0
    total_tasks: int = 0
    average_batch_ms: float = 0.0
    max_queue_length: int = 0


class DeadLetter(BaseModel):
    task: SyncTask
    error: str
    failed_at: AwareDatetime


class SyncRequest(BaseModel):
    """Request body for POST /admin/sync: explicit ids or the whole catalog."""
    asset_ids: list[str] | None = None
    full_sync: bool = False
    priority: int | None = Field(default=None, ge=1, le=10)


class SyncAssetRequest(BaseModel):
    action: Literal["create", "update", "delete"] = "update"
    priority: int | None = Field(default=None, ge=1, le=10)


class SyncScheduled(BaseModel):
    task_ids: list[str]


# =============================================================================
# Experiments
# =============================================================================


class VariantIn(BaseModel):
    name: str = Field(min_length=1)
    traffic: float = Field(gt=0.0, le=1.0, description="Share of users (0-1)")
    weights: RankingWeights


class CreateExperimentRequest(BaseModel):
    """
    Request body for POST /experiments. The first variant is the control.
    """
    name: str = Field(min_length=1)
    description: str = ""
    variants: list[VariantIn] = Field(min_length=2)
    end_date: AwareDatetime
    start_date: AwareDatetime | None = None


class Experiment(BaseModel):
    id: str
    name: str
    description: str
    status: Literal["created", "active", "stopped"]
    variants: list[VariantIn]
    start_date: datetime | None = None
    end_date: datetime
    stopped_at: datetime | None = None
    stop_reason: str | None = None


class StopExperimentRequest(BaseModel):
    reason: str = "stopped manually"


class AssignRequest(BaseModel):
    user_id: str = Field(min_length=1)
    force_variant: str | None = None


class Assignment(BaseModel):
    experiment_id: str
    user_id: str
    variant: str
    weights: RankingWeights
    assigned_at: datetime
    forced: bool = False


class OutcomeRequest(BaseModel):
    user_id: str = Field(min_length=1)
    session_id: str = Field(min_length=1)
    satisfaction: float | None = Field(default=None, ge=1.0, le=5.0)
    click_through_rate: float | None = Field(default=None, ge=0.0, le=1.0)
    response_time_ms: float | None = Field(default=None, ge=0.0)
    converted: bool = False


class OutcomeRecorded(BaseModel):
    recorded: bool = Field(description="False when the user has no assignment")


class VariantStats(BaseModel):
    variant: str
    participants: int
    sessions: int
    conversions: int
    conversion_rate: float
    mean_satisfaction: float | None = None
    mean_click_through_rate: float | None = None
    mean_response_time_ms: float | None = None


class VariantComparison(BaseModel):
    variant: str
    metric: str
    control_mean: float
    variant_mean: float
    relative_change: float
    p_value: float
    significant: bool


class ExperimentReport(BaseModel):
    experiment_id: str
    status: str
    variants: list[VariantStats]
    comparisons: list[VariantComparison] = Field(default_factory=list)
    winner: str | None = None
    recommendation: Literal["rollout", "rollback", "continue", "redesign"]
