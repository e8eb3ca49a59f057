"""
Domain entities for catalog search.

Entities are objects with a unique identity that runs through time and
different representations: catalog assets and their index projection,
search hits, index synchronization tasks, and ranking experiments.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, UTC
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Tuple, Union

from .value_objects import OutcomeMetrics, RankingWeights, SignalScores, WEIGHT_SUM_TOLERANCE


# Attribute name -> serialized index field name. The serialized names are the
# contract shared by every index writer and reader.
_INDEX_FIELD_MAP: Tuple[Tuple[str, str], ...] = (
    ("id", "id"),
    ("name", "name"),
    ("description", "description"),
    ("secondary_text", "secondaryText"),
    ("code", "code"),
    ("type", "type"),
    ("category_id", "categoryId"),
    ("category_name", "categoryName"),
    ("status", "status"),
    ("tags", "tags"),
    ("hierarchy_level1", "hierarchyLevel1"),
    ("hierarchy_level2", "hierarchyLevel2"),
    ("hierarchy_level3", "hierarchyLevel3"),
    ("quality_score", "qualityScore"),
    ("popularity", "popularity"),
    ("created_at", "createdAt"),
    ("updated_at", "updatedAt"),
    ("search_text", "searchText"),
)

INDEX_DOCUMENT_FIELDS: Tuple[str, ...] = tuple(name for _, name in _INDEX_FIELD_MAP)
_ATTR_BY_FIELD: Dict[str, str] = {name: attr for attr, name in _INDEX_FIELD_MAP}


def _parse_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


@dataclass(frozen=True)
class IndexDocument:
    """
    Denormalized, search-optimized projection of an asset.

    Only ``Asset.to_index_document`` builds these from catalog data, and an
    upsert always replaces the whole document.
    """

    id: str
    name: str
    type: str
    status: str
    created_at: datetime
    updated_at: datetime
    search_text: str
    description: Optional[str] = None
    secondary_text: Optional[str] = None
    code: Optional[str] = None
    category_id: Optional[str] = None
    category_name: Optional[str] = None
    tags: Tuple[str, ...] = ()
    hierarchy_level1: Optional[str] = None
    """Database name"""

    hierarchy_level2: Optional[str] = None
    """Schema name"""

    hierarchy_level3: Optional[str] = None
    """Table name"""

    quality_score: Optional[float] = None
    popularity: int = 0

    def field_text(self, index_field: str) -> str:
        """
        Text content of a serialized index field, for full-text matching.

        Args:
            index_field: Serialized field name (e.g. 'secondaryText')

        Returns:
            The field's text, tags joined by spaces, '' when empty
        """
        attr = _ATTR_BY_FIELD.get(index_field)
        if attr is None:
            raise ValueError(f"Unknown index field '{index_field}'")
        value = getattr(self, attr)
        if value is None:
            return ""
        if isinstance(value, tuple):
            return " ".join(value)
        return str(value)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize using the index field names."""
        data: Dict[str, Any] = {}
        for attr, name in _INDEX_FIELD_MAP:
            value = getattr(self, attr)
            if isinstance(value, datetime):
                value = value.isoformat()
            elif isinstance(value, tuple):
                value = list(value)
            data[name] = value
        return data

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "IndexDocument":
        """
        Rebuild a document from its serialized form.

        Raises:
            ValueError: If a required field is missing
        """
        missing = [name for name in ("id", "name", "type", "status", "createdAt", "updatedAt")
                   if data.get(name) is None]
        if missing:
            raise ValueError(f"Index document is missing required fields: {missing}")

        kwargs: Dict[str, Any] = {}
        for attr, name in _INDEX_FIELD_MAP:
            if name in data and data[name] is not None:
                kwargs[attr] = data[name]

        kwargs["id"] = str(kwargs["id"])
        kwargs["created_at"] = _parse_datetime(kwargs["created_at"])
        kwargs["updated_at"] = _parse_datetime(kwargs["updated_at"])
        kwargs["tags"] = tuple(kwargs.get("tags") or ())
        kwargs.setdefault("search_text", "")
        if "quality_score" in kwargs:
            kwargs["quality_score"] = float(kwargs["quality_score"])
        kwargs["popularity"] = int(kwargs.get("popularity", 0))
        return IndexDocument(**kwargs)


@dataclass
class Asset:
    """
    A catalog asset as held by the system of record.

    The system of record is authoritative; the search index only ever holds
    a projection of it, built by ``to_index_document``.
    """

    id: str
    """Identifier shared by the catalog row and its index document"""

    name: str
    """Display name"""

    type: str
    """Asset type (e.g. 'table', 'dashboard', 'report')"""

    status: str = "active"
    """Lifecycle status; 'draft' assets are excluded from full syncs"""

    code: Optional[str] = None
    """Short business code"""

    description: Optional[str] = None
    """Technical description"""

    secondary_text: Optional[str] = None
    """Business description"""

    category_id: Optional[str] = None
    category_name: Optional[str] = None

    tags: List[str] = field(default_factory=list)
    """Free-form tags"""

    hierarchy_level1: Optional[str] = None
    """Database name"""

    hierarchy_level2: Optional[str] = None
    """Schema name"""

    hierarchy_level3: Optional[str] = None
    """Table name"""

    quality_score: Optional[float] = None
    """Data quality score (0-10)"""

    popularity: int = 0
    """Interaction counter (views, uses)"""

    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __post_init__(self) -> None:
        """Validate asset data."""
        if not self.id or not str(self.id).strip():
            raise ValueError("Asset id cannot be empty")

        if not self.name or not self.name.strip():
            raise ValueError("Asset name cannot be empty")

        if not self.type or not self.type.strip():
            raise ValueError("Asset type cannot be empty")

        if self.quality_score is not None and not (0.0 <= self.quality_score <= 10.0):
            raise ValueError(
                f"quality_score must be between 0 and 10, got {self.quality_score}"
            )

        if self.popularity < 0:
            raise ValueError(f"popularity cannot be negative, got {self.popularity}")

    def __eq__(self, other: object) -> bool:
        """Two assets are equal if they have the same ID."""
        if not isinstance(other, Asset):
            return NotImplemented
        return self.id == other.id

    def __hash__(self) -> int:
        return hash(self.id)

    def get_searchable_text(self) -> str:
        """
        Concatenate every searchable field.

        This becomes the catch-all ``searchText`` field of the index document.
        """
        parts = [
            self.name,
            self.code,
            self.description,
            self.secondary_text,
            self.category_name,
            self.hierarchy_level1,
            self.hierarchy_level2,
            self.hierarchy_level3,
            " ".join(self.tags) if self.tags else None,
        ]
        return " ".join(part for part in parts if part)

    def to_index_document(self) -> IndexDocument:
        """Build the index projection of this asset."""
        return IndexDocument(
            id=str(self.id),
            name=self.name,
            description=self.description,
            secondary_text=self.secondary_text,
            code=self.code,
            type=self.type,
            category_id=self.category_id,
            category_name=self.category_name,
            status=self.status,
            tags=tuple(self.tags),
            hierarchy_level1=self.hierarchy_level1,
            hierarchy_level2=self.hierarchy_level2,
            hierarchy_level3=self.hierarchy_level3,
            quality_score=self.quality_score,
            popularity=self.popularity,
            created_at=self.created_at,
            updated_at=self.updated_at,
            search_text=self.get_searchable_text(),
        )


@dataclass(frozen=True)
class SearchHit:
    """A document matched by the engine or the fallback, with its raw score."""

    document: IndexDocument
    """The matched document"""

    score: float
    """Raw backend score; the fallback assigns a uniform score"""

    rank: int
    """Position in the full result list (1-indexed)"""

    highlights: Dict[str, Tuple[str, ...]] = field(default_factory=dict, compare=False)
    """Field name -> fragments with the matched text wrapped in <mark> tags"""

    def __post_init__(self) -> None:
        if self.rank < 1:
            raise ValueError(f"rank must be >= 1, got {self.rank}")


@dataclass(frozen=True)
class RankedHit:
    """A search hit after the ranking pipeline has scored it."""

    hit: SearchHit
    signals: SignalScores
    position: int
    """Position after re-ranking (1-indexed)"""

    explanation: str = ""

    @property
    def document(self) -> IndexDocument:
        return self.hit.document


# =============================================================================
# Index synchronization
# =============================================================================


class SyncTaskType(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    BULK_UPDATE = "bulk_update"


class SyncTaskStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    RETRY_SCHEDULED = "retry_scheduled"
    DONE = "done"
    DEAD_LETTER = "dead_letter"


_ALLOWED_TRANSITIONS: Dict[SyncTaskStatus, Tuple[SyncTaskStatus, ...]] = {
    SyncTaskStatus.PENDING: (SyncTaskStatus.PROCESSING,),
    SyncTaskStatus.PROCESSING: (
        SyncTaskStatus.DONE,
        SyncTaskStatus.RETRY_SCHEDULED,
        SyncTaskStatus.DEAD_LETTER,
    ),
    SyncTaskStatus.RETRY_SCHEDULED: (SyncTaskStatus.PROCESSING,),
    SyncTaskStatus.DONE: (),
    SyncTaskStatus.DEAD_LETTER: (),
}


@dataclass(frozen=True)
class CreatePayload:
    asset_id: str
    kind: ClassVar[SyncTaskType] = SyncTaskType.CREATE


@dataclass(frozen=True)
class UpdatePayload:
    asset_id: str
    kind: ClassVar[SyncTaskType] = SyncTaskType.UPDATE


@dataclass(frozen=True)
class DeletePayload:
    asset_id: str
    kind: ClassVar[SyncTaskType] = SyncTaskType.DELETE


@dataclass(frozen=True)
class BulkPayload:
    asset_ids: Tuple[str, ...]
    kind: ClassVar[SyncTaskType] = SyncTaskType.BULK_UPDATE

    def __post_init__(self) -> None:
        if not self.asset_ids:
            raise ValueError("Bulk payload needs at least one asset id")


SyncPayload = Union[CreatePayload, UpdatePayload, DeletePayload, BulkPayload]


@dataclass
class SyncTask:
    """
    A unit of index synchronization work.

    The payload shape is determined by the task type, so a bulk task always
    carries an id list and a single-asset task always carries one id.
    """

    id: str
    payload: SyncPayload
    priority: int
    """1-10, higher runs first"""

    max_attempts: int
    enqueued_at: float
    """Queue clock reading when the task was accepted"""

    scheduled_at: float
    """Queue clock reading at which the task becomes eligible"""

    attempt: int = 0
    """Number of processing attempts made so far"""

    status: SyncTaskStatus = SyncTaskStatus.PENDING
    history: List[SyncTaskStatus] = field(default_factory=lambda: [SyncTaskStatus.PENDING])
    """Every status the task has been in, in order"""

    last_error: Optional[str] = None

    def __post_init__(self) -> None:
        """Validate task data."""
        if not (1 <= self.priority <= 10):
            raise ValueError(f"priority must be between 1 and 10, got {self.priority}")

        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")

    @property
    def type(self) -> SyncTaskType:
        return self.payload.kind

    @property
    def target_ids(self) -> Tuple[str, ...]:
        if isinstance(self.payload, BulkPayload):
            return self.payload.asset_ids
        return (self.payload.asset_id,)

    @property
    def dedup_key(self) -> Tuple[str, Tuple[str, ...]]:
        return (self.type.value, self.target_ids)

    def transition(self, status: SyncTaskStatus) -> None:
        """
        Move the task to a new status and record it in the history.

        Raises:
            ValueError: If the transition is not allowed
        """
        if status not in _ALLOWED_TRANSITIONS[self.status]:
            raise ValueError(
                f"Task {self.id} cannot move from {self.status.value} to {status.value}"
            )
        self.status = status
        self.history.append(status)

    def narrow_to(self, asset_ids: Tuple[str, ...]) -> None:
        """Restrict a bulk task to the given ids (used when retrying partial failures)."""
        if not isinstance(self.payload, BulkPayload):
            raise ValueError(f"Task {self.id} is not a bulk task")
        self.payload = BulkPayload(asset_ids=tuple(asset_ids))

    def has_attempts_left(self) -> bool:
        return self.attempt < self.max_attempts


@dataclass(frozen=True)
class DeadLetterRecord:
    """A task that will not be retried, kept for operator inspection."""

    task: SyncTask
    error: str
    failed_at: datetime


# =============================================================================
# Ranking experiments
# =============================================================================


class ExperimentStatus(str, Enum):
    CREATED = "created"
    ACTIVE = "active"
    STOPPED = "stopped"


@dataclass(frozen=True)
class Variant:
    """One arm of an experiment: a ranking weight set and its traffic share."""

    name: str
    weights: RankingWeights
    traffic: float
    """Fraction of users assigned to this variant (0-1)"""

    def __post_init__(self) -> None:
        if not self.name or not self.name.strip():
            raise ValueError("Variant name cannot be empty")
        if not (0.0 < self.traffic <= 1.0):
            raise ValueError(f"traffic must be in (0, 1], got {self.traffic}")


@dataclass
class Experiment:
    """
    A ranking experiment comparing weight sets across users.

    The first variant is the control. Lifecycle: created -> active -> stopped.
    """

    id: str
    name: str
    variants: Tuple[Variant, ...]
    end_date: datetime
    status: ExperimentStatus = ExperimentStatus.CREATED
    description: str = ""
    start_date: Optional[datetime] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    stopped_at: Optional[datetime] = None
    stop_reason: Optional[str] = None

    def __post_init__(self) -> None:
        """Validate experiment data."""
        if not self.name or not self.name.strip():
            raise ValueError("Experiment name cannot be empty")

        if len(self.variants) < 2:
            raise ValueError("An experiment needs at least two variants")

        names = [v.name for v in self.variants]
        if len(set(names)) != len(names):
            raise ValueError(f"Variant names must be unique, got {names}")

        total_traffic = sum(v.traffic for v in self.variants)
        if abs(total_traffic - 1.0) > WEIGHT_SUM_TOLERANCE:
            raise ValueError(f"Variant traffic must sum to 1.0, got {total_traffic:.4f}")

        if self.start_date is not None and self.end_date <= self.start_date:
            raise ValueError("end_date must be after start_date")

    @property
    def control(self) -> Variant:
        return self.variants[0]

    def variant(self, name: str) -> Variant:
        """
        Look up a variant by name.

        Raises:
            ValueError: If the experiment has no such variant
        """
        for variant in self.variants:
            if variant.name == name:
                return variant
        raise ValueError(f"Experiment {self.id} has no variant '{name}'")

    def is_expired(self, now: datetime) -> bool:
        return now >= self.end_date

    def accepts_assignments(self, now: datetime) -> bool:
        return self.status == ExperimentStatus.ACTIVE and not self.is_expired(now)

    def start(self, now: datetime) -> None:
        if self.status != ExperimentStatus.CREATED:
            raise ValueError(f"Experiment {self.id} is {self.status.value}, cannot start")
        if self.is_expired(now):
            raise ValueError(f"Experiment {self.id} already passed its end date")
        self.status = ExperimentStatus.ACTIVE
        if self.start_date is None:
            self.start_date = now

    def stop(self, now: datetime, reason: str) -> None:
        if self.status != ExperimentStatus.ACTIVE:
            raise ValueError(f"Experiment {self.id} is {self.status.value}, cannot stop")
        self.status = ExperimentStatus.STOPPED
        self.stopped_at = now
        self.stop_reason = reason

    def snapshot(self) -> "Experiment":
        """Detached copy, safe to hand out of a lock."""
        return replace(self)


@dataclass(frozen=True)
class ExperimentAssignment:
    """The variant a user sees in an experiment. Once recorded, never changes."""

    experiment_id: str
    user_id: str
    variant: str
    weights: RankingWeights
    assigned_at: datetime
    forced: bool = False


@dataclass(frozen=True)
class OutcomeRecord:
    """Raw measurements of one session, appended to an experiment's log."""

    experiment_id: str
    user_id: str
    session_id: str
    variant: str
    metrics: OutcomeMetrics
    recorded_at: datetime
