"""
Port interfaces (protocols) for the domain layer.

Ports define the contracts between the domain and infrastructure layers.
They are implemented by adapters in the infrastructure layer, allowing
the domain to remain independent of technical details.

The domain services depend only on these protocols: the system of record,
the full-text index engine, the relational fallback and the cache backend.
"""

from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

from .entities import Asset, IndexDocument
from .value_objects import EngineResult, IndexStats, StructuredQuery


class AssetCatalogRepository(Protocol):
    """
    Port for the system of record holding catalog assets.

    The catalog is authoritative. Index synchronization reads from it at
    processing time, never at enqueue time.
    """

    def save(self, asset: Asset) -> None:
        """
        Insert or update an asset.

        Raises:
            ValueError: If asset data violates catalog constraints
            RuntimeError: If a database error occurs
        """
        ...

    def save_many(self, assets: List[Asset]) -> None:
        """Insert or update several assets in one transaction."""
        ...

    def get_by_id(self, asset_id: str) -> Optional[Asset]:
        """
        Retrieve an asset by id.

        Returns:
            The Asset if found, None otherwise
        """
        ...

    def get_many(self, asset_ids: Sequence[str]) -> Dict[str, Asset]:
        """
        Retrieve several assets at once.

        Returns:
            Mapping of id -> Asset for the ids that exist
        """
        ...

    def list_ids(self, exclude_statuses: Iterable[str] = ()) -> List[str]:
        """List every asset id, optionally skipping some statuses (e.g. drafts)."""
        ...

    def count(self) -> int:
        ...

    def delete(self, asset_id: str) -> bool:
        """
        Delete an asset.

        Returns:
            True if the asset was deleted, False if not found
        """
        ...


class IndexEngine(Protocol):
    """
    Port for the full-text index engine.

    Implementations hold IndexDocument projections keyed by asset id and
    answer boosted, filtered, paginated queries described by StructuredQuery.
    Backend failures surface as TransientBackendError.
    """

    def initialize(self) -> None:
        """Create the index (with its mapping) if it does not exist yet."""
        ...

    def upsert(self, document: IndexDocument) -> None:
        """Insert or fully replace a document."""
        ...

    def bulk_upsert(self, documents: Sequence[IndexDocument]) -> List[Tuple[str, str]]:
        """
        Insert or replace several documents.

        Returns:
            (document id, error message) pairs for the documents that failed;
            an empty list when all succeeded
        """
        ...

    def delete(self, doc_id: str) -> bool:
        """
        Remove a document.

        Returns:
            True if it existed, False if it was already absent
        """
        ...

    def query(self, query: StructuredQuery) -> EngineResult:
        """Execute a structured query and return one window of hits plus the total."""
        ...

    def field_terms(self, field: str, size: int = 1000) -> Dict[str, int]:
        """
        Aggregate the distinct values of a field.

        Args:
            field: Serialized index field name (e.g. 'categoryName', 'tags')
            size: Maximum number of distinct values to return

        Returns:
            value -> number of documents carrying it
        """
        ...

    def refresh(self) -> None:
        """Make recent writes visible to queries."""
        ...

    def optimize(self) -> None:
        """Compact the index."""
        ...

    def stats(self) -> IndexStats:
        ...

    def is_healthy(self) -> bool:
        """Cheap liveness probe, never raises."""
        ...


class FallbackSearchRepository(Protocol):
    """
    Port for the degraded-mode search over the system of record.

    Filter, sort and pagination semantics match the index engine; free text
    is matched as a case-insensitive substring and every hit gets the same score.
    """

    def search(self, query: StructuredQuery) -> EngineResult:
        ...

    def suggest_values(self, text: str, limit: int) -> List[Tuple[str, str, int]]:
        """
        Distinct names, categories, tags and hierarchy names containing ``text``.

        Returns:
            (value, suggestion type, count) triples
        """
        ...

    def popular_assets(self, limit: int) -> List[Asset]:
        """Most popular active assets, most popular first."""
        ...


class CacheBackend(Protocol):
    """
    Port for a key-value store with per-entry expiry.

    Implementations raise CacheError on failure; the TieredCache above them
    turns that into a miss.
    """

    def get(self, key: str) -> Optional[Any]:
        ...

    def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        ...

    def delete_prefix(self, prefix: str) -> int:
        """Delete every key starting with ``prefix`` and return how many were removed."""
        ...

    def clear(self) -> None:
        ...
