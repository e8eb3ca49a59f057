"""
Elasticsearch implementation of the IndexEngine port over its REST API.

This class is an ADAPTER in Hexagonal Architecture: it translates the
engine-neutral StructuredQuery into Elasticsearch's query DSL and the
responses back into domain SearchHit entities.

The constructor accepts an optional `session` parameter:
- In production: uses requests.Session() by default
- In tests: inject a fake session that returns canned responses
"""

import json
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

import requests

from catalog_search.domain.entities import IndexDocument, SearchHit
from catalog_search.domain.errors import TransientBackendError, ValidationError
from catalog_search.domain.ports import IndexEngine
from catalog_search.domain.value_objects import (
    EngineResult,
    HIGHLIGHT_FIELDS,
    HIGHLIGHT_POST_TAG,
    HIGHLIGHT_PRE_TAG,
    IndexStats,
    SearchFilters,
    SearchSort,
    StructuredQuery,
)

logger = logging.getLogger(__name__)

_TEXT_WITH_KEYWORD = {
    "type": "text",
    "analyzer": "standard",
    "fields": {"keyword": {"type": "keyword", "ignore_above": 256}},
}

ASSET_INDEX_MAPPING: Dict[str, Any] = {
    "settings": {"number_of_shards": 1, "number_of_replicas": 0},
    "mappings": {
        "properties": {
            "id": {"type": "keyword"},
            "name": _TEXT_WITH_KEYWORD,
            "description": {"type": "text", "analyzer": "standard"},
            "secondaryText": {"type": "text", "analyzer": "standard"},
            "code": {"type": "keyword"},
            "type": {"type": "keyword"},
            "categoryId": {"type": "keyword"},
            "categoryName": _TEXT_WITH_KEYWORD,
            "status": {"type": "keyword"},
            "tags": {"type": "keyword"},
            "hierarchyLevel1": _TEXT_WITH_KEYWORD,
            "hierarchyLevel2": _TEXT_WITH_KEYWORD,
            "hierarchyLevel3": _TEXT_WITH_KEYWORD,
            "qualityScore": {"type": "float"},
            "popularity": {"type": "integer"},
            "createdAt": {"type": "date"},
            "updatedAt": {"type": "date"},
            "searchText": {"type": "text", "analyzer": "standard"},
        }
    },
}

# Fields aggregated through their keyword sub-field
_KEYWORD_SUBFIELDS = {"name", "categoryName", "hierarchyLevel1", "hierarchyLevel2", "hierarchyLevel3"}


def build_filter_clauses(filters: SearchFilters) -> List[Dict[str, Any]]:
    """Translate SearchFilters into bool/filter clauses."""
    clauses: List[Dict[str, Any]] = []
    if filters.statuses:
        clauses.append({"terms": {"status": list(filters.statuses)}})
    if filters.types:
        clauses.append({"terms": {"type": list(filters.types)}})
    if filters.category_id is not None:
        clauses.append({"term": {"categoryId": filters.category_id}})
    if filters.has_quality_range():
        bounds: Dict[str, float] = {}
        if filters.quality_score_min is not None:
            bounds["gte"] = filters.quality_score_min
        if filters.quality_score_max is not None:
            bounds["lte"] = filters.quality_score_max
        clauses.append({"range": {"qualityScore": bounds}})
    return clauses


def build_sort(sort: SearchSort) -> List[Any]:
    if sort == SearchSort.NAME:
        return [{"name.keyword": "asc"}, {"id": "asc"}]
    if sort == SearchSort.CREATED_AT:
        return [{"createdAt": "desc"}, {"id": "asc"}]
    if sort == SearchSort.QUALITY_SCORE:
        return [{"qualityScore": {"order": "desc", "missing": "_last"}}, {"id": "asc"}]
    return ["_score", {"id": "asc"}]


def build_search_body(query: StructuredQuery) -> Dict[str, Any]:
    """
    Build the _search request body for a structured query.

    Free text goes under bool/must as a best_fields multi_match with boosts;
    structured filters go under bool/filter so they do not affect scoring.
    """
    multi_match = {
        "query": query.text,
        "fields": [f"{field}^{boost:g}" for field, boost in query.field_boosts],
        "type": "best_fields",
        "operator": "or",
        "fuzziness": query.fuzziness if query.fuzziness == "AUTO" else int(query.fuzziness),
    }
    return {
        "query": {
            "bool": {
                "must": [{"multi_match": multi_match}],
                "filter": build_filter_clauses(query.filters),
            }
        },
        "from": query.offset,
        "size": query.limit,
        "sort": build_sort(query.sort),
        "track_total_hits": True,
        "track_scores": True,
        "highlight": {
            "fields": {field: {} for field in HIGHLIGHT_FIELDS},
            "pre_tags": [HIGHLIGHT_PRE_TAG],
            "post_tags": [HIGHLIGHT_POST_TAG],
        },
    }


class ElasticsearchIndexEngine(IndexEngine):
    """
    Index engine backed by an Elasticsearch cluster.

    Usage:
        # Production
        engine = ElasticsearchIndexEngine("http://localhost:9200")

        # Testing (with fake session)
        engine = ElasticsearchIndexEngine("http://es", session=fake_session)
    """

    def __init__(
        self,
        base_url: str,
        index_name: str = "data-assets",
        timeout_s: float = 5.0,
        session: Optional[Any] = None,
    ) -> None:
        """
        Args:
            base_url: Cluster URL, e.g. 'http://localhost:9200'
            index_name: Index holding the asset documents
            timeout_s: Per-request HTTP timeout
            session: Optional HTTP session for dependency injection
        """
        if not base_url:
            raise ValueError("base_url cannot be empty")
        self._base_url = base_url.rstrip("/")
        self._index = index_name
        self._timeout_s = timeout_s
        self._session = session if session is not None else requests.Session()

    # ------------------------------------------------------------------
    # Index lifecycle
    # ------------------------------------------------------------------

    def initialize(self) -> None:
        """Create the index with its mapping unless it already exists."""
        response = self._request("HEAD", f"/{self._index}", allow=(404,))
        if response.status_code == 404:
            self._request("PUT", f"/{self._index}", json_body=ASSET_INDEX_MAPPING)
            logger.info(f"Created Elasticsearch index '{self._index}'")

    def refresh(self) -> None:
        self._request("POST", f"/{self._index}/_refresh")

    def optimize(self) -> None:
        self._request("POST", f"/{self._index}/_forcemerge", params={"max_num_segments": 1})
        logger.info(f"Force-merged Elasticsearch index '{self._index}'")

    def stats(self) -> IndexStats:
        exists = self._request("HEAD", f"/{self._index}", allow=(404,))
        if exists.status_code == 404:
            return IndexStats(exists=False, document_count=0, size_bytes=0, health="red")

        stats = self._request("GET", f"/{self._index}/_stats").json()
        totals = stats.get("indices", {}).get(self._index, {}).get("total", {})
        health = self._request("GET", f"/_cluster/health/{self._index}").json()
        return IndexStats(
            exists=True,
            document_count=int(totals.get("docs", {}).get("count", 0)),
            size_bytes=int(totals.get("store", {}).get("size_in_bytes", 0)),
            health=health.get("status", "red"),
        )

    def is_healthy(self) -> bool:
        try:
            health = self._request("GET", "/_cluster/health").json()
        except (TransientBackendError, ValidationError, ValueError) as e:
            logger.warning(f"Elasticsearch health check failed: {e}")
            return False
        return health.get("status") in ("green", "yellow")

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def upsert(self, document: IndexDocument) -> None:
        self._request("PUT", f"/{self._index}/_doc/{document.id}", json_body=document.to_dict())

    def bulk_upsert(self, documents: Sequence[IndexDocument]) -> List[Tuple[str, str]]:
        """
        Index documents through the _bulk API.

        Returns:
            (document id, error) pairs for items Elasticsearch rejected
        """
        if not documents:
            return []

        lines: List[str] = []
        for document in documents:
            lines.append(json.dumps({"index": {"_index": self._index, "_id": document.id}}))
            lines.append(json.dumps(document.to_dict()))
        body = "\n".join(lines) + "\n"

        result = self._request(
            "POST",
            "/_bulk",
            data=body,
            headers={"Content-Type": "application/x-ndjson"},
        ).json()

        if not result.get("errors"):
            return []

        failed: List[Tuple[str, str]] = []
        for item in result.get("items", []):
            action = item.get("index", {})
            error = action.get("error")
            if error:
                reason = error.get("reason") if isinstance(error, dict) else str(error)
                failed.append((str(action.get("_id")), reason or "unknown error"))
        return failed

    def delete(self, doc_id: str) -> bool:
        response = self._request("DELETE", f"/{self._index}/_doc/{doc_id}", allow=(404,))
        return response.status_code != 404

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def query(self, query: StructuredQuery) -> EngineResult:
        if not query.text.strip():
            return EngineResult(hits=(), total=0)

        data = self._request(
            "POST", f"/{self._index}/_search", json_body=build_search_body(query)
        ).json()

        hits_section = data.get("hits", {})
        total = hits_section.get("total", {})
        total_count = total.get("value", 0) if isinstance(total, dict) else int(total)

        hits = []
        for position, raw in enumerate(hits_section.get("hits", []), start=1):
            try:
                document = IndexDocument.from_dict(raw.get("_source", {}))
            except ValueError as e:
                logger.warning(f"Skipping malformed index document {raw.get('_id')}: {e}")
                continue
            hits.append(
                SearchHit(
                    document=document,
                    score=float(raw.get("_score") or 0.0),
                    rank=query.offset + position,
                    highlights={
                        field: tuple(fragments)
                        for field, fragments in (raw.get("highlight") or {}).items()
                    },
                )
            )
        return EngineResult(hits=tuple(hits), total=total_count)

    def field_terms(self, field: str, size: int = 1000) -> Dict[str, int]:
        agg_field = f"{field}.keyword" if field in _KEYWORD_SUBFIELDS else field
        body = {"size": 0, "aggs": {"values": {"terms": {"field": agg_field, "size": size}}}}
        data = self._request("POST", f"/{self._index}/_search", json_body=body).json()
        buckets = data.get("aggregations", {}).get("values", {}).get("buckets", [])
        return {str(b["key"]): int(b["doc_count"]) for b in buckets}

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: Optional[Dict[str, Any]] = None,
        data: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        allow: Tuple[int, ...] = (),
    ) -> Any:
        """
        Send one request to the cluster.

        Raises:
            TransientBackendError: On network errors and 5xx responses
            ValidationError: On other 4xx responses not listed in ``allow``
        """
        url = f"{self._base_url}{path}"
        try:
            response = self._session.request(
                method,
                url,
                json=json_body,
                data=data,
                params=params,
                headers=headers,
                timeout=self._timeout_s,
            )
        except requests.RequestException as e:
            raise TransientBackendError(f"Elasticsearch {method} {path} failed: {e}") from e

        status = response.status_code
        if status in allow or status < 400:
            return response
        if status >= 500 or status == 429:
            raise TransientBackendError(f"Elasticsearch {method} {path} returned {status}")
        raise ValidationError(f"Elasticsearch rejected {method} {path} ({status}): {response.text}")
