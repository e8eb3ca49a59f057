"""
Tests for ElasticsearchIndexEngine adapter.

Uses FakeSession and FakeResponse to test without network calls.
Covers: query DSL, response parsing, bulk errors, status code mapping.
"""

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pytest
import requests

from catalog_search.domain.entities import Asset
from catalog_search.domain.errors import TransientBackendError, ValidationError
from catalog_search.domain.value_objects import (
    SEARCH_FIELD_BOOSTS,
    SearchFilters,
    SearchSort,
    StructuredQuery,
)
from catalog_search.infrastructure.search.elasticsearch_index_engine import (
    ElasticsearchIndexEngine,
    build_search_body,
)


# =============================================================================
# Fake HTTP Session and Response for testing
# =============================================================================


class FakeResponse:
    """Fake HTTP response for testing."""

    def __init__(self, json_data: Optional[Dict[str, Any]] = None, status_code: int = 200):
        self._json_data = json_data or {}
        self.status_code = status_code
        self.text = json.dumps(self._json_data)

    def json(self) -> Dict[str, Any]:
        return self._json_data


class FakeSession:
    """
    Fake HTTP session returning queued responses.

    Every request is recorded as (method, url, kwargs).
    """

    def __init__(self, *responses: FakeResponse, error: Exception = None):
        self._responses: List[FakeResponse] = list(responses)
        self._error = error
        self.requests: List[tuple] = []

    def request(self, method: str, url: str, **kwargs) -> FakeResponse:
        self.requests.append((method, url, kwargs))
        if self._error is not None:
            raise self._error
        if self._responses:
            return self._responses.pop(0)
        return FakeResponse()


# =============================================================================
# Test fixtures
# =============================================================================


def make_document(asset_id: str = "a-1", name: str = "Sales Report"):
    ts = datetime(2024, 1, 1, tzinfo=timezone.utc)
    return Asset(id=asset_id, name=name, type="report", created_at=ts, updated_at=ts).to_index_document()


def make_engine(*responses: FakeResponse, error: Exception = None):
    session = FakeSession(*responses, error=error)
    return ElasticsearchIndexEngine("http://es:9200/", session=session), session


def make_query(text: str = "sales", **overrides) -> StructuredQuery:
    return StructuredQuery(text=text, field_boosts=SEARCH_FIELD_BOOSTS, **overrides)


# =============================================================================
# Tests: Query DSL
# =============================================================================


class TestBuildSearchBody:
    """Tests for StructuredQuery -> query DSL translation."""

    def test_boosted_best_fields(self):
        body = build_search_body(make_query())

        multi_match = body["query"]["bool"]["must"][0]["multi_match"]
        assert multi_match["fields"] == ["name^3", "description^2", "secondaryText^2", "searchText^1"]
        assert multi_match["type"] == "best_fields"
        assert multi_match["fuzziness"] == "AUTO"

    def test_fixed_fuzziness(self):
        body = build_search_body(make_query(fuzziness=1))

        assert body["query"]["bool"]["must"][0]["multi_match"]["fuzziness"] == 1

    def test_filters_do_not_score(self):
        filters = SearchFilters(
            statuses=("active",),
            types=("table", "view"),
            category_id="cat-1",
            quality_score_min=5.0,
        )

        body = build_search_body(make_query(filters=filters))

        assert body["query"]["bool"]["filter"] == [
            {"terms": {"status": ["active"]}},
            {"terms": {"type": ["table", "view"]}},
            {"term": {"categoryId": "cat-1"}},
            {"range": {"qualityScore": {"gte": 5.0}}},
        ]

    def test_pagination_and_sort(self):
        body = build_search_body(make_query(offset=40, limit=20, sort=SearchSort.QUALITY_SCORE))

        assert body["from"] == 40
        assert body["size"] == 20
        assert body["sort"][0] == {"qualityScore": {"order": "desc", "missing": "_last"}}
        assert body["track_total_hits"] is True

    def test_highlight_request(self):
        body = build_search_body(make_query())

        assert body["highlight"] == {
            "fields": {"name": {}, "description": {}},
            "pre_tags": ["<mark>"],
            "post_tags": ["</mark>"],
        }


# =============================================================================
# Tests: Reads
# =============================================================================


class TestQuery:
    """Tests for _search response parsing."""

    def test_parses_hits(self):
        doc = make_document()
        engine, session = make_engine(FakeResponse({
            "hits": {
                "total": {"value": 41, "relation": "eq"},
                "hits": [{"_id": "a-1", "_score": 7.5, "_source": doc.to_dict()}],
            }
        }))

        result = engine.query(make_query(offset=20))

        assert result.total == 41
        [hit] = result.hits
        assert hit.document == doc
        assert hit.score == 7.5
        assert hit.rank == 21
        method, url, kwargs = session.requests[0]
        assert (method, url) == ("POST", "http://es:9200/data-assets/_search")
        assert kwargs["timeout"] == 5.0

    def test_parses_highlights(self):
        doc = make_document()
        engine, _ = make_engine(FakeResponse({
            "hits": {
                "total": {"value": 1},
                "hits": [{
                    "_id": "a-1",
                    "_score": 2.0,
                    "_source": doc.to_dict(),
                    "highlight": {"name": ["<mark>Sales</mark> Report"]},
                }],
            }
        }))

        [hit] = engine.query(make_query()).hits

        assert hit.highlights == {"name": ("<mark>Sales</mark> Report",)}

    def test_skips_malformed_documents(self):
        engine, _ = make_engine(FakeResponse({
            "hits": {"total": {"value": 1}, "hits": [{"_id": "x", "_source": {"name": "broken"}}]}
        }))

        result = engine.query(make_query())

        assert result.hits == ()
        assert result.total == 1

    def test_blank_text_skips_request(self):
        engine, session = make_engine()

        assert engine.query(make_query("  ")).total == 0
        assert session.requests == []

    def test_field_terms_use_keyword_subfield(self):
        engine, session = make_engine(FakeResponse({
            "aggregations": {"values": {"buckets": [{"key": "Sales", "doc_count": 3}]}}
        }))

        terms = engine.field_terms("categoryName", size=50)

        assert terms == {"Sales": 3}
        body = session.requests[0][2]["json"]
        assert body["aggs"]["values"]["terms"] == {"field": "categoryName.keyword", "size": 50}


# =============================================================================
# Tests: Writes
# =============================================================================


class TestWrites:
    """Tests for upsert, bulk and delete."""

    def test_upsert_puts_full_document(self):
        engine, session = make_engine()
        doc = make_document()

        engine.upsert(doc)

        method, url, kwargs = session.requests[0]
        assert (method, url) == ("PUT", "http://es:9200/data-assets/_doc/a-1")
        assert kwargs["json"] == doc.to_dict()

    def test_bulk_sends_ndjson(self):
        engine, session = make_engine(FakeResponse({"errors": False, "items": []}))

        failed = engine.bulk_upsert([make_document("a-1"), make_document("a-2")])

        assert failed == []
        body = session.requests[0][2]["data"]
        lines = body.strip().split("\n")
        assert len(lines) == 4
        assert json.loads(lines[0]) == {"index": {"_index": "data-assets", "_id": "a-1"}}
        assert session.requests[0][2]["headers"]["Content-Type"] == "application/x-ndjson"

    def test_bulk_reports_item_errors(self):
        engine, _ = make_engine(FakeResponse({
            "errors": True,
            "items": [
                {"index": {"_id": "a-1", "status": 201}},
                {"index": {"_id": "a-2", "status": 400,
                           "error": {"type": "mapper_parsing_exception", "reason": "bad date"}}},
            ],
        }))

        failed = engine.bulk_upsert([make_document("a-1"), make_document("a-2")])

        assert failed == [("a-2", "bad date")]

    def test_bulk_empty(self):
        engine, session = make_engine()

        assert engine.bulk_upsert([]) == []
        assert session.requests == []

    def test_delete_missing_is_not_an_error(self):
        engine, _ = make_engine(FakeResponse(status_code=404))

        assert engine.delete("ghost") is False

    def test_initialize_creates_missing_index(self):
        engine, session = make_engine(FakeResponse(status_code=404), FakeResponse({"acknowledged": True}))

        engine.initialize()

        assert [r[0] for r in session.requests] == ["HEAD", "PUT"]
        assert "mappings" in session.requests[1][2]["json"]

    def test_initialize_keeps_existing_index(self):
        engine, session = make_engine(FakeResponse(status_code=200))

        engine.initialize()

        assert [r[0] for r in session.requests] == ["HEAD"]


# =============================================================================
# Tests: Error mapping
# =============================================================================


class TestErrorMapping:
    """Tests for HTTP status -> domain error translation."""

    def test_server_error_is_transient(self):
        engine, _ = make_engine(FakeResponse(status_code=503))

        with pytest.raises(TransientBackendError):
            engine.query(make_query())

    def test_too_many_requests_is_transient(self):
        engine, _ = make_engine(FakeResponse(status_code=429))

        with pytest.raises(TransientBackendError):
            engine.upsert(make_document())

    def test_client_error_is_validation(self):
        engine, _ = make_engine(FakeResponse({"error": "mapper_parsing_exception"}, status_code=400))

        with pytest.raises(ValidationError, match="400"):
            engine.upsert(make_document())

    def test_network_error_is_transient(self):
        engine, _ = make_engine(error=requests.ConnectionError("connection refused"))

        with pytest.raises(TransientBackendError, match="connection refused"):
            engine.query(make_query())

    def test_health(self):
        healthy, _ = make_engine(FakeResponse({"status": "yellow"}))
        red, _ = make_engine(FakeResponse({"status": "red"}))
        down, _ = make_engine(error=requests.ConnectionError("down"))

        assert healthy.is_healthy() is True
        assert red.is_healthy() is False
        assert down.is_healthy() is False

    def test_stats(self):
        engine, _ = make_engine(
            FakeResponse(status_code=200),
            FakeResponse({"indices": {"data-assets": {"total": {
                "docs": {"count": 12}, "store": {"size_in_bytes": 2048}}}}}),
            FakeResponse({"status": "green"}),
        )

        stats = engine.stats()

        assert stats.exists is True
        assert stats.document_count == 12
        assert stats.size_bytes == 2048
        assert stats.health == "green"

    def test_empty_base_url(self):
        with pytest.raises(ValueError):
            ElasticsearchIndexEngine("")
