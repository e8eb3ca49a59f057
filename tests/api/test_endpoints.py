"""
HTTP tests for the v1 API.

Services are wired on a temporary SQLite catalog, the in-process BM25 engine
and the in-memory cache, then injected with app.dependency_overrides. The
client is used without its context manager so the lifespan (and with it the
background sync worker) never runs; tests drain the queue themselves. The
lifespan test at the bottom is the exception.
"""

import logging
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from catalog_search.api.v1 import dependencies as deps
from catalog_search.domain.entities import Asset
from catalog_search.domain.errors import TransientBackendError
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
from catalog_search.domain.value_objects import SuggestionConfig
from catalog_search.infrastructure.cache import InMemoryCacheBackend
from catalog_search.infrastructure.db.sqlite_asset_catalog_repository import (
    SqliteAssetCatalogRepository,
)
from catalog_search.infrastructure.db.sqlite_fallback_search_repository import (
    SqliteFallbackSearchRepository,
)
from catalog_search.infrastructure.search import BM25IndexEngine
from catalog_search.main import app


# =============================================================================
# Fakes and wiring
# =============================================================================


class DownEngine(BM25IndexEngine):
    """BM25 engine that refuses every query, as an unreachable cluster would."""

    def query(self, structured):
        raise TransientBackendError("Index engine unreachable")

    def field_terms(self, field, size=100):
        raise TransientBackendError("Index engine unreachable")

    def is_healthy(self) -> bool:
        return False


def make_asset(asset_id: str, name: str, **overrides) -> Asset:
    ts = datetime(2024, 1, 1, tzinfo=timezone.utc)
    data = dict(id=asset_id, name=name, type="report", created_at=ts, updated_at=ts)
    data.update(overrides)
    return Asset(**data)


class Wiring:
    """The service graph the endpoints see during one test."""

    def __init__(self, tmp_path, engine: BM25IndexEngine):
        self.catalog = SqliteAssetCatalogRepository(tmp_path / "catalog.db")
        self.fallback = SqliteFallbackSearchRepository(self.catalog.db_path)
        self.engine = engine
        self.cache = TieredCache(InMemoryCacheBackend())
        self.queue = IndexSyncQueue(catalog=self.catalog, engine=engine, cache=self.cache)
        self.performance = SearchPerformanceTracker()
        self.query_service = QueryExecutionService(
            engine=engine, fallback=self.fallback, cache=self.cache, performance=self.performance
        )
        self.suggestions = SuggestionService(engine=engine, fallback=self.fallback, cache=self.cache)
        self.experiments = ExperimentManager()
        self.intelligent = IntelligentSearchService(
            query_service=self.query_service, experiments=self.experiments
        )
        self.admin = IndexAdminService(
            engine=engine, queue=self.queue, catalog=self.catalog, performance=self.performance
        )

    def install(self) -> None:
        app.dependency_overrides.update({
            deps.get_query_service: lambda: self.query_service,
            deps.get_suggestion_service: lambda: self.suggestions,
            deps.get_experiment_manager: lambda: self.experiments,
            deps.get_intelligent_search_service: lambda: self.intelligent,
            deps.get_admin_service: lambda: self.admin,
            deps.get_sync_queue: lambda: self.queue,
        })

    def close(self) -> None:
        app.dependency_overrides.clear()
        self.query_service.close()
        self.suggestions.close()

    def add(self, *assets: Asset) -> None:
        """Store assets in the catalog and index them synchronously."""
        self.catalog.save_many(assets)
        for asset in assets:
            self.engine.upsert(asset.to_index_document())


@pytest.fixture
def wiring(tmp_path):
    w = Wiring(tmp_path, BM25IndexEngine())
    w.install()
    yield w
    w.close()


@pytest.fixture
def down_wiring(tmp_path):
    w = Wiring(tmp_path, DownEngine())
    w.install()
    yield w
    w.close()


@pytest.fixture
def client():
    return TestClient(app)


def hit_ids(body):
    return [item["asset"]["id"] for item in body["data"]["items"]]


# =============================================================================
# Search
# =============================================================================


class TestSearchEndpoint:
    """Tests for POST /api/v1/search and /search/live."""

    def test_search_returns_envelope(self, wiring, client):
        wiring.add(
            make_asset("a-1", "Sales Report"),
            make_asset("a-2", "Sales Summary"),
            make_asset("a-3", "Marketing Report"),
        )

        response = client.post("/api/v1/search", json={"query": "sales"})

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert set(hit_ids(body)) == {"a-1", "a-2"}
        assert body["data"]["total"] == 2
        assert body["data"]["source"] == "engine"
        assert body["data"]["degraded"] is False
        assert body["data"]["items"][0]["rank"] == 1

    def test_pagination_fields(self, wiring, client):
        wiring.add(*[make_asset(f"a-{i}", f"Orders {i}") for i in range(5)])

        response = client.post("/api/v1/search", json={"query": "orders", "page": 3, "page_size": 2})

        data = response.json()["data"]
        assert data["total"] == 5
        assert data["total_pages"] == 3
        assert len(data["items"]) == 1

    def test_hits_carry_highlights(self, wiring, client):
        wiring.add(make_asset("a-1", "Sales Report", description="Monthly sales by region"))

        item = client.post("/api/v1/search", json={"query": "sales"}).json()["data"]["items"][0]

        assert item["highlights"] == {
            "name": ["<mark>Sales</mark> Report"],
            "description": ["Monthly <mark>sales</mark> by region"],
        }

    def test_filters_are_applied(self, wiring, client):
        wiring.add(
            make_asset("a-1", "Sales Report"),
            make_asset("a-2", "Sales Board", type="dashboard"),
        )

        response = client.post(
            "/api/v1/search",
            json={"query": "sales", "filters": {"types": ["dashboard"]}},
        )

        assert hit_ids(response.json()) == ["a-2"]

    def test_empty_query_is_rejected(self, wiring, client):
        response = client.post("/api/v1/search", json={"query": ""})

        assert response.status_code == 422

    def test_page_size_limit(self, wiring, client):
        response = client.post("/api/v1/search", json={"query": "sales", "page_size": 101})

        assert response.status_code == 422

    def test_engine_down_serves_fallback(self, down_wiring, client):
        down_wiring.catalog.save(make_asset("a-1", "Sales Report"))

        response = client.post("/api/v1/search", json={"query": "sales"})

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["source"] == "fallback"
        assert data["degraded"] is True
        assert "unreachable" in data["degradation_reason"]
        assert [item["asset"]["id"] for item in data["items"]] == ["a-1"]
        assert data["items"][0]["highlights"] == {"name": ["<mark>Sales</mark> Report"]}

    def test_live_search(self, wiring, client):
        wiring.add(
            make_asset("a-1", "Sales Report"),
            make_asset("a-2", "Sales Archive", status="deprecated"),
        )

        response = client.post("/api/v1/search/live", json={"query": "sales", "size": 5})

        assert response.status_code == 200
        assert hit_ids(response.json()) == ["a-1"]


class TestIntelligentSearchEndpoint:
    """Tests for POST /api/v1/search/intelligent."""

    def test_reports_weights_and_signals(self, wiring, client):
        wiring.add(make_asset("a-1", "Sales Report", popularity=10))

        response = client.post(
            "/api/v1/search/intelligent",
            json={
                "query": "sales",
                "custom_weights": {
                    "relevance": 0.7, "popularity": 0.1, "recency": 0.1, "personalization": 0.1,
                },
            },
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["weights"]["relevance"] == 0.7
        assert data["variant"] is None
        [hit] = data["results"]
        assert hit["position"] == 1
        assert 0.0 <= hit["signals"]["final"] <= 1.0

    def test_weights_must_sum_to_one(self, wiring, client):
        response = client.post(
            "/api/v1/search/intelligent",
            json={
                "query": "sales",
                "custom_weights": {
                    "relevance": 0.9, "popularity": 0.9, "recency": 0.0, "personalization": 0.0,
                },
            },
        )

        assert response.status_code == 400


# =============================================================================
# Suggestions
# =============================================================================


class TestSuggestEndpoint:
    def test_suggests_asset_names(self, wiring, client):
        wiring.add(make_asset("a-1", "Sales Report"), make_asset("a-2", "Marketing Report"))

        response = client.post("/api/v1/suggest", json={"prefix": "sal"})

        assert response.status_code == 200
        suggestions = response.json()["data"]
        assert {"text": "Sales Report", "type": "asset_name"}.items() <= suggestions[0].items()

    def test_blank_prefix_is_bad_request(self, wiring, client):
        response = client.post("/api/v1/suggest", json={"prefix": "   "})

        assert response.status_code == 400

    def test_popular(self, wiring, client):
        wiring.add(
            make_asset("a-1", "Sales Report", popularity=5),
            make_asset("a-2", "Marketing Report", popularity=50),
        )

        response = client.get("/api/v1/suggest/popular", params={"limit": 1})

        assert [s["text"] for s in response.json()["data"]] == ["Marketing Report"]

    def test_popular_limit_above_maximum(self, wiring, client):
        response = client.get("/api/v1/suggest/popular", params={"limit": 30})

        assert response.status_code == 422

    def test_popular_limit_rejected_by_service_is_bad_request(self, wiring, client):
        wiring.suggestions = SuggestionService(
            engine=wiring.engine,
            fallback=wiring.fallback,
            cache=wiring.cache,
            config=SuggestionConfig(max_size=5),
        )

        response = client.get("/api/v1/suggest/popular", params={"limit": 10})

        assert response.status_code == 400
        assert "limit" in response.json()["detail"]


# =============================================================================
# Administration and synchronization
# =============================================================================


class TestAdminEndpoints:
    """Tests for /api/v1/admin and /api/v1/health."""

    def test_sync_asset_accepted(self, wiring, client):
        wiring.catalog.save(make_asset("a-1", "Sales Report"))

        response = client.post("/api/v1/admin/sync/a-1", json={"action": "create"})

        assert response.status_code == 202
        assert response.json()["data"]["task_ids"] == ["sync-000001"]

        status = client.get("/api/v1/admin/queue/status").json()["data"]
        assert status["queue_length"] == 1
        assert status["upcoming"][0]["target_ids"] == ["a-1"]

    def test_invalid_priority(self, wiring, client):
        response = client.post("/api/v1/admin/sync/a-1", json={"priority": 11})

        assert response.status_code == 422

    def test_full_resync(self, wiring, client):
        wiring.catalog.save_many([
            make_asset("a-1", "Sales Report"),
            make_asset("a-2", "Draft Report", status="draft"),
        ])

        response = client.post("/api/v1/admin/sync", json={"full_sync": True})

        assert response.status_code == 202
        wiring.queue.drain()
        assert wiring.engine.count() == 1

    def test_index_stats(self, wiring, client):
        wiring.add(make_asset("a-1", "Sales Report"))

        stats = client.get("/api/v1/admin/index/stats").json()["data"]

        assert stats["exists"] is True
        assert stats["document_count"] == 1

    def test_dead_letters_empty(self, wiring, client):
        assert client.get("/api/v1/admin/queue/dead-letters").json()["data"] == []

    def test_health_ok(self, wiring, client):
        wiring.add(make_asset("a-1", "Sales Report"))

        body = client.get("/api/v1/health").json()

        assert body["data"]["status"] == "ok"
        assert body["data"]["components"]["catalog_assets"] == 1
        assert body["data"]["components"]["sync_worker"] is False

    def test_health_degraded(self, down_wiring, client):
        body = client.get("/api/v1/health").json()

        assert body["data"]["status"] == "degraded"
        assert body["data"]["components"]["index_engine"] is False

    def test_search_performance(self, down_wiring, client):
        down_wiring.catalog.save(make_asset("a-1", "Sales Report"))
        client.post("/api/v1/search", json={"query": "sales"})
        client.post("/api/v1/search", json={"query": "report"})

        data = client.get("/api/v1/admin/search/performance").json()["data"]

        assert data["total_requests"] == 2
        assert data["fallback_rate"] == 1.0
        assert data["error_rate"] == 0.0
        assert [s["source"] for s in data["by_source"]] == ["fallback"]
        assert data["by_source"][0]["requests"] == 2

    def test_health_reports_search_figures(self, wiring, client):
        wiring.add(make_asset("a-1", "Sales Report"))
        client.post("/api/v1/search", json={"query": "sales"})

        search = client.get("/api/v1/health").json()["data"]["components"]["search"]

        assert search["total_requests"] == 1
        assert search["fallback_rate"] == 0.0


class TestSyncEndToEnd:
    """Catalog change -> sync task -> index -> search, through the API."""

    def test_create_then_delete(self, wiring, client):
        search = {"query": "inventory"}
        assert client.post("/api/v1/search", json=search).json()["data"]["total"] == 0

        wiring.catalog.save(make_asset("a-1", "Inventory Levels"))
        client.post("/api/v1/admin/sync/a-1", json={"action": "create"})
        wiring.queue.drain()

        # The zero-hit page above was cached; indexing invalidated it
        assert hit_ids(client.post("/api/v1/search", json=search).json()) == ["a-1"]

        wiring.catalog.delete("a-1")
        client.post("/api/v1/admin/sync/a-1", json={"action": "delete"})
        wiring.queue.drain()

        assert client.post("/api/v1/search", json=search).json()["data"]["total"] == 0


# =============================================================================
# Experiments
# =============================================================================


def experiment_payload(**overrides):
    payload = {
        "name": "recency boost",
        "end_date": "2099-01-01T00:00:00Z",
        "variants": [
            {"name": "control", "traffic": 0.5, "weights": {
                "relevance": 0.4, "popularity": 0.3, "recency": 0.2, "personalization": 0.1}},
            {"name": "treatment", "traffic": 0.5, "weights": {
                "relevance": 0.3, "popularity": 0.2, "recency": 0.4, "personalization": 0.1}},
        ],
    }
    payload.update(overrides)
    return payload


class TestExperimentEndpoints:
    """Tests for /api/v1/experiments."""

    def test_lifecycle(self, wiring, client):
        created = client.post("/api/v1/experiments", json=experiment_payload())
        assert created.status_code == 201
        experiment_id = created.json()["data"]["id"]
        assert experiment_id == "exp-0001"
        assert created.json()["data"]["status"] == "created"

        started = client.post(f"/api/v1/experiments/{experiment_id}/start")
        assert started.json()["data"]["status"] == "active"

        assert client.post(f"/api/v1/experiments/{experiment_id}/start").status_code == 409

        stopped = client.post(f"/api/v1/experiments/{experiment_id}/stop", json={"reason": "done"})
        assert stopped.json()["data"]["stop_reason"] == "done"

        listed = client.get("/api/v1/experiments").json()["data"]
        assert [e["id"] for e in listed] == [experiment_id]

    def test_traffic_must_sum_to_one(self, wiring, client):
        payload = experiment_payload()
        payload["variants"][1]["traffic"] = 0.2

        assert client.post("/api/v1/experiments", json=payload).status_code == 400

    def test_needs_two_variants(self, wiring, client):
        payload = experiment_payload()
        payload["variants"] = payload["variants"][:1]

        assert client.post("/api/v1/experiments", json=payload).status_code == 422

    def test_unknown_experiment(self, wiring, client):
        assert client.get("/api/v1/experiments/exp-9999").status_code == 404
        assert client.get("/api/v1/experiments/exp-9999/report").status_code == 404
        assert client.post(
            "/api/v1/experiments/exp-9999/assign", json={"user_id": "u-1"}
        ).status_code == 404

    def test_assignment_is_sticky(self, wiring, client):
        experiment_id = client.post("/api/v1/experiments", json=experiment_payload()).json()["data"]["id"]
        client.post(f"/api/v1/experiments/{experiment_id}/start")

        first = client.post(f"/api/v1/experiments/{experiment_id}/assign", json={"user_id": "u-1"})
        second = client.post(f"/api/v1/experiments/{experiment_id}/assign", json={"user_id": "u-1"})

        assert first.status_code == 200
        assert first.json()["data"]["variant"] == second.json()["data"]["variant"]

    def test_assign_before_start_is_bad_request(self, wiring, client):
        experiment_id = client.post("/api/v1/experiments", json=experiment_payload()).json()["data"]["id"]

        response = client.post(f"/api/v1/experiments/{experiment_id}/assign", json={"user_id": "u-1"})

        assert response.status_code == 400

    def test_outcomes_and_report(self, wiring, client):
        experiment_id = client.post("/api/v1/experiments", json=experiment_payload()).json()["data"]["id"]
        client.post(f"/api/v1/experiments/{experiment_id}/start")
        client.post(
            f"/api/v1/experiments/{experiment_id}/assign",
            json={"user_id": "u-1", "force_variant": "treatment"},
        )

        recorded = client.post(
            f"/api/v1/experiments/{experiment_id}/outcomes",
            json={"user_id": "u-1", "session_id": "s-1", "satisfaction": 4.0, "converted": True},
        )
        unassigned = client.post(
            f"/api/v1/experiments/{experiment_id}/outcomes",
            json={"user_id": "u-2", "session_id": "s-2", "converted": True},
        )

        assert recorded.json()["data"]["recorded"] is True
        assert unassigned.json()["data"]["recorded"] is False

        report = client.get(f"/api/v1/experiments/{experiment_id}/report").json()["data"]
        stats = {v["variant"]: v for v in report["variants"]}
        assert stats["treatment"]["sessions"] == 1
        assert stats["treatment"]["conversions"] == 1
        assert report["recommendation"] == "continue"

    def test_intelligent_search_uses_variant(self, wiring, client):
        wiring.add(make_asset("a-1", "Sales Report"))
        experiment_id = client.post("/api/v1/experiments", json=experiment_payload()).json()["data"]["id"]
        client.post(f"/api/v1/experiments/{experiment_id}/start")
        client.post(
            f"/api/v1/experiments/{experiment_id}/assign",
            json={"user_id": "u-1", "force_variant": "treatment"},
        )

        response = client.post(
            "/api/v1/search/intelligent",
            json={"query": "sales", "user_id": "u-1", "experiment_id": experiment_id},
        )

        data = response.json()["data"]
        assert data["variant"] == "treatment"
        assert data["weights"]["recency"] == 0.4


def test_root(client):
    assert client.get("/").json()["health"] == "/api/v1/health"


def test_lifespan_runs_and_stops_sync_worker(tmp_path, monkeypatch, caplog):
    monkeypatch.setattr(deps, "DB_PATH", tmp_path / "catalog.db")
    monkeypatch.setattr(deps, "INDEX_SNAPSHOT_PATH", tmp_path / "missing.pkl")
    monkeypatch.setattr(deps, "SEARCH_ENGINE_URL", None)
    monkeypatch.setattr(deps, "REDIS_URL", None)
    deps.reset_dependencies()

    with caplog.at_level(logging.INFO, logger="catalog_search.main"):
        with TestClient(app) as lifespan_client:
            queue = deps.get_sync_queue()
            assert queue.is_running() is True
            assert lifespan_client.get("/").status_code == 200

    assert queue.is_running() is False
    messages = [record.getMessage() for record in caplog.records]
    assert "Catalog search API started" in messages
    assert "Catalog search API shutting down" in messages
