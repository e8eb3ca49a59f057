"""
Integration tests for BM25IndexEngine.

These are real integration tests (no mocks) that verify boosted, fuzzy,
filtered search with actual Asset projections and the rank-bm25 library.
"""

import pickle
from datetime import datetime, timezone

import pytest

from catalog_search.domain.entities import Asset
from catalog_search.domain.value_objects import (
    SEARCH_FIELD_BOOSTS,
    SearchFilters,
    SearchSort,
    StructuredQuery,
)
from catalog_search.infrastructure.search.bm25_index_engine import BM25IndexEngine, tokenize


def create_asset(asset_id: str, name: str, **overrides) -> Asset:
    data = dict(
        id=asset_id,
        name=name,
        type="report",
        status="active",
        created_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        updated_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
    )
    data.update(overrides)
    return Asset(**data)


def make_query(text: str, **overrides) -> StructuredQuery:
    return StructuredQuery(text=text, field_boosts=SEARCH_FIELD_BOOSTS, **overrides)


@pytest.fixture
def sample_assets():
    """A small catalog: two sales reports and a marketing report."""
    return [
        create_asset("a-1", "Sales Report", description="Monthly revenue by region", quality_score=7.0),
        create_asset("a-2", "Sales Summary", description="Quarterly totals", quality_score=9.0,
                     created_at=datetime(2024, 3, 1, tzinfo=timezone.utc)),
        create_asset("a-3", "Marketing Report", description="Campaign performance", type="dashboard",
                     tags=["campaigns"], category_id="cat-mkt"),
    ]


@pytest.fixture
def engine(sample_assets):
    """Create an engine with indexed assets."""
    engine = BM25IndexEngine()
    engine.initialize()
    for asset in sample_assets:
        engine.upsert(asset.to_index_document())
    return engine


def ids(result):
    return [hit.document.id for hit in result.hits]


# =============================================================================
# Tests: Tokenizer
# =============================================================================


class TestTokenize:
    def test_lowercases_and_splits(self):
        assert tokenize("Sales Report, 2024!") == ["sales", "report", "2024"]

    def test_keeps_identifiers_together(self):
        assert tokenize("sales_report-v2") == ["sales_report", "v2"]


# =============================================================================
# Tests: Search
# =============================================================================


class TestBM25Search:
    """Tests for scoring, fuzziness and pagination."""

    def test_exact_query_ranks_matches_first(self, engine):
        result = engine.query(make_query("Sales"))

        assert set(ids(result)) == {"a-1", "a-2"}
        assert result.total == 2
        assert [hit.rank for hit in result.hits] == [1, 2]

    def test_fuzzy_query_finds_same_documents_with_lower_scores(self, engine):
        exact = engine.query(make_query("Sales"))
        fuzzy = engine.query(make_query("Sals"))

        assert set(ids(fuzzy)) == {"a-1", "a-2"}
        exact_scores = {hit.document.id: hit.score for hit in exact.hits}
        for hit in fuzzy.hits:
            assert 0 < hit.score < exact_scores[hit.document.id]

    def test_fuzziness_zero_disables_typo_matching(self, engine):
        result = engine.query(make_query("Sals", fuzziness=0))

        assert result.total == 0

    def test_short_terms_are_not_fuzzy(self, engine):
        # Two-letter terms get no edit budget under AUTO
        assert engine.query(make_query("sa")).total == 0

    def test_name_boost_beats_description(self):
        engine = BM25IndexEngine()
        engine.upsert(create_asset("in-name", "Revenue").to_index_document())
        engine.upsert(create_asset("in-desc", "Ledger", description="Revenue ledger").to_index_document())

        result = engine.query(make_query("revenue"))

        assert ids(result)[0] == "in-name"

    def test_terms_are_ored(self, engine):
        result = engine.query(make_query("summary campaign"))

        assert set(ids(result)) == {"a-2", "a-3"}

    def test_empty_query(self, engine):
        assert engine.query(make_query("   ")).total == 0

    def test_empty_index(self):
        assert BM25IndexEngine().query(make_query("sales")).total == 0

    def test_pagination(self, engine):
        first = engine.query(make_query("report sales", limit=2))
        second = engine.query(make_query("report sales", offset=2, limit=2))

        assert first.total == second.total == 3
        assert len(first.hits) == 2
        assert len(second.hits) == 1
        assert second.hits[0].rank == 3
        assert set(ids(first)) | set(ids(second)) == {"a-1", "a-2", "a-3"}

    def test_page_past_end(self, engine):
        result = engine.query(make_query("sales", offset=10, limit=5))

        assert result.hits == ()
        assert result.total == 2


class TestBM25Highlights:
    """Matched terms are marked in name and description."""

    def test_exact_terms(self, engine):
        result = engine.query(make_query("revenue"))

        [hit] = result.hits
        assert hit.highlights == {"description": ("Monthly <mark>revenue</mark> by region",)}

    def test_fuzzy_terms_mark_the_matched_word(self, engine):
        result = engine.query(make_query("Sals"))

        for hit in result.hits:
            assert hit.highlights["name"][0].startswith("<mark>Sales</mark>")

    def test_unmatched_fields_are_omitted(self, engine):
        result = engine.query(make_query("summary"))

        assert result.hits[0].highlights == {"name": ("Sales <mark>Summary</mark>",)}


class TestBM25Filters:
    """Tests for filtering and sorting."""

    def test_filter_by_type(self, engine):
        result = engine.query(make_query("report", filters=SearchFilters(types=("dashboard",))))

        assert ids(result) == ["a-3"]

    def test_filter_by_quality(self, engine):
        result = engine.query(make_query("report sales", filters=SearchFilters(quality_score_min=8.0)))

        assert ids(result) == ["a-2"]

    def test_filter_by_category(self, engine):
        result = engine.query(make_query("report", filters=SearchFilters(category_id="cat-mkt")))

        assert ids(result) == ["a-3"]

    def test_sort_by_name(self, engine):
        result = engine.query(make_query("report sales", sort=SearchSort.NAME))

        assert ids(result) == ["a-3", "a-1", "a-2"]

    def test_sort_by_created_at_newest_first(self, engine):
        result = engine.query(make_query("sales", sort=SearchSort.CREATED_AT))

        assert ids(result) == ["a-2", "a-1"]

    def test_sort_by_quality_unscored_last(self, engine):
        result = engine.query(make_query("report sales", sort=SearchSort.QUALITY_SCORE))

        assert ids(result) == ["a-2", "a-1", "a-3"]


# =============================================================================
# Tests: Writes and lifecycle
# =============================================================================


class TestBM25Writes:
    """Tests for upsert, delete and stats."""

    def test_upsert_replaces_document(self, engine):
        engine.upsert(create_asset("a-3", "Inventory Levels").to_index_document())

        assert engine.query(make_query("marketing")).total == 0
        assert ids(engine.query(make_query("inventory"))) == ["a-3"]
        assert engine.count() == 3

    def test_delete(self, engine):
        assert engine.delete("a-1") is True
        assert engine.delete("a-1") is False

        assert ids(engine.query(make_query("sales"))) == ["a-2"]

    def test_bulk_upsert_reports_bad_documents(self):
        engine = BM25IndexEngine()
        good = create_asset("ok", "Orders").to_index_document()
        bad = create_asset("x", "Broken").to_index_document()
        object.__setattr__(bad, "id", "")

        failed = engine.bulk_upsert([good, bad])

        assert len(failed) == 1
        assert "without an id" in failed[0][1]
        assert engine.count() == 1

    def test_stats(self, engine):
        stats = engine.stats()

        assert stats.exists is True
        assert stats.document_count == 3
        assert stats.size_bytes > 0

    def test_field_terms(self, engine):
        terms = engine.field_terms("name")

        assert terms == {"Marketing Report": 1, "Sales Report": 1, "Sales Summary": 1}
        assert engine.field_terms("tags") == {"campaigns": 1}

    def test_optimize_keeps_results(self, engine):
        before = ids(engine.query(make_query("sales")))
        engine.optimize()

        assert ids(engine.query(make_query("sales"))) == before


class TestBM25Snapshot:
    """Tests for pickle snapshot persistence."""

    def test_save_and_load(self, engine, tmp_path):
        path = tmp_path / "indexes" / "assets.pkl"
        engine.save_snapshot(str(path))

        restored = BM25IndexEngine()
        loaded = restored.load_snapshot(str(path))

        assert loaded == 3
        assert ids(restored.query(make_query("sales"))) == ids(engine.query(make_query("sales")))

    def test_load_missing_snapshot(self, tmp_path):
        with pytest.raises(IOError, match="not found"):
            BM25IndexEngine().load_snapshot(str(tmp_path / "missing.pkl"))

    def test_load_wrong_format(self, tmp_path):
        path = tmp_path / "bad.pkl"
        path.write_bytes(pickle.dumps({"version": 99}))

        with pytest.raises(ValueError, match="Unsupported"):
            BM25IndexEngine().load_snapshot(str(path))
