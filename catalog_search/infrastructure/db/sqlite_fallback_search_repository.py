"""
Relational fallback search over the SQLite system of record.

Used when the index engine is slow or down. Free text is a case-insensitive
substring match over the searchable columns; filters, sorting and pagination
follow the same rules as the index engine (see SearchFilters.matches), so a
degraded page can be swapped for an engine page without the caller noticing
anything but the scores.
"""

import json
import logging
import sqlite3
from collections import Counter
from pathlib import Path
from typing import List, Tuple

from catalog_search.domain.entities import Asset, SearchHit
from catalog_search.domain.errors import TransientBackendError
from catalog_search.domain.ports import FallbackSearchRepository
from catalog_search.domain.utils import build_highlights, highlight_substring
from catalog_search.domain.value_objects import (
    EngineResult,
    SearchFilters,
    SearchSort,
    StructuredQuery,
)
from catalog_search.infrastructure.db.sqlite_asset_catalog_repository import connect, row_to_asset

logger = logging.getLogger(__name__)

FALLBACK_SCORE = 1.0
"""Uniform score of every fallback hit; the fallback has no relevance model"""

TEXT_COLUMNS: Tuple[str, ...] = (
    "name",
    "code",
    "description",
    "secondary_text",
    "category_name",
    "hierarchy_level1",
    "hierarchy_level2",
    "hierarchy_level3",
)

# Tags are a JSON array; match the values, not the JSON text around them
TAG_CONDITION = (
    "EXISTS (SELECT 1 FROM json_each(assets.tags) "
    "WHERE CASEFOLD(json_each.value) LIKE ? ESCAPE '\\')"
)

ORDER_BY = {
    SearchSort.RELEVANCE: "name COLLATE NOCASE ASC, id ASC",
    SearchSort.NAME: "name COLLATE NOCASE ASC, id ASC",
    SearchSort.CREATED_AT: "created_at DESC, id ASC",
    SearchSort.QUALITY_SCORE: "quality_score IS NULL, quality_score DESC, id ASC",
}

# Grouped value sources for suggestions: (column, suggestion type)
SUGGESTION_COLUMNS: Tuple[Tuple[str, str], ...] = (
    ("name", "asset_name"),
    ("category_name", "category"),
    ("hierarchy_level1", "database"),
    ("hierarchy_level2", "schema"),
    ("hierarchy_level3", "table"),
)


def like_pattern(text: str) -> str:
    """Casefolded substring LIKE pattern with LIKE wildcards escaped (ESCAPE '\\')."""
    escaped = text.casefold().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def filters_to_sql(filters: SearchFilters) -> Tuple[List[str], List[object]]:
    """
    Translate filters into WHERE conditions (AND-ed by the caller).

    Returns:
        (conditions, parameters)
    """
    conditions: List[str] = []
    params: List[object] = []

    if filters.statuses:
        conditions.append(f"status IN ({', '.join('?' * len(filters.statuses))})")
        params.extend(filters.statuses)

    if filters.types:
        conditions.append(f"type IN ({', '.join('?' * len(filters.types))})")
        params.extend(filters.types)

    if filters.category_id is not None:
        conditions.append("category_id = ?")
        params.append(filters.category_id)

    if filters.has_quality_range():
        conditions.append("quality_score IS NOT NULL")
        if filters.quality_score_min is not None:
            conditions.append("quality_score >= ?")
            params.append(filters.quality_score_min)
        if filters.quality_score_max is not None:
            conditions.append("quality_score <= ?")
            params.append(filters.quality_score_max)

    return conditions, params


class SqliteFallbackSearchRepository(FallbackSearchRepository):
    """Substring search, value aggregation and popularity listing over the assets table."""

    def __init__(self, db_path: Path, timeout_s: float = 3.0) -> None:
        self._db_path = Path(db_path)
        self._timeout_s = timeout_s

    def _get_connection(self) -> sqlite3.Connection:
        return connect(self._db_path, timeout_s=self._timeout_s)

    def search(self, query: StructuredQuery) -> EngineResult:
        """
        Substring search with the engine's filter, sort and pagination rules.

        Blank text matches nothing, as it does on the engine.

        Raises:
            TransientBackendError: If the database cannot be queried
        """
        text = query.text.strip()
        if not text:
            return EngineResult(hits=(), total=0)

        pattern = like_pattern(text)
        text_condition = "(" + " OR ".join(
            [f"CASEFOLD(COALESCE({column}, '')) LIKE ? ESCAPE '\\'" for column in TEXT_COLUMNS]
            + [TAG_CONDITION]
        ) + ")"
        conditions, params = filters_to_sql(query.filters)
        where = " AND ".join([text_condition] + conditions)
        where_params = [pattern] * (len(TEXT_COLUMNS) + 1) + params

        try:
            with self._get_connection() as conn:
                total = conn.execute(
                    f"SELECT COUNT(*) AS cnt FROM assets WHERE {where}", where_params
                ).fetchone()["cnt"]
                rows = conn.execute(
                    f"SELECT * FROM assets WHERE {where} "
                    f"ORDER BY {ORDER_BY[query.sort]} LIMIT ? OFFSET ?",
                    where_params + [query.limit, query.offset],
                ).fetchall()
        except sqlite3.Error as e:
            raise TransientBackendError(f"Fallback search failed: {e}") from e

        hits = []
        for position, row in enumerate(rows, start=1):
            document = row_to_asset(row).to_index_document()
            hits.append(
                SearchHit(
                    document=document,
                    score=FALLBACK_SCORE,
                    rank=query.offset + position,
                    highlights=build_highlights(
                        {"name": document.name, "description": document.description},
                        lambda value: highlight_substring(value, text),
                    ),
                )
            )
        logger.debug(f"Fallback search for '{text}' matched {total} assets")
        return EngineResult(hits=tuple(hits), total=total)

    def suggest_values(self, text: str, limit: int) -> List[Tuple[str, str, int]]:
        """
        Distinct values containing ``text``, with how many assets carry each.

        Raises:
            TransientBackendError: If the database cannot be queried
        """
        text = text.strip()
        if not text:
            return []

        pattern = like_pattern(text)
        values: List[Tuple[str, str, int]] = []
        try:
            with self._get_connection() as conn:
                for column, suggestion_type in SUGGESTION_COLUMNS:
                    rows = conn.execute(
                        f"SELECT {column} AS value, COUNT(*) AS cnt FROM assets "
                        f"WHERE CASEFOLD({column}) LIKE ? ESCAPE '\\' "
                        f"GROUP BY {column} ORDER BY cnt DESC, {column} LIMIT ?",
                        (pattern, limit),
                    ).fetchall()
                    values.extend((row["value"], suggestion_type, row["cnt"]) for row in rows)

                tag_rows = conn.execute(
                    f"SELECT tags FROM assets WHERE {TAG_CONDITION}",
                    (pattern,),
                ).fetchall()
        except sqlite3.Error as e:
            raise TransientBackendError(f"Fallback suggestions failed: {e}") from e

        needle = text.casefold()
        tag_counts: Counter = Counter()
        for row in tag_rows:
            for tag in json.loads(row["tags"] or "[]"):
                if needle in tag.casefold():
                    tag_counts[tag] += 1
        values.extend((tag, "tag", count) for tag, count in tag_counts.most_common(limit))
        return values

    def popular_assets(self, limit: int) -> List[Asset]:
        """
        Most popular active assets.

        Raises:
            TransientBackendError: If the database cannot be queried
        """
        try:
            with self._get_connection() as conn:
                rows = conn.execute(
                    "SELECT * FROM assets WHERE status = 'active' "
                    "ORDER BY popularity DESC, name COLLATE NOCASE ASC, id ASC LIMIT ?",
                    (limit,),
                ).fetchall()
        except sqlite3.Error as e:
            raise TransientBackendError(f"Popular asset query failed: {e}") from e
        return [row_to_asset(row) for row in rows]
