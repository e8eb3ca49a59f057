#!/usr/bin/env python3
"""
Catalog Index Rebuild Script.

This script rebuilds the in-process search index from the asset catalog:
1. Optionally load assets from a JSON file into the catalog (SQLite)
2. Queue a full sync and drain it into a BM25 index engine
3. Persist the index snapshot loaded by the API at startup
4. Run a smoke test query through the QueryExecutionService

Usage:
    python -m scripts.rebuild_index --assets-file data/assets.json --smoke-test-query sales

Args:
    --db-path: Path to SQLite database (default: data/catalog.db)
    --snapshot-path: Where to write the index snapshot (default: data/indexes/asset_index.pkl)
    --assets-file: Optional JSON list of assets to upsert before rebuilding
    --batch-size: Sync queue batch size (default: 50)
    --smoke-test-query: Query for the smoke test (default: skip)
"""

import argparse
import json
import logging
import sys
import time
from datetime import datetime, UTC
from pathlib import Path
from typing import Any, Dict, List, Optional

project_root = Path(__file__).resolve().parents[1]
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from catalog_search.domain.entities import Asset
from catalog_search.domain.services import IndexSyncQueue, QueryExecutionService, TieredCache
from catalog_search.domain.services.query_service import page_to_dict
from catalog_search.domain.value_objects import SearchRequest, SyncQueueConfig
from catalog_search.infrastructure.cache import InMemoryCacheBackend
from catalog_search.infrastructure.db.sqlite_asset_catalog_repository import SqliteAssetCatalogRepository
from catalog_search.infrastructure.db.sqlite_fallback_search_repository import SqliteFallbackSearchRepository
from catalog_search.infrastructure.search import BM25IndexEngine

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# Default paths
DEFAULT_DB_PATH = "data/catalog.db"
DEFAULT_SNAPSHOT_PATH = "data/indexes/asset_index.pkl"


def _parse_timestamp(value: Optional[str]) -> datetime:
    if not value:
        return datetime.now(UTC)
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def asset_from_dict(item: Dict[str, Any]) -> Asset:
    """
    Build an Asset from one JSON record (snake_case keys, as stored in the catalog).

    Raises:
        ValueError: If required fields are missing or invalid
    """
    try:
        return Asset(
            id=str(item["id"]),
            name=item["name"],
            type=item["type"],
            status=item.get("status", "active"),
            code=item.get("code"),
            description=item.get("description"),
            secondary_text=item.get("secondary_text"),
            category_id=item.get("category_id"),
            category_name=item.get("category_name"),
            tags=list(item.get("tags") or []),
            hierarchy_level1=item.get("hierarchy_level1"),
            hierarchy_level2=item.get("hierarchy_level2"),
            hierarchy_level3=item.get("hierarchy_level3"),
            quality_score=item.get("quality_score"),
            popularity=int(item.get("popularity") or 0),
            created_at=_parse_timestamp(item.get("created_at")),
            updated_at=_parse_timestamp(item.get("updated_at")),
        )
    except KeyError as e:
        raise ValueError(f"Asset record is missing field {e}") from e


def load_assets(assets_file: str, catalog_repo: SqliteAssetCatalogRepository) -> int:
    """
    Step 1: Upsert assets from a JSON file into the catalog.

    Returns:
        Number of assets saved
    """
    logger.info("=" * 70)
    logger.info("STEP 1: LOADING ASSETS INTO THE CATALOG")
    logger.info("=" * 70)

    with open(assets_file, "r", encoding="utf-8") as f:
        records: List[Dict[str, Any]] = json.load(f)

    assets: List[Asset] = []
    for record in records:
        try:
            assets.append(asset_from_dict(record))
        except ValueError as e:
            logger.warning(f"Skipping invalid asset record: {e}")

    catalog_repo.save_many(assets)
    logger.info(f"Saved {len(assets)} assets (catalog size: {catalog_repo.count()})")
    return len(assets)


def rebuild_index(
    catalog_repo: SqliteAssetCatalogRepository,
    snapshot_path: str,
    batch_size: int,
) -> BM25IndexEngine:
    """
    Step 2: Full sync of the catalog into a fresh BM25 engine, then persist it.

    Returns:
        The populated engine
    """
    logger.info("=" * 70)
    logger.info("STEP 2: FULL SYNC INTO THE INDEX")
    logger.info("=" * 70)

    engine = BM25IndexEngine()
    engine.initialize()
    queue = IndexSyncQueue(
        catalog=catalog_repo,
        engine=engine,
        config=SyncQueueConfig(batch_size=batch_size),
    )

    task_ids = queue.schedule_bulk(full_sync=True)
    logger.info(f"Queued {len(task_ids)} bulk tasks")
    queue.drain()

    # Retries sit in the delayed heap until their backoff elapses
    while queue.status().queue_length:
        time.sleep(0.5)
        queue.drain()

    metrics = queue.metrics()
    logger.info(
        f"Sync finished: {metrics.total_batches} batches, {metrics.succeeded} tasks ok, "
        f"{metrics.dead_lettered} dead-lettered"
    )
    for record in queue.dead_letters():
        logger.error(f"  - {record.task.id} {list(record.task.target_ids)[:5]}: {record.error}")

    engine.optimize()
    engine.save_snapshot(snapshot_path)
    stats = engine.stats()
    logger.info(f"Index snapshot saved to {snapshot_path} ({stats.document_count} documents)")
    return engine


def run_smoke_test(query: str, engine: BM25IndexEngine, db_path: str) -> None:
    """Step 3: Run one query through the query execution service."""
    logger.info("=" * 70)
    logger.info("STEP 3: SMOKE TEST")
    logger.info("=" * 70)

    service = QueryExecutionService(
        engine=engine,
        fallback=SqliteFallbackSearchRepository(Path(db_path)),
        cache=TieredCache(InMemoryCacheBackend()),
    )
    try:
        page = service.search(SearchRequest(query=query, page_size=5))
    finally:
        service.close()

    if page.degraded:
        logger.warning(f"Search degraded: {page.degradation_reason}")
    logger.info(f"Result: {json.dumps(page_to_dict(page))}")
    for hit in page.items:
        logger.info(f"  {hit.rank}. {hit.document.name} ({hit.document.type}) score={hit.score:.4f}")


def main(
    db_path: str = DEFAULT_DB_PATH,
    snapshot_path: str = DEFAULT_SNAPSHOT_PATH,
    assets_file: Optional[str] = None,
    batch_size: int = 50,
    smoke_test_query: Optional[str] = None,
) -> None:
    logger.info("Starting catalog index rebuild")
    logger.info(f"  - DB path: {db_path}")
    logger.info(f"  - Snapshot path: {snapshot_path}")
    logger.info(f"  - Assets file: {assets_file or 'n/a'}")

    catalog_repo = SqliteAssetCatalogRepository(Path(db_path))
    if assets_file:
        load_assets(assets_file, catalog_repo)

    if catalog_repo.count() == 0:
        logger.error("Catalog is empty. Nothing to index.")
        sys.exit(1)

    engine = rebuild_index(catalog_repo, snapshot_path, batch_size)

    if smoke_test_query:
        run_smoke_test(smoke_test_query, engine, db_path)

    logger.info("=" * 70)
    logger.info("REBUILD COMPLETED")
    logger.info("=" * 70)
    logger.info("Start the API with: python -m catalog_search.main")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(
        description="Rebuild the catalog search index snapshot",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--db-path",
        type=str,
        default=DEFAULT_DB_PATH,
        help=f"Path to SQLite database (default: {DEFAULT_DB_PATH})",
    )
    parser.add_argument(
        "--snapshot-path",
        type=str,
        default=DEFAULT_SNAPSHOT_PATH,
        help=f"Index snapshot output path (default: {DEFAULT_SNAPSHOT_PATH})",
    )
    parser.add_argument(
        "--assets-file",
        type=str,
        default=None,
        help="JSON list of assets to upsert into the catalog first",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=50,
        help="Sync queue batch size (default: 50)",
    )
    parser.add_argument(
        "--smoke-test-query",
        type=str,
        default=None,
        help="Query to run after the rebuild",
    )

    args = parser.parse_args()

    main(
        db_path=args.db_path,
        snapshot_path=args.snapshot_path,
        assets_file=args.assets_file,
        batch_size=args.batch_size,
        smoke_test_query=args.smoke_test_query,
    )
