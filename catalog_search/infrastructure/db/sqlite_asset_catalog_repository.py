"""
SQLite implementation of the AssetCatalogRepository port.

This adapter is the system of record: it persists Asset entities, handling
serialization of tags (JSON) and timestamps (ISO 8601).
"""

import json
import sqlite3
from datetime import datetime, UTC
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

from catalog_search.domain.entities import Asset
from catalog_search.domain.ports import AssetCatalogRepository

ASSET_COLUMNS = (
    "id", "name", "code", "description", "secondary_text", "type", "category_id",
    "category_name", "status", "tags", "hierarchy_level1", "hierarchy_level2",
    "hierarchy_level3", "quality_score", "popularity", "created_at", "updated_at",
)

# SQLite caps host parameters per statement; stay well below it
_MAX_PARAMS = 500

_UPSERT_SQL = (
    "INSERT INTO assets (" + ", ".join(ASSET_COLUMNS) + ") "
    "VALUES (" + ", ".join(":" + c for c in ASSET_COLUMNS) + ") "
    "ON CONFLICT(id) DO UPDATE SET "
    + ", ".join(c + "=excluded." + c for c in ASSET_COLUMNS if c not in ("id", "created_at"))
)


def _casefold(value: Optional[str]) -> Optional[str]:
    return value.casefold() if isinstance(value, str) else value


def connect(db_path: Path, timeout_s: float = 5.0) -> sqlite3.Connection:
    """
    Open a connection with named-column rows.

    Registers CASEFOLD(text): SQLite's own LOWER() only folds ASCII letters.
    """
    conn = sqlite3.connect(str(db_path), timeout=timeout_s)
    conn.row_factory = sqlite3.Row
    conn.create_function("CASEFOLD", 1, _casefold, deterministic=True)
    return conn


def row_to_asset(row: sqlite3.Row) -> Asset:
    """Convert a database row to an Asset entity."""
    created_at = datetime.fromisoformat(row["created_at"])
    updated_at = datetime.fromisoformat(row["updated_at"])
    return Asset(
        id=row["id"],
        name=row["name"],
        code=row["code"],
        description=row["description"],
        secondary_text=row["secondary_text"],
        type=row["type"],
        category_id=row["category_id"],
        category_name=row["category_name"],
        status=row["status"],
        tags=json.loads(row["tags"]) if row["tags"] else [],
        hierarchy_level1=row["hierarchy_level1"],
        hierarchy_level2=row["hierarchy_level2"],
        hierarchy_level3=row["hierarchy_level3"],
        quality_score=row["quality_score"],
        popularity=row["popularity"] or 0,
        created_at=created_at if created_at.tzinfo else created_at.replace(tzinfo=UTC),
        updated_at=updated_at if updated_at.tzinfo else updated_at.replace(tzinfo=UTC),
    )


class SqliteAssetCatalogRepository(AssetCatalogRepository):
    """
    Asset catalog stored in a single SQLite table.

    Each call opens its own connection, so the repository can be shared
    between the request threads and the index sync worker.
    """

    def __init__(self, db_path: Path) -> None:
        """
        Initialize the repository with a database path
        """
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _get_connection(self) -> sqlite3.Connection:
        return connect(self._db_path)

    def _init_schema(self) -> None:
        """Create the assets table if it doesn't exist."""
        with self._get_connection() as conn:
            conn.execute("""
            CREATE TABLE IF NOT EXISTS assets (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                code TEXT,
                description TEXT,
                secondary_text TEXT,
                type TEXT NOT NULL,
                category_id TEXT,
                category_name TEXT,
                status TEXT NOT NULL,
                tags TEXT,
                hierarchy_level1 TEXT,
                hierarchy_level2 TEXT,
                hierarchy_level3 TEXT,
                quality_score REAL,
                popularity INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_assets_status ON assets(status)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_assets_name ON assets(name)")
        conn.commit()

    def _asset_to_row(self, asset: Asset) -> dict:
        """Convert an Asset entity to a database row dict."""
        return {
            "id": str(asset.id),
            "name": asset.name,
            "code": asset.code,
            "description": asset.description,
            "secondary_text": asset.secondary_text,
            "type": asset.type,
            "category_id": asset.category_id,
            "category_name": asset.category_name,
            "status": asset.status,
            "tags": json.dumps(asset.tags or []),
            "hierarchy_level1": asset.hierarchy_level1,
            "hierarchy_level2": asset.hierarchy_level2,
            "hierarchy_level3": asset.hierarchy_level3,
            "quality_score": asset.quality_score,
            "popularity": asset.popularity,
            "created_at": asset.created_at.isoformat(),
            "updated_at": asset.updated_at.isoformat(),
        }

    def count(self) -> int:
        """Get the total number of assets in the catalog."""
        with self._get_connection() as conn:
            result = conn.execute("SELECT COUNT(*) as cnt FROM assets").fetchone()
            return result["cnt"]

    def get_by_id(self, asset_id: str) -> Optional[Asset]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM assets WHERE id = ?",
                (str(asset_id),)
            ).fetchone()

            if row is None:
                return None

            return row_to_asset(row)

    def get_many(self, asset_ids: Sequence[str]) -> Dict[str, Asset]:
        """Retrieve several assets; ids that do not exist are simply absent."""
        ids = [str(i) for i in asset_ids]
        found: Dict[str, Asset] = {}
        with self._get_connection() as conn:
            for start in range(0, len(ids), _MAX_PARAMS):
                chunk = ids[start:start + _MAX_PARAMS]
                placeholders = ", ".join("?" * len(chunk))
                rows = conn.execute(
                    f"SELECT * FROM assets WHERE id IN ({placeholders})", chunk
                ).fetchall()
                for row in rows:
                    found[row["id"]] = row_to_asset(row)
        return found

    def list_ids(self, exclude_statuses: Iterable[str] = ()) -> List[str]:
        excluded = list(exclude_statuses)
        with self._get_connection() as conn:
            if excluded:
                placeholders = ", ".join("?" * len(excluded))
                rows = conn.execute(
                    f"SELECT id FROM assets WHERE status NOT IN ({placeholders}) ORDER BY id",
                    excluded,
                ).fetchall()
            else:
                rows = conn.execute("SELECT id FROM assets ORDER BY id").fetchall()
            return [row["id"] for row in rows]

    def save(self, asset: Asset) -> None:
        """Insert or update an asset."""
        try:
            with self._get_connection() as conn:
                conn.execute(_UPSERT_SQL, self._asset_to_row(asset))
                conn.commit()
        except sqlite3.IntegrityError as e:
            raise ValueError(f"Asset violates catalog constraints: {e}") from e
        except sqlite3.Error as e:
            raise RuntimeError(f"Database error while saving asset: {e}") from e

    def save_many(self, assets: List[Asset]) -> None:
        """Save multiple assets in a single transaction for efficiency."""
        if not assets:
            return

        rows = [self._asset_to_row(asset) for asset in assets]
        try:
            with self._get_connection() as conn:
                conn.executemany(_UPSERT_SQL, rows)
                conn.commit()
        except sqlite3.IntegrityError as e:
            raise ValueError(f"One or more assets violate catalog constraints: {e}") from e
        except sqlite3.Error as e:
            raise RuntimeError(f"Database error while saving assets: {e}") from e

    def delete(self, asset_id: str) -> bool:
        """Delete an asset from the catalog. Returns True if deleted."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "DELETE FROM assets WHERE id = ?",
                (str(asset_id),)
            )
            conn.commit()
            return cursor.rowcount > 0
