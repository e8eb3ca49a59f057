"""SQLite adapters: the asset system of record and the relational fallback search."""
