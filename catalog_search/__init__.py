"""Catalog search: query execution, ranking, suggestions and index synchronization."""

__version__ = "1.0.0"
