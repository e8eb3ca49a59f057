"""
Search infrastructure adapters.

This package contains:
- BM25IndexEngine: in-process index engine using rank_bm25
- ElasticsearchIndexEngine: index engine over the Elasticsearch REST API
"""

from .bm25_index_engine import BM25IndexEngine
from .elasticsearch_index_engine import ElasticsearchIndexEngine

__all__ = ["BM25IndexEngine", "ElasticsearchIndexEngine"]
