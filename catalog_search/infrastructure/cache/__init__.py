"""
Cache backends implementing the CacheBackend port.

- InMemoryCacheBackend: process-local dictionary with per-entry expiry
- RedisCacheBackend: shared cache for multi-process deployments
"""

from .memory_cache_backend import InMemoryCacheBackend
from .redis_cache_backend import RedisCacheBackend

__all__ = ["InMemoryCacheBackend", "RedisCacheBackend"]
