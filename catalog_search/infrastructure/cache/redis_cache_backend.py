"""
Redis implementation of the CacheBackend port.

Values are pickled, since cached pages hold domain dataclasses. Only use
this against a Redis instance that nothing untrusted can write to.

Example:
    backend = RedisCacheBackend.from_url("redis://localhost:6379/2")
"""

import logging
import pickle
from typing import Any, Optional

import redis

from catalog_search.domain.errors import CacheError
from catalog_search.domain.ports import CacheBackend

logger = logging.getLogger(__name__)


class RedisCacheBackend(CacheBackend):
    """
    Shared cache in Redis, every key namespaced under ``key_prefix``.

    Any Redis or (un)pickling failure surfaces as CacheError, which the
    tiered cache above treats as a miss.
    """

    def __init__(self, client: Any, key_prefix: str = "catalog-search:") -> None:
        """
        Args:
            client: A redis.Redis instance (or a compatible fake in tests)
            key_prefix: Namespace for every key written by this backend
        """
        self._client = client
        self._prefix = key_prefix

    @classmethod
    def from_url(cls, url: str, key_prefix: str = "catalog-search:") -> "RedisCacheBackend":
        client = redis.Redis.from_url(
            url,
            socket_timeout=1.0,
            socket_connect_timeout=1.0,
            decode_responses=False,
        )
        return cls(client, key_prefix=key_prefix)

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def get(self, key: str) -> Optional[Any]:
        try:
            raw = self._client.get(self._key(key))
            if raw is None:
                return None
            return pickle.loads(raw)
        except (redis.RedisError, pickle.UnpicklingError, EOFError) as e:
            raise CacheError(f"Redis get failed for {key}: {e}") from e

    def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        try:
            self._client.set(self._key(key), pickle.dumps(value), ex=max(1, int(ttl_seconds)))
        except (redis.RedisError, pickle.PicklingError) as e:
            raise CacheError(f"Redis set failed for {key}: {e}") from e

    def delete_prefix(self, prefix: str) -> int:
        removed = 0
        try:
            batch = []
            for raw_key in self._client.scan_iter(match=f"{self._key(prefix)}*", count=500):
                batch.append(raw_key)
                if len(batch) >= 500:
                    removed += self._client.delete(*batch)
                    batch = []
            if batch:
                removed += self._client.delete(*batch)
        except redis.RedisError as e:
            raise CacheError(f"Redis prefix delete failed for {prefix}: {e}") from e
        return removed

    def clear(self) -> None:
        self.delete_prefix("")

    def ping(self) -> bool:
        try:
            return bool(self._client.ping())
        except redis.RedisError as e:
            logger.warning(f"Redis ping failed: {e}")
            return False
