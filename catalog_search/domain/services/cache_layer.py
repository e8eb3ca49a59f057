"""
Tiered cache over a CacheBackend port.

Keys are canonical: the tier name followed by a SHA-256 of the sorted-key
JSON of the parameters, so logically identical requests share an entry no
matter how the caller ordered its arguments.

The cache is best effort. A backend failure is logged and behaves like a
miss (or a no-op on writes); it never fails the read path.
"""

import hashlib
import json
import logging
import threading
from concurrent.futures import Future
from typing import Any, Callable, Dict, Iterable, Mapping, Optional

from ..errors import CacheError
from ..ports import CacheBackend
from ..value_objects import CacheTier, DEFAULT_TIER_TTLS

logger = logging.getLogger(__name__)


def make_cache_key(tier: CacheTier, params: Mapping[str, Any]) -> str:
    """
    Build the canonical key for a tier and a parameter mapping.

    Args:
        tier: Cache tier (its name becomes the key prefix)
        params: Request parameters; values must be JSON-serializable or str()-able

    Returns:
        '<tier>:<sha256 hex digest>'
    """
    payload = json.dumps(params, sort_keys=True, separators=(",", ":"), default=str)
    digest = hashlib.sha256(payload.encode("utf-8")).hexdigest()
    return f"{tier.value}:{digest}"


class TieredCache:
    """
    Cache with one TTL per tier and single-flight computation of misses.

    Concurrent misses on the same key share one computation: the first caller
    computes, the others wait for its result (or its exception).
    """

    def __init__(
        self,
        backend: CacheBackend,
        ttl_overrides: Optional[Mapping[CacheTier, int]] = None,
    ) -> None:
        self._backend = backend
        self._ttls: Dict[CacheTier, int] = dict(DEFAULT_TIER_TTLS)
        if ttl_overrides:
            self._ttls.update(ttl_overrides)
        self._inflight: Dict[str, Future] = {}
        self._lock = threading.Lock()

    def ttl_for(self, tier: CacheTier) -> int:
        return self._ttls[tier]

    def get(self, tier: CacheTier, params: Mapping[str, Any]) -> Optional[Any]:
        """Return the cached value, or None on a miss or a backend failure."""
        key = make_cache_key(tier, params)
        try:
            return self._backend.get(key)
        except CacheError as e:
            logger.warning(f"Cache read failed for {key}, treating as miss: {e}")
            return None

    def set(
        self,
        tier: CacheTier,
        params: Mapping[str, Any],
        value: Any,
        ttl_tier: Optional[CacheTier] = None,
    ) -> None:
        """
        Store a value under a tier.

        Args:
            tier: Namespace of the entry
            params: Request parameters forming the key
            value: Value to store
            ttl_tier: Borrow another tier's TTL (defaults to ``tier``)
        """
        key = make_cache_key(tier, params)
        try:
            self._backend.set(key, value, self._ttls[ttl_tier or tier])
        except CacheError as e:
            logger.warning(f"Cache write failed for {key}: {e}")

    def get_or_compute(
        self,
        tier: CacheTier,
        params: Mapping[str, Any],
        compute: Callable[[], Any],
        cache_if: Callable[[Any], bool] = lambda value: True,
        ttl_tier: Optional[CacheTier] = None,
    ) -> Any:
        """
        Return the cached value or compute it exactly once per concurrent miss.

        Args:
            tier: Cache tier
            params: Request parameters forming the key
            compute: Produces the value on a miss
            cache_if: Only values for which this returns True are stored
            ttl_tier: Borrow another tier's TTL when storing

        Returns:
            The cached or freshly computed value

        Raises:
            Whatever ``compute`` raises; waiters of the same key see it too
        """
        cached = self.get(tier, params)
        if cached is not None:
            return cached

        key = make_cache_key(tier, params)
        with self._lock:
            pending = self._inflight.get(key)
            owner = pending is None
            if owner:
                pending = Future()
                self._inflight[key] = pending

        if not owner:
            return pending.result()

        try:
            value = compute()
        except BaseException as e:
            pending.set_exception(e)
            raise
        else:
            if value is not None and cache_if(value):
                self.set(tier, params, value, ttl_tier=ttl_tier)
            pending.set_result(value)
            return value
        finally:
            with self._lock:
                self._inflight.pop(key, None)

    def invalidate_tiers(self, tiers: Iterable[CacheTier]) -> None:
        """Drop every entry of the given tiers. Failures are logged and ignored."""
        for tier in tiers:
            try:
                removed = self._backend.delete_prefix(f"{tier.value}:")
                logger.debug(f"Invalidated {removed} entries from cache tier '{tier.value}'")
            except CacheError as e:
                logger.warning(f"Cache invalidation failed for tier '{tier.value}': {e}")

    def clear(self) -> None:
        try:
            self._backend.clear()
        except CacheError as e:
            logger.warning(f"Cache clear failed: {e}")
