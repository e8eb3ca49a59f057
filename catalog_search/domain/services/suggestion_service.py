"""
Suggestion service: completions for partial queries.

Candidates come from asset names, categories, tags and the
database/schema/table hierarchy. Each candidate lands in a score tier:

- exact match: 100
- prefix match: 80-100, longer prefixes relative to the text score higher
- substring match: 60
- fuzzy match: up to 40, proportional to Levenshtein similarity

The index engine's term aggregations are the primary source. When the engine
fails, a grouped substring query on the system of record takes over, and its
result is cached for the longest tier because it is expensive to compute.
"""

import logging
import re
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from rapidfuzz.distance import Levenshtein

from ..errors import ServiceUnavailableError, ValidationError
from ..ports import FallbackSearchRepository, IndexEngine
from ..value_objects import CacheTier, Suggestion, SuggestionConfig
from .cache_layer import TieredCache

logger = logging.getLogger(__name__)

# Index field -> suggestion type
SUGGESTION_SOURCES: Tuple[Tuple[str, str], ...] = (
    ("name", "asset_name"),
    ("categoryName", "category"),
    ("tags", "tag"),
    ("hierarchyLevel1", "database"),
    ("hierarchyLevel2", "schema"),
    ("hierarchyLevel3", "table"),
)

EXACT_SCORE = 100.0
PREFIX_SCORE = 80.0
SUBSTRING_SCORE = 60.0
FUZZY_MAX_SCORE = 40.0
POPULAR_SCORE = 50.0

_TOKEN_SPLIT = re.compile(r"[\s_.\-/]+")


def score_completion(text: str, prefix: str, min_fuzzy_similarity: float = 0.5) -> Optional[float]:
    """
    Score how well ``text`` completes ``prefix``.

    Returns:
        The tier score, or None when the text is not even a fuzzy match
    """
    candidate = text.strip().lower()
    typed = prefix.strip().lower()
    if not candidate or not typed:
        return None

    if candidate == typed:
        return EXACT_SCORE
    if candidate.startswith(typed):
        return PREFIX_SCORE + (EXACT_SCORE - PREFIX_SCORE) * len(typed) / len(candidate)
    if typed in candidate:
        return SUBSTRING_SCORE

    comparisons = [candidate, candidate[: len(typed)]]
    comparisons.extend(token for token in _TOKEN_SPLIT.split(candidate) if token)
    similarity = max(Levenshtein.normalized_similarity(typed, c) for c in comparisons)
    if similarity < min_fuzzy_similarity:
        return None
    return FUZZY_MAX_SCORE * similarity


def rank_suggestions(
    candidates: Iterable[Tuple[str, str, int]],
    prefix: str,
    size: int,
    min_fuzzy_similarity: float,
) -> List[Suggestion]:
    """
    Score (text, type, count) candidates and keep the best ``size``.

    The same text offered by several sources is kept once, with its best score.
    Order: score desc, count desc, text asc.
    """
    best: Dict[str, Suggestion] = {}
    for text, suggestion_type, count in candidates:
        score = score_completion(text, prefix, min_fuzzy_similarity)
        if score is None:
            continue
        key = text.strip().lower()
        current = best.get(key)
        suggestion = Suggestion(text=text, type=suggestion_type, score=score, count=count)
        if current is None or (score, count) > (current.score, current.count):
            best[key] = suggestion

    ordered = sorted(best.values(), key=lambda s: (-s.score, -s.count, s.text.lower()))
    return ordered[:size]


class SuggestionService:
    """
    Tiered-score completions with engine-first, fallback-second sourcing.

    Engine and fallback lookups run on separate pools so abandoned engine
    calls cannot starve the fallback of threads.
    """

    def __init__(
        self,
        engine: IndexEngine,
        fallback: FallbackSearchRepository,
        cache: TieredCache,
        config: SuggestionConfig = SuggestionConfig(),
        executor: Optional[ThreadPoolExecutor] = None,
        fallback_executor: Optional[ThreadPoolExecutor] = None,
    ) -> None:
        self._engine = engine
        self._fallback = fallback
        self._cache = cache
        self._config = config
        self._owned_executors = []
        if executor is None:
            executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="suggest")
            self._owned_executors.append(executor)
        if fallback_executor is None:
            fallback_executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="suggest-fallback")
            self._owned_executors.append(fallback_executor)
        self._executor = executor
        self._fallback_executor = fallback_executor

    def suggest(self, prefix: str, size: int = 5) -> List[Suggestion]:
        """
        Completions for a partial query.

        Args:
            prefix: What the user has typed so far
            size: Maximum number of suggestions

        Returns:
            Suggestions, best first

        Raises:
            ValidationError: If prefix is blank or size is out of range
            ServiceUnavailableError: If both the engine and the fallback fail
        """
        if not prefix or not prefix.strip():
            raise ValidationError("prefix cannot be empty")
        if not (1 <= size <= self._config.max_size):
            raise ValidationError(f"size must be between 1 and {self._config.max_size}, got {size}")

        params = {"op": "suggest", "prefix": prefix.strip().lower(), "size": size}
        try:
            return self._cache.get_or_compute(
                CacheTier.SUGGESTION,
                params,
                lambda: self._with_timeout(
                    self._executor,
                    lambda: self._from_engine(prefix, size),
                    self._config.engine_timeout_s,
                ),
            )
        except Exception as engine_error:
            logger.warning(f"Engine suggestions failed for '{prefix}', using fallback: {engine_error}")

        try:
            return self._cache.get_or_compute(
                CacheTier.POPULAR,
                params,
                lambda: self._with_timeout(
                    self._fallback_executor,
                    lambda: self._from_fallback(prefix, size),
                    self._config.fallback_timeout_s,
                ),
            )
        except Exception as fallback_error:
            logger.error(f"Fallback suggestions also failed for '{prefix}': {fallback_error}")
            raise ServiceUnavailableError("Suggestions are unavailable") from fallback_error

    def popular_suggestions(self, limit: int = 10) -> List[Suggestion]:
        """
        Names of the most popular active assets.

        Raises:
            ValidationError: If limit is out of range
            ServiceUnavailableError: If the system of record cannot be read
        """
        if not (1 <= limit <= self._config.max_size):
            raise ValidationError(f"limit must be between 1 and {self._config.max_size}, got {limit}")

        def compute() -> List[Suggestion]:
            assets = self._fallback.popular_assets(limit)
            return [
                Suggestion(text=a.name, type="asset_name", score=POPULAR_SCORE, count=a.popularity)
                for a in assets
            ]

        try:
            return self._cache.get_or_compute(CacheTier.POPULAR, {"op": "popular", "limit": limit}, compute)
        except Exception as e:
            logger.error(f"Popular suggestions failed: {e}")
            raise ServiceUnavailableError("Popular suggestions are unavailable") from e

    def close(self) -> None:
        for executor in self._owned_executors:
            executor.shutdown(wait=False, cancel_futures=True)

    def _from_engine(self, prefix: str, size: int) -> List[Suggestion]:
        candidates: List[Tuple[str, str, int]] = []
        for field, suggestion_type in SUGGESTION_SOURCES:
            terms = self._engine.field_terms(field, size=self._config.terms_per_field)
            candidates.extend((text, suggestion_type, count) for text, count in terms.items())
        return rank_suggestions(candidates, prefix, size, self._config.min_fuzzy_similarity)

    def _from_fallback(self, prefix: str, size: int) -> List[Suggestion]:
        candidates = self._fallback.suggest_values(prefix.strip(), self._config.terms_per_field)
        return rank_suggestions(candidates, prefix, size, self._config.min_fuzzy_similarity)

    @staticmethod
    def _with_timeout(
        executor: ThreadPoolExecutor, fn: Callable[[], List[Suggestion]], timeout_s: float
    ) -> List[Suggestion]:
        future = executor.submit(fn)
        try:
            return future.result(timeout=timeout_s)
        except FuturesTimeout as e:
            future.cancel()
            raise TimeoutError(f"suggestion source gave no answer within {timeout_s:.3f}s") from e
