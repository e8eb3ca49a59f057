"""
Ranking & scoring pipeline.

``rank`` is a pure function: given raw hits, weights, an optional
personalization context and the current time, it returns the same ordering
every time. It reads nothing else and writes nothing.

Each hit gets four normalized signals in [0, 1]:

- relevance: engine score on a log scale, saturating at ``relevance_ceiling``
- popularity: interaction count on a log scale, saturating at ``popularity_ceiling``
- recency: exponential decay of the document age (half-life in days)
- personalization: affinity with the user's categories and tags, or a
  neutral value when nothing is known about the user

The final score is the weighted sum of the signals, clamped to [0, 1].
Ties always break by original engine order and then by document id.
"""

import math
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from ..entities import IndexDocument, RankedHit, SearchHit
from ..value_objects import (
    PersonalizationContext,
    RankingConfig,
    RankingSort,
    RankingWeights,
    SignalScores,
)


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def relevance_signal(score: float, config: RankingConfig) -> float:
    if score <= 0:
        return 0.0
    return _clamp(math.log(score + 1.0) / math.log(config.relevance_ceiling))


def popularity_signal(popularity: int, config: RankingConfig) -> float:
    if popularity <= 0:
        return 0.0
    return _clamp(math.log1p(popularity) / math.log1p(config.popularity_ceiling))


def recency_signal(document: IndexDocument, now: datetime, config: RankingConfig) -> float:
    age_days = (now - document.updated_at).total_seconds() / 86400.0
    if age_days <= 0:
        return 1.0
    return _clamp(0.5 ** (age_days / config.recency_half_life_days))


def personalization_signal(
    document: IndexDocument,
    context: Optional[PersonalizationContext],
    config: RankingConfig,
) -> float:
    """
    Affinity between a document and the user's interaction history.

    Category and tag affinities are each normalized by the user's own most
    frequent category/tag, then blended. When only one kind of history is
    known, that one carries the whole signal.
    """
    if context is None or context.is_empty():
        return config.neutral_personalization

    parts: List[Tuple[float, float]] = []

    if context.category_interactions:
        top = max(context.category_interactions.values())
        count = context.category_interactions.get(document.category_id or "", 0)
        parts.append((config.category_affinity_weight, count / top if top > 0 else 0.0))

    if context.tag_interactions:
        top = max(context.tag_interactions.values())
        best = max((context.tag_interactions.get(tag, 0) for tag in document.tags), default=0)
        parts.append((config.tag_affinity_weight, best / top if top > 0 else 0.0))

    total_weight = sum(weight for weight, _ in parts)
    if total_weight <= 0:
        return config.neutral_personalization
    return _clamp(sum(weight * value for weight, value in parts) / total_weight)


def score_hit(
    hit: SearchHit,
    weights: RankingWeights,
    context: Optional[PersonalizationContext],
    now: datetime,
    config: RankingConfig,
) -> SignalScores:
    """Compute the four signals of one hit and their weighted sum."""
    relevance = relevance_signal(hit.score, config)
    popularity = popularity_signal(hit.document.popularity, config)
    recency = recency_signal(hit.document, now, config)
    personalization = personalization_signal(hit.document, context, config)

    final = _clamp(
        weights.relevance * relevance
        + weights.popularity * popularity
        + weights.recency * recency
        + weights.personalization * personalization
    )
    return SignalScores(
        relevance=relevance,
        popularity=popularity,
        recency=recency,
        personalization=personalization,
        final=final,
    )


def _sort_value(sort: RankingSort) -> Callable[[SearchHit, SignalScores], float]:
    if sort in (RankingSort.RELEVANCE, RankingSort.PERSONALIZED):
        return lambda hit, signals: signals.final
    if sort == RankingSort.POPULARITY:
        return lambda hit, signals: signals.popularity
    if sort == RankingSort.RECENCY:
        return lambda hit, signals: signals.recency
    if sort == RankingSort.QUALITY:
        return lambda hit, signals: (
            hit.document.quality_score if hit.document.quality_score is not None else -1.0
        )
    if sort == RankingSort.CREATED:
        return lambda hit, signals: hit.document.created_at.timestamp()
    raise ValueError(f"Unsupported ranking sort: {sort}")


def _explain(signals: SignalScores, weights: RankingWeights) -> str:
    contributions: Dict[str, float] = {
        "relevance": weights.relevance * signals.relevance,
        "popularity": weights.popularity * signals.popularity,
        "recency": weights.recency * signals.recency,
        "personalization": weights.personalization * signals.personalization,
    }
    top = max(contributions, key=lambda name: (contributions[name], name))
    return f"score {signals.final:.3f}, driven by {top} ({contributions[top]:.3f})"


def rank(
    hits: Sequence[SearchHit],
    query: str,
    weights: RankingWeights,
    context: Optional[PersonalizationContext] = None,
    *,
    now: datetime,
    sort: RankingSort = RankingSort.RELEVANCE,
    config: RankingConfig = RankingConfig(),
) -> List[RankedHit]:
    """
    Re-rank raw hits by weighted signals.

    Args:
        hits: Raw hits in engine order
        query: The query text that produced the hits (only used in explanations)
        weights: Signal weights
        context: Optional personalization context for the searching user
        now: Reference time for the recency signal
        sort: Which score orders the output
        config: Signal normalization constants

    Returns:
        RankedHit list, best first, positions 1..n. Identical inputs always
        produce an identical ordering.
    """
    if not hits:
        return []

    value_of = _sort_value(sort)
    scored = []
    for original_index, hit in enumerate(hits):
        signals = score_hit(hit, weights, context, now, config)
        scored.append((value_of(hit, signals), original_index, hit, signals))

    scored.sort(key=lambda item: (-item[0], item[1], item[2].document.id))

    ranked = []
    for position, (_, _, hit, signals) in enumerate(scored, start=1):
        explanation = _explain(signals, weights)
        if query:
            explanation = f"'{query}': {explanation}"
        ranked.append(
            RankedHit(hit=hit, signals=signals, position=position, explanation=explanation)
        )
    return ranked
