"""
Intelligent search: query execution followed by weighted re-ranking.

Weights are resolved in this order: explicit custom weights, the variant of
an active experiment the user is assigned to, the user's saved defaults, and
finally the system defaults.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, UTC
from typing import Callable, Dict, List, Optional, Tuple

from ..entities import RankedHit
from ..errors import ExperimentNotFoundError, ValidationError
from ..value_objects import (
    DEFAULT_RANKING_WEIGHTS,
    PersonalizationContext,
    RankingConfig,
    RankingSort,
    RankingWeights,
    SearchPage,
    SearchRequest,
)
from .experiments import ExperimentManager
from .query_service import QueryExecutionService
from .ranking import rank

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RankedSearchPage:
    """A search page re-ranked by the ranking pipeline."""

    page: SearchPage
    ranked: Tuple[RankedHit, ...]
    weights: RankingWeights
    sort: RankingSort
    variant: Optional[str] = None
    """Experiment variant whose weights were used, if any"""


class IntelligentSearchService:
    """Composes query execution, experiment assignment and ranking."""

    def __init__(
        self,
        query_service: QueryExecutionService,
        experiments: ExperimentManager,
        config: RankingConfig = RankingConfig(),
        default_weights: RankingWeights = DEFAULT_RANKING_WEIGHTS,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._query_service = query_service
        self._experiments = experiments
        self._config = config
        self._default_weights = default_weights
        self._clock = clock
        self._user_weights: Dict[str, RankingWeights] = {}
        self._lock = threading.Lock()

    def set_user_weights(self, user_id: str, weights: RankingWeights) -> None:
        """Save a user's preferred ranking weights."""
        if not user_id:
            raise ValidationError("user_id cannot be empty")
        with self._lock:
            self._user_weights[user_id] = weights

    def get_user_weights(self, user_id: str) -> Optional[RankingWeights]:
        with self._lock:
            return self._user_weights.get(user_id)

    def resolve_weights(
        self,
        user_id: Optional[str] = None,
        custom_weights: Optional[RankingWeights] = None,
        experiment_id: Optional[str] = None,
    ) -> Tuple[RankingWeights, Optional[str]]:
        """
        Pick the weights for a search.

        Returns:
            (weights, experiment variant name or None)
        """
        if custom_weights is not None:
            return custom_weights, None

        if experiment_id and user_id:
            try:
                if self._experiments.is_active(experiment_id):
                    assignment = self._experiments.assign_variant(experiment_id, user_id)
                    return assignment.weights, assignment.variant
                logger.info(f"Experiment {experiment_id} is not active, ignoring it")
            except (ExperimentNotFoundError, ValidationError) as e:
                logger.warning(f"Could not assign user {user_id} in {experiment_id}: {e}")

        if user_id:
            saved = self.get_user_weights(user_id)
            if saved is not None:
                return saved, None

        return self._default_weights, None

    def search(
        self,
        request: SearchRequest,
        user_id: Optional[str] = None,
        sort: RankingSort = RankingSort.RELEVANCE,
        custom_weights: Optional[RankingWeights] = None,
        experiment_id: Optional[str] = None,
        context: Optional[PersonalizationContext] = None,
    ) -> RankedSearchPage:
        """
        Execute a search and re-rank the page.

        Raises:
            ServiceUnavailableError: If both search backends fail
        """
        page = self._query_service.search(request)
        weights, variant = self.resolve_weights(user_id, custom_weights, experiment_id)

        ranked: List[RankedHit] = rank(
            page.items,
            request.query,
            weights,
            context,
            now=self._clock(),
            sort=sort,
            config=self._config,
        )
        return RankedSearchPage(
            page=page,
            ranked=tuple(ranked),
            weights=weights,
            sort=sort,
            variant=variant,
        )
