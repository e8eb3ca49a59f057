"""
Experimentation manager for ranking weights.

Users are assigned to experiment variants by a stable hash of
(experiment id, user id), so assignment needs no shared counter and the same
user always lands in the same variant. The first recorded assignment is kept
for good, even if traffic splits change or the experiment stops.

Outcomes are appended as raw records; every statistic in a report is
computed from them on read.
"""

import hashlib
import logging
import math
import threading
from datetime import datetime, UTC
from statistics import fmean, pvariance
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from ..entities import (
    Experiment,
    ExperimentAssignment,
    ExperimentStatus,
    OutcomeRecord,
    Variant,
)
from ..errors import ExperimentNotActiveError, ExperimentNotFoundError, ValidationError
from ..utils import SequenceGenerator
from ..value_objects import (
    ExperimentConfig,
    ExperimentReport,
    OutcomeMetrics,
    VariantComparison,
    VariantStats,
)

logger = logging.getLogger(__name__)

_BUCKETS = 10_000

# Metric name -> (extractor, higher is better)
_COMPARED_METRICS: Dict[str, Tuple[Callable[[OutcomeMetrics], Optional[float]], bool]] = {
    "conversion": (lambda m: 1.0 if m.converted else 0.0, True),
    "satisfaction": (lambda m: m.satisfaction, True),
    "click_through_rate": (lambda m: m.click_through_rate, True),
    "response_time_ms": (lambda m: m.response_time_ms, False),
}


def assignment_bucket(experiment_id: str, user_id: str) -> float:
    """
    Stable position of a user in [0, 1) for an experiment.

    Derived from SHA-256, so it is the same on every process and every run.
    """
    digest = hashlib.sha256(f"{experiment_id}:{user_id}".encode("utf-8")).digest()
    return (int.from_bytes(digest[:8], "big") % _BUCKETS) / _BUCKETS


def pick_variant(variants: Sequence[Variant], bucket: float) -> Variant:
    """Map a bucket onto variants by cumulative traffic share."""
    cumulative = 0.0
    for variant in variants:
        cumulative += variant.traffic
        if bucket < cumulative:
            return variant
    return variants[-1]


def _normal_cdf(x: float) -> float:
    return 0.5 * (1.0 + math.erf(x / math.sqrt(2.0)))


def two_sided_p_value(a: Sequence[float], b: Sequence[float], min_sample_size: int) -> float:
    """
    Two-sided p-value of the difference in means (Welch z approximation).

    Returns 1.0 when either sample is smaller than ``min_sample_size`` or
    when both samples have no variance.
    """
    if len(a) < min_sample_size or len(b) < min_sample_size:
        return 1.0
    standard_error = math.sqrt(pvariance(a) / len(a) + pvariance(b) / len(b))
    if standard_error == 0:
        return 1.0 if fmean(a) == fmean(b) else 0.0
    z = (fmean(b) - fmean(a)) / standard_error
    return max(0.0, min(1.0, 2.0 * (1.0 - _normal_cdf(abs(z)))))


class ExperimentManager:
    """
    Owns experiments, user assignments and outcome logs.

    Assignment writes use check-and-insert under a lock, so two concurrent
    first requests for the same user store exactly one assignment.
    """

    def __init__(
        self,
        config: ExperimentConfig = ExperimentConfig(),
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._config = config
        self._clock = clock
        self._ids = SequenceGenerator("exp", width=4)
        self._lock = threading.RLock()
        self._experiments: Dict[str, Experiment] = {}
        self._assignments: Dict[Tuple[str, str], ExperimentAssignment] = {}
        self._outcomes: Dict[str, List[OutcomeRecord]] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create_experiment(
        self,
        name: str,
        variants: Sequence[Variant],
        end_date: datetime,
        start_date: Optional[datetime] = None,
        description: str = "",
    ) -> Experiment:
        """
        Register a new experiment in the 'created' state.

        Args:
            name: Human-readable name
            variants: Two or more variants; the first one is the control
            end_date: When the experiment expires
            start_date: Optional planned start
            description: Free text

        Returns:
            The created Experiment

        Raises:
            ValidationError: If variants, traffic split or dates are invalid
        """
        for variant in variants:
            if variant.traffic < self._config.min_traffic_share:
                raise ValidationError(
                    f"Variant '{variant.name}' gets {variant.traffic:.2f} of traffic, "
                    f"minimum is {self._config.min_traffic_share:.2f}"
                )

        try:
            experiment = Experiment(
                id=self._ids.next_id(),
                name=name,
                variants=tuple(variants),
                end_date=end_date,
                start_date=start_date,
                description=description,
                created_at=self._clock(),
            )
        except ValueError as e:
            raise ValidationError(str(e)) from e

        with self._lock:
            self._experiments[experiment.id] = experiment
            self._outcomes[experiment.id] = []

        logger.info(
            f"Created experiment {experiment.id} '{name}' with variants "
            f"{[v.name for v in experiment.variants]}"
        )
        return experiment.snapshot()

    def start(self, experiment_id: str) -> Experiment:
        """
        Activate an experiment so it accepts assignments.

        Raises:
            ExperimentNotFoundError: If the id is unknown
            ValidationError: If the experiment is not in the 'created' state
        """
        with self._lock:
            experiment = self._require(experiment_id)
            try:
                experiment.start(self._clock())
            except ValueError as e:
                raise ValidationError(str(e)) from e
            logger.info(f"Started experiment {experiment_id}")
            return experiment.snapshot()

    def stop(self, experiment_id: str, reason: str = "stopped manually") -> Experiment:
        """
        Stop an active experiment. Existing assignments and outcomes are kept.

        Raises:
            ExperimentNotFoundError: If the id is unknown
            ValidationError: If the experiment is not active
        """
        with self._lock:
            experiment = self._require(experiment_id)
            try:
                experiment.stop(self._clock(), reason)
            except ValueError as e:
                raise ValidationError(str(e)) from e
            logger.info(f"Stopped experiment {experiment_id}: {reason}")
            return experiment.snapshot()

    def expire_due(self) -> List[str]:
        """
        Stop every active experiment whose end date has passed.

        Returns:
            Ids of the experiments that were stopped
        """
        now = self._clock()
        stopped = []
        with self._lock:
            for experiment in self._experiments.values():
                if experiment.status == ExperimentStatus.ACTIVE and experiment.is_expired(now):
                    experiment.stop(now, "end date reached")
                    stopped.append(experiment.id)
        for experiment_id in stopped:
            logger.info(f"Experiment {experiment_id} expired and was stopped")
        return stopped

    def get(self, experiment_id: str) -> Experiment:
        with self._lock:
            return self._require(experiment_id).snapshot()

    def list_experiments(self, status: Optional[ExperimentStatus] = None) -> List[Experiment]:
        with self._lock:
            return [
                e.snapshot()
                for e in self._experiments.values()
                if status is None or e.status == status
            ]

    def is_active(self, experiment_id: str) -> bool:
        with self._lock:
            experiment = self._experiments.get(experiment_id)
            return experiment is not None and experiment.accepts_assignments(self._clock())

    # ------------------------------------------------------------------
    # Assignment
    # ------------------------------------------------------------------

    def assign_variant(
        self,
        experiment_id: str,
        user_id: str,
        force_variant: Optional[str] = None,
    ) -> ExperimentAssignment:
        """
        Return the user's variant, assigning one on first contact.

        Args:
            experiment_id: Experiment to assign in
            user_id: The user
            force_variant: Pin the user to this variant instead of hashing
                (only honoured when no assignment exists yet)

        Returns:
            The user's assignment; identical on every call once recorded

        Raises:
            ExperimentNotFoundError: If the id is unknown
            ExperimentNotActiveError: If there is no prior assignment and the
                experiment is not active (or has expired)
            ValidationError: If force_variant names no variant
        """
        if not user_id or not str(user_id).strip():
            raise ValidationError("user_id cannot be empty")

        key = (experiment_id, user_id)
        with self._lock:
            experiment = self._require(experiment_id)

            existing = self._assignments.get(key)
            if existing is not None:
                return existing

            now = self._clock()
            if not experiment.accepts_assignments(now):
                state = "expired" if experiment.is_expired(now) else experiment.status.value
                raise ExperimentNotActiveError(
                    f"Experiment {experiment_id} is {state} and accepts no new assignments"
                )

            if force_variant is not None:
                try:
                    variant = experiment.variant(force_variant)
                except ValueError as e:
                    raise ValidationError(str(e)) from e
            else:
                variant = pick_variant(
                    experiment.variants, assignment_bucket(experiment_id, user_id)
                )

            assignment = ExperimentAssignment(
                experiment_id=experiment_id,
                user_id=user_id,
                variant=variant.name,
                weights=variant.weights,
                assigned_at=now,
                forced=force_variant is not None,
            )
            self._assignments[key] = assignment

        logger.debug(f"Assigned user {user_id} to variant '{variant.name}' of {experiment_id}")
        return assignment

    def get_assignment(self, experiment_id: str, user_id: str) -> Optional[ExperimentAssignment]:
        with self._lock:
            return self._assignments.get((experiment_id, user_id))

    # ------------------------------------------------------------------
    # Outcomes and analysis
    # ------------------------------------------------------------------

    def record_outcome(
        self,
        experiment_id: str,
        user_id: str,
        session_id: str,
        metrics: OutcomeMetrics,
    ) -> bool:
        """
        Append one session's raw metrics to the experiment log.

        Returns:
            True if recorded, False if the user has no assignment

        Raises:
            ExperimentNotFoundError: If the id is unknown
        """
        with self._lock:
            self._require(experiment_id)
            assignment = self._assignments.get((experiment_id, user_id))
            if assignment is None:
                logger.warning(
                    f"Ignoring outcome for user {user_id}: not assigned in {experiment_id}"
                )
                return False

            self._outcomes[experiment_id].append(
                OutcomeRecord(
                    experiment_id=experiment_id,
                    user_id=user_id,
                    session_id=session_id,
                    variant=assignment.variant,
                    metrics=metrics,
                    recorded_at=self._clock(),
                )
            )
        return True

    def report(self, experiment_id: str) -> ExperimentReport:
        """
        Analyse an experiment from its raw outcome records.

        Every non-control variant is compared against the control on
        conversion, satisfaction, click-through rate and response time.

        Raises:
            ExperimentNotFoundError: If the id is unknown
        """
        with self._lock:
            experiment = self._require(experiment_id).snapshot()
            outcomes = list(self._outcomes[experiment_id])
            participants: Dict[str, int] = {v.name: 0 for v in experiment.variants}
            for (exp_id, _), assignment in self._assignments.items():
                if exp_id == experiment_id:
                    participants[assignment.variant] = participants.get(assignment.variant, 0) + 1

        by_variant: Dict[str, List[OutcomeMetrics]] = {v.name: [] for v in experiment.variants}
        for record in outcomes:
            by_variant.setdefault(record.variant, []).append(record.metrics)

        stats = tuple(
            self._variant_stats(v.name, participants.get(v.name, 0), by_variant[v.name])
            for v in experiment.variants
        )

        control = experiment.control.name
        comparisons: List[VariantComparison] = []
        for variant in experiment.variants[1:]:
            for metric, (extract, _) in _COMPARED_METRICS.items():
                comparison = self._compare(metric, extract, control, by_variant[control],
                                           variant.name, by_variant[variant.name])
                if comparison is not None:
                    comparisons.append(comparison)

        winner, recommendation = self._recommend(comparisons, stats)
        return ExperimentReport(
            experiment_id=experiment_id,
            status=experiment.status.value,
            variants=stats,
            comparisons=tuple(comparisons),
            winner=winner,
            recommendation=recommendation,
        )

    @staticmethod
    def _variant_stats(name: str, participants: int, metrics: List[OutcomeMetrics]) -> VariantStats:
        def mean_of(values: List[Optional[float]]) -> Optional[float]:
            present = [v for v in values if v is not None]
            return fmean(present) if present else None

        conversions = sum(1 for m in metrics if m.converted)
        return VariantStats(
            variant=name,
            participants=participants,
            sessions=len(metrics),
            conversions=conversions,
            conversion_rate=conversions / len(metrics) if metrics else 0.0,
            mean_satisfaction=mean_of([m.satisfaction for m in metrics]),
            mean_click_through_rate=mean_of([m.click_through_rate for m in metrics]),
            mean_response_time_ms=mean_of([m.response_time_ms for m in metrics]),
        )

    def _compare(
        self,
        metric: str,
        extract: Callable[[OutcomeMetrics], Optional[float]],
        control_name: str,
        control: List[OutcomeMetrics],
        variant_name: str,
        candidate: List[OutcomeMetrics],
    ) -> Optional[VariantComparison]:
        a = [v for v in (extract(m) for m in control) if v is not None]
        b = [v for v in (extract(m) for m in candidate) if v is not None]
        if not a or not b:
            return None

        control_mean, variant_mean = fmean(a), fmean(b)
        p_value = two_sided_p_value(a, b, self._config.min_sample_size)
        relative = (variant_mean - control_mean) / control_mean if control_mean else 0.0
        return VariantComparison(
            variant=variant_name,
            metric=metric,
            control_mean=control_mean,
            variant_mean=variant_mean,
            relative_change=relative,
            p_value=p_value,
            significant=p_value < self._config.significance_level,
        )

    def _recommend(
        self,
        comparisons: List[VariantComparison],
        stats: Tuple[VariantStats, ...],
    ) -> Tuple[Optional[str], str]:
        if any(s.sessions < self._config.min_sample_size for s in stats):
            return None, "continue"

        improvements: Dict[str, int] = {}
        regressions: Dict[str, int] = {}
        for c in comparisons:
            if not c.significant:
                continue
            higher_is_better = _COMPARED_METRICS[c.metric][1]
            better = (c.variant_mean > c.control_mean) == higher_is_better
            bucket = improvements if better else regressions
            bucket[c.variant] = bucket.get(c.variant, 0) + 1

        candidates = [v for v in improvements if improvements[v] > regressions.get(v, 0)]
        if candidates:
            winner = max(candidates, key=lambda v: (improvements[v] - regressions.get(v, 0), v))
            return winner, "rollout"
        if regressions:
            return None, "rollback"
        # Enough data and no significant difference anywhere
        return None, "redesign"

    def _require(self, experiment_id: str) -> Experiment:
        experiment = self._experiments.get(experiment_id)
        if experiment is None:
            raise ExperimentNotFoundError(f"Experiment '{experiment_id}' not found")
        return experiment
