"""
Tests for the experimentation manager.

These tests verify:
1. Hash assignment is stable and roughly follows the traffic split
2. Recorded assignments never change, forced or not
3. The created -> active -> stopped lifecycle gates new assignments
4. Reports are computed from raw outcomes
"""

import threading
from collections import Counter
from datetime import datetime, timedelta, UTC

import pytest

from catalog_search.domain.entities import ExperimentStatus, Variant
from catalog_search.domain.errors import (
    ExperimentNotActiveError,
    ExperimentNotFoundError,
    ValidationError,
)
from catalog_search.domain.services.experiments import (
    ExperimentManager,
    assignment_bucket,
    pick_variant,
    two_sided_p_value,
)
from catalog_search.domain.value_objects import DEFAULT_RANKING_WEIGHTS, OutcomeMetrics, RankingWeights


START = datetime(2024, 6, 1, tzinfo=UTC)
POPULAR_WEIGHTS = RankingWeights(0.2, 0.5, 0.2, 0.1, name="popular")


# =============================================================================
# Helper functions
# =============================================================================


class FakeClock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def create_variants(control_traffic: float = 0.5):
    return [
        Variant(name="control", weights=DEFAULT_RANKING_WEIGHTS, traffic=control_traffic),
        Variant(name="popular", weights=POPULAR_WEIGHTS, traffic=round(1 - control_traffic, 4)),
    ]


def create_active_experiment(manager: ExperimentManager, days: int = 14, **kwargs):
    experiment = manager.create_experiment(
        name="popularity boost",
        variants=create_variants(**kwargs),
        end_date=START + timedelta(days=days),
    )
    return manager.start(experiment.id)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def manager(clock):
    return ExperimentManager(clock=clock)


# =============================================================================
# Tests: Hashing
# =============================================================================


class TestAssignmentHashing:
    """Tests for the stable bucket function."""

    def test_bucket_is_stable(self):
        assert assignment_bucket("exp-0001", "user-1") == assignment_bucket("exp-0001", "user-1")

    def test_bucket_range(self):
        buckets = [assignment_bucket("exp-0001", f"user-{i}") for i in range(200)]

        assert all(0.0 <= b < 1.0 for b in buckets)

    def test_bucket_depends_on_experiment(self):
        users = [f"user-{i}" for i in range(50)]

        a = [assignment_bucket("exp-0001", u) for u in users]
        b = [assignment_bucket("exp-0002", u) for u in users]

        assert a != b

    def test_pick_variant_by_cumulative_traffic(self):
        variants = create_variants(0.3)

        assert pick_variant(variants, 0.0).name == "control"
        assert pick_variant(variants, 0.299).name == "control"
        assert pick_variant(variants, 0.3).name == "popular"
        assert pick_variant(variants, 0.9999).name == "popular"


# =============================================================================
# Tests: Lifecycle
# =============================================================================


class TestLifecycle:
    """Tests for creating, starting, stopping and expiring experiments."""

    def test_create(self, manager):
        experiment = manager.create_experiment(
            name="popularity boost",
            variants=create_variants(),
            end_date=START + timedelta(days=7),
        )

        assert experiment.id == "exp-0001"
        assert experiment.status == ExperimentStatus.CREATED
        assert experiment.created_at == START

    def test_create_rejects_tiny_traffic_share(self, manager):
        with pytest.raises(ValidationError, match="minimum"):
            manager.create_experiment(
                name="x", variants=create_variants(0.95), end_date=START + timedelta(days=7)
            )

    def test_create_rejects_single_variant(self, manager):
        with pytest.raises(ValidationError, match="two variants"):
            manager.create_experiment(
                name="x",
                variants=[Variant(name="only", weights=DEFAULT_RANKING_WEIGHTS, traffic=1.0)],
                end_date=START + timedelta(days=7),
            )

    def test_start_and_stop(self, manager):
        experiment = create_active_experiment(manager)
        assert experiment.status == ExperimentStatus.ACTIVE
        assert manager.is_active(experiment.id)

        stopped = manager.stop(experiment.id, "enough data")

        assert stopped.status == ExperimentStatus.STOPPED
        assert stopped.stop_reason == "enough data"
        assert not manager.is_active(experiment.id)

    def test_cannot_start_twice(self, manager):
        experiment = create_active_experiment(manager)

        with pytest.raises(ValidationError, match="cannot start"):
            manager.start(experiment.id)

    def test_cannot_stop_created(self, manager):
        experiment = manager.create_experiment(
            name="x", variants=create_variants(), end_date=START + timedelta(days=7)
        )

        with pytest.raises(ValidationError, match="cannot stop"):
            manager.stop(experiment.id)

    def test_unknown_experiment(self, manager):
        with pytest.raises(ExperimentNotFoundError):
            manager.get("exp-9999")

    def test_expire_due(self, manager, clock):
        short = create_active_experiment(manager, days=1)
        long = create_active_experiment(manager, days=30)

        clock.now = START + timedelta(days=2)
        stopped = manager.expire_due()

        assert stopped == [short.id]
        assert manager.get(short.id).stop_reason == "end date reached"
        assert manager.get(long.id).status == ExperimentStatus.ACTIVE

    def test_list_by_status(self, manager):
        create_active_experiment(manager)
        manager.create_experiment(name="draft", variants=create_variants(), end_date=START + timedelta(days=3))

        assert len(manager.list_experiments()) == 2
        assert [e.name for e in manager.list_experiments(ExperimentStatus.CREATED)] == ["draft"]

    def test_snapshots_are_detached(self, manager):
        experiment = create_active_experiment(manager)
        experiment.status = ExperimentStatus.STOPPED

        assert manager.get(experiment.id).status == ExperimentStatus.ACTIVE


# =============================================================================
# Tests: Assignment
# =============================================================================


class TestAssignment:
    """Tests for sticky user assignment."""

    def test_assignment_is_sticky(self, manager):
        experiment = create_active_experiment(manager)

        first = manager.assign_variant(experiment.id, "user-1")
        second = manager.assign_variant(experiment.id, "user-1")

        assert first == second
        assert first.weights in (DEFAULT_RANKING_WEIGHTS, POPULAR_WEIGHTS)

    def test_traffic_split_is_roughly_honoured(self, manager):
        experiment = create_active_experiment(manager, control_traffic=0.5)

        counts = Counter(
            manager.assign_variant(experiment.id, f"user-{i}").variant for i in range(2000)
        )

        assert 800 < counts["control"] < 1200
        assert 800 < counts["popular"] < 1200

    def test_force_variant(self, manager):
        experiment = create_active_experiment(manager)

        assignment = manager.assign_variant(experiment.id, "user-1", force_variant="popular")

        assert assignment.variant == "popular"
        assert assignment.weights == POPULAR_WEIGHTS
        assert assignment.forced is True

    def test_force_variant_does_not_override_existing(self, manager):
        experiment = create_active_experiment(manager)
        first = manager.assign_variant(experiment.id, "user-1", force_variant="control")

        again = manager.assign_variant(experiment.id, "user-1", force_variant="popular")

        assert again.variant == first.variant == "control"

    def test_force_unknown_variant(self, manager):
        experiment = create_active_experiment(manager)

        with pytest.raises(ValidationError, match="no variant"):
            manager.assign_variant(experiment.id, "user-1", force_variant="ghost")

    def test_no_new_assignments_when_stopped(self, manager):
        experiment = create_active_experiment(manager)
        existing = manager.assign_variant(experiment.id, "user-1")
        manager.stop(experiment.id)

        with pytest.raises(ExperimentNotActiveError, match="stopped"):
            manager.assign_variant(experiment.id, "user-2")
        assert manager.assign_variant(experiment.id, "user-1") == existing

    def test_no_assignments_before_start(self, manager):
        experiment = manager.create_experiment(
            name="x", variants=create_variants(), end_date=START + timedelta(days=7)
        )

        with pytest.raises(ExperimentNotActiveError, match="created"):
            manager.assign_variant(experiment.id, "user-1")

    def test_no_assignments_after_end_date(self, manager, clock):
        experiment = create_active_experiment(manager, days=1)
        clock.now = START + timedelta(days=2)

        with pytest.raises(ExperimentNotActiveError, match="expired"):
            manager.assign_variant(experiment.id, "user-1")

    def test_blank_user(self, manager):
        experiment = create_active_experiment(manager)

        with pytest.raises(ValidationError, match="user_id"):
            manager.assign_variant(experiment.id, " ")

    def test_concurrent_first_requests_store_one_assignment(self, manager):
        experiment = create_active_experiment(manager)
        results = []

        def assign():
            results.append(manager.assign_variant(experiment.id, "user-1"))

        threads = [threading.Thread(target=assign) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=5)

        assert len(results) == 8
        assert len(set(results)) == 1


# =============================================================================
# Tests: Outcomes and reports
# =============================================================================


class TestReports:
    """Tests for outcome recording and analysis."""

    def test_outcome_requires_assignment(self, manager):
        experiment = create_active_experiment(manager)

        assert manager.record_outcome(experiment.id, "stranger", "s-1", OutcomeMetrics()) is False

    def test_small_samples_recommend_continue(self, manager):
        experiment = create_active_experiment(manager)
        manager.assign_variant(experiment.id, "user-1", force_variant="control")
        manager.record_outcome(experiment.id, "user-1", "s-1", OutcomeMetrics(converted=True))

        report = manager.report(experiment.id)

        assert report.recommendation == "continue"
        assert report.winner is None
        [control, popular] = report.variants
        assert control.participants == 1
        assert control.sessions == 1
        assert control.conversion_rate == 1.0
        assert popular.sessions == 0

    def test_significant_improvement_recommends_rollout(self, manager):
        experiment = create_active_experiment(manager)
        for i in range(40):
            control_user, variant_user = f"c-{i}", f"v-{i}"
            manager.assign_variant(experiment.id, control_user, force_variant="control")
            manager.assign_variant(experiment.id, variant_user, force_variant="popular")
            manager.record_outcome(
                experiment.id, control_user, f"s-{i}",
                OutcomeMetrics(converted=i % 10 == 0, satisfaction=3.0),
            )
            manager.record_outcome(
                experiment.id, variant_user, f"s-{i}",
                OutcomeMetrics(converted=i % 10 < 6, satisfaction=3.0),
            )

        report = manager.report(experiment.id)

        conversion = next(c for c in report.comparisons if c.metric == "conversion")
        assert conversion.significant is True
        assert conversion.variant_mean == pytest.approx(0.6)
        assert report.winner == "popular"
        assert report.recommendation == "rollout"

    def test_no_difference_recommends_redesign(self, manager):
        experiment = create_active_experiment(manager)
        for i in range(30):
            for variant in ("control", "popular"):
                user = f"{variant}-{i}"
                manager.assign_variant(experiment.id, user, force_variant=variant)
                manager.record_outcome(
                    experiment.id, user, f"s-{i}", OutcomeMetrics(converted=i % 2 == 0)
                )

        report = manager.report(experiment.id)

        assert report.recommendation == "redesign"


class TestPValue:
    def test_small_sample_is_not_significant(self):
        assert two_sided_p_value([1.0, 0.0], [0.0, 0.0], min_sample_size=30) == 1.0

    def test_identical_constant_samples(self):
        assert two_sided_p_value([1.0] * 30, [1.0] * 30, min_sample_size=30) == 1.0

    def test_large_difference(self):
        a = [0.0] * 25 + [1.0] * 5
        b = [1.0] * 25 + [0.0] * 5

        assert two_sided_p_value(a, b, min_sample_size=30) < 0.001
