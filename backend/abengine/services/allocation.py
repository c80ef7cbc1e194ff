"""Adaptive traffic allocation.

Strategies compute new weights entirely in memory; the result is validated
and committed with the experiment version as a guard, together with an
allocation history snapshot. If anything fails the stored weights stay as
they were.
"""
import math
from typing import Dict, List, Optional, Sequence, Tuple

import structlog

from abengine.schemas.experiment import (
    AllocationType,
    BanditAlgorithm,
    Experiment,
    ExperimentStatus,
    Variant,
    VariantTracking,
)
from abengine.services.errors import (
    AllocationError,
    ConcurrencyError,
    ExperimentNotFoundError,
    InvalidStateError,
    ValidationError,
)
from abengine.services.experiment_cache import ExperimentCache
from abengine.services.interval_gate import IntervalGate
from abengine.services.metrics import success_count
from abengine.services.randomness import RandomSource
from abengine.services.sampling import BetaSampler, sample_beta
from abengine.services.significance import SignificanceTester
from abengine.services.store import ExperimentStore
from abengine.services.weights import (
    apply_weight_floor,
    initial_allocation,
    normalize_weights,
    validate_variants,
    with_weights,
)

logger = structlog.get_logger()

UCB_BEST_BASE_WEIGHT = 40.0
UCB_BEST_JITTER = 20.0

Arm = Tuple[Variant, VariantTracking]


class AllocationOptimizer:
    """Recompute variant weights from observed performance."""

    def __init__(
        self,
        store: ExperimentStore,
        gate: IntervalGate,
        rng: RandomSource,
        tester: Optional[SignificanceTester] = None,
        cache: Optional[ExperimentCache] = None,
        interval_seconds: int = 3600,
        epsilon: float = 0.1,
        exploration_factor: float = 2.0,
        smoothing_factor: float = 0.3,
        min_weight: float = 5.0,
        beta_sampler: BetaSampler = sample_beta
    ):
        self.store = store
        self.gate = gate
        self.rng = rng
        self.tester = tester or SignificanceTester()
        self.cache = cache
        self.interval_seconds = interval_seconds
        self.epsilon = epsilon
        self.exploration_factor = exploration_factor
        self.smoothing_factor = smoothing_factor
        self.min_weight = min_weight
        self.beta_sampler = beta_sampler

    def recalculate(self, experiment_id: str, force: bool = False) -> Optional[List[Variant]]:
        """
        Recompute and persist weights for a running, non-fixed experiment.

        Returns None (nothing written) when the experiment is not running,
        uses fixed allocation, has no impressions yet, or was reallocated
        within its update interval. ``force`` skips the interval check.

        Raises:
            ExperimentNotFoundError: Unknown experiment
            AllocationError: The new weights could not be committed
        """
        experiment = self._get(experiment_id)

        if experiment.status != ExperimentStatus.RUNNING:
            logger.info("allocation_skipped", experiment_id=experiment_id, reason="not_running")
            return None
        if experiment.allocation.type == AllocationType.FIXED:
            return None

        tracking = self.store.get_tracking(experiment_id)
        if sum(row.impressions for row in tracking) == 0:
            logger.info("allocation_skipped", experiment_id=experiment_id, reason="no_impressions")
            return None

        interval = experiment.allocation.update_interval_seconds or self.interval_seconds
        if not force and not self.gate.try_acquire(experiment_id, interval):
            logger.debug("allocation_skipped", experiment_id=experiment_id, reason="interval")
            return None

        weights = self.compute_weights(experiment, tracking)
        return self._commit(experiment, weights, experiment.allocation.strategy_name)

    def compute_weights(self, experiment: Experiment, tracking: Sequence[VariantTracking]) -> List[float]:
        """New weights, in declared variant order, for the experiment's strategy."""
        arms = self._arms(experiment, tracking)
        allocation = experiment.allocation

        if allocation.type == AllocationType.DYNAMIC:
            return self.dynamic_weights(experiment, arms)
        if allocation.type == AllocationType.BANDIT:
            if allocation.algorithm == BanditAlgorithm.THOMPSON:
                return self.thompson_weights(experiment, arms)
            if allocation.algorithm == BanditAlgorithm.UCB:
                c = allocation.exploration_factor
                return self.ucb_weights(experiment, arms, self.exploration_factor if c is None else c)
            if allocation.algorithm == BanditAlgorithm.EPSILON_GREEDY:
                eps = allocation.epsilon
                return self.epsilon_greedy_weights(experiment, arms, self.epsilon if eps is None else eps)

        return [variant.weight for variant, _ in arms]

    def dynamic_weights(self, experiment: Experiment, arms: Sequence[Arm]) -> List[float]:
        """
        Shift traffic toward variants that convert well with high confidence.

        score = rate * (0.5 + 0.5 * confidence vs control); new weights are
        smoothed against the current ones and floored at ``min_weight``.
        """
        metric = experiment.primary_metric
        control = experiment.control
        control_row = next((row for variant, row in arms if variant.id == control.id), None)

        scores = []
        for variant, row in arms:
            rate = success_count(row, metric) / row.impressions if row.impressions else 0.0
            if variant.id == control.id or control_row is None:
                confidence = 0.0
            else:
                confidence = self.tester.test(control_row, row, metric).confidence
            scores.append(rate * (0.5 + 0.5 * confidence))

        current = [variant.weight for variant, _ in arms]
        total_score = sum(scores)
        proposed = [s / total_score * 100 for s in scores] if total_score > 0 else current

        f = self.smoothing_factor
        smoothed = [(1 - f) * old + f * new for old, new in zip(current, proposed)]
        return normalize_weights(apply_weight_floor(smoothed, self.min_weight), floor=self.min_weight)

    def thompson_weights(self, experiment: Experiment, arms: Sequence[Arm]) -> List[float]:
        """One Beta(successes + 1, failures + 1) draw per arm; weight proportional to the draw."""
        metric = experiment.primary_metric
        samples = []
        for _, row in arms:
            successes = min(success_count(row, metric), row.impressions)
            failures = row.impressions - successes
            samples.append(self.beta_sampler(successes + 1, failures + 1, self.rng))
        return normalize_weights(samples)

    def ucb_weights(self, experiment: Experiment, arms: Sequence[Arm], exploration_factor: float) -> List[float]:
        """
        UCB1 scores pick the best arm, which gets 40-60% of traffic.

        The rest is shared evenly; this is a coarse allocation heuristic on
        top of UCB1, not a pure index policy.
        """
        metric = experiment.primary_metric
        total = sum(row.impressions for _, row in arms)

        scores = []
        for _, row in arms:
            if row.impressions == 0:
                scores.append(math.inf)
                continue
            mean = success_count(row, metric) / row.impressions
            scores.append(mean + math.sqrt(exploration_factor * math.log(total) / row.impressions))

        best = self._argmax(scores)
        best_weight = UCB_BEST_BASE_WEIGHT + UCB_BEST_JITTER * self.rng.random()
        others = (100.0 - best_weight) / (len(arms) - 1)

        return normalize_weights([best_weight if i == best else others for i in range(len(arms))])

    def epsilon_greedy_weights(self, experiment: Experiment, arms: Sequence[Arm], epsilon: float) -> List[float]:
        """Best observed rate gets (1 - epsilon) of traffic, the rest split evenly."""
        metric = experiment.primary_metric
        rates = [
            success_count(row, metric) / row.impressions if row.impressions else 0.0
            for _, row in arms
        ]

        best = self._argmax(rates)
        explore = epsilon * 100.0 / (len(arms) - 1)
        return normalize_weights([
            (1 - epsilon) * 100.0 if i == best else explore
            for i in range(len(arms))
        ])

    def rollback(self, experiment_id: str, snapshot_id: int) -> List[Variant]:
        """
        Re-apply the weights of a historical allocation snapshot.

        Raises:
            ExperimentNotFoundError: Unknown experiment or snapshot
            InvalidStateError: Experiment is not running
            ValidationError: Snapshot does not cover every current variant
            AllocationError: The weights could not be committed
        """
        experiment = self._get(experiment_id)
        if experiment.status != ExperimentStatus.RUNNING:
            raise InvalidStateError(f"Experiment {experiment_id} is {experiment.status.value}, cannot roll back")

        snapshot = self.store.get_allocation_snapshot(experiment_id, snapshot_id)
        if snapshot is None:
            raise ExperimentNotFoundError(f"Allocation snapshot {snapshot_id} not found for {experiment_id}")

        by_variant = {entry.variant_id: entry.weight for entry in snapshot.allocation}
        missing = [v.id for v in experiment.variants if v.id not in by_variant]
        if missing:
            raise ValidationError(f"Snapshot {snapshot_id} has no weight for variants: {', '.join(missing)}")

        weights = [by_variant[v.id] for v in experiment.variants]
        return self._commit(experiment, weights, "rollback")

    @staticmethod
    def initial_allocation(num_variants: int, expected_effect: Optional[float] = None) -> List[Variant]:
        """Recommended starting weights for a new experiment."""
        return initial_allocation(num_variants, expected_effect)

    def _commit(self, experiment: Experiment, weights: Sequence[float], strategy: str) -> List[Variant]:
        variants = with_weights(experiment.variants, weights)
        try:
            validate_variants(variants)
        except ValidationError as e:
            raise AllocationError(f"{strategy} produced invalid weights for {experiment.id}: {e}") from e

        try:
            updated = self.store.put_variant_weights(experiment.id, variants, experiment.version, strategy)
        except ConcurrencyError as e:
            logger.warning("allocation_conflict", experiment_id=experiment.id, strategy=strategy)
            raise AllocationError(str(e)) from e
        finally:
            if self.cache:
                self.cache.invalidate(experiment.id)

        logger.info(
            "allocation_updated",
            experiment_id=experiment.id,
            strategy=strategy,
            version=updated.version,
            weights={v.id: v.weight for v in updated.variants}
        )
        return updated.variants

    def _get(self, experiment_id: str) -> Experiment:
        experiment = self.store.get_experiment(experiment_id)
        if experiment is None:
            raise ExperimentNotFoundError(f"Experiment {experiment_id} not found")
        return experiment

    @staticmethod
    def _arms(experiment: Experiment, tracking: Sequence[VariantTracking]) -> List[Arm]:
        by_variant: Dict[str, VariantTracking] = {row.variant_id: row for row in tracking}
        return [
            (variant, by_variant.get(variant.id) or VariantTracking(experiment_id=experiment.id, variant_id=variant.id))
            for variant in experiment.variants
        ]

    @staticmethod
    def _argmax(values: Sequence[float]) -> int:
        """Index of the largest value, first one on ties."""
        best = 0
        for i, value in enumerate(values):
            if value > values[best]:
                best = i
        return best
