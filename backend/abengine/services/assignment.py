"""Sticky weighted-random variant assignment."""
from typing import Optional, Sequence

import structlog

from abengine.schemas.experiment import Experiment, ExperimentStatus, Variant
from abengine.services.bucketing import is_in_rollout
from abengine.services.errors import ExperimentNotFoundError, InvalidStateError
from abengine.services.experiment_cache import ExperimentCache
from abengine.services.randomness import RandomSource
from abengine.services.store import ExperimentStore

logger = structlog.get_logger()


def draw_variant(variants: Sequence[Variant], u: float) -> Variant:
    """
    Map a uniform draw to a variant by cumulative weight.

    Variants are walked in declared order; the first whose cumulative
    weight / 100 exceeds ``u`` is chosen. The last variant absorbs any
    floating point drift.

    Example:
        >>> # weights [50, 30, 20]
        >>> draw_variant(variants, 0.65).id  # 0.5 <= 0.65 < 0.8
        'variant_a'
    """
    cumulative = 0.0
    for variant in variants:
        cumulative += variant.weight / 100.0
        if u < cumulative:
            return variant
    return variants[-1]


class AssignmentEngine:
    """Assign users to variants of running experiments."""

    def __init__(self, store: ExperimentStore, cache: ExperimentCache, rng: RandomSource):
        self.store = store
        self.cache = cache
        self.rng = rng

    def assign(self, experiment_id: str, user_id: str) -> str:
        """
        Return the user's variant id, drawing and persisting one on first call.

        An existing assignment is returned unchanged, even after the
        experiment completes. Users outside ``traffic_allocation`` get the
        control without an assignment being stored.

        Raises:
            ExperimentNotFoundError: Unknown experiment
            InvalidStateError: No existing assignment and the experiment is not running
        """
        existing = self.store.get_assignment(experiment_id, user_id)
        if existing:
            return existing.variant_id

        experiment = self.get_experiment(experiment_id)
        if experiment.status != ExperimentStatus.RUNNING:
            raise InvalidStateError(
                f"Experiment {experiment_id} is {experiment.status.value}, new assignments require running"
            )

        if not is_in_rollout(experiment.id, user_id, experiment.traffic_allocation):
            return experiment.control.id

        candidate = draw_variant(experiment.variants, self.rng.random())
        assignment = self.store.get_or_create_assignment(experiment_id, user_id, candidate.id)

        if assignment.variant_id != candidate.id:
            logger.info(
                "assignment_race_resolved",
                experiment_id=experiment_id,
                user_id=user_id,
                variant_id=assignment.variant_id
            )
        return assignment.variant_id

    def get_experiment(self, experiment_id: str) -> Experiment:
        """Cached experiment configuration, read through from the store."""
        experiment: Optional[Experiment] = self.cache.get(experiment_id)
        if experiment is None:
            experiment = self.store.get_experiment(experiment_id)
            if experiment is None:
                raise ExperimentNotFoundError(f"Experiment {experiment_id} not found")
            self.cache.set(experiment)
        return experiment
