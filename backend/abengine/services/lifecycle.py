"""Experiment lifecycle: planning -> running -> completed."""
import itertools
import uuid
from datetime import timedelta
from typing import Any, Dict, List, Mapping, Optional, Sequence

import structlog

from abengine.schemas.experiment import (
    AllocationStrategy,
    Experiment,
    ExperimentCreate,
    ExperimentStatus,
    ExperimentType,
    MetricName,
    Variant,
)
from abengine.schemas.results import ExperimentResult
from abengine.services.errors import ConcurrencyError, ExperimentNotFoundError, InvalidStateError, ValidationError
from abengine.services.experiment_cache import ExperimentCache
from abengine.services.randomness import Clock, SystemClock
from abengine.services.significance import SignificanceTester
from abengine.services.store import ExperimentStore
from abengine.services.weights import ensure_control, validate_variants

logger = structlog.get_logger()

MAX_TRANSITION_ATTEMPTS = 3
MULTIVARIATE_STAGGER_DAYS = 2


def full_factorial(factors: Mapping[str, Sequence[Any]]) -> List[Dict[str, Any]]:
    """
    Every combination of factor levels.

    Example:
        >>> full_factorial({"color": ["red", "blue"], "size": ["s", "l"]})
        [{'color': 'red', 'size': 's'}, {'color': 'red', 'size': 'l'},
         {'color': 'blue', 'size': 's'}, {'color': 'blue', 'size': 'l'}]
    """
    names = list(factors)
    return [dict(zip(names, levels)) for levels in itertools.product(*(factors[n] for n in names))]


class ExperimentLifecycleManager:
    """Create experiments and move them through their lifecycle."""

    def __init__(
        self,
        store: ExperimentStore,
        cache: Optional[ExperimentCache] = None,
        tester: Optional[SignificanceTester] = None,
        clock: Optional[Clock] = None,
        min_sample_size: int = 100,
        default_confidence_level: float = 0.95
    ):
        self.store = store
        self.cache = cache
        self.clock = clock or SystemClock()
        self.tester = tester or SignificanceTester(self.clock)
        self.min_sample_size = min_sample_size
        self.default_confidence_level = default_confidence_level

    def create(self, config: ExperimentCreate) -> Experiment:
        """
        Validate and persist a new experiment in ``planning``.

        Raises:
            ValidationError: Invalid variants, metrics, sample size or settings
        """
        if config.sample_size < self.min_sample_size:
            raise ValidationError(
                f"Sample size {config.sample_size} is below the minimum of {self.min_sample_size}"
            )
        if not config.metrics:
            raise ValidationError("At least one metric is required")
        if len(set(config.metrics)) != len(config.metrics):
            raise ValidationError("Metrics must be unique")

        variants = ensure_control(config.variants)
        validate_variants(variants)

        confidence_level = config.confidence_level or self.default_confidence_level
        if not 0 < confidence_level < 1:
            raise ValidationError(f"Confidence level must be between 0 and 1, got {confidence_level}")
        if not 0 < config.traffic_allocation <= 100:
            raise ValidationError(f"Traffic allocation must be in (0, 100], got {config.traffic_allocation}")
        self._validate_allocation(config.allocation)
        if config.scheduled_start and config.scheduled_end and config.scheduled_end <= config.scheduled_start:
            raise ValidationError("Scheduled end must be after scheduled start")

        experiment = Experiment(
            id=config.id or f"exp_{uuid.uuid4().hex[:12]}",
            name=config.name,
            type=config.type,
            status=ExperimentStatus.PLANNING,
            variants=variants,
            metrics=config.metrics,
            confidence_level=confidence_level,
            sample_size=config.sample_size,
            allocation=config.allocation,
            traffic_allocation=config.traffic_allocation,
            scheduled_start=config.scheduled_start,
            scheduled_end=config.scheduled_end
        )

        saved = self.store.put_experiment(experiment, history_strategy="initial")

        logger.info(
            "experiment_created",
            experiment_id=saved.id,
            name=saved.name,
            variants=len(saved.variants),
            allocation=saved.allocation.strategy_name
        )
        return saved

    def start(self, experiment_id: str) -> Experiment:
        """
        Move a planned experiment to ``running`` and seed its tracking rows.

        Raises:
            ExperimentNotFoundError: Unknown experiment
            InvalidStateError: Experiment is not in planning
        """
        experiment = self.get(experiment_id)
        if experiment.status != ExperimentStatus.PLANNING:
            raise InvalidStateError(
                f"Experiment {experiment_id} is {experiment.status.value}, only planning experiments can start"
            )

        self.store.init_tracking(experiment_id, [v.id for v in experiment.variants])

        running = experiment.model_copy(update={
            "status": ExperimentStatus.RUNNING,
            "started_at": self.clock.now()
        })
        try:
            saved = self.store.put_experiment(running, expected_version=experiment.version)
        except ConcurrencyError as e:
            raise InvalidStateError(f"Experiment {experiment_id} changed while starting, reload and retry") from e
        finally:
            self._invalidate(experiment_id)

        logger.info("experiment_started", experiment_id=experiment_id)
        return saved

    def stop(self, experiment_id: str) -> ExperimentResult:
        """
        Run the final analysis and move a running experiment to ``completed``.

        Weight updates may bump the version while the analysis runs; the
        transition re-reads and retries a few times before giving up.

        Raises:
            ExperimentNotFoundError: Unknown experiment
            InvalidStateError: Experiment is not running
            InsufficientDataError: Fewer than two tracked variants
            ConcurrencyError: The experiment kept changing across every attempt
        """
        for attempt in range(MAX_TRANSITION_ATTEMPTS):
            experiment = self.get(experiment_id)
            if experiment.status != ExperimentStatus.RUNNING:
                raise InvalidStateError(
                    f"Experiment {experiment_id} is {experiment.status.value}, only running experiments can stop"
                )

            result = self.tester.analyze(experiment, self.store.get_tracking(experiment_id))
            completed = experiment.model_copy(update={
                "status": ExperimentStatus.COMPLETED,
                "ended_at": self.clock.now(),
                "result": result
            })

            try:
                self.store.put_experiment(completed, expected_version=experiment.version)
            except ConcurrencyError:
                logger.info("experiment_stop_retry", experiment_id=experiment_id, attempt=attempt + 1)
                continue
            finally:
                self._invalidate(experiment_id)

            logger.info(
                "experiment_stopped",
                experiment_id=experiment_id,
                winner=result.winner,
                total_impressions=result.total_impressions
            )
            return result

        raise ConcurrencyError(f"Experiment {experiment_id} kept changing while stopping, retry later")

    def get(self, experiment_id: str) -> Experiment:
        experiment = self.store.get_experiment(experiment_id)
        if experiment is None:
            raise ExperimentNotFoundError(f"Experiment {experiment_id} not found")
        return experiment

    def list_active(self) -> List[Experiment]:
        return self.store.list_experiments(ExperimentStatus.RUNNING)

    def plan_multivariate(
        self,
        name: str,
        factors: Mapping[str, Sequence[Any]],
        metrics: Sequence[MetricName],
        duration_days: int,
        allocation: Optional[AllocationStrategy] = None
    ) -> List[Experiment]:
        """
        Create one two-arm experiment per factor combination (full factorial).

        Each compares an empty-config control with one combination at 50/50,
        needs twice the minimum sample size, and is scheduled to start two
        days after the previous one.
        """
        combinations = full_factorial(factors)
        if not combinations:
            raise ValidationError("At least one factor with one level is required")
        if duration_days <= 0:
            raise ValidationError(f"Duration must be positive, got {duration_days}")

        now = self.clock.now()
        experiments = []
        for i, combination in enumerate(combinations):
            start = now + timedelta(days=i * MULTIVARIATE_STAGGER_DAYS)
            config = ExperimentCreate(
                name=f"{name}_variant_{i}",
                type=ExperimentType.MULTIVARIATE,
                variants=[
                    Variant(id="control", name="Control", weight=50.0, is_control=True),
                    Variant(id=f"combination_{i}", name=f"Combination {i}", weight=50.0, config=combination)
                ],
                metrics=list(metrics),
                sample_size=self.min_sample_size * 2,
                allocation=allocation or AllocationStrategy(),
                scheduled_start=start,
                scheduled_end=start + timedelta(days=duration_days)
            )
            experiments.append(self.create(config))

        logger.info("multivariate_planned", name=name, experiments=len(experiments))
        return experiments

    @staticmethod
    def _validate_allocation(allocation: AllocationStrategy) -> None:
        if allocation.epsilon is not None and not 0 <= allocation.epsilon <= 1:
            raise ValidationError(f"Epsilon must be between 0 and 1, got {allocation.epsilon}")
        if allocation.exploration_factor is not None and allocation.exploration_factor <= 0:
            raise ValidationError(f"Exploration factor must be positive, got {allocation.exploration_factor}")
        if allocation.update_interval_seconds is not None and allocation.update_interval_seconds <= 0:
            raise ValidationError(
                f"Update interval must be positive, got {allocation.update_interval_seconds}"
            )

    def _invalidate(self, experiment_id: str) -> None:
        if self.cache:
            self.cache.invalidate(experiment_id)
