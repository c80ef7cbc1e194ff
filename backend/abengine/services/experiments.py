"""Experimentation service: the caller-facing API over the engine components."""
from functools import lru_cache
from typing import Any, Dict, List, Mapping, Optional, Sequence

import redis
import structlog
from sqlalchemy.orm import sessionmaker

from abengine.config import Settings, get_settings
from abengine.database import SessionLocal
from abengine.schemas.events import EventType
from abengine.schemas.experiment import (
    AllocationSnapshot,
    AllocationStrategy,
    Experiment,
    ExperimentCreate,
    ExperimentStatus,
    MetricName,
    Variant,
    VariantTracking,
)
from abengine.schemas.feature_flag import ExperimentFlags, FeatureFlag, UserContext
from abengine.schemas.results import ExperimentResult
from abengine.services.allocation import AllocationOptimizer
from abengine.services.assignment import AssignmentEngine
from abengine.services.errors import FlagNotFoundError, ValidationError
from abengine.services.experiment_cache import ExperimentCache, LocalExperimentCache, RedisExperimentCache
from abengine.services.feature_flags import FeatureFlagEvaluator, load_flags
from abengine.services.interval_gate import IntervalGate, LocalIntervalGate, RedisIntervalGate
from abengine.services.lifecycle import ExperimentLifecycleManager
from abengine.services.metrics import MetricsAggregator
from abengine.services.randomness import Clock, RandomSource, SystemClock, create_random_source
from abengine.services.significance import SignificanceTester
from abengine.services.store import ExperimentStore, SQLExperimentStore

logger = structlog.get_logger()


class ExperimentService:
    """
    Service for managing A/B experiments.

    Wires the lifecycle manager, assignment engine, metrics aggregator,
    significance tester and allocation optimizer over one store, cache and
    random source. Feature flags linked to an experiment resolve against the
    user's sticky variant.

    Example:
        >>> service = build_experiment_service(settings, SessionLocal)
        >>> experiment = service.create_experiment(ExperimentCreate(...))
        >>> service.start_experiment(experiment.id)
        >>> variant_id = service.assign(experiment.id, "user_123")
        >>> service.record_event(experiment.id, variant_id, "conversion", event_id="order-1")
    """

    def __init__(
        self,
        store: ExperimentStore,
        cache: ExperimentCache,
        gate: IntervalGate,
        rng: RandomSource,
        clock: Optional[Clock] = None,
        settings: Optional[Settings] = None,
        flags: Optional[FeatureFlagEvaluator] = None
    ):
        settings = settings or get_settings()
        self.store = store
        self.cache = cache
        self.clock = clock or SystemClock()
        self.flags = flags or FeatureFlagEvaluator()

        self.tester = SignificanceTester(
            self.clock,
            minimum_detectable_effect=settings.minimum_detectable_effect,
            min_run_hours=settings.min_run_hours
        )
        self.lifecycle = ExperimentLifecycleManager(
            store,
            cache=cache,
            tester=self.tester,
            clock=self.clock,
            min_sample_size=settings.min_sample_size,
            default_confidence_level=settings.default_confidence_level
        )
        self.assignments = AssignmentEngine(store, cache, rng)
        self.metrics = MetricsAggregator(store, cache)
        self.optimizer = AllocationOptimizer(
            store,
            gate,
            rng,
            tester=self.tester,
            cache=cache,
            interval_seconds=settings.reallocation_interval_seconds,
            epsilon=settings.epsilon,
            exploration_factor=settings.ucb_exploration_factor,
            smoothing_factor=settings.smoothing_factor,
            min_weight=settings.min_variant_weight
        )

    # Lifecycle

    def create_experiment(self, config: ExperimentCreate) -> Experiment:
        return self.lifecycle.create(config)

    def start_experiment(self, experiment_id: str) -> Experiment:
        return self.lifecycle.start(experiment_id)

    def stop_experiment(self, experiment_id: str) -> ExperimentResult:
        return self.lifecycle.stop(experiment_id)

    def get_experiment(self, experiment_id: str) -> Experiment:
        return self.lifecycle.get(experiment_id)

    def get_active_experiments(self) -> List[Experiment]:
        return self.lifecycle.list_active()

    def plan_multivariate(
        self,
        name: str,
        factors: Mapping[str, Sequence[Any]],
        metrics: Sequence[MetricName],
        duration_days: int,
        allocation: Optional[AllocationStrategy] = None
    ) -> List[Experiment]:
        return self.lifecycle.plan_multivariate(name, factors, metrics, duration_days, allocation)

    # Assignment and events

    def assign(self, experiment_id: str, user_id: str) -> str:
        return self.assignments.assign(experiment_id, user_id)

    def record_exposure(
        self,
        experiment_id: str,
        variant_id: str,
        count: int = 1,
        event_id: Optional[str] = None
    ) -> bool:
        return self.metrics.record_exposure(experiment_id, variant_id, count=count, event_id=event_id)

    def record_event(
        self,
        experiment_id: str,
        variant_id: str,
        metric_id: EventType,
        value: Optional[float] = None,
        count: int = 1,
        event_id: Optional[str] = None
    ) -> bool:
        return self.metrics.record_event(
            experiment_id, variant_id, metric_id, value=value, count=count, event_id=event_id
        )

    def record_user_event(
        self,
        experiment_id: str,
        user_id: str,
        metric_id: EventType,
        value: Optional[float] = None,
        count: int = 1,
        event_id: Optional[str] = None
    ) -> bool:
        return self.metrics.record_user_event(
            experiment_id, user_id, metric_id, value=value, count=count, event_id=event_id
        )

    def get_tracking(self, experiment_id: str) -> List[VariantTracking]:
        self.lifecycle.get(experiment_id)
        return self.metrics.get_tracking(experiment_id)

    # Analysis

    def get_result(self, experiment_id: str) -> ExperimentResult:
        """
        Final result of a completed experiment, or an interim analysis of a running one.

        Raises:
            InsufficientDataError: Experiment has no tracking yet (planning)
        """
        experiment = self.lifecycle.get(experiment_id)
        if experiment.status == ExperimentStatus.COMPLETED and experiment.result is not None:
            return experiment.result
        return self.tester.analyze(experiment, self.store.get_tracking(experiment_id))

    # Allocation

    def recalculate_allocation(self, experiment_id: str, force: bool = False) -> Optional[List[Variant]]:
        return self.optimizer.recalculate(experiment_id, force=force)

    def rollback_allocation(self, experiment_id: str, snapshot_id: int) -> List[Variant]:
        return self.optimizer.rollback(experiment_id, snapshot_id)

    def allocation_history(self, experiment_id: str) -> List[AllocationSnapshot]:
        self.lifecycle.get(experiment_id)
        return self.store.list_allocation_history(experiment_id)

    def initial_allocation(self, num_variants: int, expected_effect: Optional[float] = None) -> List[Variant]:
        return self.optimizer.initial_allocation(num_variants, expected_effect)

    # Feature flags

    def list_flags(self) -> List[FeatureFlag]:
        return self.flags.list_flags()

    def get_flag(self, flag_id: str) -> FeatureFlag:
        flag = self.flags.get_flag(flag_id)
        if flag is None:
            raise FlagNotFoundError(f"Feature flag {flag_id} not found")
        return flag

    def put_flag(self, flag: FeatureFlag) -> FeatureFlag:
        """Create or replace a flag. Flags linked to experiments must name existing ones."""
        for experiment_id in flag.experiments:
            self.lifecycle.get(experiment_id)
        if flag.rollout_percentage is not None and not 0 <= flag.rollout_percentage <= 100:
            raise ValidationError(f"Rollout percentage must be in [0, 100], got {flag.rollout_percentage}")

        self.flags.set_flag(flag)
        logger.info("feature_flag_saved", flag_id=flag.id, enabled=flag.enabled, experiments=flag.experiments)
        return flag

    def delete_flag(self, flag_id: str) -> None:
        self.get_flag(flag_id)
        self.flags.remove_flag(flag_id)
        logger.info("feature_flag_deleted", flag_id=flag_id)

    def evaluate_flags(self, context: UserContext) -> Dict[str, Any]:
        return self.flags.evaluate_all(context)

    def experiment_flags(self, experiment_id: str, context: UserContext) -> ExperimentFlags:
        """
        Flags linked to an experiment for the user's variant.

        The context's bucketing unit (user, else session) is assigned through
        the usual sticky path, so the same rules as ``assign`` apply.

        Raises:
            ExperimentNotFoundError: Unknown experiment
            InvalidStateError: New user on an experiment that is not running
        """
        variant_id = self.assign(experiment_id, context.unit_id)
        return ExperimentFlags(
            experiment_id=experiment_id,
            variant_id=variant_id,
            flags=self.flags.experiment_flags(experiment_id, variant_id, context)
        )


def build_experiment_service(
    settings: Settings,
    session_factory: sessionmaker,
    redis_client: Optional[redis.Redis] = None,
    clock: Optional[Clock] = None,
    rng: Optional[RandomSource] = None
) -> ExperimentService:
    """Assemble a service from settings; Redis backs the cache and gate when given.

    Flags from ``settings.feature_flags_path`` are loaded once here.
    """
    clock = clock or SystemClock()
    store = SQLExperimentStore(session_factory, clock)

    if redis_client is not None:
        cache: ExperimentCache = RedisExperimentCache(redis_client, ttl=settings.experiment_cache_ttl_seconds)
        gate: IntervalGate = RedisIntervalGate(redis_client)
    else:
        cache = LocalExperimentCache(clock, ttl=settings.experiment_cache_ttl_seconds)
        gate = LocalIntervalGate(clock)

    flags = FeatureFlagEvaluator(load_flags(settings.feature_flags_path) if settings.feature_flags_path else ())

    return ExperimentService(
        store,
        cache,
        gate,
        rng or create_random_source(settings.random_seed),
        clock=clock,
        settings=settings,
        flags=flags
    )


@lru_cache()
def get_experiment_service() -> ExperimentService:
    """Process-wide service instance (FastAPI dependency)."""
    settings = get_settings()
    redis_client = redis.from_url(settings.redis_url) if settings.use_redis else None
    logger.info("experiment_service_initialized", use_redis=settings.use_redis)
    return build_experiment_service(settings, SessionLocal, redis_client)
