"""Exposure and outcome event recording, and metric derivation from counters."""
from typing import List, Optional, Union

import structlog

from abengine.schemas.events import EventType
from abengine.schemas.experiment import Experiment, ExperimentStatus, MetricName, VariantTracking
from abengine.services.errors import (
    ExperimentNotFoundError,
    InvalidStateError,
    StatisticalError,
    ValidationError,
)
from abengine.services.experiment_cache import ExperimentCache
from abengine.services.store import ExperimentStore

logger = structlog.get_logger()

EVENT_COUNTERS = {
    EventType.IMPRESSION: "impressions",
    EventType.CLICK: "clicks",
    EventType.CONVERSION: "conversions",
    EventType.REVENUE: "revenue",
}

# Counter treated as the Bernoulli success of each metric
SUCCESS_COUNTERS = {
    MetricName.CONVERSION_RATE: "conversions",
    MetricName.CLICK_RATE: "clicks",
    MetricName.AVERAGE_ORDER_VALUE: "conversions",
    MetricName.REVENUE_PER_IMPRESSION: "conversions",
}


def check_tracking(tracking: VariantTracking) -> None:
    """Reject counters no valid event stream can produce."""
    for counter in ("impressions", "clicks", "conversions", "revenue"):
        if getattr(tracking, counter) < 0:
            raise StatisticalError(
                f"Negative {counter} for variant {tracking.variant_id}: {getattr(tracking, counter)}"
            )


def metric_value(tracking: VariantTracking, metric: MetricName) -> float:
    """
    Derive a metric from counters.

    - conversion_rate: conversions / impressions
    - click_rate: clicks / impressions
    - average_order_value: revenue / conversions
    - revenue_per_impression: revenue / impressions

    A zero denominator yields 0.
    """
    check_tracking(tracking)

    if metric == MetricName.CONVERSION_RATE:
        return tracking.conversions / tracking.impressions if tracking.impressions else 0.0
    if metric == MetricName.CLICK_RATE:
        return tracking.clicks / tracking.impressions if tracking.impressions else 0.0
    if metric == MetricName.AVERAGE_ORDER_VALUE:
        return tracking.revenue / tracking.conversions if tracking.conversions else 0.0
    if metric == MetricName.REVENUE_PER_IMPRESSION:
        return tracking.revenue / tracking.impressions if tracking.impressions else 0.0
    raise StatisticalError(f"Unknown metric: {metric}")


def success_count(tracking: VariantTracking, metric: MetricName) -> int:
    """Successes of ``metric`` out of ``tracking.impressions`` trials."""
    counter = SUCCESS_COUNTERS.get(metric)
    if counter is None:
        raise StatisticalError(f"Unknown metric: {metric}")
    return getattr(tracking, counter)


class MetricsAggregator:
    """Record events into per-variant counters with atomic increments."""

    def __init__(self, store: ExperimentStore, cache: Optional[ExperimentCache] = None):
        self.store = store
        self.cache = cache

    def record_exposure(
        self,
        experiment_id: str,
        variant_id: str,
        count: int = 1,
        event_id: Optional[str] = None
    ) -> bool:
        """Count ``count`` impressions. False when ``event_id`` was already processed."""
        return self.record_event(experiment_id, variant_id, EventType.IMPRESSION, count=count, event_id=event_id)

    def record_event(
        self,
        experiment_id: str,
        variant_id: str,
        metric_id: Union[EventType, str],
        value: Optional[float] = None,
        count: int = 1,
        event_id: Optional[str] = None
    ) -> bool:
        """
        Count an event for a variant.

        Args:
            experiment_id: Running experiment
            variant_id: Variant the event belongs to
            metric_id: impression, click, conversion or revenue
            value: Amount added by revenue events
            count: Batched count for impression/click/conversion events
            event_id: Idempotency key; a repeated id is ignored

        Returns:
            True if counted, False if ``event_id`` was a duplicate

        Raises:
            ValidationError: Unknown event type or variant
            StatisticalError: Negative count or revenue, or revenue without a value
            InvalidStateError: Experiment is not running
        """
        event_type = self._parse_event_type(metric_id)
        experiment = self._get_running(experiment_id)
        if experiment.get_variant(variant_id) is None:
            raise ValidationError(f"Unknown variant {variant_id} for experiment {experiment_id}")

        if event_type == EventType.REVENUE:
            if value is None:
                raise StatisticalError("Revenue events require a value")
            if value < 0:
                raise StatisticalError(f"Revenue must be non-negative, got {value}")
            delta = float(value)
        else:
            if count < 0:
                raise StatisticalError(f"Event count must be non-negative, got {count}")
            delta = int(count)

        recorded = self.store.increment_variant_counter(
            experiment_id,
            variant_id,
            EVENT_COUNTERS[event_type],
            delta,
            event_id=event_id
        )

        if recorded:
            logger.debug(
                "event_recorded",
                experiment_id=experiment_id,
                variant_id=variant_id,
                metric=event_type.value,
                delta=delta
            )
        return recorded

    def record_user_event(
        self,
        experiment_id: str,
        user_id: str,
        metric_id: Union[EventType, str],
        value: Optional[float] = None,
        count: int = 1,
        event_id: Optional[str] = None
    ) -> bool:
        """Record an event for the user's sticky variant. Unassigned users are ignored."""
        assignment = self.store.get_assignment(experiment_id, user_id)
        if assignment is None:
            logger.info("event_ignored_unassigned", experiment_id=experiment_id, user_id=user_id)
            return False

        return self.record_event(
            experiment_id,
            assignment.variant_id,
            metric_id,
            value=value,
            count=count,
            event_id=event_id
        )

    def get_tracking(self, experiment_id: str) -> List[VariantTracking]:
        return self.store.get_tracking(experiment_id)

    def _get_running(self, experiment_id: str) -> Experiment:
        experiment = self.cache.get(experiment_id) if self.cache else None
        if experiment is None:
            experiment = self.store.get_experiment(experiment_id)
            if experiment is None:
                raise ExperimentNotFoundError(f"Experiment {experiment_id} not found")
            if self.cache:
                self.cache.set(experiment)

        if experiment.status != ExperimentStatus.RUNNING:
            raise InvalidStateError(
                f"Experiment {experiment_id} is {experiment.status.value}, events are only recorded while running"
            )
        return experiment

    @staticmethod
    def _parse_event_type(metric_id: Union[EventType, str]) -> EventType:
        try:
            return EventType(metric_id)
        except ValueError:
            raise ValidationError(f"Unknown event type: {metric_id}")
