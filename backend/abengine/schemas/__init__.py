"""Pydantic schemas for domain objects and request/response validation."""
from abengine.schemas.results import SignificanceResult, MetricOutcome, ExperimentResult
from abengine.schemas.experiment import (
    AllocationEntry,
    AllocationUpdate,
    AllocationSnapshot,
    AllocationStrategy,
    AllocationType,
    Assignment,
    BanditAlgorithm,
    Experiment,
    ExperimentCreate,
    ExperimentStatus,
    ExperimentType,
    MetricName,
    Variant,
    VariantTracking,
)
from abengine.schemas.events import AssignRequest, AssignResponse, EventRequest, EventResponse, EventType
from abengine.schemas.feature_flag import ExperimentFlags, FeatureFlag, FlagCondition, UserContext

__all__ = [
    "AllocationEntry",
    "AllocationUpdate",
    "AllocationSnapshot",
    "AllocationStrategy",
    "AllocationType",
    "Assignment",
    "AssignRequest",
    "AssignResponse",
    "BanditAlgorithm",
    "EventRequest",
    "EventResponse",
    "EventType",
    "Experiment",
    "ExperimentCreate",
    "ExperimentFlags",
    "ExperimentResult",
    "ExperimentStatus",
    "ExperimentType",
    "FeatureFlag",
    "FlagCondition",
    "MetricName",
    "MetricOutcome",
    "SignificanceResult",
    "UserContext",
    "Variant",
    "VariantTracking",
]
