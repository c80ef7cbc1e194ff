"""Experiment configuration and state schemas."""
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional
from datetime import datetime
import enum

from abengine.schemas.results import ExperimentResult


class ExperimentStatus(str, enum.Enum):
    """Experiment lifecycle state."""
    PLANNING = "planning"
    RUNNING = "running"
    COMPLETED = "completed"


class ExperimentType(str, enum.Enum):
    """Experiment design."""
    SINGLE_FACTOR = "single_factor"
    MULTIVARIATE = "multivariate"


class MetricName(str, enum.Enum):
    """Metrics derived from variant tracking counters."""
    CONVERSION_RATE = "conversion_rate"
    CLICK_RATE = "click_rate"
    AVERAGE_ORDER_VALUE = "average_order_value"
    REVENUE_PER_IMPRESSION = "revenue_per_impression"


class AllocationType(str, enum.Enum):
    """How variant weights evolve while an experiment runs."""
    FIXED = "fixed"
    DYNAMIC = "dynamic"
    BANDIT = "bandit"


class BanditAlgorithm(str, enum.Enum):
    """Multi-armed bandit strategy used by bandit allocation."""
    THOMPSON = "thompson"
    UCB = "ucb"
    EPSILON_GREEDY = "epsilon_greedy"


class AllocationStrategy(BaseModel):
    """Allocation settings of an experiment. Unset tunables fall back to settings."""

    type: AllocationType = AllocationType.FIXED
    algorithm: BanditAlgorithm = BanditAlgorithm.THOMPSON
    update_interval_seconds: Optional[int] = None
    epsilon: Optional[float] = None
    exploration_factor: Optional[float] = None

    @property
    def strategy_name(self) -> str:
        """Name recorded in allocation history."""
        if self.type == AllocationType.BANDIT:
            return self.algorithm.value
        return self.type.value


class Variant(BaseModel):
    """One arm of an experiment."""

    id: str
    name: str
    weight: float = Field(..., description="Traffic percentage, 0-100")
    is_control: bool = False
    config: Dict[str, Any] = Field(default_factory=dict)


class ExperimentCreate(BaseModel):
    """Request to create an experiment.

    Weights, variant count and sample size are checked by the lifecycle
    manager so that every rejection surfaces as the same error type.
    """

    id: Optional[str] = Field(None, max_length=64, description="Generated when omitted")
    name: str = Field(..., min_length=1, max_length=200)
    type: ExperimentType = ExperimentType.SINGLE_FACTOR
    variants: List[Variant]
    metrics: List[MetricName] = Field(default_factory=lambda: [MetricName.CONVERSION_RATE])
    confidence_level: Optional[float] = None
    sample_size: int
    allocation: AllocationStrategy = Field(default_factory=AllocationStrategy)
    traffic_allocation: float = 100.0
    scheduled_start: Optional[datetime] = None
    scheduled_end: Optional[datetime] = None

    class Config:
        json_schema_extra = {
            "example": {
                "name": "checkout_button_color",
                "variants": [
                    {"id": "control", "name": "Blue", "weight": 50, "is_control": True},
                    {"id": "green", "name": "Green", "weight": 50, "config": {"color": "#0a0"}}
                ],
                "metrics": ["conversion_rate", "average_order_value"],
                "sample_size": 1000,
                "allocation": {"type": "bandit", "algorithm": "thompson"}
            }
        }


class Experiment(BaseModel):
    """Experiment as stored."""

    id: str
    name: str
    type: ExperimentType
    status: ExperimentStatus
    variants: List[Variant]
    metrics: List[MetricName]
    confidence_level: float
    sample_size: int
    allocation: AllocationStrategy
    traffic_allocation: float = 100.0
    scheduled_start: Optional[datetime] = None
    scheduled_end: Optional[datetime] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    result: Optional[ExperimentResult] = None
    version: int = 1
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def control(self) -> Variant:
        """The control variant (first variant if none is flagged)."""
        for variant in self.variants:
            if variant.is_control:
                return variant
        return self.variants[0]

    @property
    def primary_metric(self) -> MetricName:
        """Metric optimized by bandit strategies."""
        return self.metrics[0]

    def get_variant(self, variant_id: str) -> Optional[Variant]:
        for variant in self.variants:
            if variant.id == variant_id:
                return variant
        return None


class VariantTracking(BaseModel):
    """Aggregated counters for one variant."""

    experiment_id: str
    variant_id: str
    impressions: int = 0
    clicks: int = 0
    conversions: int = 0
    revenue: float = 0.0


class Assignment(BaseModel):
    """Sticky user-to-variant assignment."""

    experiment_id: str
    user_id: str
    variant_id: str
    assigned_at: datetime


class AllocationEntry(BaseModel):
    variant_id: str
    variant_name: str
    weight: float


class AllocationSnapshot(BaseModel):
    """Immutable record of an allocation change."""

    id: int
    experiment_id: str
    strategy: str
    allocation: List[AllocationEntry]
    version: int
    created_at: datetime


class AllocationUpdate(BaseModel):
    """Outcome of a reallocation request."""

    updated: bool
    variants: List[Variant] = Field(default_factory=list)
