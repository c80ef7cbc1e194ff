"""Analysis result schemas."""
from pydantic import BaseModel, Field
from typing import Dict, Optional
from datetime import datetime


class SignificanceResult(BaseModel):
    """Outcome of one hypothesis test.

    ``confidence`` is the engine's linear approximation used for decisions;
    ``p_value`` is the exact tail probability of the same statistic.
    """

    significant: bool = False
    confidence: float = 0.0
    statistic: Optional[float] = None
    p_value: Optional[float] = None


class MetricOutcome(BaseModel):
    """Treatment-vs-control comparison for one metric."""

    value: float
    control_value: float
    lift: float = Field(..., description="Percentage lift over control")
    confidence: float
    significant: bool
    p_value: Optional[float] = None
    lift_lower: Optional[float] = Field(None, description="Lower bound of the lift interval, percent")
    lift_upper: Optional[float] = Field(None, description="Upper bound of the lift interval, percent")
    power: Optional[float] = Field(None, description="Power to detect the observed difference")
    probability_better: Optional[float] = Field(
        None,
        description="Posterior probability that the variant beats the control (binary metrics)"
    )
    expected_loss: Optional[float] = Field(
        None,
        description="Expected rate lost by shipping the variant if the control is better (binary metrics)"
    )


class ExperimentResult(BaseModel):
    """Analysis of an experiment."""

    experiment_id: str
    control_variant_id: str
    variants: Dict[str, Dict[str, MetricOutcome]] = Field(
        default_factory=dict,
        description="Non-control variant id -> metric name -> outcome"
    )
    winner: Optional[str] = None
    recommendation: str = ""
    total_impressions: int = 0
    required_sample_size: Optional[int] = Field(
        None,
        description="Exposures per variant needed to detect the minimum detectable effect on the primary metric"
    )
    analyzed_at: datetime

    class Config:
        json_schema_extra = {
            "example": {
                "experiment_id": "exp_3f2a",
                "control_variant_id": "control",
                "variants": {
                    "green": {
                        "conversion_rate": {
                            "value": 0.15,
                            "control_value": 0.10,
                            "lift": 50.0,
                            "confidence": 0.95,
                            "significant": True,
                            "p_value": 0.0016,
                            "lift_lower": 14.4,
                            "lift_upper": 85.6,
                            "power": 0.92,
                            "probability_better": 0.9996,
                            "expected_loss": 0.00001
                        }
                    }
                },
                "winner": "green",
                "recommendation": "Variant green is the winner with significant improvements in: conversion_rate (+50.0%)",
                "total_impressions": 2000,
                "required_sample_size": 14752,
                "analyzed_at": "2024-01-15T12:00:00"
            }
        }
