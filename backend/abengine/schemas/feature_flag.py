"""Feature flag schemas."""
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Literal, Optional


class FlagCondition(BaseModel):
    """Targeting rule evaluated against a dotted path of the user context."""

    field: str
    operator: Literal["equals", "not_equals", "contains", "gt", "lt", "gte", "lte", "in", "not_in"]
    value: Any = None


class FeatureFlag(BaseModel):
    id: str
    name: str
    enabled: bool = True
    rollout_percentage: Optional[float] = Field(None, description="0-100, None means everyone")
    conditions: List[FlagCondition] = Field(default_factory=list)
    variations: Dict[str, Any] = Field(default_factory=dict)
    experiments: List[str] = Field(default_factory=list)


class UserContext(BaseModel):
    """Identity and attributes used for bucketing and targeting."""

    session_id: str
    user_id: Optional[str] = None
    attributes: Dict[str, Any] = Field(default_factory=dict)
    geo: Dict[str, Any] = Field(default_factory=dict)
    device: Dict[str, Any] = Field(default_factory=dict)

    @property
    def unit_id(self) -> str:
        """Bucketing unit: the user when known, otherwise the session."""
        return self.user_id or self.session_id


class ExperimentFlags(BaseModel):
    """Flags linked to an experiment, resolved for one user's variant."""

    experiment_id: str
    variant_id: str
    flags: Dict[str, Any] = Field(default_factory=dict)
