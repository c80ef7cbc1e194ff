"""Assignment and event request/response schemas."""
from pydantic import BaseModel, Field
from typing import Optional
import enum


class EventType(str, enum.Enum):
    """Tracked event kinds, one per tracking counter."""
    IMPRESSION = "impression"
    CLICK = "click"
    CONVERSION = "conversion"
    REVENUE = "revenue"


class AssignRequest(BaseModel):
    """Request a variant for a user."""

    user_id: str = Field(..., min_length=1, max_length=255)

    class Config:
        json_schema_extra = {"example": {"user_id": "user_123"}}


class AssignResponse(BaseModel):
    experiment_id: str
    user_id: str
    variant_id: str


class EventRequest(BaseModel):
    """Report an event for a user's assigned variant."""

    user_id: str = Field(..., min_length=1, max_length=255)
    event_id: str = Field(..., min_length=1, max_length=128, description="Client idempotency key")
    metric: EventType
    value: Optional[float] = Field(None, description="Amount for revenue events")
    count: int = Field(1, ge=1, description="Batched event count")

    class Config:
        json_schema_extra = {
            "example": {
                "user_id": "user_123",
                "event_id": "order-88213",
                "metric": "revenue",
                "value": 42.5
            }
        }


class EventResponse(BaseModel):
    status: str = Field(default="recorded")
    recorded: bool = True
