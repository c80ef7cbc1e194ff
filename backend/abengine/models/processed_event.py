"""Processed event model."""
from sqlalchemy import Column, String, DateTime, ForeignKey
from datetime import datetime

from abengine.database import Base


class ProcessedEventRecord(Base):
    """Idempotency key of an event that has already been counted."""

    __tablename__ = "processed_events"

    experiment_id = Column(String(64), ForeignKey("experiments.id", ondelete="CASCADE"), primary_key=True)
    event_id = Column(String(128), primary_key=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<ProcessedEvent {self.experiment_id}/{self.event_id}>"
