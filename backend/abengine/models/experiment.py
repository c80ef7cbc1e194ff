"""Experiment model."""
from sqlalchemy import Column, String, Integer, Float, DateTime, JSON
from datetime import datetime

from abengine.database import Base


class ExperimentRecord(Base):
    """Experiment configuration, lifecycle state and final result."""

    __tablename__ = "experiments"

    id = Column(String(64), primary_key=True)
    name = Column(String(200), nullable=False)
    type = Column(String(20), nullable=False, default="single_factor")
    status = Column(String(20), nullable=False, default="planning", index=True)

    # [{"id": "control", "name": "Control", "weight": 50.0, "is_control": true, "config": {}}, ...]
    variants = Column(JSON, nullable=False)
    metrics = Column(JSON, nullable=False)  # ["conversion_rate", "average_order_value"]
    allocation = Column(JSON, nullable=False)  # {"type": "bandit", "algorithm": "thompson", ...}

    confidence_level = Column(Float, nullable=False, default=0.95)
    sample_size = Column(Integer, nullable=False)
    traffic_allocation = Column(Float, nullable=False, default=100.0)

    scheduled_start = Column(DateTime)
    scheduled_end = Column(DateTime)
    started_at = Column(DateTime)
    ended_at = Column(DateTime)

    result = Column(JSON)

    # Optimistic concurrency token, bumped on every write
    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<ExperimentRecord {self.id} status={self.status} v{self.version}>"
