"""Sticky assignment model."""
from sqlalchemy import Column, String, DateTime, ForeignKey
from datetime import datetime

from abengine.database import Base


class AssignmentRecord(Base):
    """A user's variant for an experiment. Written once, never updated."""

    __tablename__ = "experiment_assignments"

    # Composite primary key enforces one assignment per (experiment, user)
    experiment_id = Column(String(64), ForeignKey("experiments.id", ondelete="CASCADE"), primary_key=True)
    user_id = Column(String(255), primary_key=True)
    variant_id = Column(String(64), nullable=False)
    assigned_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<Assignment {self.experiment_id}/{self.user_id} -> {self.variant_id}>"
