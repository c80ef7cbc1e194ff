"""Allocation history model."""
from sqlalchemy import Column, String, Integer, DateTime, JSON, ForeignKey
from datetime import datetime

from abengine.database import Base


class AllocationHistoryRecord(Base):
    """Immutable snapshot of variant weights, appended on every weight change."""

    __tablename__ = "allocation_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    experiment_id = Column(String(64), ForeignKey("experiments.id", ondelete="CASCADE"), nullable=False, index=True)
    strategy = Column(String(50), nullable=False)  # initial, dynamic, thompson, ucb, epsilon_greedy, rollback
    allocation = Column(JSON, nullable=False)  # [{"variant_id": ..., "variant_name": ..., "weight": ...}]
    version = Column(Integer, nullable=False)  # experiment version the snapshot belongs to
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<AllocationHistory {self.id} {self.experiment_id} {self.strategy}>"
