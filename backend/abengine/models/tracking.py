"""Variant tracking model."""
from sqlalchemy import Column, String, Integer, Float, DateTime, ForeignKey
from datetime import datetime

from abengine.database import Base


class VariantTrackingRecord(Base):
    """Aggregated counters for one variant of one experiment.

    Rows are only ever changed with single-statement increments
    (``SET conversions = conversions + :delta``).
    """

    __tablename__ = "variant_tracking"

    experiment_id = Column(String(64), ForeignKey("experiments.id", ondelete="CASCADE"), primary_key=True)
    variant_id = Column(String(64), primary_key=True)

    impressions = Column(Integer, nullable=False, default=0)
    clicks = Column(Integer, nullable=False, default=0)
    conversions = Column(Integer, nullable=False, default=0)
    revenue = Column(Float, nullable=False, default=0.0)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<VariantTracking {self.experiment_id}/{self.variant_id} impressions={self.impressions}>"
