"""Database models."""
from abengine.models.experiment import ExperimentRecord
from abengine.models.tracking import VariantTrackingRecord
from abengine.models.assignment import AssignmentRecord
from abengine.models.allocation_history import AllocationHistoryRecord
from abengine.models.processed_event import ProcessedEventRecord

__all__ = [
    "ExperimentRecord",
    "VariantTrackingRecord",
    "AssignmentRecord",
    "AllocationHistoryRecord",
    "ProcessedEventRecord",
]
