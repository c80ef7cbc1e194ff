"""Error taxonomy for the experimentation engine."""


class ExperimentError(Exception):
    """Base class for all engine errors."""
    pass


class ValidationError(ExperimentError):
    """Experiment or variant configuration is invalid."""
    pass


class InvalidStateError(ExperimentError):
    """Lifecycle operation attempted from the wrong state."""
    pass


class ExperimentNotFoundError(ExperimentError):
    """Raised when an experiment id is unknown."""
    pass


class InsufficientDataError(ExperimentError):
    """Not enough tracked variants to analyze an experiment."""
    pass


class StatisticalError(ExperimentError):
    """Malformed metric input to a statistical test."""
    pass


class AllocationError(ExperimentError):
    """New variant weights could not be persisted; previous weights remain authoritative."""
    pass


class ConcurrencyError(ExperimentError):
    """A versioned write lost the race against a concurrent writer."""
    pass


class FlagNotFoundError(ExperimentError):
    """Raised when a feature flag id is unknown."""
    pass
