"""
Error taxonomy for the online recommendation service.

Initialization errors are fatal to the call and surfaced. Operational
errors (cache, batch failure, overflow) are absorbed where they happen and
only show up in logs and metrics.
"""


class RecommenderError(Exception):
    """Base class for all service errors."""


class NotInitializable(RecommenderError):
    """Model cannot be allocated with the requested capacities."""


class NotInitialized(RecommenderError):
    """Model operation attempted before initialize()."""


class AlreadyTraining(RecommenderError):
    """A training run (full or incremental) is already mutating the model."""


class InvalidFeedbackValue(RecommenderError, ValueError):
    """Feedback value outside the declared rating range."""

    def __init__(self, value, min_rating: float, max_rating: float):
        self.value = value
        self.min_rating = min_rating
        self.max_rating = max_rating
        super().__init__(
            f"Feedback value {value!r} outside rating range [{min_rating}, {max_rating}]"
        )


class QueueOverflow(RecommenderError):
    """Update queue exceeded capacity; oldest low-priority jobs were evicted."""

    def __init__(self, evicted_count: int, capacity: int):
        self.evicted_count = evicted_count
        self.capacity = capacity
        super().__init__(f"Evicted {evicted_count} job(s) to respect capacity {capacity}")


class CacheUnavailable(RecommenderError):
    """Cache store could not be reached or returned an error."""


class BatchProcessingFailure(RecommenderError):
    """A drain cycle failed; the batch was dropped or parked for replay."""

    def __init__(self, batch_size: int, cause: Exception):
        self.batch_size = batch_size
        self.cause = cause
        super().__init__(f"Batch of {batch_size} job(s) failed: {cause}")
