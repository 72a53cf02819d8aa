"""
Worker exception hierarchy.
"""


class WorkerError(Exception):
    """Base exception for the notification worker."""
    pass


class PermanentJobError(WorkerError):
    """The job can never succeed (bad payload, business rule violation)."""
    pass


class TransientJobError(WorkerError):
    """The job failed for a reason that may clear up on redelivery."""
    pass


class QueueConnectionError(WorkerError):
    """The queue backend could not be reached."""

    def __init__(self, message: str, queue: str = ""):
        self.queue = queue
        super().__init__(message)


class StartupError(WorkerError):
    """The worker could not be constructed; the process must exit non-zero."""
    pass
