"""Error taxonomy shared by the store, the queue and the worker."""


class TaskflowError(Exception):
    """Base class for all errors raised by taskflow."""


class NotFound(TaskflowError):
    """The referenced task does not exist."""

    def __init__(self, message: str = "Task not found"):
        super().__init__(message)


class InvalidArgument(TaskflowError):
    """The request is malformed (empty batch, unknown action, ...)."""


class ValidationError(InvalidArgument):
    """Required task fields are missing or empty."""


class QueueUnavailable(TaskflowError):
    """The job queue transport cannot be reached."""


class JobHandlerFailure(TaskflowError):
    """A handler failed in a way worth retrying; the queue applies backoff."""


class JobPermanentFailure(TaskflowError):
    """A job can never succeed (unknown type, malformed payload); do not retry."""
