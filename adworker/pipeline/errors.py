"""
Typed errors for the ad generation pipeline.

Adapters raise these; orchestrators catch only where a step degrades
gracefully; everything else reaches the queue, which reads `retryable`
to decide between a scheduled retry and the dead-letter list.
"""


class PipelineError(Exception):
    retryable = True

    def __init__(self, message: str, provider: str = ""):
        super().__init__(message)
        self.message = message
        self.provider = provider

    def __str__(self) -> str:
        return self.message


class ValidationError(PipelineError):
    """Malformed adapter input or a missing precondition such as no source image."""
    retryable = False


class PreconditionError(PipelineError):
    """A stage was invoked while the project sits in the wrong state."""
    retryable = False


class NotFoundError(PipelineError):
    retryable = False


class StateConflictError(PipelineError):
    """The project was not in the expected state when a transition was attempted."""
    retryable = False


class ProviderError(PipelineError):
    """Upstream AI or storage service failure."""
    retryable = True


class TaskFailedError(ProviderError):
    """An asynchronous provider task reported a terminal failure."""


class PollTimeoutError(ProviderError, TimeoutError):
    """Polling exhausted its attempt budget while the task was still pending."""
