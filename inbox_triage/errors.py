"""
Exception hierarchy for the triage service.

Every error carries a ``recoverable`` flag; the worker pool uses it to decide
between retry-with-backoff and a terminal failure.
"""


class TriageError(Exception):
    """Base exception for triage service errors."""

    def __init__(self, message: str, recoverable: bool = True):
        super().__init__(message)
        self.recoverable = recoverable


class JobValidationError(TriageError):
    """Raised when a job type or payload is invalid. Never retried."""

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message, recoverable=False)
        self.field = field


class OwnershipError(JobValidationError):
    """Raised when a subject submits work for a resource it does not own."""

    def __init__(self, message: str, subject_id: str | None = None, resource_id: str | None = None):
        super().__init__(message)
        self.subject_id = subject_id
        self.resource_id = resource_id


class ConfigurationError(TriageError):
    """Raised when no processor is registered for a job type. Never retried."""

    def __init__(self, message: str):
        super().__init__(message, recoverable=False)


class TransientProviderError(TriageError):
    """An AI or persistence call failed; retried with backoff."""

    def __init__(self, message: str, provider: str | None = None):
        super().__init__(message, recoverable=True)
        self.provider = provider


class JobTimeoutError(TransientProviderError):
    """A job exceeded its processing timeout. Treated like a provider failure."""

    def __init__(self, message: str, timeout_ms: int):
        super().__init__(message, provider="scheduler")
        self.timeout_ms = timeout_ms


class AIServiceError(TransientProviderError):
    """The AI collaborator failed after its own API-level retries."""

    def __init__(self, message: str, api_error: str | None = None, recoverable: bool = True):
        super().__init__(message, provider="openai")
        self.api_error = api_error
        self.recoverable = recoverable


class QueueNotInitializedError(TriageError):
    """Raised when work is submitted before the worker pool is running."""

    def __init__(self, message: str = "Job queue is not initialized"):
        super().__init__(message, recoverable=False)


class RuleValidationError(TriageError):
    """Raised when an automation rule definition is invalid."""

    def __init__(self, message: str, rule_id: str | None = None):
        super().__init__(message, recoverable=False)
        self.rule_id = rule_id
