from __future__ import annotations

from enum import Enum

RETRYABLE_MARKERS: tuple[str, ...] = (
    "rate limit",
    "timeout",
    "timed out",
    "network",
    "temporary",
    "service unavailable",
    "502",
    "503",
    "504",
)


class ErrorCode(str, Enum):
    RATE_LIMITED = "rate_limited"
    QUEUE_FULL = "queue_full"
    REQUEST_TIMEOUT = "request_timeout"
    QUEUE_TIMEOUT = "queue_timeout"
    CANCELLED = "cancelled"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    PROVIDER_MISCONFIGURED = "provider_misconfigured"
    WORKFLOW_ERROR = "workflow_error"
    WORKFLOW_TIMEOUT = "workflow_timeout"
    TRANSPORT_ERROR = "transport_error"
    PROVIDER_ERROR = "provider_error"
    CONTENT_BLOCKED = "content_blocked"
    DUPLICATE_TASK = "duplicate_task"

    @classmethod
    def from_error_type(cls, error_type: str) -> "ErrorCode | None":
        try:
            return cls(error_type)
        except ValueError:
            return None


class GenerationError(Exception):
    """Base class for every failure a caller of the scheduler can observe."""

    code: ErrorCode = ErrorCode.PROVIDER_ERROR
    retryable: bool = False

    def __init__(self, message: str, *, backend: str | None = None, status: int | None = None):
        super().__init__(message)
        self.message = message
        self.backend = backend
        self.status = status

    @property
    def error_class(self) -> str:
        return self.code.value

    def with_backend(self, backend: str) -> "GenerationError":
        if self.backend is None:
            self.backend = backend
        return self

    def __str__(self) -> str:
        return self.message


class RateLimitedError(GenerationError):
    code = ErrorCode.RATE_LIMITED

    def __init__(self, message: str, *, limit: int, window_s: float, retry_after: float | None = None):
        super().__init__(message)
        self.limit = limit
        self.window_s = window_s
        self.retry_after = retry_after


class QueueFullError(GenerationError):
    code = ErrorCode.QUEUE_FULL


class DuplicateTaskError(GenerationError, ValueError):
    code = ErrorCode.DUPLICATE_TASK


class RequestTimeoutError(GenerationError):
    code = ErrorCode.REQUEST_TIMEOUT


class QueueTimeoutError(GenerationError):
    code = ErrorCode.QUEUE_TIMEOUT


class TaskCancelledError(GenerationError):
    code = ErrorCode.CANCELLED


class ProviderUnavailableError(GenerationError):
    code = ErrorCode.PROVIDER_UNAVAILABLE


class ProviderMisconfiguredError(GenerationError):
    code = ErrorCode.PROVIDER_MISCONFIGURED


class TransportError(GenerationError):
    code = ErrorCode.TRANSPORT_ERROR
    retryable = True


class ProviderError(GenerationError):
    """A backend answered but refused or failed the request."""

    code = ErrorCode.PROVIDER_ERROR

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        status: int | None = None,
        category: str | None = None,
        retryable: bool | None = None,
        provider_code: str | None = None,
    ):
        super().__init__(message, backend=backend, status=status)
        self.category = category
        self.provider_code = provider_code
        if retryable is None:
            retryable = status is not None and (status == 429 or status >= 500)
        self.retryable = retryable


class ContentBlockedError(ProviderError):
    code = ErrorCode.CONTENT_BLOCKED

    def __init__(self, message: str, *, backend: str | None = None, status: int | None = None):
        super().__init__(message, backend=backend, status=status, category="content_blocked", retryable=False)


class WorkflowError(GenerationError):
    code = ErrorCode.WORKFLOW_ERROR

    def __init__(self, message: str, *, backend: str | None = None, run_id: str | None = None):
        super().__init__(message, backend=backend)
        self.run_id = run_id


class WorkflowTimeoutError(WorkflowError):
    code = ErrorCode.WORKFLOW_TIMEOUT
    retryable = True


_TERMINAL_ERRORS: tuple[type[GenerationError], ...] = (
    RateLimitedError,
    QueueFullError,
    DuplicateTaskError,
    RequestTimeoutError,
    QueueTimeoutError,
    TaskCancelledError,
    ProviderUnavailableError,
    ProviderMisconfiguredError,
    ContentBlockedError,
)


def should_retry(exc: BaseException) -> bool:
    """Retry when the error says so, or when its message looks transient."""
    if isinstance(exc, GenerationError):
        if exc.retryable:
            return True
        if isinstance(exc, _TERMINAL_ERRORS):
            return False
    message = str(exc).lower()
    if not message:
        return False
    return any(marker in message for marker in RETRYABLE_MARKERS)


__all__ = [
    "ErrorCode",
    "GenerationError",
    "RateLimitedError",
    "QueueFullError",
    "DuplicateTaskError",
    "RequestTimeoutError",
    "QueueTimeoutError",
    "TaskCancelledError",
    "ProviderUnavailableError",
    "ProviderMisconfiguredError",
    "TransportError",
    "ProviderError",
    "ContentBlockedError",
    "WorkflowError",
    "WorkflowTimeoutError",
    "should_retry",
]
