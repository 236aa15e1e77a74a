from __future__ import annotations

from enum import Enum


class FailureKind(str, Enum):
    RATE_LIMIT = "rate_limit"
    SERVER_ERROR = "server_error"
    NETWORK_ERROR = "network_error"
    EMPTY_RESPONSE = "empty_response"
    AUTH_ERROR = "auth_error"
    QUOTA_EXCEEDED = "quota_exceeded"
    BAD_REQUEST = "bad_request"

    @property
    def retryable(self) -> bool:
        return self in _RETRYABLE


_RETRYABLE = frozenset(
    {FailureKind.RATE_LIMIT, FailureKind.SERVER_ERROR, FailureKind.NETWORK_ERROR, FailureKind.EMPTY_RESPONSE}
)


class AssistantError(Exception):
    """Base error for the assistant service."""


class ConfigurationError(AssistantError):
    """Service is not configured (missing credentials, bad settings)."""


class InvalidRequestError(AssistantError):
    pass


class CompletionError(AssistantError):
    """One failed attempt against the upstream gateway for one model."""

    kind: FailureKind = FailureKind.SERVER_ERROR

    def __init__(self, message: str, *, status_code: int | None = None, model: str | None = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.model = model

    @property
    def retryable(self) -> bool:
        return self.kind.retryable


class RateLimitError(CompletionError):
    kind = FailureKind.RATE_LIMIT

    def __init__(
        self,
        message: str = "Rate limited",
        *,
        status_code: int | None = 429,
        model: str | None = None,
        retry_after_seconds: int | None = None,
    ):
        super().__init__(message, status_code=status_code, model=model)
        self.retry_after_seconds = retry_after_seconds


class UpstreamServerError(CompletionError):
    kind = FailureKind.SERVER_ERROR


class NetworkError(CompletionError):
    """Transport failure or per-attempt timeout."""

    kind = FailureKind.NETWORK_ERROR


class EmptyResponseError(CompletionError):
    kind = FailureKind.EMPTY_RESPONSE


class AuthenticationError(CompletionError):
    kind = FailureKind.AUTH_ERROR


class QuotaExceededError(CompletionError):
    kind = FailureKind.QUOTA_EXCEEDED


class BadRequestError(CompletionError):
    kind = FailureKind.BAD_REQUEST


_ERROR_BY_KIND: dict[FailureKind, type[CompletionError]] = {
    FailureKind.RATE_LIMIT: RateLimitError,
    FailureKind.SERVER_ERROR: UpstreamServerError,
    FailureKind.NETWORK_ERROR: NetworkError,
    FailureKind.EMPTY_RESPONSE: EmptyResponseError,
    FailureKind.AUTH_ERROR: AuthenticationError,
    FailureKind.QUOTA_EXCEEDED: QuotaExceededError,
    FailureKind.BAD_REQUEST: BadRequestError,
}


def error_for_kind(
    kind: FailureKind, message: str, *, status_code: int | None = None, model: str | None = None
) -> CompletionError:
    return _ERROR_BY_KIND[kind](message, status_code=status_code, model=model)


class CompletionFailedError(AssistantError):
    """Terminal failure of a whole orchestrated request."""

    def __init__(self, message: str, *, last_error: CompletionError | None = None, attempt_count: int = 0):
        super().__init__(message)
        self.last_error = last_error
        self.attempt_count = attempt_count


class NoModelsAvailableError(CompletionFailedError):
    """Every configured model is currently blocked by the quota guard."""


class ModelsExhaustedError(CompletionFailedError):
    """Every candidate was attempted and failed."""


class RequestTimeoutError(CompletionFailedError):
    """Request-level deadline exceeded."""
