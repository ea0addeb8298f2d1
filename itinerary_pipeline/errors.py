"""Error taxonomy for the itinerary generation pipeline.

Every failure that leaves the pipeline is a ``PipelineError`` carrying an
``ErrorKind`` so callers (the API layer, the CLI) can tell an exhausted
provider apart from a malformed model answer or a caller-side cancellation.
"""
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    PROVIDER_TIMEOUT = "PROVIDER_TIMEOUT"
    PROVIDER_RATE_LIMIT = "PROVIDER_RATE_LIMIT"
    PROVIDER_UNAVAILABLE = "PROVIDER_UNAVAILABLE"
    PROVIDER_AUTH = "PROVIDER_AUTH"
    PROVIDER_QUOTA_EXCEEDED = "PROVIDER_QUOTA_EXCEEDED"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    CANCELLATION = "CANCELLATION"
    CIRCUIT_OPEN = "CIRCUIT_OPEN"


class ProviderErrorCode(str, Enum):
    TIMEOUT = "TIMEOUT"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    RATE_LIMIT = "RATE_LIMIT"
    AUTHENTICATION = "AUTHENTICATION"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    UNKNOWN = "UNKNOWN"


_CODE_TO_KIND = {
    ProviderErrorCode.TIMEOUT: ErrorKind.PROVIDER_TIMEOUT,
    ProviderErrorCode.QUOTA_EXCEEDED: ErrorKind.PROVIDER_QUOTA_EXCEEDED,
    ProviderErrorCode.RATE_LIMIT: ErrorKind.PROVIDER_RATE_LIMIT,
    ProviderErrorCode.AUTHENTICATION: ErrorKind.PROVIDER_AUTH,
    ProviderErrorCode.SERVICE_UNAVAILABLE: ErrorKind.PROVIDER_UNAVAILABLE,
    ProviderErrorCode.UNKNOWN: ErrorKind.PROVIDER_ERROR,
}

_RETRYABLE_CODES = {
    ProviderErrorCode.TIMEOUT,
    ProviderErrorCode.RATE_LIMIT,
    ProviderErrorCode.SERVICE_UNAVAILABLE,
}


class PipelineError(Exception):
    kind: ErrorKind = ErrorKind.PROVIDER_ERROR
    retryable: bool = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "message": self.message}


class ProviderError(PipelineError):
    def __init__(
        self,
        code: ProviderErrorCode,
        message: str,
        provider: Optional[str] = None,
        status_code: Optional[int] = None,
    ) -> None:
        label = f"[{provider}] " if provider else ""
        super().__init__(f"{label}{code.value}: {message}")
        self.code = code
        self.provider = provider
        self.status_code = status_code

    @property
    def kind(self) -> ErrorKind:  # type: ignore[override]
        return _CODE_TO_KIND[self.code]

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return self.code in _RETRYABLE_CODES


class GenerationTimeoutError(ProviderError):
    """The end-to-end generation budget elapsed before the provider answered."""

    def __init__(self, timeout_s: float) -> None:
        super().__init__(
            ProviderErrorCode.TIMEOUT,
            f"itinerary generation exceeded {timeout_s:.1f}s",
        )
        self.timeout_s = timeout_s


class ItineraryValidationError(PipelineError):
    kind = ErrorKind.VALIDATION_ERROR

    def __init__(self, message: str, errors: Optional[list[str]] = None, raw_text: str = "") -> None:
        super().__init__(message)
        self.errors = list(errors or [])
        self.raw_excerpt = (raw_text or "")[:500]

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["errors"] = self.errors
        data["raw_excerpt"] = self.raw_excerpt
        return data


class CancellationError(PipelineError):
    kind = ErrorKind.CANCELLATION


class CircuitOpenError(PipelineError):
    kind = ErrorKind.CIRCUIT_OPEN

    def __init__(self, message: str, retry_at: Optional[float] = None) -> None:
        super().__init__(message)
        self.retry_at = retry_at


class RetryExhaustedError(PipelineError):
    def __init__(self, message: str, last_error: BaseException, attempts: int) -> None:
        super().__init__(f"{message}: {last_error}")
        self.last_error = last_error
        self.attempts = attempts

    @property
    def kind(self) -> ErrorKind:  # type: ignore[override]
        if isinstance(self.last_error, PipelineError):
            return self.last_error.kind
        return ErrorKind.PROVIDER_UNAVAILABLE
