from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from liminalflow.service.validation import ValidationResult


class ErrorKind(str, Enum):
    """Failure categories reported by model providers."""

    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"
    AUTH = "auth"
    INVALID_REQUEST = "invalid_request"
    CANCELLED = "cancelled"

    @property
    def retryable(self) -> bool:
        return self in _RETRYABLE_KINDS


_RETRYABLE_KINDS = frozenset(
    {ErrorKind.TIMEOUT, ErrorKind.RATE_LIMITED, ErrorKind.TRANSIENT}
)


class FlowEngineError(Exception):
    """Base class for engine exceptions.

    Each class carries a stable ``error_code`` that ends up on NodeExecution
    and FlowExecution records, and a ``retryable`` flag consulted by the
    engine's retry loop.
    """

    error_code: str = "flow_error"
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class FlowValidationError(FlowEngineError):
    """The flow graph or document is structurally invalid."""

    error_code = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        result: Optional["ValidationResult"] = None,
        detail: Optional[dict] = None,
    ) -> None:
        super().__init__(message, detail=detail)
        self.result = result


class NotFoundError(FlowEngineError):
    """Requested flow or execution does not exist."""

    error_code = "not_found"


class MissingVariableError(FlowEngineError):
    """A strict template referenced variables that are not in scope."""

    error_code = "missing_variable"

    def __init__(self, missing: list[str], *, detail: Optional[dict] = None) -> None:
        super().__init__(
            f"missing variables: {', '.join(missing)}",
            detail={**(detail or {}), "missing_variables": list(missing)},
        )
        self.missing = list(missing)


class ExpressionError(FlowEngineError, ValueError):
    """An expression failed to parse or evaluate."""

    error_code = "expression_error"


class UnknownProviderError(FlowEngineError):
    """No provider is registered for the requested model."""

    error_code = "unknown_provider"


class UnsupportedTransformError(FlowEngineError):
    """A transform node named an operation that is not built in."""

    error_code = "unsupported_transform"


class TransformError(FlowEngineError):
    """A built-in transform could not process its input."""

    error_code = "transform_error"


class ThresholdExceededError(FlowEngineError):
    """Accumulated cost or tokens exceeded the configured ceiling."""

    error_code = "threshold_exceeded"


class ExecutionCancelledError(FlowEngineError):
    """The execution was cancelled before the node finished."""

    error_code = "cancelled"


class ProviderError(FlowEngineError):
    """Base class for provider call failures."""

    error_code = "provider_error"
    kind: ErrorKind = ErrorKind.TRANSIENT

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return self.kind.retryable


class ProviderTimeoutError(ProviderError):
    error_code = "provider_timeout"
    kind = ErrorKind.TIMEOUT


class ProviderRateLimitedError(ProviderError):
    error_code = "provider_rate_limited"
    kind = ErrorKind.RATE_LIMITED


class ProviderTransientError(ProviderError):
    error_code = "provider_transient"
    kind = ErrorKind.TRANSIENT


class ProviderAuthError(ProviderError):
    error_code = "provider_auth"
    kind = ErrorKind.AUTH


class ProviderInvalidRequestError(ProviderError):
    error_code = "provider_invalid_request"
    kind = ErrorKind.INVALID_REQUEST


_PROVIDER_ERRORS: dict[ErrorKind, type[FlowEngineError]] = {
    ErrorKind.TIMEOUT: ProviderTimeoutError,
    ErrorKind.RATE_LIMITED: ProviderRateLimitedError,
    ErrorKind.TRANSIENT: ProviderTransientError,
    ErrorKind.AUTH: ProviderAuthError,
    ErrorKind.INVALID_REQUEST: ProviderInvalidRequestError,
    ErrorKind.CANCELLED: ExecutionCancelledError,
}


def provider_error_for(
    kind: Optional[ErrorKind], message: str, *, detail: Optional[dict] = None
) -> FlowEngineError:
    """Build the exception matching a provider error kind."""
    error_cls = _PROVIDER_ERRORS.get(kind or ErrorKind.TRANSIENT, ProviderTransientError)
    return error_cls(message, detail=detail)


__all__ = [
    "ErrorKind",
    "FlowEngineError",
    "FlowValidationError",
    "NotFoundError",
    "MissingVariableError",
    "ExpressionError",
    "UnknownProviderError",
    "UnsupportedTransformError",
    "TransformError",
    "ThresholdExceededError",
    "ExecutionCancelledError",
    "ProviderError",
    "ProviderTimeoutError",
    "ProviderRateLimitedError",
    "ProviderTransientError",
    "ProviderAuthError",
    "ProviderInvalidRequestError",
    "provider_error_for",
]
