# src/core/errors.py — v2
"""Error taxonomy shared by the pipeline, the recovery queue and the cache.

Every failure crossing a stage boundary is normalized into ErrorDetails:
a stable code, a closed ErrorCategory, a severity, a retryable flag and
an optional retry_after_ms that overrides computed backoff. Retryable
errors without an explicit value take their category default.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel

ErrorSeverity = Literal["low", "medium", "high", "critical"]


class ErrorCategory(str, Enum):
    """Closed set of failure categories."""

    VALIDATION = "validation"
    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    RATE_LIMIT = "rate_limit"
    DATABASE = "database"
    EXTERNAL_API = "external_api"
    NETWORK = "network"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class CategoryPolicy:
    """Default retry behaviour for one error category."""

    retryable: bool
    retry_after_ms: int | None
    severity: ErrorSeverity
    code: str


_CATEGORY_POLICIES: dict[ErrorCategory, CategoryPolicy] = {
    ErrorCategory.VALIDATION: CategoryPolicy(False, None, "low", "VALIDATION_ERROR"),
    ErrorCategory.AUTHENTICATION: CategoryPolicy(False, None, "medium", "UNAUTHORIZED"),
    ErrorCategory.AUTHORIZATION: CategoryPolicy(False, None, "medium", "FORBIDDEN"),
    ErrorCategory.RATE_LIMIT: CategoryPolicy(True, None, "medium", "RATE_LIMITED"),
    ErrorCategory.DATABASE: CategoryPolicy(True, 1000, "high", "DATABASE_ERROR"),
    ErrorCategory.EXTERNAL_API: CategoryPolicy(True, 2000, "high", "EXTERNAL_API_ERROR"),
    ErrorCategory.NETWORK: CategoryPolicy(True, 1000, "high", "NETWORK_ERROR"),
    ErrorCategory.UNKNOWN: CategoryPolicy(False, None, "critical", "INTERNAL_ERROR"),
}

_missing = set(ErrorCategory) - set(_CATEGORY_POLICIES)
if _missing:
    raise RuntimeError(f"No retry policy for error categories: {sorted(_missing)}")


def category_policy(category: ErrorCategory) -> CategoryPolicy:
    """Return the default policy for a category."""
    return _CATEGORY_POLICIES[ErrorCategory(category)]


def default_retryable(category: ErrorCategory) -> bool:
    """Whether failures of this category are retried by default."""
    return category_policy(category).retryable


class ErrorDetails(BaseModel):
    """Serializable description of a classified failure."""

    code: str
    message: str
    category: ErrorCategory
    severity: ErrorSeverity
    retryable: bool
    retry_after_ms: int | None = None
    context: dict[str, Any] | None = None


class PipelineError(Exception):
    """Typed error raised by stage workers, the pipeline and request validation."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory,
        *,
        code: str | None = None,
        severity: ErrorSeverity | None = None,
        retryable: bool | None = None,
        retry_after_ms: int | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        policy = category_policy(category)
        self.category = ErrorCategory(category)
        self.code = code or policy.code
        self.severity: ErrorSeverity = severity or policy.severity
        self.retryable = policy.retryable if retryable is None else retryable
        if retry_after_ms is None and self.retryable:
            retry_after_ms = policy.retry_after_ms
        self.retry_after_ms = retry_after_ms
        self.context = context
        super().__init__(message)

    @property
    def message(self) -> str:
        return str(self)

    def to_details(self) -> ErrorDetails:
        return ErrorDetails(
            code=self.code,
            message=self.message,
            category=self.category,
            severity=self.severity,
            retryable=self.retryable,
            retry_after_ms=self.retry_after_ms,
            context=self.context,
        )


class Errors:
    """Factories for the common error shapes."""

    @staticmethod
    def validation(message: str, context: dict[str, Any] | None = None) -> PipelineError:
        return PipelineError(message, ErrorCategory.VALIDATION, context=context)

    @staticmethod
    def unauthorized(message: str = "Authentication required") -> PipelineError:
        return PipelineError(message, ErrorCategory.AUTHENTICATION)

    @staticmethod
    def forbidden(message: str = "Access denied") -> PipelineError:
        return PipelineError(message, ErrorCategory.AUTHORIZATION)

    @staticmethod
    def not_found(resource: str) -> PipelineError:
        return PipelineError(
            f"{resource} not found", ErrorCategory.VALIDATION, code="NOT_FOUND"
        )

    @staticmethod
    def rate_limit(retry_after_ms: int) -> PipelineError:
        return PipelineError(
            "Too many requests",
            ErrorCategory.RATE_LIMIT,
            retry_after_ms=retry_after_ms,
        )

    @staticmethod
    def database(message: str, context: dict[str, Any] | None = None) -> PipelineError:
        return PipelineError(message, ErrorCategory.DATABASE, context=context)

    @staticmethod
    def external_api(
        service: str, message: str, retryable: bool = True
    ) -> PipelineError:
        return PipelineError(
            f"{service}: {message}",
            ErrorCategory.EXTERNAL_API,
            retryable=retryable,
            context={"service": service},
        )

    @staticmethod
    def network(message: str) -> PipelineError:
        return PipelineError(message, ErrorCategory.NETWORK)

    @staticmethod
    def internal(message: str = "An unexpected error occurred") -> PipelineError:
        return PipelineError(message, ErrorCategory.UNKNOWN)


def classify_error(error: BaseException) -> ErrorDetails:
    """Map any exception onto the closed category set.

    PipelineError keeps its own classification. Timeouts and connection
    failures are network errors; everything else is unknown and fatal.
    Unclassified exceptions carry no retry_after_ms, so exponential backoff
    applies to them.
    """
    if isinstance(error, PipelineError):
        return error.to_details()

    if isinstance(error, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        category = ErrorCategory.NETWORK
    elif isinstance(error, OSError):
        category = ErrorCategory.NETWORK
    else:
        category = ErrorCategory.UNKNOWN

    policy = category_policy(category)
    return ErrorDetails(
        code=policy.code,
        message=str(error) or type(error).__name__,
        category=category,
        severity=policy.severity,
        retryable=policy.retryable,
    )


def is_retryable_error(error: BaseException) -> bool:
    """Shortcut for classify_error(error).retryable."""
    return classify_error(error).retryable
