"""Gateway error taxonomy.

Every failure that crosses a service boundary is one of the classes below.
The :class:`ErrorCategory` tag is what callers branch on: the rate limiter
retries ``RATE_LIMIT`` and ``TRANSIENT`` internally, the API layer maps the
category to an HTTP status, and the job orchestrator decides retryability
from it.
"""

from __future__ import annotations

from enum import Enum


class ErrorCategory(str, Enum):
    """Failure classes shared by every gateway component."""

    CONFIGURATION = "configuration"
    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    RATE_LIMIT = "rate_limit"
    ACCESS = "access"
    TRANSIENT = "transient"
    DATA_FORMAT = "data_format"
    UNKNOWN = "unknown"


class GatewayError(Exception):
    """Base class for all gateway failures."""

    category: ErrorCategory = ErrorCategory.UNKNOWN
    retryable: bool = False

    def __init__(self, message: str, *, code: str | None = None):
        super().__init__(message)
        self.message = message
        # Remote error code (e.g. Slack's ``not_in_channel``) when known.
        self.code = code


class ConfigurationError(GatewayError):
    """Missing or invalid credentials / settings – needs user action."""

    category = ErrorCategory.CONFIGURATION


class PreconditionError(ConfigurationError):
    """Operation called in a connection state that does not allow it."""


class AuthenticationError(GatewayError):
    """Expired, revoked or invalid token – user must re-authenticate."""

    category = ErrorCategory.AUTHENTICATION


class ScopeError(GatewayError):
    """Token lacks a required scope – user must re-consent."""

    category = ErrorCategory.AUTHORIZATION


class RateLimitError(GatewayError):
    """Remote service answered 429 / ``ratelimited``."""

    category = ErrorCategory.RATE_LIMIT
    retryable = True

    def __init__(self, message: str, *, retry_after: float | None = None, code: str | None = None):
        super().__init__(message, code=code)
        self.retry_after = retry_after


class RateLimitExhaustedError(RateLimitError):
    """Rate-limit retries were exhausted for an endpoint."""

    def __init__(self, endpoint: str, attempts: int):
        super().__init__(f"Max retries ({attempts}) exceeded for {endpoint}", code="ratelimited")
        self.endpoint = endpoint
        self.attempts = attempts


class AccessError(GatewayError):
    """Integration lacks access to one resource (e.g. not a channel member)."""

    category = ErrorCategory.ACCESS

    def __init__(self, message: str, *, resource: str | None = None, code: str | None = None):
        super().__init__(message, code=code)
        self.resource = resource


class TransientError(GatewayError):
    """Network failure, timeout or remote 5xx."""

    category = ErrorCategory.TRANSIENT
    retryable = True


class DataFormatError(GatewayError):
    """Malformed response from the remote API or the analysis layer."""

    category = ErrorCategory.DATA_FORMAT


def categorize_exception(exc: BaseException) -> ErrorCategory:
    """Return the taxonomy category of *exc* (``UNKNOWN`` for foreign errors)."""

    if isinstance(exc, GatewayError):
        return exc.category
    return ErrorCategory.UNKNOWN


def truncate(text: str, limit: int = 200) -> str:
    """Shorten *text* for logs and user messages."""

    if len(text) <= limit:
        return text
    return f"{text[:limit]}..."


__all__ = [
    "AccessError",
    "AuthenticationError",
    "ConfigurationError",
    "DataFormatError",
    "ErrorCategory",
    "GatewayError",
    "PreconditionError",
    "RateLimitError",
    "RateLimitExhaustedError",
    "ScopeError",
    "TransientError",
    "categorize_exception",
    "truncate",
]
