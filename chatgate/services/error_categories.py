"""Map scan failures to user-facing, actionable messages.

The mapping is a fixed, ordered list of :class:`ErrorRule` predicates.  Each
rule matches on structured facts first (taxonomy category, Slack error code,
exception type).  Keyword matching only applies to foreign exceptions and
plain strings that carry no structure.  :func:`categorize_error` is pure and
never raises.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from dataclasses import field
from enum import Enum
from typing import FrozenSet
from typing import Tuple
from typing import Union

import httpx

from chatgate.errors import ErrorCategory
from chatgate.errors import GatewayError


class ScanErrorKind(str, Enum):
    ACCESS = "access"
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    AUTHENTICATION = "authentication"
    SCOPE = "scope"
    NETWORK = "network"
    DATA_FORMAT = "data_format"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class CategorizedError:
    kind: ScanErrorKind
    message: str
    retryable: bool


@dataclass(frozen=True)
class ErrorRule:
    kind: ScanErrorKind
    message: str
    retryable: bool = False
    categories: FrozenSet[ErrorCategory] = frozenset()
    codes: FrozenSet[str] = frozenset()
    exception_types: Tuple[type, ...] = ()
    # Only consulted for errors without structure (foreign exceptions, strings).
    keywords: Tuple[str, ...] = field(default=())

    def matches(self, error: Union[BaseException, str]) -> bool:
        if isinstance(error, GatewayError):
            if error.code is not None and error.code in self.codes:
                return True
            # Coded errors whose code belongs to a sibling rule must not match on category.
            if error.code is not None and self.codes and error.code in _ALL_CODES:
                return False
            return error.category in self.categories

        if isinstance(error, BaseException):
            if self.exception_types and isinstance(error, self.exception_types):
                return True
            text = str(error)
        else:
            text = error

        lowered = text.lower()
        return any(keyword in lowered for keyword in self.keywords)


GENERIC_MESSAGE = "Unexpected error during the operation - check the logs for details"

_FALLBACK_MIN_LENGTH = 10
_FALLBACK_MAX_LENGTH = 80

# Ordered: first match wins.
RULES: Tuple[ErrorRule, ...] = (
    ErrorRule(
        kind=ScanErrorKind.ACCESS,
        message='The app must be added to the connected channels. Open each channel in Slack and type "/invite @app"',
        categories=frozenset({ErrorCategory.ACCESS}),
        codes=frozenset({"access_denied", "not_in_channel", "channel_not_found"}),
        keywords=("access_denied", "not_in_channel", "channel_not_found"),
    ),
    ErrorRule(
        kind=ScanErrorKind.TIMEOUT,
        message="Timed out on a very active channel - it will be retried automatically in a few minutes",
        retryable=True,
        codes=frozenset({"timeout"}),
        exception_types=(asyncio.TimeoutError, TimeoutError, httpx.TimeoutException),
        keywords=("timeout", "timed out"),
    ),
    ErrorRule(
        kind=ScanErrorKind.RATE_LIMIT,
        message="Slack rate limit reached - waiting for the appropriate interval before trying again",
        retryable=True,
        categories=frozenset({ErrorCategory.RATE_LIMIT}),
        codes=frozenset({"ratelimited"}),
        keywords=("rate limit", "ratelimited", "429"),
    ),
    ErrorRule(
        kind=ScanErrorKind.AUTHENTICATION,
        message="Access token expired - reconnect Slack in the settings",
        categories=frozenset({ErrorCategory.AUTHENTICATION}),
        codes=frozenset({"invalid_auth", "token_revoked", "token_expired", "not_authed"}),
        keywords=("invalid_auth", "token_revoked", "token_expired"),
    ),
    ErrorRule(
        kind=ScanErrorKind.SCOPE,
        message="Insufficient permissions - reconnect Slack with the updated permissions",
        categories=frozenset({ErrorCategory.AUTHORIZATION}),
        codes=frozenset({"missing_scope", "insufficient_scope"}),
        keywords=("missing_scope", "insufficient_scope"),
    ),
    ErrorRule(
        kind=ScanErrorKind.NETWORK,
        message="Connectivity problem - check your internet connection",
        retryable=True,
        categories=frozenset({ErrorCategory.TRANSIENT}),
        codes=frozenset({"network", "server_error"}),
        exception_types=(httpx.TransportError, ConnectionError),
        keywords=("network", "connection"),
    ),
    ErrorRule(
        kind=ScanErrorKind.DATA_FORMAT,
        message="Data processing error - possibly an unexpected message format",
        categories=frozenset({ErrorCategory.DATA_FORMAT}),
        keywords=("invalid message format", "error processing messages"),
    ),
)

_ALL_CODES: FrozenSet[str] = frozenset(code for rule in RULES for code in rule.codes)


def _fallback(text: str) -> str:
    if len(text) > _FALLBACK_MIN_LENGTH:
        suffix = "..." if len(text) > _FALLBACK_MAX_LENGTH else ""
        return f"{text[:_FALLBACK_MAX_LENGTH]}{suffix}"
    return GENERIC_MESSAGE


def categorize_error(error: Union[BaseException, str, None]) -> CategorizedError:
    """Return the user-facing category for *error*.  Never raises."""

    try:
        if error is None:
            return CategorizedError(ScanErrorKind.UNKNOWN, GENERIC_MESSAGE, False)
        for rule in RULES:
            if rule.matches(error):
                return CategorizedError(rule.kind, rule.message, rule.retryable)
        return CategorizedError(ScanErrorKind.UNKNOWN, _fallback(str(error)), False)
    except Exception:  # pragma: no cover – str() of a hostile exception
        return CategorizedError(ScanErrorKind.UNKNOWN, GENERIC_MESSAGE, False)


def categorize_error_message(error: Union[BaseException, str, None]) -> str:
    return categorize_error(error).message


__all__ = [
    "CategorizedError",
    "ErrorRule",
    "GENERIC_MESSAGE",
    "RULES",
    "ScanErrorKind",
    "categorize_error",
    "categorize_error_message",
]
