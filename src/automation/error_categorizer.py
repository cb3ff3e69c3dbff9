"""
Error categorization and retry strategy taxonomy.

Classifies an arbitrary failure into an ErrorCategory and attaches the
fixed retry policy for that category. Shared by the recovery sweepers and
the external publish worker.

Classification precedence:
1. Explicit error code (REFRESH_TOKEN_EXPIRED, network errno names)
2. HTTP status
3. Case-insensitive message substrings, in a fixed order
4. UNKNOWN
"""

import errno
import random
import traceback
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Mapping, Optional

import httpx

from .entities import utc_now


class ErrorCategory(str, Enum):
    """Failure categories, each mapped to one retry policy."""

    RATE_LIMIT = "RATE_LIMIT"
    AUTH_ERROR = "AUTH_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    SERVER_ERROR = "SERVER_ERROR"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    REFRESH_TOKEN_EXPIRED = "REFRESH_TOKEN_EXPIRED"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    UNKNOWN = "UNKNOWN"


@dataclass(frozen=True)
class RetryStrategy:
    """Retry policy of a category."""

    should_retry: bool
    max_attempts: int
    backoff_ms: tuple[int, ...]
    use_circuit_breaker: bool = False
    requires_token_refresh: bool = False


@dataclass
class ErrorContext:
    """Details captured from the failure for logging."""

    category: ErrorCategory
    message: str
    status: Optional[int] = None
    retry_after: Optional[str] = None
    headers: Optional[dict[str, str]] = None
    stack: Optional[str] = None
    timestamp: datetime = field(default_factory=utc_now)


@dataclass
class CategorizedError:
    """Result of categorizing a failure."""

    category: ErrorCategory
    is_retryable: bool
    retry_strategy: RetryStrategy
    error_context: ErrorContext


NO_RETRY = RetryStrategy(should_retry=False, max_attempts=0, backoff_ms=())

RETRY_STRATEGIES: dict[ErrorCategory, RetryStrategy] = {
    # Up to 5 minutes between attempts
    ErrorCategory.RATE_LIMIT: RetryStrategy(
        should_retry=True,
        max_attempts=7,
        backoff_ms=(5000, 10000, 20000, 40000, 80000, 160000, 300000),
        use_circuit_breaker=True,
    ),
    ErrorCategory.AUTH_ERROR: RetryStrategy(
        should_retry=True,
        max_attempts=3,
        backoff_ms=(2000, 5000, 10000),
    ),
    ErrorCategory.TOKEN_EXPIRED: RetryStrategy(
        should_retry=True,
        max_attempts=2,
        backoff_ms=(1000, 3000),
        requires_token_refresh=True,
    ),
    # User must re-authenticate
    ErrorCategory.REFRESH_TOKEN_EXPIRED: NO_RETRY,
    ErrorCategory.NETWORK_ERROR: RetryStrategy(
        should_retry=True,
        max_attempts=5,
        backoff_ms=(2000, 4000, 8000, 16000, 32000),
    ),
    ErrorCategory.SERVER_ERROR: RetryStrategy(
        should_retry=True,
        max_attempts=5,
        backoff_ms=(3000, 6000, 12000, 24000, 48000),
    ),
    ErrorCategory.QUOTA_EXCEEDED: RetryStrategy(
        should_retry=True,
        max_attempts=3,
        backoff_ms=(60000, 120000, 180000),
        use_circuit_breaker=True,
    ),
    ErrorCategory.VALIDATION_ERROR: NO_RETRY,
    ErrorCategory.UNKNOWN: RetryStrategy(
        should_retry=True,
        max_attempts=3,
        backoff_ms=(5000, 15000, 30000),
    ),
}

NETWORK_ERROR_CODES = {"ETIMEDOUT", "ECONNRESET", "ECONNREFUSED", "ENETUNREACH"}

SERVER_ERROR_STATUSES = range(500, 505)

DEFAULT_JITTER_PERCENT = 20
MIN_JITTERED_DELAY_MS = 1000


def _mentions_token_problem(message: str, phrase: str) -> bool:
    return phrase in message and ("expired" in message or "invalid" in message)


@dataclass
class _ErrorDetails:
    code: Optional[str] = None
    status: Optional[int] = None
    message: str = ""
    retry_after: Optional[str] = None
    headers: Optional[dict[str, str]] = None
    stack: Optional[str] = None


def _first(mapping: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = mapping.get(key)
        if value is not None:
            return value
    return None


def _exception_code(error: BaseException) -> Optional[str]:
    """Derive an errno-style code name from an exception."""
    code = getattr(error, "code", None)
    if isinstance(code, str):
        return code

    if isinstance(error, httpx.TimeoutException):
        return "ETIMEDOUT"
    if isinstance(error, httpx.ConnectError):
        return "ECONNREFUSED"
    if isinstance(error, httpx.NetworkError):
        return "ECONNRESET"

    if isinstance(error, OSError):
        if error.errno is not None:
            return errno.errorcode.get(error.errno)
        if isinstance(error, TimeoutError):
            return "ETIMEDOUT"
        if isinstance(error, ConnectionRefusedError):
            return "ECONNREFUSED"
        if isinstance(error, ConnectionResetError):
            return "ECONNRESET"
    return None


def _extract_details(error: Any) -> _ErrorDetails:
    """Normalize an exception or a mapping into comparable fields."""
    if isinstance(error, Mapping):
        status = _first(error, "status", "status_code", "statusCode")
        retry_after = _first(error, "retry_after", "retryAfter")
        return _ErrorDetails(
            code=error.get("code"),
            status=int(status) if status is not None else None,
            message=str(error.get("message") or ""),
            retry_after=str(retry_after) if retry_after is not None else None,
            headers=error.get("headers"),
            stack=error.get("stack"),
        )

    details = _ErrorDetails(message=str(error) if error is not None else "")

    if isinstance(error, BaseException):
        details.code = _exception_code(error)
        if error.__traceback__ is not None:
            details.stack = "".join(traceback.format_exception(error))

    if isinstance(error, httpx.HTTPStatusError):
        details.status = error.response.status_code
        details.headers = dict(error.response.headers)
        details.retry_after = error.response.headers.get("retry-after")
        return details

    status = (
        getattr(error, "status", None)
        or getattr(error, "status_code", None)
        or getattr(error, "statusCode", None)
    )
    if isinstance(status, int):
        details.status = status
    retry_after = getattr(error, "retry_after", None)
    if retry_after is not None:
        details.retry_after = str(retry_after)
    headers = getattr(error, "headers", None)
    if isinstance(headers, Mapping):
        details.headers = dict(headers)
    return details


class ErrorCategorizer:
    """
    Categorizes failures and answers retry questions.

    Pure apart from the injected clock (ErrorContext.timestamp) and random
    source (add_jitter).
    """

    def __init__(
        self,
        clock: Callable[[], datetime] = utc_now,
        rng: Optional[random.Random] = None,
    ):
        self.clock = clock
        self.rng = rng or random.Random()

    def categorize(self, error: Any) -> CategorizedError:
        """Categorize an exception or an error mapping."""
        details = _extract_details(error)
        category = self._determine_category(error, details)
        strategy = RETRY_STRATEGIES[category]

        return CategorizedError(
            category=category,
            is_retryable=strategy.should_retry,
            retry_strategy=strategy,
            error_context=ErrorContext(
                category=category,
                message=details.message or "Unknown error",
                status=details.status,
                retry_after=details.retry_after,
                headers=details.headers,
                stack=details.stack,
                timestamp=self.clock(),
            ),
        )

    def _determine_category(self, error: Any, details: _ErrorDetails) -> ErrorCategory:
        if error is None:
            return ErrorCategory.UNKNOWN

        # 1. Explicit code
        if details.code == "REFRESH_TOKEN_EXPIRED":
            return ErrorCategory.REFRESH_TOKEN_EXPIRED
        if details.code in NETWORK_ERROR_CODES:
            return ErrorCategory.NETWORK_ERROR

        message = details.message.lower()

        # 2. HTTP status
        status = details.status
        if status == 429:
            return ErrorCategory.RATE_LIMIT
        if status == 401:
            if _mentions_token_problem(message, "refresh token"):
                return ErrorCategory.REFRESH_TOKEN_EXPIRED
            if _mentions_token_problem(message, "token"):
                return ErrorCategory.TOKEN_EXPIRED
            return ErrorCategory.AUTH_ERROR
        if status == 403:
            return ErrorCategory.AUTH_ERROR
        if status == 400:
            return ErrorCategory.VALIDATION_ERROR
        if status in SERVER_ERROR_STATUSES:
            return ErrorCategory.SERVER_ERROR

        # 3. Message patterns
        if _mentions_token_problem(message, "refresh token"):
            return ErrorCategory.REFRESH_TOKEN_EXPIRED
        if _mentions_token_problem(message, "token"):
            return ErrorCategory.TOKEN_EXPIRED
        if "rate limit" in message or "too many requests" in message:
            return ErrorCategory.RATE_LIMIT
        if "quota" in message and "exceeded" in message:
            return ErrorCategory.QUOTA_EXCEEDED
        if any(
            pattern in message
            for pattern in ("timeout", "econnreset", "econnrefused", "network")
        ):
            return ErrorCategory.NETWORK_ERROR
        if any(pattern in message for pattern in ("validation", "invalid", "required")):
            return ErrorCategory.VALIDATION_ERROR
        if any(
            pattern in message
            for pattern in ("authentication", "unauthorized", "forbidden")
        ):
            return ErrorCategory.AUTH_ERROR

        return ErrorCategory.UNKNOWN

    @staticmethod
    def should_retry(categorized: CategorizedError, attempt_index: int) -> bool:
        """Whether attempt `attempt_index` (0-based) may be retried."""
        if not categorized.is_retryable:
            return False
        return attempt_index < categorized.retry_strategy.max_attempts

    @staticmethod
    def get_backoff_delay(categorized: CategorizedError, attempt_index: int) -> int:
        """
        Backoff in milliseconds before retrying attempt `attempt_index`.

        An index past the table uses its last entry (60000 for an empty
        table); a zero entry falls back to 5000.
        """
        backoff_ms = categorized.retry_strategy.backoff_ms

        if attempt_index >= len(backoff_ms):
            return backoff_ms[-1] if backoff_ms else 60000

        return backoff_ms[attempt_index] or 5000

    def add_jitter(self, delay_ms: int, jitter_percent: float = DEFAULT_JITTER_PERCENT) -> int:
        """Spread `delay_ms` uniformly by +/- `jitter_percent`, floored at 1000ms."""
        jitter = delay_ms * (jitter_percent / 100) * (self.rng.random() * 2 - 1)
        return max(MIN_JITTERED_DELAY_MS, round(delay_ms + jitter))

    @staticmethod
    def format_error(categorized: CategorizedError) -> str:
        """One-line summary for logs."""
        context = categorized.error_context
        parts = [f"[{categorized.category.value}]", context.message]

        if context.status:
            parts.append(f"(HTTP {context.status})")

        if context.retry_after:
            parts.append(f"- Retry after: {context.retry_after}")

        return " ".join(parts)
