"""
Error categorization tests.

Precedence: explicit code, then HTTP status, then message patterns.
"""

import errno
import random

import httpx
import pytest

from src.automation import (
    CategorizedError,
    ErrorCategorizer,
    ErrorCategory,
    ErrorContext,
    RetryStrategy,
)
from src.automation.error_categorizer import RETRY_STRATEGIES


@pytest.fixture
def categorizer(mock_clock) -> ErrorCategorizer:
    return ErrorCategorizer(clock=mock_clock, rng=random.Random(7))


def _http_status_error(status: int, headers: dict = None) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://api.example.com/publish")
    response = httpx.Response(status, headers=headers or {}, request=request)
    return httpx.HTTPStatusError(f"HTTP {status}", request=request, response=response)


class CodedError(Exception):
    def __init__(self, message: str, code: str):
        super().__init__(message)
        self.code = code


class TestPrecedence:
    """Code beats status beats message."""

    def test_status_beats_message(self, categorizer):
        result = categorizer.categorize({"status": 400, "message": "timeout error"})
        assert result.category == ErrorCategory.VALIDATION_ERROR

    def test_refresh_token_message_on_401(self, categorizer):
        result = categorizer.categorize(
            {"status": 401, "message": "Refresh token expired - validation failed"}
        )
        assert result.category == ErrorCategory.REFRESH_TOKEN_EXPIRED
        assert result.is_retryable is False

    def test_code_beats_status(self, categorizer):
        result = categorizer.categorize({"code": "REFRESH_TOKEN_EXPIRED", "status": 500})
        assert result.category == ErrorCategory.REFRESH_TOKEN_EXPIRED

    def test_network_code_beats_status(self, categorizer):
        result = categorizer.categorize({"code": "ECONNRESET", "status": 400, "message": "bad"})
        assert result.category == ErrorCategory.NETWORK_ERROR


class TestStatusCategories:

    @pytest.mark.parametrize(
        "status,message,expected",
        [
            (429, "slow down", ErrorCategory.RATE_LIMIT),
            (401, "Unauthorized", ErrorCategory.AUTH_ERROR),
            (401, "access token invalid", ErrorCategory.TOKEN_EXPIRED),
            (403, "nope", ErrorCategory.AUTH_ERROR),
            (400, "bad request", ErrorCategory.VALIDATION_ERROR),
            (500, "boom", ErrorCategory.SERVER_ERROR),
            (504, "gateway timeout", ErrorCategory.SERVER_ERROR),
            (505, "http version not supported", ErrorCategory.UNKNOWN),
        ],
    )
    def test_status(self, categorizer, status, message, expected):
        assert categorizer.categorize({"status": status, "message": message}).category == expected


class TestMessageCategories:

    @pytest.mark.parametrize(
        "message,expected",
        [
            ("Your token is expired", ErrorCategory.TOKEN_EXPIRED),
            ("refresh token invalid", ErrorCategory.REFRESH_TOKEN_EXPIRED),
            ("Rate limit exceeded", ErrorCategory.RATE_LIMIT),
            ("Too Many Requests", ErrorCategory.RATE_LIMIT),
            ("Daily quota exceeded", ErrorCategory.QUOTA_EXCEEDED),
            ("socket hang up ECONNRESET", ErrorCategory.NETWORK_ERROR),
            ("Network unreachable", ErrorCategory.NETWORK_ERROR),
            ("title is required", ErrorCategory.VALIDATION_ERROR),
            ("Forbidden resource", ErrorCategory.AUTH_ERROR),
            ("Something broke", ErrorCategory.UNKNOWN),
        ],
    )
    def test_message(self, categorizer, message, expected):
        assert categorizer.categorize(Exception(message)).category == expected

    def test_token_without_expiry_wording_is_not_token_error(self, categorizer):
        assert categorizer.categorize(Exception("token missing")).category == ErrorCategory.UNKNOWN


class TestExceptionDetails:
    """Exceptions are normalized like error mappings."""

    def test_http_status_error(self, categorizer):
        result = categorizer.categorize(_http_status_error(429, {"Retry-After": "30"}))

        assert result.category == ErrorCategory.RATE_LIMIT
        assert result.error_context.status == 429
        assert result.error_context.retry_after == "30"
        assert result.error_context.headers["retry-after"] == "30"

    def test_httpx_timeout_is_network(self, categorizer):
        assert categorizer.categorize(httpx.ConnectTimeout("timed out")).category == ErrorCategory.NETWORK_ERROR

    def test_httpx_connect_error_is_network(self, categorizer):
        assert categorizer.categorize(httpx.ConnectError("refused")).category == ErrorCategory.NETWORK_ERROR

    def test_os_error_errno_is_network(self, categorizer):
        error = ConnectionResetError(errno.ECONNRESET, "Connection reset by peer")
        assert categorizer.categorize(error).category == ErrorCategory.NETWORK_ERROR

    def test_explicit_code_attribute(self, categorizer):
        error = CodedError("session ended", code="REFRESH_TOKEN_EXPIRED")
        assert categorizer.categorize(error).category == ErrorCategory.REFRESH_TOKEN_EXPIRED

    def test_stack_captured_for_raised_exception(self, categorizer):
        try:
            raise ValueError("validation failed for title")
        except ValueError as e:
            result = categorizer.categorize(e)

        assert result.category == ErrorCategory.VALIDATION_ERROR
        assert "ValueError" in result.error_context.stack

    def test_none_is_unknown(self, categorizer, mock_clock):
        result = categorizer.categorize(None)

        assert result.category == ErrorCategory.UNKNOWN
        assert result.error_context.message == "Unknown error"
        assert result.error_context.timestamp == mock_clock.now()


class TestRetryPolicy:

    def test_strategy_attached(self, categorizer):
        result = categorizer.categorize({"status": 503})
        assert result.retry_strategy == RETRY_STRATEGIES[ErrorCategory.SERVER_ERROR]
        assert result.is_retryable is True

    def test_should_retry_respects_max_attempts(self, categorizer):
        result = categorizer.categorize({"code": "ETIMEDOUT"})

        assert ErrorCategorizer.should_retry(result, 4) is True
        assert ErrorCategorizer.should_retry(result, 5) is False

    def test_validation_never_retried(self, categorizer):
        result = categorizer.categorize({"status": 400})
        assert ErrorCategorizer.should_retry(result, 0) is False

    def test_backoff_clamps_to_last_entry(self, categorizer):
        result = categorizer.categorize({"status": 500})

        assert ErrorCategorizer.get_backoff_delay(result, 0) == 3000
        assert ErrorCategorizer.get_backoff_delay(result, 10) == 48000

    def test_backoff_without_table(self, categorizer):
        result = categorizer.categorize({"code": "REFRESH_TOKEN_EXPIRED"})
        assert ErrorCategorizer.get_backoff_delay(result, 0) == 60000

    def test_zero_backoff_entry_falls_back(self, mock_clock):
        strategy = RetryStrategy(should_retry=True, max_attempts=1, backoff_ms=(0,))
        result = CategorizedError(
            category=ErrorCategory.UNKNOWN,
            is_retryable=True,
            retry_strategy=strategy,
            error_context=ErrorContext(category=ErrorCategory.UNKNOWN, message="x"),
        )
        assert ErrorCategorizer.get_backoff_delay(result, 0) == 5000


class TestJitterAndFormat:

    def test_jitter_stays_within_bounds(self, categorizer):
        for _ in range(200):
            delay = categorizer.add_jitter(10000)
            assert 8000 <= delay <= 12000

    def test_jitter_floor(self, categorizer):
        for _ in range(50):
            assert categorizer.add_jitter(500) == 1000

    def test_format_error_full(self, categorizer):
        result = categorizer.categorize({"status": 429, "message": "Too many", "retry_after": 30})
        assert ErrorCategorizer.format_error(result) == "[RATE_LIMIT] Too many (HTTP 429) - Retry after: 30"

    def test_format_error_minimal(self, categorizer):
        result = categorizer.categorize(Exception("boom"))
        assert ErrorCategorizer.format_error(result) == "[UNKNOWN] boom"
