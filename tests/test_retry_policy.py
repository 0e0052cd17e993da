"""
בדיקות מדיניות ה-retry: חישוב backoff וסיווג שגיאות.

בודקים אינווריאנטים עם hypothesis:
1. ה-delay לעולם לא עובר את התקרה ולעולם לא שלילי
2. ה-delay מונוטוני לא-יורד במספר הניסיון
"""
import httpx
import pytest
from hypothesis import given
from hypothesis.strategies import floats, integers
from sqlalchemy.exc import OperationalError

from app.core.exceptions import (
    CircuitBreakerOpenError,
    MalformedPayload,
    ServiceTimeoutError,
    TenantNotFound,
    TransientUpstreamError,
    UpstreamRequestError,
)
from app.core.retry import RetryPolicy, calculate_backoff_seconds, is_retryable

ATTEMPTS = integers(min_value=1, max_value=10_000)
BASES = floats(min_value=0.01, max_value=60.0)
MULTIPLIERS = floats(min_value=1.0, max_value=10.0)
CEILINGS = floats(min_value=0.01, max_value=3600.0)


class TestCalculateBackoff:
    """חישוב backoff אקספוננציאלי עם תקרה"""

    @pytest.mark.unit
    def test_first_attempt_uses_base(self):
        assert calculate_backoff_seconds(
            1, base_seconds=1.0, multiplier=2.0, max_backoff_seconds=30.0
        ) == 1.0

    @pytest.mark.unit
    def test_grows_exponentially(self):
        delays = [
            calculate_backoff_seconds(a, base_seconds=1.0, multiplier=2.0, max_backoff_seconds=30.0)
            for a in range(1, 7)
        ]
        assert delays == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0]

    @pytest.mark.unit
    def test_huge_attempt_hits_ceiling_without_overflow(self):
        assert calculate_backoff_seconds(
            10**9, base_seconds=1.0, multiplier=2.0, max_backoff_seconds=30.0
        ) == 30.0

    @pytest.mark.unit
    def test_non_positive_attempt_treated_as_first(self):
        assert calculate_backoff_seconds(
            0, base_seconds=2.0, multiplier=2.0, max_backoff_seconds=30.0
        ) == 2.0

    @pytest.mark.unit
    @given(attempt=ATTEMPTS, base=BASES, multiplier=MULTIPLIERS, ceiling=CEILINGS)
    def test_delay_is_bounded(self, attempt, base, multiplier, ceiling):
        delay = calculate_backoff_seconds(
            attempt, base_seconds=base, multiplier=multiplier, max_backoff_seconds=ceiling
        )
        assert 0 <= delay <= ceiling

    @pytest.mark.unit
    @given(attempt=integers(min_value=1, max_value=500), base=BASES, multiplier=MULTIPLIERS, ceiling=CEILINGS)
    def test_delay_is_non_decreasing(self, attempt, base, multiplier, ceiling):
        kwargs = dict(base_seconds=base, multiplier=multiplier, max_backoff_seconds=ceiling)
        assert calculate_backoff_seconds(attempt, **kwargs) <= calculate_backoff_seconds(attempt + 1, **kwargs)


class TestRetryPolicy:

    @pytest.mark.unit
    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)

    @pytest.mark.unit
    def test_from_settings_with_override(self):
        from tests.conftest import make_settings

        policy = RetryPolicy.from_settings(make_settings(RETRY_MAX_ATTEMPTS=4), max_attempts=2)

        assert policy.max_attempts == 2
        assert policy.delay_for(1) == make_settings().RETRY_BASE_DELAY_SECONDS


class TestIsRetryable:
    """retryable רק לשגיאות רשת/timeout/5xx"""

    @pytest.mark.unit
    @pytest.mark.parametrize("exc", [
        TransientUpstreamError("courier", "503"),
        ServiceTimeoutError("courier", 10.0),
        CircuitBreakerOpenError("courier", 5.0),
        httpx.ConnectError("connection refused"),
        OperationalError("SELECT 1", {}, Exception("database is locked")),
    ])
    def test_transient_errors_are_retryable(self, exc):
        assert is_retryable(exc)

    @pytest.mark.unit
    @pytest.mark.parametrize("exc", [
        UpstreamRequestError("courier", "400 bad address"),
        MalformedPayload("missing order id"),
        TenantNotFound("S9"),
        KeyError("boom"),
        ValueError("bug"),
    ])
    def test_terminal_errors_are_not_retryable(self, exc):
        assert not is_retryable(exc)
