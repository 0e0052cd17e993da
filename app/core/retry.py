"""
Retry policy shared by the event executor and the outbound clients.

Only the policy (delay schedule + error classification) lives here; the
loops that apply it are in ``RetryExecutor`` (event level, persisted) and
``RateLimitedClient`` (single outbound call).
"""
import math
from dataclasses import dataclass

import httpx
from sqlalchemy.exc import OperationalError

from app.core.exceptions import AppException


def calculate_backoff_seconds(
    attempt: int,
    *,
    base_seconds: float,
    multiplier: float,
    max_backoff_seconds: float,
) -> float:
    """
    Exponential backoff with a hard upper bound.

        delay = base_seconds * multiplier ** (attempt - 1)

    ``attempt`` is 1-based (the delay that follows the first failed attempt
    is ``base_seconds``). Huge attempt numbers never compute the power.
    """
    if attempt < 1:
        attempt = 1

    if base_seconds <= 0 or max_backoff_seconds <= 0:
        return 0.0

    if base_seconds >= max_backoff_seconds:
        return float(max_backoff_seconds)

    if multiplier <= 1:
        return float(base_seconds)

    # exponent שמעליו כבר מגיעים לתקרה — בלי לחשב multiplier ** exponent בפועל
    threshold = math.log(max_backoff_seconds / base_seconds, multiplier)
    exponent = attempt - 1
    if exponent >= threshold:
        return float(max_backoff_seconds)

    return min(base_seconds * (multiplier ** exponent), float(max_backoff_seconds))


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff"""
    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    multiplier: float = 2.0
    max_delay_seconds: float = 30.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after failed attempt number ``attempt``"""
        return calculate_backoff_seconds(
            attempt,
            base_seconds=self.base_delay_seconds,
            multiplier=self.multiplier,
            max_backoff_seconds=self.max_delay_seconds,
        )

    @classmethod
    def from_settings(cls, settings, *, max_attempts: int | None = None) -> "RetryPolicy":
        return cls(
            max_attempts=max_attempts or settings.RETRY_MAX_ATTEMPTS,
            base_delay_seconds=settings.RETRY_BASE_DELAY_SECONDS,
            multiplier=settings.RETRY_MULTIPLIER,
            max_delay_seconds=settings.RETRY_MAX_DELAY_SECONDS,
        )


def is_retryable(exc: BaseException) -> bool:
    """
    Partition errors into retryable (network/timeout/5xx) and terminal.

    Anything not explicitly transient is terminal, including unexpected
    programming errors: those need an operator, not another attempt.
    """
    if isinstance(exc, AppException):
        return exc.retryable
    if isinstance(exc, (httpx.TransportError, OperationalError)):
        return True
    return False
