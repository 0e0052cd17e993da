"""
Rate-limited outbound HTTP client — בסיס משותף ל-ordering platform ולשליחויות.

כל קריאה עוברת, לפי הסדר:
1. FIFO admission דרך FixedWindowRateLimiter (סדר היציאה = סדר הכניסה)
2. circuit breaker
3. סיווג התשובה: 5xx/429/רשת → retryable, 4xx → terminal
4. 401 → רענון credentials פעם אחת לפני מסלול ה-retry הרגיל
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from app.core.circuit_breaker import CircuitBreaker
from app.core.clock import Clock, system_clock
from app.core.exceptions import (
    CircuitBreakerOpenError,
    ServiceTimeoutError,
    TransientUpstreamError,
    UpstreamAuthenticationError,
    UpstreamRequestError,
)
from app.core.logging import get_logger
from app.core.retry import RetryPolicy, is_retryable

logger = get_logger(__name__)


class FixedWindowRateLimiter:
    """
    At most ``max_requests`` admissions per window.

    Waiters queue on an ``asyncio.Lock``, which wakes them in arrival
    order, so admission order equals enqueue order.
    """

    def __init__(
        self,
        max_requests: int,
        *,
        window_seconds: float = 60.0,
        clock: Clock = system_clock,
    ):
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.clock = clock
        self._lock = asyncio.Lock()
        self._window_start: float | None = None
        self._count = 0

    async def acquire(self) -> None:
        async with self._lock:
            while True:
                now = self.clock.monotonic()
                if self._window_start is None or now - self._window_start >= self.window_seconds:
                    self._window_start = now
                    self._count = 0
                if self._count < self.max_requests:
                    self._count += 1
                    return
                await self.clock.sleep(self._window_start + self.window_seconds - now)

    @property
    def used(self) -> int:
        return self._count


class RequestAuth(Protocol):
    """Credentials attached to every request of a call"""

    def headers(self) -> dict[str, str]:
        ...

    async def refresh(self) -> None:
        ...


@dataclass
class _CallState:
    refreshed: bool = False


def counts_against_upstream(exc: Exception) -> bool:
    """Only upstream-health failures move the circuit breaker"""
    return isinstance(exc, TransientUpstreamError)


class RateLimitedClient:
    """httpx client for one destination with throttling, breaker and retry"""

    def __init__(
        self,
        *,
        service_name: str,
        base_url: str,
        rate_limiter: FixedWindowRateLimiter,
        circuit_breaker: CircuitBreaker,
        retry_policy: RetryPolicy,
        timeout_seconds: float = 30.0,
        clock: Clock = system_clock,
        transport: httpx.AsyncBaseTransport | None = None,
        default_headers: dict[str, str] | None = None,
    ):
        self.service_name = service_name
        self.rate_limiter = rate_limiter
        self.circuit_breaker = circuit_breaker
        self.retry_policy = retry_policy
        self.timeout_seconds = timeout_seconds
        self.clock = clock
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout_seconds,
            transport=transport,
            headers={"Content-Type": "application/json", **(default_headers or {})},
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def request(
        self,
        method: str,
        url: str,
        *,
        operation: str,
        auth: RequestAuth | None = None,
        allow_status: tuple[int, ...] = (),
        max_attempts: int | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """
        Send one logical call, retrying transient failures.

        ``allow_status`` lists error statuses the caller handles itself
        (for example 404 on a lookup); they are returned, not raised.
        ``max_attempts`` overrides the client policy for this call.
        """
        max_attempts = max_attempts or self.retry_policy.max_attempts
        state = _CallState()
        attempt = 0
        while True:
            attempt += 1

            async def _call() -> httpx.Response:
                return await self._call_once(method, url, operation, auth, allow_status, state, kwargs)

            try:
                return await self.circuit_breaker.execute(_call)
            except CircuitBreakerOpenError:
                raise
            except Exception as exc:
                if not is_retryable(exc) or attempt >= max_attempts:
                    raise
                delay = self.retry_policy.delay_for(attempt)
                logger.warning(
                    f"{self.service_name} {operation} failed, retrying",
                    extra_data={
                        "service": self.service_name,
                        "operation": operation,
                        "attempt": attempt,
                        "max_attempts": max_attempts,
                        "delay_seconds": delay,
                        "error": str(exc),
                    },
                )
                await self.clock.sleep(delay)

    async def _call_once(
        self,
        method: str,
        url: str,
        operation: str,
        auth: RequestAuth | None,
        allow_status: tuple[int, ...],
        state: _CallState,
        kwargs: dict[str, Any],
    ) -> httpx.Response:
        response = await self._send(method, url, operation, auth, kwargs)

        if response.status_code == 401 and auth is not None and not state.refreshed:
            state.refreshed = True
            logger.warning(
                f"{self.service_name} rejected credentials, refreshing once",
                extra_data={"service": self.service_name, "operation": operation},
            )
            await auth.refresh()
            response = await self._send(method, url, operation, auth, kwargs)

        self._raise_for_status(response, operation, allow_status)
        return response

    async def _send(
        self,
        method: str,
        url: str,
        operation: str,
        auth: RequestAuth | None,
        kwargs: dict[str, Any],
    ) -> httpx.Response:
        await self.rate_limiter.acquire()
        headers = dict(kwargs.get("headers") or {})
        if auth is not None:
            headers.update(auth.headers())
        request_kwargs = {k: v for k, v in kwargs.items() if k != "headers"}

        try:
            return await self._client.request(method, url, headers=headers, **request_kwargs)
        except httpx.TimeoutException as e:
            raise ServiceTimeoutError(self.service_name, self.timeout_seconds) from e
        except httpx.TransportError as e:
            raise TransientUpstreamError(
                self.service_name,
                f"{operation} network error: {e}",
                details={"operation": operation},
            ) from e

    def _raise_for_status(
        self,
        response: httpx.Response,
        operation: str,
        allow_status: tuple[int, ...],
    ) -> None:
        status = response.status_code
        if status < 400 or status in allow_status:
            return
        if status == 429 or status >= 500:
            raise TransientUpstreamError.from_response(self.service_name, operation, response)
        if status in (401, 403):
            raise UpstreamAuthenticationError.from_response(self.service_name, operation, response)
        raise UpstreamRequestError.from_response(self.service_name, operation, response)
