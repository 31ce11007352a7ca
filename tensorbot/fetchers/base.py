"""
Base HTTP client for the one-shot (non-streaming) API calls.

Tensor stats and CoinGecko prices are both small JSON request/response
calls, so they share one async client shape:
- Token bucket rate limiting per client
- Circuit breaker per endpoint, so a dead API fails fast instead of
  stalling every sale notification
- Exponential backoff with full jitter, only for transient errors
- Short request IDs for log correlation
"""
import asyncio
import random
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

import httpx
import structlog

logger = structlog.get_logger()

# Stats and price payloads are a few KB; anything past this is a broken upstream
MAX_RESPONSE_BYTES = 5 * 1024 * 1024

# Status codes worth another attempt
RETRYABLE_STATUS = frozenset({408, 425, 429, 500, 502, 503, 504})


class CircuitOpenError(Exception):
    """The endpoint's circuit breaker is open; the call was not attempted."""
    pass


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreaker:
    """
    Per-endpoint breaker.

    CLOSED until `failure_threshold` consecutive failures, then OPEN for
    `cooldown` seconds. After that one trial request is allowed (HALF_OPEN):
    success closes it, failure re-opens it for another cooldown.
    """
    name: str
    failure_threshold: int = 5
    cooldown: float = 30.0
    clock: Callable[[], float] = time.monotonic

    state: CircuitState = field(default=CircuitState.CLOSED, init=False)
    failures: int = field(default=0, init=False)
    opened_at: float = field(default=0.0, init=False)
    trial_in_flight: bool = field(default=False, init=False)

    def allow(self) -> bool:
        """Whether a request may go out now."""
        if self.state is CircuitState.CLOSED:
            return True

        if self.state is CircuitState.OPEN:
            if self.clock() - self.opened_at < self.cooldown:
                return False
            self.state = CircuitState.HALF_OPEN
            self.trial_in_flight = False
            logger.info("Circuit half-open, sending trial request", endpoint=self.name)

        # HALF_OPEN: exactly one trial request in flight
        if self.trial_in_flight:
            return False
        self.trial_in_flight = True
        return True

    def succeeded(self) -> None:
        if self.state is not CircuitState.CLOSED:
            logger.info("Circuit closed", endpoint=self.name)
        self.state = CircuitState.CLOSED
        self.failures = 0
        self.trial_in_flight = False

    def abandoned(self) -> None:
        """The call was cancelled before an outcome; free the trial slot."""
        if self.trial_in_flight:
            logger.info("Circuit trial request cancelled", endpoint=self.name)
        self.trial_in_flight = False

    def failed(self) -> None:
        self.failures += 1
        if self.state is CircuitState.HALF_OPEN or self.failures >= self.failure_threshold:
            if self.state is not CircuitState.OPEN:
                logger.warning("Circuit opened", endpoint=self.name, failures=self.failures)
            self.state = CircuitState.OPEN
            self.opened_at = self.clock()
            self.trial_in_flight = False


def is_transient(error: Exception) -> bool:
    """Connection problems, timeouts, and 408/425/429/5xx are retried; nothing else."""
    if isinstance(error, httpx.TransportError):
        return True
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in RETRYABLE_STATUS
    return False


def backoff_delay(attempt: int, base: float = 1.0, cap: float = 30.0) -> float:
    """Full jitter: uniform(0, min(cap, base * 2**attempt))."""
    return random.uniform(0, min(cap, base * 2 ** attempt))


class RateLimiter:
    """
    Token bucket holding at most max(rate, 1) tokens.

    Rates below 1/s (CoinGecko's free tier) still allow one immediate call,
    then space the rest 1/rate seconds apart.
    """

    def __init__(self, rate: float, clock: Callable[[], float] = time.monotonic):
        self.rate = rate
        self.capacity = max(rate, 1.0)
        self.tokens = self.capacity
        self.clock = clock
        self.updated = clock()
        self.lock = asyncio.Lock()

    async def acquire(self) -> None:
        async with self.lock:
            now = self.clock()
            self.tokens = min(self.capacity, self.tokens + (now - self.updated) * self.rate)
            self.updated = now

            if self.tokens >= 1:
                self.tokens -= 1
                return

            wait = (1 - self.tokens) / self.rate
            logger.debug("Rate limited", wait_seconds=round(wait, 2))
            await asyncio.sleep(wait)
            self.tokens = 0
            self.updated = self.clock()


class BaseClient:
    """Rate-limited async JSON client with retries and a circuit breaker."""

    def __init__(
        self,
        base_url: str,
        rate_limit: float,
        timeout: float = 15.0,
        headers: Optional[dict[str, str]] = None,
        max_retries: int = 3,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            base_url: Base URL for relative paths
            rate_limit: Maximum requests per second
            timeout: Per-request timeout in seconds
            headers: Extra headers (API keys)
            max_retries: Attempts per call; 1 disables retrying
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.base_url = base_url
        self.max_retries = max(1, max_retries)
        self.rate_limiter = RateLimiter(rate_limit)
        self.circuit_breaker = CircuitBreaker(name=httpx.URL(base_url).host or base_url)

        self.client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout, connect=min(timeout, 10.0)),
            headers={"Accept": "application/json", "User-Agent": "TensorSalesBot/1.0", **(headers or {})},
            transport=transport,
        )
        self._closed = False

    async def get(self, path: str, params: Optional[dict[str, Any]] = None) -> Any:
        """
        GET path and return the decoded JSON.

        Raises:
            httpx.HTTPStatusError: Non-2xx response on the last attempt
            CircuitOpenError: Endpoint circuit is open
        """
        return await self._request("GET", path, params=params)

    async def post(self, path: str, json: Any = None) -> Any:
        """POST a JSON body (object or array) and return the decoded JSON."""
        return await self._request("POST", path, json=json)

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        request_id = uuid.uuid4().hex[:8]
        log = logger.bind(method=method, path=path, request_id=request_id)

        if not self.circuit_breaker.allow():
            log.warning("Request skipped, circuit open")
            raise CircuitOpenError(f"Circuit open for {self.circuit_breaker.name}")

        try:
            return await self._attempt(method, path, log, **kwargs)
        except asyncio.CancelledError:
            self.circuit_breaker.abandoned()
            raise

    async def _attempt(self, method: str, path: str, log: Any, **kwargs: Any) -> Any:
        attempt = 0
        while True:
            await self.rate_limiter.acquire()
            try:
                data = await self._send_once(method, path, **kwargs)
            except Exception as e:
                attempt += 1
                retry = is_transient(e) and attempt < self.max_retries
                log.warning(
                    "Request failed",
                    attempt=attempt,
                    error=str(e),
                    error_type=type(e).__name__,
                    will_retry=retry,
                )
                if not retry:
                    self.circuit_breaker.failed()
                    raise
                await asyncio.sleep(backoff_delay(attempt - 1))
                continue

            self.circuit_breaker.succeeded()
            return data

    async def _send_once(self, method: str, path: str, **kwargs: Any) -> Any:
        response = await self.client.request(method, path, **kwargs)
        response.raise_for_status()

        if len(response.content) > MAX_RESPONSE_BYTES:
            raise ValueError(f"Response too large: {len(response.content)} bytes")
        try:
            return response.json()
        except ValueError as e:
            raise ValueError(f"Invalid JSON response: {e}") from e

    async def close(self) -> None:
        if not self._closed:
            await self.client.aclose()
            self._closed = True

    async def __aenter__(self) -> "BaseClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
