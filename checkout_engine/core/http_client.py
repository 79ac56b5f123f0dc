"""
Resilient HTTP Client for checkout collaborators

Used for the idempotent reads the checkout performs on the network:
- Delivery availability lookups
- Route distance lookups (Google Distance Matrix)

Behaviour:
- Bounded timeout on every request
- At most `max_retries` retries, exponential backoff with jitter
- 429 Retry-After respected (fail fast when the wait is too long)
- Per-host circuit breaker so a dead collaborator does not stall every checkout

The payment gateway is NOT called through this client: session creation
must never be retried silently.
"""
import asyncio
import logging
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional
from urllib.parse import urlparse

import httpx

logger = logging.getLogger(__name__)

MAX_RETRY_AFTER_WAIT = 10.0  # checkout is interactive, never wait longer than this


class CircuitOpenError(httpx.TransportError):
    """Raised when the circuit for a host is open and requests are rejected."""

    def __init__(self, host: str, retry_after_seconds: float):
        self.host = host
        self.retry_after_seconds = retry_after_seconds
        super().__init__(
            f"Circuit breaker OPEN for {host}. Retry after {retry_after_seconds:.0f}s"
        )


class CircuitState(Enum):
    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Failing, reject requests
    HALF_OPEN = "half_open"  # Testing if service recovered


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_retries: int = 1
    base_delay: float = 0.2           # Base delay in seconds
    max_delay: float = 2.0            # Maximum delay cap
    exponential_base: float = 2.0     # Exponential backoff multiplier
    jitter_factor: float = 0.5        # Random jitter (0-1)

    # Status codes that should trigger retry
    retryable_status_codes: tuple = (429, 500, 502, 503, 504)


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker."""
    failure_threshold: int = 5        # Failures before opening circuit
    success_threshold: int = 1        # Successes to close circuit
    timeout_seconds: float = 30.0     # Time before half-open test


@dataclass
class HostState:
    """Tracks circuit state for a specific host."""
    circuit_state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    success_count: int = 0
    last_failure_time: float = 0.0


class ResilientHTTPClient:
    """
    Async HTTP client with bounded retries and a per-host circuit breaker.

    Usage:
        async with ResilientHTTPClient(timeout=5.0) as client:
            response = await client.post(url, json=payload)
    """

    def __init__(
        self,
        retry_config: Optional[RetryConfig] = None,
        circuit_config: Optional[CircuitBreakerConfig] = None,
        timeout: float = 5.0,
        default_headers: Optional[Dict[str, str]] = None,
    ):
        self.retry_config = retry_config or RetryConfig()
        self.circuit_config = circuit_config or CircuitBreakerConfig()
        self.timeout = timeout
        self.default_headers = default_headers or {}

        self._client: Optional[httpx.AsyncClient] = None
        self._host_states: Dict[str, HostState] = {}

    async def __aenter__(self):
        await self.init()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def init(self):
        """Initialize client without context manager. Must call close() when done."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers=self.default_headers,
                follow_redirects=True,
            )
        return self

    async def close(self):
        if self._client:
            await self._client.aclose()
            self._client = None

    def _get_host(self, url: str) -> str:
        return urlparse(url).netloc

    def _get_host_state(self, host: str) -> HostState:
        if host not in self._host_states:
            self._host_states[host] = HostState()
        return self._host_states[host]

    def _calculate_backoff(self, attempt: int) -> float:
        """
        Calculate delay with exponential backoff and jitter.

        Formula: min(base * (exp_base ^ attempt) + jitter, max_delay)
        """
        cfg = self.retry_config
        delay = cfg.base_delay * (cfg.exponential_base ** attempt)
        jitter = delay * cfg.jitter_factor * (2 * random.random() - 1)
        delay += jitter
        return max(0.0, min(delay, cfg.max_delay))

    def _parse_retry_after(self, response: httpx.Response) -> Optional[float]:
        """Parse Retry-After header as seconds to wait."""
        retry_after = response.headers.get("Retry-After")
        if not retry_after:
            return None
        try:
            return max(0.0, float(retry_after))
        except ValueError:
            pass
        try:
            from email.utils import parsedate_to_datetime
            return max(0.0, parsedate_to_datetime(retry_after).timestamp() - time.time())
        except (ValueError, TypeError):
            return None

    def _check_circuit_breaker(self, host: str) -> None:
        state = self._get_host_state(host)
        cfg = self.circuit_config

        if state.circuit_state != CircuitState.OPEN:
            return

        elapsed = time.time() - state.last_failure_time
        if elapsed > cfg.timeout_seconds:
            logger.info(f"[CIRCUIT] {host}: Moving to HALF_OPEN for test request")
            state.circuit_state = CircuitState.HALF_OPEN
            state.success_count = 0
            return

        remaining = cfg.timeout_seconds - elapsed
        logger.warning(f"[CIRCUIT] {host}: OPEN, rejecting request ({remaining:.1f}s until retry)")
        raise CircuitOpenError(host, remaining)

    def _record_success(self, host: str) -> None:
        state = self._get_host_state(host)
        state.failure_count = 0

        if state.circuit_state == CircuitState.HALF_OPEN:
            state.success_count += 1
            if state.success_count >= self.circuit_config.success_threshold:
                logger.info(f"[CIRCUIT] {host}: Closing circuit after {state.success_count} successes")
                state.circuit_state = CircuitState.CLOSED

    def _record_failure(self, host: str) -> None:
        state = self._get_host_state(host)
        state.failure_count += 1
        state.last_failure_time = time.time()
        state.success_count = 0

        if state.circuit_state == CircuitState.HALF_OPEN:
            logger.warning(f"[CIRCUIT] {host}: Test request failed, reopening circuit")
            state.circuit_state = CircuitState.OPEN
        elif state.failure_count >= self.circuit_config.failure_threshold:
            logger.error(f"[CIRCUIT] {host}: Opening circuit after {state.failure_count} failures")
            state.circuit_state = CircuitState.OPEN

    async def request(self, method: str, url: str, **kwargs) -> httpx.Response:
        """
        Make an HTTP request with bounded retries.

        Raises:
            httpx.HTTPStatusError: On non-retryable status or retries exhausted
            httpx.TransportError: On timeout/connection failure after retries,
                or CircuitOpenError when the host circuit is open
        """
        if not self._client:
            await self.init()

        host = self._get_host(url)
        cfg = self.retry_config
        self._check_circuit_breaker(host)

        last_exception: Optional[Exception] = None

        for attempt in range(cfg.max_retries + 1):
            try:
                logger.debug(f"[HTTP] {method} {url} (attempt {attempt + 1}/{cfg.max_retries + 1})")
                response = await self._client.request(method, url, **kwargs)

                if response.status_code in cfg.retryable_status_codes:
                    self._record_failure(host)

                    if attempt < cfg.max_retries:
                        delay = self._calculate_backoff(attempt)
                        if response.status_code == 429:
                            retry_after = self._parse_retry_after(response)
                            if retry_after is not None:
                                if retry_after > MAX_RETRY_AFTER_WAIT:
                                    logger.warning(
                                        f"[429] {host}: Retry-After {retry_after:.0f}s exceeds "
                                        f"max wait ({MAX_RETRY_AFTER_WAIT}s) - failing fast"
                                    )
                                    response.raise_for_status()
                                delay = retry_after
                        logger.warning(
                            f"[HTTP] {host}: Status {response.status_code}, "
                            f"retrying in {delay:.1f}s (attempt {attempt + 1})"
                        )
                        await asyncio.sleep(delay)
                        continue

                    response.raise_for_status()

                if response.is_error:
                    logger.error(f"[HTTP] {host}: Fatal status {response.status_code}, not retrying")
                    response.raise_for_status()

                self._record_success(host)
                return response

            except (httpx.TimeoutException, httpx.ConnectError) as e:
                self._record_failure(host)
                last_exception = e

                if attempt < cfg.max_retries:
                    delay = self._calculate_backoff(attempt)
                    logger.warning(f"[HTTP] {host}: {type(e).__name__}, retrying in {delay:.1f}s")
                    await asyncio.sleep(delay)
                    continue

        logger.error(f"[HTTP] {host}: All {cfg.max_retries + 1} attempts failed")
        raise last_exception

    async def get(self, url: str, **kwargs) -> httpx.Response:
        """GET request with resilience."""
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs) -> httpx.Response:
        """POST request with resilience."""
        return await self.request("POST", url, **kwargs)
