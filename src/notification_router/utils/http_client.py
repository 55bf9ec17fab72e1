"""HTTP client for gateway-backed delivery channels.

Provides an aiohttp client with per-request timeouts, jittered exponential
backoff for timeouts, connection errors, 429 and 5xx responses, and a per-URL
circuit breaker so a dead push gateway stops absorbing delivery attempts.
"""

import asyncio
import json
import logging
import random
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum, auto
from typing import Self

import aiohttp

from notification_router.types.models import Response

__all__ = ["AIOHTTPClient", "CircuitBreakerState", "CircuitState", "NonRetryableHTTPError"]


class CircuitState(Enum):
    """Circuit breaker state enumeration."""

    CLOSED = auto()  # requests allowed
    OPEN = auto()  # requests rejected until cooldown elapses
    HALF_OPEN = auto()  # one probe allowed


@dataclass(slots=True)
class CircuitBreakerState:
    """Failure tracking for one target URL."""

    consecutive_failures: int = 0
    last_failure_time: datetime | None = None
    circuit_state: CircuitState = CircuitState.CLOSED


class NonRetryableHTTPError(RuntimeError):
    """The gateway rejected the request with a 4xx status other than 429."""

    def __init__(self, message: str, *, status: int) -> None:
        super().__init__(message)
        self.status: int = status


class _RetryableError(Exception):
    """Internal signal: the attempt failed and may be retried."""

    def __init__(self, message: str, *, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after: float | None = retry_after


class AIOHTTPClient:
    """Async HTTP client with retry logic and circuit breaker.

    Implements the HTTPClient protocol. The session is created on
    ``__aenter__`` (or lazily by ``open()``) and closed on exit.

    Example:
        >>> async with AIOHTTPClient(max_retries=2) as client:
        ...     response = await client.post_with_retry(
        ...         "https://push.example.com/v1/send",
        ...         {"title": "Hello"},
        ...     )
    """

    def __init__(
        self,
        *,
        max_retries: int = 3,
        max_backoff_seconds: float = 30.0,
        default_timeout_seconds: float = 10.0,
        jitter_percent: float = 20.0,
        circuit_breaker_threshold: int = 5,
        circuit_breaker_cooldown_seconds: float = 60.0,
    ) -> None:
        self._max_retries: int = max_retries
        self._max_backoff_seconds: float = max_backoff_seconds
        self._default_timeout_seconds: float = default_timeout_seconds
        self._jitter_percent: float = jitter_percent
        self._circuit_breaker_threshold: int = circuit_breaker_threshold
        self._circuit_breaker_cooldown_seconds: float = circuit_breaker_cooldown_seconds
        self._circuit_breakers: dict[str, CircuitBreakerState] = {}
        self._session: aiohttp.ClientSession | None = None
        self._logger: logging.Logger = logging.getLogger(__name__)

    async def __aenter__(self) -> Self:
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.close()

    async def open(self) -> None:
        """Create the underlying session if it does not exist yet."""
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._default_timeout_seconds),
                json_serialize=json.dumps,
            )

    async def close(self) -> None:
        """Close the underlying session."""
        if self._session is not None:
            await self._session.close()
            self._session = None

    def circuit_state(self, url: str) -> CircuitState:
        """Return the breaker state for ``url`` (CLOSED when never seen)."""
        breaker = self._circuit_breakers.get(url)
        return breaker.circuit_state if breaker is not None else CircuitState.CLOSED

    async def post(
        self,
        url: str,
        payload: Mapping[str, object],
        *,
        timeout: float,
    ) -> Response:
        """Send one HTTP POST request with a timeout.

        Raises:
            RuntimeError: If the session has not been opened
            TimeoutError: If the request exceeds ``timeout``
            ValueError: If the URL is malformed
            aiohttp.ClientError: For connection issues
        """
        if self._session is None:
            msg = "HTTP client session not initialized. Use 'async with' or call open()."
            raise RuntimeError(msg)

        self._logger.debug("Initiating POST request to %s", url)

        try:
            async with asyncio.timeout(timeout):
                async with self._session.post(url, json=payload) as response:
                    body: Mapping[str, object]
                    try:
                        body = await response.json()  # pyright: ignore[reportAny]  # aiohttp returns Any
                    except (aiohttp.ContentTypeError, ValueError):
                        body = {}
                    return Response(status=response.status, body=body, headers=dict(response.headers))
        except TimeoutError:
            self._logger.warning("Request to %s timed out after %.1fs", url, timeout)
            raise
        except aiohttp.InvalidURL as exc:
            msg = f"Malformed URL: {url}"
            raise ValueError(msg) from exc

    async def post_with_retry(
        self,
        url: str,
        payload: Mapping[str, object],
    ) -> Response:
        """Send HTTP POST with jittered exponential backoff.

        Retried: timeouts, connection errors, HTTP 429 (honouring
        Retry-After) and 5xx. Not retried: other 4xx responses.

        Raises:
            NonRetryableHTTPError: If the response is a 4xx other than 429
            RuntimeError: If the circuit is open or every attempt failed
        """
        if not self._should_attempt_request(url):
            msg = f"Circuit breaker is OPEN for {url}"
            raise RuntimeError(msg)

        attempts = self._max_retries + 1
        last_error = "no attempt made"
        for attempt in range(attempts):
            try:
                response = await self._attempt(url, payload)
            except _RetryableError as exc:
                last_error = str(exc)
                if attempt + 1 >= attempts:
                    break
                delay = exc.retry_after if exc.retry_after is not None else self._calculate_backoff_delay(attempt)
                delay = min(delay, self._max_backoff_seconds)
                self._logger.warning(
                    "%s, retrying in %.1fs (attempt %d/%d)",
                    last_error,
                    delay,
                    attempt + 1,
                    attempts,
                )
                await asyncio.sleep(delay)
                continue
            except RuntimeError:
                self._record_failure(url)
                raise

            self._record_success(url)
            self._logger.info(
                "Request to %s succeeded (status=%d, attempt=%d)",
                url,
                response.status,
                attempt + 1,
            )
            return response

        self._record_failure(url)
        msg = f"All {attempts} attempts failed for {url}: {last_error}"
        raise RuntimeError(msg)

    async def _attempt(self, url: str, payload: Mapping[str, object]) -> Response:
        try:
            response = await self.post(url, payload, timeout=self._default_timeout_seconds)
        except TimeoutError as exc:
            msg = f"Timeout for {url}"
            raise _RetryableError(msg) from exc
        except aiohttp.ClientError as exc:
            msg = f"Client error for {url}: {exc}"
            raise _RetryableError(msg) from exc

        if 200 <= response.status < 400:
            return response
        if response.status == 429:
            msg = f"Rate limited by {url} (429)"
            raise _RetryableError(msg, retry_after=self._parse_retry_after(response.headers))
        if response.status >= 500:
            msg = f"Server error from {url} (status={response.status})"
            raise _RetryableError(msg)
        msg = f"Client error {response.status} from {url} (non-retryable)"
        raise NonRetryableHTTPError(msg, status=response.status)

    def _calculate_backoff_delay(self, attempt: int) -> float:
        """Return ``min(2**attempt, max)`` seconds with ±jitter_percent applied."""
        base_delay = min(pow(2.0, attempt), self._max_backoff_seconds)
        jitter_factor = 1.0 + random.uniform(
            -self._jitter_percent / 100.0,
            self._jitter_percent / 100.0,
        )
        return min(base_delay * jitter_factor, self._max_backoff_seconds)

    def _parse_retry_after(self, headers: Mapping[str, str]) -> float | None:
        retry_after = headers.get("Retry-After") or headers.get("retry-after")
        if not retry_after:
            return None
        try:
            return float(retry_after)
        except ValueError:
            self._logger.warning("Retry-After header has unsupported format: %s", retry_after)
            return None

    def _should_attempt_request(self, url: str) -> bool:
        breaker = self._circuit_breakers.get(url)
        if breaker is None or breaker.circuit_state is not CircuitState.OPEN:
            return True

        if breaker.last_failure_time is None:
            return True

        elapsed = datetime.now(tz=UTC) - breaker.last_failure_time
        if elapsed.total_seconds() >= self._circuit_breaker_cooldown_seconds:
            breaker.circuit_state = CircuitState.HALF_OPEN
            self._logger.warning("Circuit breaker for %s transitioned to HALF_OPEN", url)
            return True
        return False

    def _record_success(self, url: str) -> None:
        breaker = self._circuit_breakers.get(url)
        if breaker is None:
            return
        previous_state = breaker.circuit_state
        breaker.consecutive_failures = 0
        breaker.circuit_state = CircuitState.CLOSED
        if previous_state is not CircuitState.CLOSED:
            self._logger.info("Circuit breaker for %s transitioned to CLOSED", url)

    def _record_failure(self, url: str) -> None:
        breaker = self._circuit_breakers.setdefault(url, CircuitBreakerState())
        breaker.consecutive_failures += 1
        breaker.last_failure_time = datetime.now(tz=UTC)

        if breaker.circuit_state is CircuitState.HALF_OPEN or (
            breaker.circuit_state is CircuitState.CLOSED
            and breaker.consecutive_failures >= self._circuit_breaker_threshold
        ):
            breaker.circuit_state = CircuitState.OPEN
            self._logger.warning(
                "Circuit breaker for %s transitioned to OPEN (failures=%d, threshold=%d)",
                url,
                breaker.consecutive_failures,
                self._circuit_breaker_threshold,
            )
