"""
Health Poller

Repeatedly probes an HTTP endpoint until it answers with a 2xx status or a
timeout elapses. Used after the stack starts and as a standalone
diagnostic.

Polling rules:
- fixed interval, no backoff
- success returns immediately, without waiting out the interval
- per-request timeout is min(5, interval, remaining time)
- elapsed time is measured on a monotonic clock
- the cancellation token is checked at every iteration boundary, so an
  abort takes effect within one poll interval

A timeout is a terminal result (TIMED_OUT), not an exception: the stack may
simply need more time.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

import requests

from .cancellation import CancellationToken

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30
DEFAULT_POLL_INTERVAL_SECONDS = 2
MAX_REQUEST_TIMEOUT_SECONDS = 5
MIN_REQUEST_TIMEOUT_SECONDS = 0.5
SUPPORTED_METHODS = ("GET", "HEAD")


class HealthStatus(Enum):
    HEALTHY = "healthy"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class HealthCheckConfig:
    """
    Health polling parameters.

    Raises:
        ValueError: On a timeout or interval that is not a positive integer,
            an interval longer than the timeout, or an unsupported method
    """

    url: str
    timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS
    poll_interval_seconds: int = DEFAULT_POLL_INTERVAL_SECONDS
    method: str = "GET"

    def __post_init__(self):
        if not self.url:
            raise ValueError("Health check URL cannot be empty")
        for name in ("timeout_seconds", "poll_interval_seconds"):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool):
                raise ValueError(f"{name} must be a whole number of seconds: {value!r}")
        if self.timeout_seconds <= 0:
            raise ValueError("Health check timeout must be positive")
        if self.poll_interval_seconds <= 0:
            raise ValueError("Poll interval must be positive")
        if self.poll_interval_seconds > self.timeout_seconds:
            raise ValueError(
                f"Poll interval ({self.poll_interval_seconds}s) cannot exceed "
                f"timeout ({self.timeout_seconds}s)"
            )
        method = self.method.upper()
        if method not in SUPPORTED_METHODS:
            raise ValueError(f"Unsupported health check method: {self.method}")
        object.__setattr__(self, "method", method)

    @property
    def request_timeout(self) -> float:
        return float(min(MAX_REQUEST_TIMEOUT_SECONDS, self.poll_interval_seconds))


@dataclass(frozen=True)
class HealthCheckResult:
    status: HealthStatus
    elapsed_seconds: float
    attempts: int
    last_status_code: Optional[int] = None
    last_error: Optional[str] = None

    @property
    def healthy(self) -> bool:
        return self.status is HealthStatus.HEALTHY

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "attempts": self.attempts,
            "last_status_code": self.last_status_code,
            "last_error": self.last_error,
        }


class HealthPoller:
    """
    Fixed-interval HTTP readiness poller.

    Args:
        config: URL and timing parameters
        session: HTTP session; a new requests.Session when omitted
        clock: Monotonic time source, replaceable in tests
        sleep: Used only when no cancellation token is given
    """

    def __init__(
        self,
        config: HealthCheckConfig,
        session: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.session = session or requests.Session()
        self._clock = clock
        self._sleep = sleep

    def probe(self, request_timeout: float) -> Optional[int]:
        """
        Issue one request.

        Returns:
            The HTTP status code

        Raises:
            requests.RequestException: On connection errors and timeouts
        """
        response = self.session.request(
            self.config.method,
            self.config.url,
            timeout=request_timeout,
            allow_redirects=True,
        )
        response.close()
        return response.status_code

    def _pause(self, seconds: float, cancel: Optional[CancellationToken]) -> None:
        if seconds <= 0:
            return
        if cancel is not None:
            cancel.wait(seconds)
        else:
            self._sleep(seconds)

    def poll(self, cancel: Optional[CancellationToken] = None) -> HealthCheckResult:
        """
        Poll until healthy or timed out.

        Raises:
            OperationCancelled: If ``cancel`` fires before a terminal result
        """
        timeout = float(self.config.timeout_seconds)
        interval = float(self.config.poll_interval_seconds)
        start = self._clock()
        attempts = 0
        last_code: Optional[int] = None
        last_error: Optional[str] = None

        logger.info(
            f"Waiting for {self.config.url} (timeout {self.config.timeout_seconds}s, "
            f"interval {self.config.poll_interval_seconds}s)"
        )

        while True:
            if cancel is not None:
                cancel.raise_if_cancelled()

            remaining = timeout - (self._clock() - start)
            request_timeout = max(
                MIN_REQUEST_TIMEOUT_SECONDS, min(self.config.request_timeout, remaining)
            )
            attempts += 1
            try:
                last_code = self.probe(request_timeout)
                last_error = None
            except requests.RequestException as e:
                last_code = None
                last_error = f"{type(e).__name__}: {e}"

            elapsed = self._clock() - start
            if last_code is not None and 200 <= last_code < 300:
                logger.info(f"{self.config.url} is healthy after {elapsed:.1f}s ({attempts} attempts)")
                return HealthCheckResult(HealthStatus.HEALTHY, elapsed, attempts, last_code)

            logger.debug(
                f"Health attempt {attempts} failed: "
                f"{last_error or f'HTTP {last_code}'} ({elapsed:.1f}s elapsed)"
            )

            if elapsed >= timeout:
                break

            self._pause(min(interval, timeout - elapsed), cancel)

            if cancel is not None:
                cancel.raise_if_cancelled()

            elapsed = self._clock() - start
            if elapsed >= timeout:
                break

        elapsed = self._clock() - start
        logger.warning(
            f"{self.config.url} did not become healthy within {self.config.timeout_seconds}s "
            f"({attempts} attempts, last: {last_error or f'HTTP {last_code}'})"
        )
        return HealthCheckResult(HealthStatus.TIMED_OUT, elapsed, attempts, last_code, last_error)
