"""
Cancellation Support

A small token shared between the CLI signal handlers and the long-running
stages (resource ensuring, compose, health polling). Stages poll the token at their
iteration boundaries and raise OperationCancelled so the orchestrator can
report partial progress instead of leaving the process hung.
"""

import threading
import time
from typing import Any, Callable, List, Optional


class OperationCancelled(Exception):
    """Raised when the caller aborts an operation in progress."""

    def __init__(self, message: str = "Operation cancelled", partial: Optional[List[Any]] = None):
        super().__init__(message)
        self.partial = partial or []


class CancellationToken:
    """
    Cancellation signal with an optional overall deadline.

    The deadline is expressed in seconds from construction and measured on
    the monotonic clock, so wall-clock adjustments never affect it.
    """

    def __init__(
        self,
        deadline_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._event = threading.Event()
        self._clock = clock
        self._reason = "Operation cancelled"
        self._deadline: Optional[float] = None
        if deadline_seconds is not None:
            if deadline_seconds <= 0:
                raise ValueError("Deadline must be positive")
            self._deadline = clock() + deadline_seconds

    def cancel(self, reason: str = "Operation cancelled") -> None:
        self._reason = reason
        self._event.set()

    @property
    def reason(self) -> str:
        return self._reason

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and self._clock() >= self._deadline:
            self._reason = "Overall deadline exceeded"
            return True
        return False

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline, or None when no deadline is set."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - self._clock())

    def wait(self, seconds: float) -> bool:
        """
        Block for up to ``seconds`` or until cancelled.

        Returns:
            True if the token was cancelled while waiting
        """
        remaining = self.remaining()
        if remaining is not None:
            seconds = min(seconds, remaining)
        if seconds > 0:
            self._event.wait(seconds)
        return self.cancelled

    def raise_if_cancelled(self, partial: Optional[List[Any]] = None) -> None:
        if self.cancelled:
            raise OperationCancelled(self._reason, partial=partial)
