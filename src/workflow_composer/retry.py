"""Retry with exponential backoff for execution-engine calls.

Objective:
    Retry transient engine failures (timeouts, connection errors, 5xx, 429)
    a bounded number of times, fail fast on everything else, and honour a
    caller-supplied cancellation signal or deadline.

Usage:
    policy = RetryPolicy(max_retries=3, base_delay=0.5, max_delay=8.0)
    external_id = call_with_retry(
        "create_graph",
        lambda timeout: engine.create_graph(graph, timeout=timeout),
        policy,
        cancel=cancel_event,
        deadline=time.monotonic() + 30,
    )

Operational notes:
    - Backoff sleeps wait on the cancellation event, so cancelling wakes the
      caller immediately.
    - Per-request timeouts are clamped to the time left before the deadline.
"""

import logging
import random
import threading
import time
from typing import Callable, Optional, TypeVar

from pydantic import BaseModel, Field

from .errors import (
    DeploymentCancelledError,
    DeploymentFailedError,
    EngineRequestError,
    TransientEngineError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryPolicy(BaseModel):
    """Exponential backoff with +/- jitter.

    Attributes:
        max_retries: Retries after the first attempt.
        base_delay: Delay before the first retry, in seconds.
        max_delay: Upper bound for a single delay.
        jitter_range: Fraction of the delay added or removed at random.
    """

    max_retries: int = Field(default=3, ge=0)
    base_delay: float = Field(default=0.5, ge=0)
    max_delay: float = Field(default=8.0, ge=0)
    jitter_range: float = Field(default=0.5, ge=0, le=1)

    def compute_delay(self, attempt: int) -> float:
        """Compute the delay before retry number ``attempt`` (1-based)."""
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        if self.jitter_range and delay > 0:
            jitter_amount = delay * self.jitter_range
            delay = max(0.0, delay + random.uniform(-jitter_amount, jitter_amount))
        return round(delay, 3)


def _remaining(deadline: Optional[float]) -> Optional[float]:
    if deadline is None:
        return None
    return deadline - time.monotonic()


def call_with_retry(
    operation: str,
    func: Callable[[Optional[float]], T],
    policy: RetryPolicy,
    cancel: Optional[threading.Event] = None,
    deadline: Optional[float] = None,
    timeout: Optional[float] = None,
) -> T:
    """
    Call ``func`` until it succeeds, a non-transient error occurs or retries
    run out.

    Args:
        operation: Name used in logs and error messages.
        func: Callable receiving the per-request timeout in seconds.
        policy: Retry policy.
        cancel: Optional cancellation signal.
        deadline: Optional absolute :func:`time.monotonic` deadline.
        timeout: Default per-request timeout.

    Returns:
        The value returned by ``func``.

    Raises:
        DeploymentCancelledError: If cancelled or the deadline passed.
        DeploymentFailedError: On a non-transient error, or when retries are
            exhausted (``cause`` holds the last error).
    """
    waiter = cancel or threading.Event()
    attempt = 0

    while True:
        attempt += 1
        if cancel is not None and cancel.is_set():
            raise DeploymentCancelledError(f"{operation} cancelled", attempts=attempt - 1)

        remaining = _remaining(deadline)
        if remaining is not None and remaining <= 0:
            raise DeploymentCancelledError(
                f"{operation} deadline exceeded", attempts=attempt - 1
            )

        request_timeout = timeout
        if remaining is not None:
            request_timeout = remaining if timeout is None else min(timeout, remaining)

        try:
            return func(request_timeout)
        except EngineRequestError as e:
            raise DeploymentFailedError(
                f"{operation} rejected by execution engine: {e}",
                cause=e,
                retryable=False,
                attempts=attempt,
            ) from e
        except TransientEngineError as e:
            if attempt > policy.max_retries:
                logger.error("%s failed after %s attempt(s): %s", operation, attempt, e)
                raise DeploymentFailedError(
                    f"{operation} failed after {attempt} attempt(s): {e}",
                    cause=e,
                    retryable=True,
                    attempts=attempt,
                ) from e

            delay = policy.compute_delay(attempt)
            logger.warning(
                "%s transient failure (attempt %s/%s), retrying in %.2fs: %s",
                operation,
                attempt,
                policy.max_retries + 1,
                delay,
                e,
            )

            remaining = _remaining(deadline)
            if remaining is not None and delay >= remaining:
                raise DeploymentCancelledError(
                    f"{operation} deadline exceeded while backing off",
                    cause=e,
                    retryable=True,
                    attempts=attempt,
                ) from e

            if waiter.wait(delay) and cancel is not None:
                raise DeploymentCancelledError(
                    f"{operation} cancelled", cause=e, retryable=True, attempts=attempt
                ) from e
