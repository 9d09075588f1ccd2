# utils/retry.py
"""
Retry with exponential backoff and jitter.

Every outbound call in the pipeline goes through `execute` with one of the
presets below (or a policy derived from them with `RetryPolicy.with_options`).
"""

import random
import time
from dataclasses import dataclass, replace
from typing import Callable, Optional, TypeVar

import requests

from storyflow.core.exceptions import ContainerNotReadyError, ExternalServiceError
from storyflow.core.logger import logger

T = TypeVar("T")

RetryObserver = Callable[[int, BaseException, float], None]

_RETRYABLE_STATUS = {429, 500, 502, 503, 504}
_RETRYABLE_MESSAGES = (
    "network",
    "timeout",
    "timed out",
    "econnreset",
    "connection reset",
    "rate limit",
    "too many requests",
    "container is not ready",
)


def is_retryable_error(error: BaseException) -> bool:
    """
    Classify an error as transient.

    Retryable: network/timeout errors, HTTP 429/5xx, "container not ready".
    Not retryable: auth failures, content-policy rejections, malformed input.
    """
    if isinstance(error, ExternalServiceError):
        if error.retryable:
            return True
        return error.status_code in _RETRYABLE_STATUS

    if isinstance(error, (requests.ConnectionError, requests.Timeout)):
        return True

    if isinstance(error, requests.HTTPError):
        response = error.response
        return response is not None and response.status_code in _RETRYABLE_STATUS

    if isinstance(error, (ConnectionError, TimeoutError)):
        return True

    if isinstance(error, (ValueError, TypeError, KeyError)):
        return False

    message = str(error).lower()
    return any(term in message for term in _RETRYABLE_MESSAGES)


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff parameters plus the retry predicate and an observer hook."""

    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    backoff_factor: float = 2.0
    jitter: float = 0.1
    is_retryable: Callable[[BaseException], bool] = is_retryable_error
    on_retry: Optional[RetryObserver] = None

    def compute_delay(self, attempt: int) -> float:
        """Delay (seconds) after the given 1-based failed attempt."""
        delay = self.initial_delay * (self.backoff_factor ** (attempt - 1))
        jitter = delay * self.jitter * random.uniform(-1, 1)
        return max(0.0, min(delay + jitter, self.max_delay))

    def with_options(self, **changes) -> "RetryPolicy":
        return replace(self, **changes)


DEFAULT_POLICY = RetryPolicy()

API_POLICY = RetryPolicy(
    max_attempts=5,
    initial_delay=2.0,
    max_delay=60.0,
)


def _is_container_not_ready(error: BaseException) -> bool:
    return isinstance(error, ContainerNotReadyError)


# Publish step of the two-phase protocol: only "container not ready" is worth waiting for
PUBLISHING_POLICY = RetryPolicy(
    max_attempts=5,
    initial_delay=3.0,
    max_delay=15.0,
    is_retryable=_is_container_not_ready,
)


def execute(
    operation: Callable[[], T],
    policy: Optional[RetryPolicy] = None,
    *,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "operation"
) -> T:
    """
    Run `operation` until it succeeds or the policy gives up.

    The last error is re-raised unchanged once attempts are exhausted or the
    error is not retryable. The observer runs before each sleep, so it fires
    exactly once per retried failure.
    """
    policy = policy or DEFAULT_POLICY
    attempt = 1

    while True:
        try:
            return operation()
        except Exception as error:
            if attempt >= policy.max_attempts or not policy.is_retryable(error):
                raise

            delay = policy.compute_delay(attempt)
            logger.warning(
                f"{label} attempt {attempt}/{policy.max_attempts} failed, "
                f"retrying in {delay:.2f}s: {error}"
            )
            if policy.on_retry is not None:
                policy.on_retry(attempt, error, delay)

            sleep(delay)
            attempt += 1


__all__ = [
    "API_POLICY",
    "DEFAULT_POLICY",
    "PUBLISHING_POLICY",
    "RetryPolicy",
    "execute",
    "is_retryable_error",
]
