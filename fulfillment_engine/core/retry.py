"""
Caller-side retries for transient engine failures.

Only VersionConflict and Contended are retried. Every other error surfaces
on the first attempt.
"""

from typing import Callable, TypeVar

import structlog
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .errors import Contended, VersionConflict

logger = structlog.get_logger(__name__)

RETRYABLE_ERRORS = (VersionConflict, Contended)

T = TypeVar("T")


def _log_retry(retry_state: RetryCallState) -> None:
    logger.warning(
        "Retrying after transient failure",
        attempt=retry_state.attempt_number,
        error=str(retry_state.outcome.exception()),
    )


def run_with_retries(
    operation: Callable[..., T],
    *args,
    max_attempts: int = 3,
    min_wait: float = 0.05,
    max_wait: float = 1.0,
    **kwargs,
) -> T:
    """Call an engine operation, retrying conflicts with exponential backoff.

    Args:
        operation: Engine method to call
        max_attempts: Total attempts including the first
        min_wait: Shortest backoff in seconds
        max_wait: Longest backoff in seconds

    Returns:
        Whatever the operation returns

    Raises:
        VersionConflict, Contended: If every attempt failed
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")
    retrying = Retrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=min_wait, min=min_wait, max=max_wait),
        retry=retry_if_exception_type(RETRYABLE_ERRORS),
        before_sleep=_log_retry,
        reraise=True,
    )
    return retrying(operation, *args, **kwargs)
