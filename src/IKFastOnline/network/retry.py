"""Network retry policies: Tenacity-based backoff for idempotent API reads.

Reads against the job API (run status, run listings, artifact listings,
archive downloads) are safe to repeat, so they are wrapped in an
``AsyncRetrying`` policy:

- Transport failures (:class:`~IKFastOnline.errors.NetworkError`) are retried
- Rate-limit and server errors flagged ``retryable`` are retried
- Everything else (401, 404, 422, ...) propagates on the first attempt

Dispatch requests are never passed through these policies; a rejected trigger
is reported to the caller, who decides whether to re-trigger.

Example:
    >>> policy = create_read_retry_policy(RetrySettings(max_attempts=3))
    >>> async for attempt in policy:
    ...     with attempt:
    ...         response = await client.get("/repos/o/r/actions/runs/1")
"""

from __future__ import annotations

import logging

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    stop_after_delay,
    wait_random_exponential,
)

from ..errors import RemoteAPIError
from ..settings import RetrySettings

logger = logging.getLogger(__name__)


def is_retryable_error(exc: BaseException) -> bool:
    """Return ``True`` when ``exc`` is a transient remote failure."""

    return isinstance(exc, RemoteAPIError) and exc.retryable


def create_read_retry_policy(settings: RetrySettings) -> AsyncRetrying:
    """Create the Tenacity policy used for idempotent GET requests.

    Args:
        settings: Attempt budget, backoff start/cap, and overall deadline.

    Returns:
        Configured ``AsyncRetrying`` that re-raises the last error once the
        budget is exhausted.
    """

    return AsyncRetrying(
        stop=stop_after_attempt(settings.max_attempts) | stop_after_delay(settings.max_delay_sec),
        wait=wait_random_exponential(multiplier=settings.backoff_base, max=settings.backoff_max),
        retry=retry_if_exception(is_retryable_error),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )


__all__ = ["create_read_retry_policy", "is_retryable_error"]
