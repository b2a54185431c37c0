"""
Retry configuration for provider HTTP calls.

Tenacity-based exponential backoff shared by every adapter:
- Retry on 429/5xx (httpx.HTTPStatusError), connection errors and timeouts
- Fail fast on 400/401/404 (the adapter raises a non-retryable error first)

The orchestrator's per-call deadline caps the total time spent here, so a
slow retry sequence ends up recorded as a timed-out result.
"""

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

# Total attempts = 1 initial + 2 retries
MAX_ATTEMPTS = 3

MIN_WAIT_SECONDS = 1
MAX_WAIT_SECONDS = 8

RETRY_STATUS_CODES = frozenset([429, 500, 502, 503, 504])

# Permanent failures: bad key, malformed request, unknown model/endpoint
NO_RETRY_STATUS_CODES = frozenset([400, 401, 403, 404])

# Per HTTP attempt; the orchestrator enforces the per-call deadline on top
REQUEST_TIMEOUT = 30.0


def create_retry_decorator():
    """
    Create a tenacity retry decorator for provider API calls.

    Note:
        The caller checks NO_RETRY_STATUS_CODES and raises a non-httpx
        exception for permanent errors so they are not retried. After the
        last attempt the original exception is re-raised.
    """
    return retry(
        stop=stop_after_attempt(MAX_ATTEMPTS),
        wait=wait_exponential(
            multiplier=1,
            min=MIN_WAIT_SECONDS,
            max=MAX_WAIT_SECONDS,
        ),
        retry=retry_if_exception_type(
            (
                httpx.HTTPStatusError,
                httpx.ConnectError,
                httpx.TimeoutException,
            )
        ),
        reraise=True,
    )
