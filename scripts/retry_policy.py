#!/usr/bin/env python3
"""Single-retry policy for transient Gmail API failures.

Only rate limiting, server-side failures and transport timeouts/resets are
worth a second attempt. The retry happens at most once, after a fixed pause.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional, TypeVar

import requests

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_BACKOFF_SECONDS = 2.0
RETRYABLE_FRAGMENTS = ("timeout", "timed out", "deadline exceeded", "connection reset")


def is_retryable_error(err: Optional[BaseException]) -> bool:
    if err is None:
        return False

    # Errors that end the whole run are never retried.
    if getattr(err, "fatal", False):
        return False

    status_code = getattr(err, "status_code", None)
    if status_code is not None:
        return status_code == 429 or status_code >= 500

    if _is_transport_error(err) or _is_transport_error(err.__cause__):
        return True

    description = str(err).lower()
    return any(fragment in description for fragment in RETRYABLE_FRAGMENTS)


def call_with_single_retry(
    operation: Callable[[int], T],
    describe: str,
    backoff_seconds: float = DEFAULT_BACKOFF_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``operation(attempt)`` and retry it once if the failure is transient.

    ``attempt`` is 0 for the first call and 1 for the retry, so callers can
    widen their timeout on the second try.
    """
    try:
        return operation(0)
    except Exception as err:
        if not is_retryable_error(err):
            raise
        logger.debug("Retrying %s after transient error: %s", describe, err)

    sleep(backoff_seconds)
    return operation(1)


def _is_transport_error(err: Optional[BaseException]) -> bool:
    return isinstance(err, (requests.Timeout, requests.ConnectionError))
