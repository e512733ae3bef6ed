"""
Rate-limit retry for model calls.

Rate limits are recognised by message content ("429", "quota", "Resource
exhausted") because they surface in several shapes. The wait before each
retry is:

- the server's structured retry delay, when the error carries one,
- else a delay parsed from the error text ("retry in 7.5s"),
- else linear backoff of 10s per attempt,

rounded up, plus a 2s margin.
"""

import logging
import math
import re
import time
from collections.abc import Callable
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 5
BACKOFF_STEP = 10
RETRY_MARGIN = 2

_RATE_LIMIT_MARKERS = ("429", "quota", "resource exhausted", "resource_exhausted")
_RETRY_DELAY_RE = re.compile(r"retry.*?(\d+(?:\.\d+)?)s", re.IGNORECASE | re.DOTALL)


def is_rate_limit_error(error: BaseException) -> bool:
    if getattr(error, "status_code", None) == 429:
        return True
    message = str(error).lower()
    return any(marker in message for marker in _RATE_LIMIT_MARKERS)


def compute_retry_delay(error: BaseException, attempt: int) -> int:
    """
    Seconds to wait before retry number attempt + 1 (attempt is 0-based).

    >>> compute_retry_delay(Exception("429: Please retry in 7.5s."), 0)
    10
    """
    retry_after = getattr(error, "retry_after", None)
    if retry_after is not None:
        return math.ceil(retry_after) + RETRY_MARGIN

    match = _RETRY_DELAY_RE.search(str(error))
    if match:
        return math.ceil(float(match.group(1))) + RETRY_MARGIN
    return BACKOFF_STEP * (attempt + 1)


def call_with_rate_limit_retry(
    fn: Callable[[], T],
    max_retries: int = DEFAULT_MAX_RETRIES,
    sleep: Callable[[float], None] = time.sleep,
    on_retry: Callable[[int, int], None] | None = None,
    should_stop: Callable[[], bool] | None = None,
) -> T:
    """
    Call fn, retrying on rate-limit errors up to max_retries times.

    Other errors, and the rate-limit error after the last retry, propagate.
    on_retry(wait_seconds, attempt_number) is called before each wait. When
    should_stop() returns True after a wait, the rate-limit error propagates
    without another attempt.
    """
    attempt = 0
    while True:
        try:
            return fn()
        except Exception as e:
            if not is_rate_limit_error(e) or attempt >= max_retries:
                raise
            wait = compute_retry_delay(e, attempt)
            attempt += 1
            logger.warning(f"Rate limited. Retrying in {wait}s ({attempt}/{max_retries})")
            if on_retry is not None:
                on_retry(wait, attempt)
            sleep(wait)
            if should_stop is not None and should_stop():
                logger.info("Retry abandoned after wait")
                raise
