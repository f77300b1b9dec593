from __future__ import annotations

import logging
import time
from typing import Callable, TypeVar

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from imaginaryverse.core.errors import StoreHttpError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_retryable_status(exc: BaseException) -> bool:
    if not isinstance(exc, StoreHttpError):
        return False
    return exc.status == 429 or 500 <= exc.status < 600


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
    logger.warning(
        "retrying store call after %s (attempt %s, delay %.2fs)",
        exc,
        retry_state.attempt_number,
        delay,
    )


def call_with_retry(
    fn: Callable[[], T],
    *,
    retries: int = 3,
    base_delay: float = 0.5,
    retry_on: Callable[[BaseException], bool] = is_retryable_status,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``fn`` and retry up to ``retries`` extra times when ``retry_on`` accepts the error.

    Delay grows as ``base_delay * 2**attempt`` plus up to 250ms of jitter.
    The last error is re-raised once attempts run out.
    """
    retrying = Retrying(
        stop=stop_after_attempt(retries + 1),
        wait=wait_exponential(multiplier=base_delay) + wait_random(0, 0.25),
        retry=retry_if_exception(retry_on),
        before_sleep=_log_retry,
        sleep=sleep,
        reraise=True,
    )
    return retrying(fn)
