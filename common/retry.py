"""
Bounded retry and lease helpers shared by the compositor, the watchdog and the I/O layers.
"""
import time
import uuid
from typing import Callable, Optional, Tuple, Type, TypeVar

import structlog

from common.config import RETRY_ATTEMPTS, RETRY_DELAY_SECONDS
from common.errors import TransientIOError

log = structlog.get_logger()

T = TypeVar("T")


def retry(
    fn: Callable[[], T],
    attempts: int = RETRY_ATTEMPTS,
    delay: float = RETRY_DELAY_SECONDS,
    label: str = "",
    retry_on: Tuple[Type[BaseException], ...] = (TransientIOError,),
    sleep: Optional[Callable[[float], None]] = None,
) -> T:
    """
    Call `fn` up to `attempts` times, waiting `delay * attempt` seconds between tries.
    Only exceptions in `retry_on` are retried; the last one is re-raised.
    """
    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except retry_on as exc:
            if attempt == attempts:
                log.error("retry_exhausted", label=label, attempts=attempts, err=str(exc))
                raise
            wait = delay * attempt
            log.warning("retry_attempt_failed", label=label, attempt=attempt,
                        attempts=attempts, wait=wait, err=str(exc))
            (sleep or time.sleep)(wait)
    raise AssertionError("unreachable")


def new_lease_owner() -> str:
    return uuid.uuid4().hex


def lease_expiry(now: float, seconds: float) -> float:
    return now + seconds


def lease_expired(expires_at: Optional[float], now: float) -> bool:
    return expires_at is None or expires_at <= now
