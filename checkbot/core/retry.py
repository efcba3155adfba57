import logging
import time
from typing import Callable, Optional, Tuple, Type, TypeVar

T = TypeVar("T")

log = logging.getLogger(__name__)


def with_retry(
    fn: Callable[[], T],
    *,
    retries: int = 3,
    backoff_seconds: float = 0.5,
    retry_on: Optional[Tuple[Type[BaseException], ...]] = (Exception,),
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run fn() with retries and exponential backoff. Re-raises the last error once retries run out."""
    exc_types: Tuple[Type[BaseException], ...] = retry_on or (Exception,)

    for attempt in range(retries + 1):
        try:
            return fn()
        except exc_types as e:
            if attempt >= retries:
                raise
            sleep_s = backoff_seconds * (2 ** attempt)
            log.warning(f"Attempt {attempt + 1} failed ({e}), retrying in {sleep_s:.2f}s")
            sleep(sleep_s)
