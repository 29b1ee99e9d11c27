import logging
import time
from typing import Callable, TypeVar

from school_library.errors import TransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def call_with_retry(fn: Callable[[], T], attempts: int = 3, backoff: float = 0.1) -> T:
    """Call ``fn``, retrying only :class:`TransientError` with exponential backoff.

    Every other error is raised unchanged on the first occurrence. The last
    transient error is re-raised once the attempts are used up.
    """
    attempts = max(1, attempts)
    for attempt in range(attempts):
        try:
            return fn()
        except TransientError as e:
            if attempt == attempts - 1:
                logger.error(f"Giving up after {attempts} attempts: {e.message}")
                raise
            wait_time = backoff * (2 ** attempt)
            logger.warning(f"Transient failure ({e.message}); retrying in {wait_time:.2f}s")
            time.sleep(wait_time)
    raise RuntimeError("unreachable")
