import logging
import time
from functools import wraps
from typing import Callable, Optional, TypeVar

from agora.configs.base import RetryConfig
from agora.exceptions import RateLimited

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(attempt: int, config: RetryConfig, retry_after: Optional[float] = None) -> float:
    """Delay before retry number ``attempt`` (0-based), capped at ``max_delay``."""
    if retry_after is not None:
        return min(max(retry_after, 0.0), config.max_delay)
    return min(config.base_delay * (config.backoff_factor ** attempt), config.max_delay)


def call_with_retry(
    func: Callable[..., T],
    *args,
    config: Optional[RetryConfig] = None,
    sleep: Callable[[float], None] = time.sleep,
    **kwargs,
) -> T:
    """Call ``func``, retrying on :class:`RateLimited` up to ``config.max_attempts`` times.

    Any other exception propagates immediately.
    """
    config = config or RetryConfig()
    last_exception: Optional[RateLimited] = None
    for attempt in range(config.max_attempts):
        try:
            return func(*args, **kwargs)
        except RateLimited as e:
            last_exception = e
            if attempt < config.max_attempts - 1:
                delay = backoff_delay(attempt, config, e.retry_after)
                logger.warning(
                    "Rate limited (attempt %d/%d): %s. Retrying in %.2fs",
                    attempt + 1, config.max_attempts, e.message, delay,
                )
                sleep(delay)

    # All attempts were rate limited
    raise last_exception  # type: ignore[misc]


def retry_on_rate_limit(config: Optional[RetryConfig] = None):
    """Decorator form of :func:`call_with_retry`."""
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args, **kwargs) -> T:
            return call_with_retry(func, *args, config=config, **kwargs)
        return wrapper
    return decorator
