"""
Retry with a fixed delay for remote store operations.

Every remote primitive goes through call_with_retries(): up to `attempts`
tries with `delay` seconds between failed tries. The first success returns
immediately. When all attempts fail the caller gets `failure` back instead
of an exception.
"""

import logging
import time
from typing import Any, Callable, Tuple, Type


logger = logging.getLogger(__name__)

DEFAULT_ATTEMPTS = 3
DEFAULT_DELAY_SECONDS = 10


def call_with_retries(
    operation: Callable[[], Any],
    attempts: int = DEFAULT_ATTEMPTS,
    delay: float = DEFAULT_DELAY_SECONDS,
    failure: Any = None,
    description: str = 'operation',
    no_retry: Tuple[Type[BaseException], ...] = (),
    sleep: Callable[[float], None] = time.sleep
) -> Any:
    """
    Call operation until it succeeds or the attempts run out.

    Args:
        operation: Zero-argument callable to run
        attempts: Maximum number of tries (at least one is made)
        delay: Seconds to wait after a failed try before the next one
        failure: Value returned when every attempt failed
        description: Name of the operation for log lines
        no_retry: Exception types that are definitive answers; they
            propagate immediately without further attempts
        sleep: Sleep function (replaceable in tests)

    Returns:
        The operation's result, or `failure` after exhausting all attempts
    """
    attempts = max(int(attempts), 1)

    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except no_retry:
            raise
        except Exception as e:
            logger.warning(f"{description} failed (attempt {attempt}/{attempts}): {e}")
            if attempt < attempts:
                sleep(delay)

    logger.error(f"{description} failed after {attempts} attempts")
    return failure
