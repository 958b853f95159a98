"""
Bounded retry with exponential backoff for storage operations.

Only transient database failures are retried. When retries are exhausted
the last error is surfaced as ``StorageError``.
"""

import logging
import random
import time
from typing import Callable, Tuple, Type, TypeVar

from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError as SAIntegrityError
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from ..exceptions import StorageError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_ERRORS: Tuple[Type[BaseException], ...] = (OperationalError, SAIntegrityError)


class RetryPolicy(BaseModel):
    """Retry policy configuration"""

    max_retries: int = 3
    base_delay: float = 0.1  # seconds
    max_delay: float = 2.0  # seconds
    exponential_base: float = 2.0
    jitter: bool = False

    def delay_for(self, attempt: int) -> float:
        """Calculate delay for exponential backoff"""
        delay = min(self.base_delay * (self.exponential_base**attempt), self.max_delay)
        if self.jitter:
            delay *= 0.5 + random.random() / 2
        return delay


NO_RETRY = RetryPolicy(max_retries=0, base_delay=0.0)


def call_with_retry(
    operation: Callable[[], T],
    policy: RetryPolicy,
    action: str,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Run a storage operation, retrying transient failures.

    Args:
        operation: Zero-argument callable performing one full transaction
        policy: Retry policy
        action: Short description used in logs and errors
        sleep: Sleep function (injectable for tests)

    Returns:
        The operation's return value

    Raises:
        StorageError: If retries are exhausted or a non-transient database
            error occurs
    """
    for attempt in range(policy.max_retries + 1):
        try:
            return operation()
        except RETRYABLE_ERRORS as e:
            if attempt < policy.max_retries:
                delay = policy.delay_for(attempt)
                logger.warning(
                    "Storage %s failed (attempt %d/%d), retrying in %.2fs: %s",
                    action,
                    attempt + 1,
                    policy.max_retries + 1,
                    delay,
                    type(e).__name__,
                )
                sleep(delay)
                continue
            logger.error("Storage %s failed after %d attempts", action, attempt + 1)
            raise StorageError(f"Storage {action} failed after {attempt + 1} attempts: {e}") from e
        except SQLAlchemyError as e:
            logger.error("Storage %s failed: %s", action, type(e).__name__)
            raise StorageError(f"Storage {action} failed: {e}") from e
    raise StorageError(f"Storage {action} failed")  # pragma: no cover
