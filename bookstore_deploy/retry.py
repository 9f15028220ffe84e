"""
Bounded retry with exponential backoff.
"""

import logging
import time
from typing import Any, Callable

logger = logging.getLogger(__name__)


def _always_retry(error: Exception) -> bool:
    return True


class RetryExhaustedError(Exception):
    """Raised when every attempt failed with a retryable error."""

    def __init__(self, description: str, attempts: int, last_error: Exception):
        super().__init__(f"{description} failed after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class RetryPolicy:
    """Retries a call with ``base_delay * 2**attempt`` second delays between attempts."""

    def __init__(self, max_attempts: int = 5, base_delay: float = 1.0,
                 is_retryable: Callable[[Exception], bool] = _always_retry):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.is_retryable = is_retryable

    def backoff(self, attempt: int) -> float:
        """Delay after the given zero-based attempt."""
        return self.base_delay * (2 ** attempt)

    def execute(self, func: Callable[..., Any], *args,
                description: str = "operation", **kwargs) -> Any:
        """Call ``func`` until it succeeds.

        Args:
            func: Callable to invoke.
            description: Name used in log messages.

        Returns:
            Whatever ``func`` returns.

        Raises:
            Exception: The original error when it is not retryable.
            RetryExhaustedError: When every attempt failed.
        """
        last_error = None

        for attempt in range(self.max_attempts):
            try:
                return func(*args, **kwargs)
            except Exception as e:
                last_error = e

                if not self.is_retryable(e):
                    logger.error(f"{description} failed with a non-retryable error: {e}")
                    raise

                if attempt < self.max_attempts - 1:
                    delay = self.backoff(attempt)
                    logger.warning(
                        f"{description} attempt {attempt + 1}/{self.max_attempts} failed: {e}. "
                        f"Retrying in {delay:g}s"
                    )
                    time.sleep(delay)
                else:
                    logger.error(f"All {self.max_attempts} attempts of {description} failed")

        raise RetryExhaustedError(description, self.max_attempts, last_error)
