"""Bounded exponential backoff built on tenacity."""

import logging
from dataclasses import dataclass
from typing import Callable, Tuple, Type, TypeVar

from tenacity import RetryCallState, Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from puzzle_forge.config import Settings
from puzzle_forge.exceptions import TransientStoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry configuration.

    max_attempts is the total number of tries, so 3 means try, retry, retry.
    """

    max_attempts: int = 3
    base_delay: float = 0.1  # seconds
    max_delay: float = 2.0  # seconds

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    @classmethod
    def for_store(cls, settings: Settings) -> "RetryPolicy":
        """Policy for transient store operations."""
        return cls(
            max_attempts=settings.STORE_RETRY_ATTEMPTS,
            base_delay=settings.STORE_RETRY_BASE_DELAY,
            max_delay=settings.STORE_RETRY_MAX_DELAY,
        )

    @classmethod
    def for_failure_write(cls, settings: Settings) -> "RetryPolicy":
        """Policy for recording a job failure on the puzzle record."""
        return cls(
            max_attempts=settings.FAILURE_WRITE_ATTEMPTS,
            base_delay=settings.STORE_RETRY_BASE_DELAY,
            max_delay=settings.STORE_RETRY_MAX_DELAY,
        )

    def retrying(
        self,
        description: str,
        retry_on: Tuple[Type[BaseException], ...] = (TransientStoreError,),
        reraise: bool = True,
    ) -> Retrying:
        """Build a tenacity Retrying controller for this policy.

        Args:
            description: What is being retried, for log messages.
            retry_on: Exception types that trigger another attempt.
            reraise: Re-raise the last error when attempts run out instead of RetryError.
        """

        def log_retry(state: RetryCallState) -> None:
            error = state.outcome.exception() if state.outcome else None
            logger.warning(
                "%s failed (attempt %d/%d): %s", description, state.attempt_number, self.max_attempts, error
            )

        return Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.base_delay, max=self.max_delay),
            retry=retry_if_exception_type(retry_on),
            before_sleep=log_retry,
            reraise=reraise,
        )

    def call(self, operation: Callable[[], T], description: str) -> T:
        """Run operation, retrying transient store errors.

        Raises:
            TransientStoreError: When every attempt failed.
        """
        return self.retrying(description)(operation)
