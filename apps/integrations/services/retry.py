"""
Retry logic with exponential backoff and jitter for identity provider calls.
"""
import random
import time

from apps.core.exceptions import OperationCancelled


class RetryStrategy:
    """
    Bounded retry policy.

    Only errors flagged ``is_transient`` are retried, and the wait between
    attempts can be interrupted through a cancellation event.
    """

    def __init__(self,
                 max_attempts: int = 3,
                 base_delay: float = 0.5,
                 max_delay: float = 8.0,
                 exponential_base: float = 2.0,
                 jitter: bool = True):
        """
        Args:
            max_attempts: Total attempts including the first one
            base_delay: Delay before the first retry, in seconds
            max_delay: Upper bound for any single delay
            exponential_base: Growth factor between retries
            jitter: Whether to add ±25% random jitter to delays
        """
        self.max_attempts = max(1, max_attempts)
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter

    def calculate_delay(self, attempt: int) -> float:
        """Delay to wait after the given zero-based attempt failed."""
        delay = self.base_delay * (self.exponential_base ** attempt)
        delay = min(delay, self.max_delay)

        if self.jitter and delay > 0:
            jitter_range = delay * 0.25
            delay += random.uniform(-jitter_range, jitter_range)

        return max(0.0, delay)

    def should_retry(self, attempt: int, error: Exception) -> bool:
        if attempt + 1 >= self.max_attempts:
            return False
        return bool(getattr(error, 'is_transient', False))

    def wait(self, attempt: int, cancel_event=None):
        """
        Sleep before the next attempt.

        Raises:
            OperationCancelled: the event was set while waiting
        """
        delay = self.calculate_delay(attempt)
        if cancel_event is None:
            time.sleep(delay)
        elif cancel_event.wait(delay):
            raise OperationCancelled("Operation cancelled while waiting to retry")
