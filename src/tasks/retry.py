"""
Retry policy consulted after every capability failure.

Usage:
    policy = RetryPolicy(base_delay=1.0, max_delay=60.0)
    decision = policy.decide(task, error)
    if decision.should_retry:
        ...  # re-queue after decision.delay_seconds
"""
from dataclasses import dataclass
from typing import Optional

from ..core.config import settings
from .models import Task


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of a retry consultation: retry after a delay, or fail."""
    should_retry: bool
    delay_seconds: float = 0.0
    reason: str = ""

    @classmethod
    def retry(cls, delay_seconds: float) -> "RetryDecision":
        return cls(should_retry=True, delay_seconds=delay_seconds)

    @classmethod
    def fail(cls, reason: str) -> "RetryDecision":
        return cls(should_retry=False, reason=reason)


class RetryPolicy:
    """Exponential backoff bounded by the task's own retry budget."""

    def __init__(
        self,
        base_delay: Optional[float] = None,
        max_delay: Optional[float] = None,
        multiplier: float = 2.0,
    ):
        """
        Initialize the policy.

        Args:
            base_delay: Delay before the first retry, in seconds
            max_delay: Upper bound for any single delay, in seconds
            multiplier: Exponential growth factor
        """
        self.base_delay = settings.retry_base_delay if base_delay is None else base_delay
        self.max_delay = settings.retry_max_delay if max_delay is None else max_delay
        self.multiplier = multiplier

        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("Backoff delays must be non-negative")

    def backoff(self, attempt: int) -> float:
        """Delay before retrying after a failure at `attempt` (0-based)."""
        return min(self.base_delay * (self.multiplier ** attempt), self.max_delay)

    def decide(self, task: Task, error: Exception) -> RetryDecision:
        """Decide whether a failed step of `task` is retried."""
        config = task.publish_config

        if not config.auto_retry:
            return RetryDecision.fail(f"auto retry disabled: {error}")

        if getattr(error, "retryable", True) is False:
            return RetryDecision.fail(f"non-retryable error: {error}")

        if task.attempt >= config.max_retries:
            return RetryDecision.fail(
                f"retries exhausted after {task.attempt} attempt(s): {error}"
            )

        return RetryDecision.retry(self.backoff(task.attempt))
