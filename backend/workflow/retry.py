"""Retry policies for optimistic-concurrency conflicts.

Only errors flagged ``retryable`` (or named in ``retryable_errors``) are
retried. Failed steps are never retried automatically; this module only
re-runs an operation whose save lost a race.

Usage:
    strategy = RetryStrategy.exponential(max_retries=3, base_delay=0.05)
    step = await execute_with_retry(runtime_operation, strategy, step_id, actor)
"""

import asyncio
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

import structlog

logger = structlog.get_logger(__name__)


class RetryPolicy(str, Enum):
    """Available retry policies."""
    FIXED = "fixed"
    EXPONENTIAL = "exponential"
    NONE = "none"


@dataclass
class RetryStrategy:
    """Configurable retry strategy for conflicting writes."""
    policy: RetryPolicy
    max_retries: int = 3
    base_delay: float = 0.05
    max_delay: float = 1.0
    jitter: bool = True
    jitter_range: float = 0.5
    retryable_errors: list[str] = field(default_factory=list)

    @classmethod
    def none(cls) -> 'RetryStrategy':
        """No retries, fail immediately."""
        return cls(policy=RetryPolicy.NONE, max_retries=0)

    @classmethod
    def fixed(
        cls,
        max_retries: int = 3,
        delay: float = 0.1,
        retryable_errors: Optional[list[str]] = None,
    ) -> 'RetryStrategy':
        return cls(
            policy=RetryPolicy.FIXED,
            max_retries=max_retries,
            base_delay=delay,
            jitter=False,
            retryable_errors=list(retryable_errors or []),
        )

    @classmethod
    def exponential(
        cls,
        max_retries: int = 3,
        base_delay: float = 0.05,
        max_delay: float = 1.0,
        jitter: bool = True,
        retryable_errors: Optional[list[str]] = None,
    ) -> 'RetryStrategy':
        """Exponential backoff with optional jitter."""
        return cls(
            policy=RetryPolicy.EXPONENTIAL,
            max_retries=max_retries,
            base_delay=base_delay,
            max_delay=max_delay,
            jitter=jitter,
            retryable_errors=list(retryable_errors or []),
        )

    @classmethod
    def from_dict(cls, config: dict) -> 'RetryStrategy':
        return cls(
            policy=RetryPolicy(config.get('policy', 'exponential')),
            max_retries=config.get('max_retries', 3),
            base_delay=config.get('base_delay', 0.05),
            max_delay=config.get('max_delay', 1.0),
            jitter=config.get('jitter', True),
            jitter_range=config.get('jitter_range', 0.5),
            retryable_errors=config.get('retryable_errors', []),
        )

    def to_dict(self) -> dict:
        return {
            'policy': self.policy.value,
            'max_retries': self.max_retries,
            'base_delay': self.base_delay,
            'max_delay': self.max_delay,
            'jitter': self.jitter,
            'jitter_range': self.jitter_range,
            'retryable_errors': self.retryable_errors,
        }

    def compute_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        if self.policy == RetryPolicy.NONE:
            return 0.0
        if self.policy == RetryPolicy.EXPONENTIAL:
            delay = self.base_delay * (2 ** (attempt - 1))
        else:
            delay = self.base_delay

        delay = min(delay, self.max_delay)

        if self.jitter and delay > 0:
            jitter_amount = delay * self.jitter_range
            delay = max(0.0, delay + random.uniform(-jitter_amount, jitter_amount))

        return round(delay, 3)

    def should_retry(self, attempt: int, error: Optional[Exception] = None) -> bool:
        """Retry while attempts remain and the error is a retryable conflict."""
        if self.policy == RetryPolicy.NONE or attempt > self.max_retries:
            return False
        if error is None:
            return True
        if self.retryable_errors:
            return type(error).__name__ in self.retryable_errors
        return bool(getattr(error, "retryable", False))


# Only stale snapshots are worth re-running; AlreadyClaimedError is final
# once the snapshot is fresh.
CONFLICT_RETRY = RetryStrategy.exponential(retryable_errors=["StaleInstanceError"])


async def execute_with_retry(
    func: Callable,
    strategy: RetryStrategy,
    *args,
    on_retry: Optional[Callable] = None,
    **kwargs,
):
    """Run ``func`` and re-run it while ``strategy`` says the error is retryable.

    Args:
        func: Async callable to execute.
        strategy: RetryStrategy instance.
        on_retry: Optional callback(attempt, error, delay) called before each retry.

    Raises:
        The last exception once retries are exhausted or the error is final.
    """
    attempt = 0
    while True:
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            attempt += 1
            if not strategy.should_retry(attempt, e):
                raise

            delay = strategy.compute_delay(attempt)
            logger.info(
                "retrying_after_conflict",
                attempt=attempt,
                error_type=type(e).__name__,
                delay=delay,
            )
            if on_retry is not None:
                on_retry(attempt, e, delay)
            await asyncio.sleep(delay)
