"""
Retry / escalation controller.

A RetryPolicy value describes attempts, backoff and the slippage / priority
ladders; execute_with_retry runs any operation under it. Domain code never
loops on exceptions itself.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, TypeVar

from binpilot.errors import EngineError, wrap_error
from binpilot.services.priority_fee import PriorityLevel, priority_level_for_attempt

logger = logging.getLogger("binpilot.retry")

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    delay_seconds: float = 0.5
    backoff: float = 1.0
    max_delay_seconds: float = 5.0
    slippage_ladder: Tuple[float, ...] = ()
    priority_ladder: Tuple[PriorityLevel, ...] = ()

    def delay_for(self, attempt: int) -> float:
        return min(self.delay_seconds * (self.backoff ** attempt), self.max_delay_seconds)

    def slippage_for(self, attempt: int) -> Optional[float]:
        if not self.slippage_ladder:
            return None
        return self.slippage_ladder[min(attempt, len(self.slippage_ladder) - 1)]

    def priority_for(self, attempt: int) -> PriorityLevel:
        if not self.priority_ladder:
            return priority_level_for_attempt(attempt)
        return self.priority_ladder[min(attempt, len(self.priority_ladder) - 1)]


DEFAULT_RETRY = RetryPolicy()


@dataclass(frozen=True)
class AttemptContext:
    attempt: int
    slippage_pct: Optional[float]
    priority_level: PriorityLevel

    @property
    def is_first(self) -> bool:
        return self.attempt == 0


def execute_with_retry(operation: Callable[[AttemptContext], T],
                       policy: RetryPolicy = DEFAULT_RETRY,
                       context: str = "operation",
                       sleep: Callable[[float], None] = time.sleep,
                       before_retry: Optional[Callable[[AttemptContext, EngineError], bool]] = None) -> T:
    """Run `operation` under `policy`.

    Attempts are strictly sequential. A non-retryable error is raised at
    once. `before_retry` may return False to stop early (for example when
    the thing being retried no longer exists).
    """
    last_error: Optional[EngineError] = None
    for attempt in range(policy.max_attempts):
        ctx = AttemptContext(
            attempt=attempt,
            slippage_pct=policy.slippage_for(attempt),
            priority_level=policy.priority_for(attempt),
        )
        try:
            return operation(ctx)
        except Exception as e:
            last_error = wrap_error(e, context, attempt=attempt + 1)
            if not last_error.retryable:
                logger.warning(f"[{context}] non-retryable {last_error.code}: {last_error.message}")
                raise last_error
            if attempt + 1 >= policy.max_attempts:
                break
            if before_retry is not None and not before_retry(ctx, last_error):
                logger.info(f"[{context}] retry skipped after attempt {attempt + 1}")
                raise last_error
            delay = policy.delay_for(attempt)
            logger.warning(
                f"[{context}] attempt {attempt + 1}/{policy.max_attempts} failed "
                f"({last_error.code}), retrying in {delay:.1f}s"
            )
            sleep(delay)

    logger.error(f"[{context}] all {policy.max_attempts} attempts failed")
    raise last_error


def with_retry(fn: Callable[[], T], context: str, max_attempts: int = 3,
               delay_seconds: float = 0.5, sleep: Callable[[float], None] = time.sleep) -> T:
    """Retry a zero-argument callable with a fixed delay."""
    policy = RetryPolicy(max_attempts=max_attempts, delay_seconds=delay_seconds)
    return execute_with_retry(lambda _ctx: fn(), policy, context, sleep=sleep)
