from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, TypeVar

from tasksync import errors
from tasksync.errors import ErrorKind
from tasksync.models import RetryConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    initial_delay_seconds: float = 1.0
    multiplier: float = 2.0
    max_delay_seconds: float = 10.0
    rate_limit_delay_seconds: float = 5.0

    @classmethod
    def from_config(cls, config: RetryConfig) -> "RetryPolicy":
        return cls(
            max_attempts=config.max_attempts,
            initial_delay_seconds=config.initial_delay_seconds,
            multiplier=config.multiplier,
            max_delay_seconds=config.max_delay_seconds,
            rate_limit_delay_seconds=config.rate_limit_delay_seconds,
        )

    def backoff_delay(self, attempt: int) -> float:
        """Delay before the retry following transient failure number ``attempt + 1``."""
        return min(self.initial_delay_seconds * (self.multiplier**attempt), self.max_delay_seconds)


class RetryExecutor:
    """Run one remote call, retrying transient and rate-limited failures.

    Permanent and connectivity failures are raised on the first occurrence.
    Transient failures are retried with capped exponential backoff until
    ``max_attempts`` calls have failed. Rate-limited failures wait for the
    server supplied delay and do not use up the transient budget.
    """

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        classify: Callable[[BaseException], ErrorKind] = errors.classify,
        sleep: Callable[[float], Any] = time.sleep,
    ) -> None:
        self.policy = policy or RetryPolicy()
        self.classify = classify
        self.sleep = sleep

    def execute(self, operation: Callable[[], T], description: str = "") -> T:
        label = description or getattr(operation, "__name__", "remote call")
        transient_failures = 0
        while True:
            try:
                return operation()
            except Exception as exc:
                kind = self.classify(exc)
                if kind == ErrorKind.RATE_LIMITED:
                    delay = getattr(exc, "retry_after", None)
                    if delay is None:
                        delay = self.policy.rate_limit_delay_seconds
                    logger.warning("%s rate limited, retrying in %.1fs: %s", label, delay, exc)
                    self.sleep(delay)
                    continue
                if kind != ErrorKind.TRANSIENT:
                    raise
                transient_failures += 1
                if transient_failures >= self.policy.max_attempts:
                    logger.error("%s failed after %d attempts: %s", label, transient_failures, exc)
                    raise
                delay = self.policy.backoff_delay(transient_failures - 1)
                logger.warning(
                    "%s attempt %d/%d failed, retrying in %.1fs: %s",
                    label,
                    transient_failures,
                    self.policy.max_attempts,
                    delay,
                    exc,
                )
                self.sleep(delay)
