"""Retry / backoff controller for workflow steps.

A step carries ``{maxAttempts, backoffMultiplier}``. Each handler invocation
counts as one attempt. After a failed attempt, if fewer than ``maxAttempts``
attempts have been made, the controller waits

    backoffMultiplier * 1000ms * attempts

and invokes the handler again. The delay grows linearly with the number of
attempts so far even though the field is called a multiplier.

Usage:
    strategy = RetryStrategy.from_dict({"maxAttempts": 3, "backoffMultiplier": 2})
    outcome = await execute_with_retry(lambda: handler(config, ctx), strategy)
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import structlog

from core.exceptions import StepExecutionError

logger = structlog.get_logger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_MULTIPLIER = 2.0

SleepFunc = Callable[[float], Awaitable[None]]
RetryCallback = Callable[[int, Exception, float], Awaitable[None]]


@dataclass(frozen=True)
class RetryStrategy:
    """Per-step retry policy."""

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER

    @classmethod
    def from_dict(cls, config: Optional[dict]) -> "RetryStrategy":
        """Create strategy from a step's stored retry config.

        Accepts both the camelCase keys used in exported documents and
        snake_case keys.
        """
        config = config or {}
        max_attempts = config.get("maxAttempts", config.get("max_attempts"))
        multiplier = config.get("backoffMultiplier", config.get("backoff_multiplier"))
        return cls(
            max_attempts=max(1, int(max_attempts)) if max_attempts is not None else DEFAULT_MAX_ATTEMPTS,
            backoff_multiplier=float(multiplier) if multiplier is not None else DEFAULT_BACKOFF_MULTIPLIER,
        )

    def to_dict(self) -> dict:
        """Serialize to the stored/exported form."""
        return {
            "maxAttempts": self.max_attempts,
            "backoffMultiplier": self.backoff_multiplier,
        }

    def compute_delay(self, attempts: int) -> float:
        """Seconds to wait after ``attempts`` failed invocations."""
        delay_ms = self.backoff_multiplier * 1000 * attempts
        return delay_ms / 1000

    def should_retry(self, attempts: int) -> bool:
        return attempts < self.max_attempts

    def delays(self) -> list[float]:
        """Every backoff delay an always-failing step would go through."""
        return [self.compute_delay(n) for n in range(1, self.max_attempts)]


@dataclass
class RetryOutcome:
    """Successful result of a (possibly retried) invocation."""

    output: Any
    attempts: int


class RetriesExhausted(StepExecutionError):
    """Raised once the last permitted attempt has failed."""

    def __init__(self, last_error: Exception, attempts: int):
        self.last_error = last_error
        self.attempts = attempts
        super().__init__(_describe(last_error))


def _describe(error: Exception) -> str:
    if isinstance(error, asyncio.TimeoutError):
        return "Step timed out"
    return str(error) or type(error).__name__


async def execute_with_retry(
    func: Callable[[], Awaitable[Any]],
    strategy: RetryStrategy,
    *,
    timeout: Optional[float] = None,
    on_retry: Optional[RetryCallback] = None,
    sleep: SleepFunc = asyncio.sleep,
) -> RetryOutcome:
    """Invoke ``func`` until it succeeds or the strategy runs out of attempts.

    Args:
        func: Zero-argument coroutine factory; called once per attempt.
        strategy: Retry policy of the step.
        timeout: Per-attempt timeout in seconds. A timeout counts as a failure.
        on_retry: Awaited with (attempts, error, delay) before each backoff sleep.
        sleep: Backoff sleep, replaceable in tests.

    Returns:
        RetryOutcome with the handler's output and the number of attempts made.

    Raises:
        RetriesExhausted: When ``max_attempts`` attempts have all failed.
    """
    attempts = 0

    while True:
        attempts += 1
        try:
            if timeout is not None:
                output = await asyncio.wait_for(func(), timeout=timeout)
            else:
                output = await func()
            return RetryOutcome(output=output, attempts=attempts)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if not strategy.should_retry(attempts):
                raise RetriesExhausted(e, attempts) from e

            delay = strategy.compute_delay(attempts)
            if on_retry:
                try:
                    await on_retry(attempts, e, delay)
                except Exception as callback_error:
                    logger.warning("on_retry callback failed", error=str(callback_error))

            logger.info(
                "Retrying step",
                attempt=attempts,
                max_attempts=strategy.max_attempts,
                delay_seconds=delay,
                error=_describe(e),
            )
            await sleep(delay)
