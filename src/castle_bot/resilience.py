"""
Polling and retry primitives.

Every blocking wait in the bot is a poll over a predicate with a bounded
timeout. Timeouts and exhausted retries are reported as values, never raised;
the caller decides which recovery tier comes next.
"""

import asyncio
import inspect
import time
from dataclasses import dataclass
from typing import Optional, Callable, TypeVar, Any, Awaitable, Generic, Union

from castle_bot.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

MaybeAwaitable = Union[T, Awaitable[T]]


async def call_maybe_async(func: Callable[..., MaybeAwaitable[T]], *args: Any) -> T:
    """Call a sync or async callable and return its result."""
    result = func(*args)
    if inspect.isawaitable(result):
        return await result
    return result


def _elapsed_ms(start: float) -> float:
    return (time.monotonic() - start) * 1000


@dataclass
class RetryPolicy:
    """Configuration for retry behavior."""

    max_attempts: int = 3
    delay_ms: int = 1000
    backoff_multiplier: float = 1.0
    max_delay_ms: int = 60_000

    def get_delay(self, attempt: int) -> float:
        """
        Delay in milliseconds after the given failed attempt (0-based).

        Grows by ``backoff_multiplier`` per attempt, capped at ``max_delay_ms``.
        """
        delay = self.delay_ms * (self.backoff_multiplier ** attempt)
        return min(delay, self.max_delay_ms)


@dataclass
class RetryOutcome(Generic[T]):
    """Result of a retried action."""

    success: bool
    attempts: int
    result: Optional[T] = None
    error: Optional[str] = None


@dataclass
class EarlyExitResult:
    """Result of a bounded wait that can end early."""

    exited: bool
    waited_ms: int


async def poll_until(
    condition: Callable[[], MaybeAwaitable[bool]],
    timeout_ms: float,
    interval_ms: float = 500,
    description: str = "condition",
) -> bool:
    """
    Poll a predicate until it holds or the timeout elapses.

    An exception raised by the predicate counts as ``False``.

    Args:
        condition: Sync or async predicate
        timeout_ms: Upper bound on the total wait
        interval_ms: Spacing between evaluations
        description: Label used in the timeout warning

    Returns:
        True if the predicate held, False on timeout
    """
    start = time.monotonic()
    attempts = 0

    while _elapsed_ms(start) < timeout_ms:
        attempts += 1
        try:
            if await call_maybe_async(condition):
                return True
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug("Poll condition raised", description=description, error=str(e))
        await asyncio.sleep(interval_ms / 1000)

    logger.warning(
        "Poll timed out",
        description=description,
        timeout_ms=timeout_ms,
        attempts=attempts,
    )
    return False


async def poll_for(
    getter: Callable[[], MaybeAwaitable[Optional[T]]],
    timeout_ms: float,
    interval_ms: float = 500,
    description: str = "value",
) -> Optional[T]:
    """
    Poll a getter until it returns a value other than ``None``.

    Returns:
        The first present value, or None on timeout
    """
    start = time.monotonic()
    attempts = 0

    while _elapsed_ms(start) < timeout_ms:
        attempts += 1
        try:
            value = await call_maybe_async(getter)
            if value is not None:
                return value
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug("Poll getter raised", description=description, error=str(e))
        await asyncio.sleep(interval_ms / 1000)

    logger.warning(
        "Poll timed out",
        description=description,
        timeout_ms=timeout_ms,
        attempts=attempts,
    )
    return None


async def retry(
    action: Callable[[], MaybeAwaitable[T]],
    max_attempts: Optional[int] = None,
    delay_ms: Optional[int] = None,
    backoff_multiplier: Optional[float] = None,
    max_delay_ms: Optional[int] = None,
    policy: Optional[RetryPolicy] = None,
    description: str = "action",
) -> RetryOutcome[T]:
    """
    Run an action up to ``max_attempts`` times.

    Explicit arguments take precedence over the policy. There is no delay
    after the final attempt.

    Returns:
        RetryOutcome with the result, or the last error message on exhaustion
    """
    base = policy or RetryPolicy()
    policy = RetryPolicy(
        max_attempts=max_attempts if max_attempts is not None else base.max_attempts,
        delay_ms=delay_ms if delay_ms is not None else base.delay_ms,
        backoff_multiplier=backoff_multiplier if backoff_multiplier is not None else base.backoff_multiplier,
        max_delay_ms=max_delay_ms if max_delay_ms is not None else base.max_delay_ms,
    )

    last_error: Optional[str] = None

    for attempt in range(policy.max_attempts):
        try:
            result = await call_maybe_async(action)
            return RetryOutcome(success=True, attempts=attempt + 1, result=result)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            last_error = str(e) or type(e).__name__

            if attempt + 1 >= policy.max_attempts:
                break

            delay = policy.get_delay(attempt)
            logger.warning(
                "Retry scheduled",
                description=description,
                attempt=attempt + 1,
                max_attempts=policy.max_attempts,
                delay_ms=delay,
                error=last_error,
            )
            await asyncio.sleep(delay / 1000)

    logger.warning(
        "Retries exhausted",
        description=description,
        attempts=policy.max_attempts,
        error=last_error,
    )
    return RetryOutcome(success=False, attempts=policy.max_attempts, error=last_error)


async def wait_with_early_exit(
    should_exit: Callable[[], MaybeAwaitable[bool]],
    max_wait_ms: float,
    interval_ms: float = 3000,
) -> EarlyExitResult:
    """
    Wait up to ``max_wait_ms``, returning early once ``should_exit`` holds.

    Used for waits such as "let the construction finish, but stop as soon as
    the free-finish button shows up".
    """
    start = time.monotonic()

    while _elapsed_ms(start) < max_wait_ms:
        try:
            if await call_maybe_async(should_exit):
                return EarlyExitResult(exited=True, waited_ms=int(_elapsed_ms(start)))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug("Early-exit check raised", error=str(e))

        remaining = max_wait_ms - _elapsed_ms(start)
        await asyncio.sleep(max(0.0, min(interval_ms, remaining)) / 1000)

    return EarlyExitResult(exited=False, waited_ms=int(_elapsed_ms(start)))


# Decision-service calls; attempts come from SolverConfig
SOLVER_RETRY_POLICY = RetryPolicy(
    max_attempts=2,
    delay_ms=1000,
    backoff_multiplier=2.0,
    max_delay_ms=10_000,
)
