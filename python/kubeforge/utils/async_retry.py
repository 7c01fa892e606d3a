"""
kubeforge/utils/async_retry.py

Provides a retry policy object and a decorator built on it to retry an async
function multiple times upon failure.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Coroutine, Optional, Tuple, Type
from typing_extensions import ParamSpec, TypeVar

P = ParamSpec("P")
R = TypeVar("R")

logger = logging.getLogger(__name__)


class RetryAborted(Exception):
    """Retrying stopped early because `should_stop` returned True; `cause` is the last error."""

    def __init__(self, label: str, cause: BaseException) -> None:
        super().__init__(f"retries of {label} stopped: {cause}")
        self.cause = cause


class RetryPolicy:
    """
    Bounded retry with exponential backoff.

    Attributes:
        max_attempts: Total attempts, including the first one.
        delay: Seconds to wait after the first failure.
        backoff: Multiplier applied to the delay after each further failure.
        max_delay: Upper bound for any single delay.
        retry_on: Exception types considered transient. Anything else is
            re-raised immediately.
        noisy: If True, log a warning for each failed attempt.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        delay: float = 1.0,
        backoff: float = 1.0,
        max_delay: float = 60.0,
        retry_on: Tuple[Type[BaseException], ...] = (Exception,),
        noisy: bool = False,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.delay = delay
        self.backoff = backoff
        self.max_delay = max_delay
        self.retry_on = retry_on
        self.noisy = noisy

    def is_retryable(self, exc: BaseException) -> bool:
        return isinstance(exc, self.retry_on)

    def delay_for(self, attempt_number: int) -> float:
        """Delay to sleep after failed attempt `attempt_number` (1-based)."""
        return min(self.delay * (self.backoff ** (attempt_number - 1)), self.max_delay)

    async def call(
        self,
        func: Callable[[], Awaitable[R]],
        *,
        description: str = "",
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> R:
        """
        Await `func()` until it succeeds, raises a non-retryable error, or the
        attempts are exhausted (the last error is re-raised).

        `should_stop` is checked before every further attempt; when it returns
        True no new attempt starts and RetryAborted is raised instead.
        """
        label = description or getattr(func, "__qualname__", repr(func))

        def check_stop(exc: BaseException) -> None:
            if should_stop is not None and should_stop():
                raise RetryAborted(label, exc) from exc

        async def attempt(attempt_number: int) -> R:
            try:
                return await func()
            except Exception as exc:
                if not self.is_retryable(exc):
                    raise
                if attempt_number >= self.max_attempts:
                    if self.noisy:
                        logger.error(
                            "All %d attempts failed for %s: %s",
                            self.max_attempts,
                            label,
                            exc,
                        )
                    raise

                check_stop(exc)
                pause = self.delay_for(attempt_number)
                if self.noisy:
                    logger.warning(
                        "Attempt %d/%d for %s failed: %s. Retrying in %.1fs",
                        attempt_number,
                        self.max_attempts,
                        label,
                        exc,
                        pause,
                    )
                await asyncio.sleep(pause)
                check_stop(exc)
                return await attempt(attempt_number + 1)

        return await attempt(1)


def async_retry(
    retries: int = 3,
    delay: float = 1.0,
    noisy: bool = False,
) -> Callable[
    [Callable[P, Coroutine[Any, Any, R]]], Callable[P, Coroutine[Any, Any, R]]
]:
    """Decorates an async function to retry upon failure.

    The decorated function will be attempted up to `retries` times, with a fixed
    delay of `delay` seconds between each attempt. Values below 1 mean a single
    attempt.

    Args:
        retries (int, optional):
            Maximum number of total attempts (not just failures). Defaults to 3.
        delay (float, optional):
            Delay in seconds between attempts. Defaults to 1.0.
        noisy (bool, optional):
            If True, logs a warning on each failure and an error if all attempts fail.
            Defaults to False.

    Returns:
        A decorator that, when applied to an async function, returns a wrapped
        version that retries on exceptions.
    """
    policy = RetryPolicy(max_attempts=max(retries, 1), delay=delay, noisy=noisy)

    def decorator(
        func: Callable[P, Coroutine[Any, Any, R]]
    ) -> Callable[P, Coroutine[Any, Any, R]]:
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            return await policy.call(
                lambda: func(*args, **kwargs), description=func.__qualname__
            )

        return wrapper

    return decorator
