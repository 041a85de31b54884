from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from liquidity_probe.common import log_event
from liquidity_probe.quotes.types import QuoteError, QuoteErrorKind

from .rate_limit import TokenBucketLimiter

T = TypeVar("T")

RetryPredicate = Callable[[BaseException], bool]
SleepFn = Callable[[float], Awaitable[object]]
JitterFn = Callable[[float, float], float]

DEFAULT_BASE_DELAY_SECONDS = 0.5
DEFAULT_MAX_DELAY_SECONDS = 3.0


def error_status(error: BaseException) -> int | None:
    status = getattr(error, "status", None)
    if isinstance(status, int) and not isinstance(status, bool):
        return status
    return None


def default_should_retry(error: BaseException) -> bool:
    status = error_status(error)
    if status is not None:
        return status == 429 or status >= 500
    if isinstance(error, QuoteError):
        # NO_QUOTE and MALFORMED will not change on a second attempt.
        return error.kind is QuoteErrorKind.TRANSIENT
    return True


def compute_backoff_delay(
    attempt: int,
    *,
    base_delay_seconds: float,
    max_delay_seconds: float,
    jitter: JitterFn = random.uniform,
) -> float:
    exponential = base_delay_seconds * (2**attempt)
    spread = jitter(0.0, base_delay_seconds) if base_delay_seconds > 0 else 0.0
    return max(0.0, min(exponential + spread, max_delay_seconds))


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    max_retries: int,
    base_delay_seconds: float = DEFAULT_BASE_DELAY_SECONDS,
    max_delay_seconds: float = DEFAULT_MAX_DELAY_SECONDS,
    should_retry: RetryPredicate | None = None,
    logger: logging.Logger | None = None,
    sleep: SleepFn = asyncio.sleep,
    jitter: JitterFn = random.uniform,
    operation_name: str = "quote",
) -> T:
    """Run `operation` up to `max_retries + 1` times with jittered exponential backoff.

    The last failure is re-raised unchanged, as is any failure the predicate
    declines to retry.
    """
    predicate = should_retry or default_should_retry
    active_logger = logger or logging.getLogger(__name__)
    max_attempts = max(0, max_retries) + 1

    for attempt in range(max_attempts):
        try:
            return await operation()
        except asyncio.CancelledError:
            raise
        except Exception as error:
            retryable = predicate(error)
            if attempt + 1 >= max_attempts or not retryable:
                log_event(
                    active_logger,
                    level="warning" if retryable else "debug",
                    event="quote_retry_exhausted" if retryable else "quote_retry_skipped",
                    message=f"{operation_name} failed; not retrying",
                    attempt=attempt + 1,
                    max_attempts=max_attempts,
                    status=error_status(error),
                    error_type=type(error).__name__,
                    error=str(error),
                )
                raise

            delay_seconds = compute_backoff_delay(
                attempt,
                base_delay_seconds=base_delay_seconds,
                max_delay_seconds=max_delay_seconds,
                jitter=jitter,
            )
            log_event(
                active_logger,
                level="warning",
                event="quote_retry_scheduled",
                message=f"{operation_name} failed; retrying",
                attempt=attempt + 1,
                max_attempts=max_attempts,
                status=error_status(error),
                delay_seconds=round(delay_seconds, 3),
                error_type=type(error).__name__,
                error=str(error),
            )
            await sleep(delay_seconds)

    raise RuntimeError("unreachable: retry loop exited without result")


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    max_retries: int = 4
    base_delay_seconds: float = DEFAULT_BASE_DELAY_SECONDS
    max_delay_seconds: float = DEFAULT_MAX_DELAY_SECONDS
    should_retry: RetryPredicate | None = None


class ResilientCaller:
    """Runs remote operations through the retry wrapper and the admission limiter.

    Every attempt, including retries, draws its own limiter token.
    """

    def __init__(
        self,
        limiter: TokenBucketLimiter,
        policy: RetryPolicy,
        *,
        logger: logging.Logger,
        sleep: SleepFn = asyncio.sleep,
        jitter: JitterFn = random.uniform,
    ) -> None:
        self.limiter = limiter
        self.policy = policy
        self._logger = logger
        self._sleep = sleep
        self._jitter = jitter

    async def call(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        operation_name: str = "quote",
        should_retry: RetryPredicate | None = None,
    ) -> T:
        async def attempt() -> T:
            await self.limiter.acquire()
            return await operation()

        return await with_retry(
            attempt,
            max_retries=self.policy.max_retries,
            base_delay_seconds=self.policy.base_delay_seconds,
            max_delay_seconds=self.policy.max_delay_seconds,
            should_retry=should_retry or self.policy.should_retry,
            logger=self._logger,
            sleep=self._sleep,
            jitter=self._jitter,
            operation_name=operation_name,
        )
