from __future__ import annotations

import logging
import unittest
from unittest.mock import AsyncMock

from liquidity_probe.quotes import QuoteError, QuoteErrorKind
from liquidity_probe.resilience import (
    ResilientCaller,
    RetryPolicy,
    TokenBucketLimiter,
    compute_backoff_delay,
    default_should_retry,
    with_retry,
)


class _StatusError(Exception):
    def __init__(self, status: int) -> None:
        super().__init__(f"status={status}")
        self.status = status


def _max_jitter(low: float, high: float) -> float:
    return high


class WithRetryTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.logger = logging.getLogger("test.retry")
        self.sleep = AsyncMock()

    async def test_success_on_first_attempt(self) -> None:
        operation = AsyncMock(return_value="ok")

        result = await with_retry(operation, max_retries=3, sleep=self.sleep, logger=self.logger)

        self.assertEqual(result, "ok")
        self.assertEqual(operation.await_count, 1)
        self.sleep.assert_not_awaited()

    async def test_fails_k_times_then_succeeds(self) -> None:
        operation = AsyncMock(side_effect=[_StatusError(503), _StatusError(429), "ok"])

        result = await with_retry(operation, max_retries=3, sleep=self.sleep, logger=self.logger)

        self.assertEqual(result, "ok")
        self.assertEqual(operation.await_count, 3)
        self.assertEqual(self.sleep.await_count, 2)

    async def test_always_failing_operation_raises_final_error_unchanged(self) -> None:
        errors = [RuntimeError("fail 1"), RuntimeError("fail 2"), RuntimeError("fail 3")]
        operation = AsyncMock(side_effect=errors)

        with self.assertRaises(RuntimeError) as ctx:
            await with_retry(operation, max_retries=2, sleep=self.sleep, logger=self.logger)

        self.assertIs(ctx.exception, errors[-1])
        self.assertEqual(operation.await_count, 3)

    async def test_non_retryable_status_is_attempted_once(self) -> None:
        error = _StatusError(404)
        operation = AsyncMock(side_effect=error)

        with self.assertRaises(_StatusError) as ctx:
            await with_retry(operation, max_retries=3, sleep=self.sleep, logger=self.logger)

        self.assertIs(ctx.exception, error)
        self.assertEqual(operation.await_count, 1)
        self.sleep.assert_not_awaited()

    async def test_custom_predicate_can_disable_retries(self) -> None:
        operation = AsyncMock(side_effect=RuntimeError("custom error"))

        with self.assertRaises(RuntimeError):
            await with_retry(
                operation,
                max_retries=3,
                should_retry=lambda error: False,
                sleep=self.sleep,
                logger=self.logger,
            )

        self.assertEqual(operation.await_count, 1)

    async def test_no_quote_and_malformed_errors_are_not_retried(self) -> None:
        for kind in (QuoteErrorKind.NO_QUOTE, QuoteErrorKind.MALFORMED):
            operation = AsyncMock(side_effect=QuoteError("nope", kind=kind))

            with self.assertRaises(QuoteError):
                await with_retry(operation, max_retries=3, sleep=self.sleep, logger=self.logger)

            self.assertEqual(operation.await_count, 1, kind)

    async def test_delays_follow_exponential_schedule_and_cap(self) -> None:
        operation = AsyncMock(side_effect=[_StatusError(500)] * 5 + ["ok"])

        result = await with_retry(
            operation,
            max_retries=5,
            base_delay_seconds=0.1,
            max_delay_seconds=1.0,
            sleep=self.sleep,
            jitter=_max_jitter,
            logger=self.logger,
        )

        self.assertEqual(result, "ok")
        delays = [call.args[0] for call in self.sleep.await_args_list]
        expected = [0.2, 0.3, 0.5, 0.9, 1.0]
        for delay, want in zip(delays, expected):
            self.assertAlmostEqual(delay, want)


class BackoffDelayTests(unittest.TestCase):
    def test_delay_never_exceeds_max_and_is_non_negative(self) -> None:
        for attempt in range(12):
            for jitter in (lambda low, high: low, _max_jitter):
                delay = compute_backoff_delay(
                    attempt,
                    base_delay_seconds=0.5,
                    max_delay_seconds=3.0,
                    jitter=jitter,
                )
                self.assertGreaterEqual(delay, 0.0)
                self.assertLessEqual(delay, 3.0)

    def test_cap_below_base_delay_is_respected(self) -> None:
        delay = compute_backoff_delay(0, base_delay_seconds=1.0, max_delay_seconds=0.5, jitter=_max_jitter)
        self.assertEqual(delay, 0.5)

    def test_default_predicate(self) -> None:
        self.assertTrue(default_should_retry(_StatusError(429)))
        self.assertTrue(default_should_retry(_StatusError(502)))
        self.assertFalse(default_should_retry(_StatusError(400)))
        self.assertTrue(default_should_retry(RuntimeError("socket closed")))
        self.assertTrue(default_should_retry(QuoteError("timeout", kind=QuoteErrorKind.TRANSIENT)))
        self.assertFalse(default_should_retry(QuoteError("bad", kind=QuoteErrorKind.CLIENT, status=422)))
        self.assertFalse(default_should_retry(QuoteError("none", kind=QuoteErrorKind.NO_QUOTE)))


class ResilientCallerTests(unittest.IsolatedAsyncioTestCase):
    async def test_every_attempt_draws_a_limiter_token(self) -> None:
        limiter = TokenBucketLimiter(100)
        limiter.acquire = AsyncMock()  # type: ignore[method-assign]
        caller = ResilientCaller(
            limiter,
            RetryPolicy(max_retries=2, base_delay_seconds=0.0),
            logger=logging.getLogger("test.caller"),
            sleep=AsyncMock(),
        )
        operation = AsyncMock(side_effect=[_StatusError(503), "ok"])

        result = await caller.call(operation)

        self.assertEqual(result, "ok")
        self.assertEqual(limiter.acquire.await_count, 2)
        self.assertEqual(operation.await_count, 2)


if __name__ == "__main__":
    unittest.main()
