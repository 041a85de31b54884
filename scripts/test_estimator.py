from __future__ import annotations

import asyncio
import logging
import unittest
from typing import Callable
from unittest.mock import AsyncMock

from liquidity_probe.depth import (
    LiquidityDepthEstimator,
    effective_rate,
    exact_effective_rate,
    slippage_bps,
    total_fees,
)
from liquidity_probe.quotes import (
    Asset,
    DepthSearchError,
    Fee,
    Quote,
    QuoteError,
    QuoteErrorKind,
    Route,
)
from liquidity_probe.resilience import ResilientCaller, RetryPolicy, TokenBucketLimiter


def _make_route(*, decimals: int = 6) -> Route:
    return Route(
        source=Asset(
            chain_id="1",
            asset_id="0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48",
            symbol="USDC",
            decimals=decimals,
        ),
        destination=Asset(
            chain_id="137",
            asset_id="0x3c499c542cef5e3811e1192ce70d8cc03d5c3359",
            symbol="USDC",
            decimals=decimals,
        ),
    )


class _SyntheticQuotePort:
    """Deterministic quote function; `dst_for` maps src amount to dst amount or raises."""

    def __init__(self, dst_for: Callable[[int], int]) -> None:
        self._dst_for = dst_for
        self.amounts: list[int] = []

    async def get_quote(self, route: Route, src_amount: int, *, src_address: str, dst_address: str) -> Quote:
        self.amounts.append(src_amount)
        return Quote(src_amount=src_amount, dst_amount=self._dst_for(src_amount), dst_amount_min=0)


def _linear_impact(amount: int) -> int:
    # Effective rate 1 - amount / 1e12, i.e. 50bps at 5,000 whole units with 6 decimals.
    return amount - (amount * amount) // 10**12


class PricingTests(unittest.TestCase):
    def test_effective_rate_normalizes_decimals(self) -> None:
        self.assertAlmostEqual(effective_rate(1_000_000, 995_000, 6, 6), 0.995, delta=0.001)
        self.assertAlmostEqual(effective_rate(10**18, 2_000 * 10**6, 18, 6), 2_000.0)

    def test_effective_rate_edge_cases(self) -> None:
        self.assertEqual(effective_rate(1_000_000, 0, 6, 6), 0.0)
        with self.assertRaises(ValueError):
            effective_rate(0, 10, 6, 6)

    def test_effective_rate_is_exact_for_wide_amounts(self) -> None:
        huge = 10**40 + 1
        rate = exact_effective_rate(huge, huge, 30, 30)
        self.assertEqual(rate, 1)

    def test_slippage_boundary_is_exact(self) -> None:
        base = exact_effective_rate(1_000_000, 1_000_000, 6, 6)
        rate = exact_effective_rate(400_000_000, 398_000_000, 6, 6)
        self.assertEqual(slippage_bps(rate, base), 50)

    def test_slippage_never_negative(self) -> None:
        base = exact_effective_rate(100, 100, 0, 0)
        better = exact_effective_rate(100, 101, 0, 0)
        self.assertEqual(slippage_bps(better, base), 0)

    def test_total_fees_sums_fee_amounts(self) -> None:
        quote = Quote(
            src_amount=1_000_000,
            dst_amount=990_000,
            dst_amount_min=0,
            fees=(Fee(amount=6_000, name="protocol"), Fee(amount=4_000, name="lz")),
        )
        self.assertAlmostEqual(total_fees(quote, 6), 0.01)


class LiquidityDepthEstimatorTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.logger = logging.getLogger("test.estimator")
        self.sleep = AsyncMock()
        self.caller = ResilientCaller(
            TokenBucketLimiter(10_000, logger=self.logger),
            RetryPolicy(max_retries=2, base_delay_seconds=0.01, max_delay_seconds=0.05),
            logger=self.logger,
            sleep=self.sleep,
        )

    def _estimator(self, port: object, **kwargs: int) -> LiquidityDepthEstimator:
        return LiquidityDepthEstimator(quote_port=port, caller=self.caller, logger=self.logger, **kwargs)  # type: ignore[arg-type]

    async def test_monotone_quotes_stay_within_target(self) -> None:
        route = _make_route()
        port = _SyntheticQuotePort(_linear_impact)

        result = await self._estimator(port).find_max_amount_at_slippage(route, 50)

        threshold = result.threshold
        self.assertEqual(threshold.target_slippage_bps, 50)
        self.assertLessEqual(threshold.achieved_slippage_bps, 50)
        base = exact_effective_rate(10**6, _linear_impact(10**6), 6, 6)
        measured = exact_effective_rate(threshold.max_amount_in, _linear_impact(threshold.max_amount_in), 6, 6)
        self.assertLessEqual(slippage_bps(measured, base), 50)
        self.assertGreater(threshold.max_amount_in, 4_900 * 10**6)
        self.assertLessEqual(threshold.max_amount_in, 5_100 * 10**6)
        # Baseline plus at most 24 bisection probes.
        self.assertLessEqual(len(port.amounts), 25)
        self.assertEqual(port.amounts[0], 10**6)
        self.assertEqual(len(result.samples), len(port.amounts))
        self.assertEqual(result.samples[0].slippage_bps, 0)

    async def test_search_is_deterministic(self) -> None:
        route = _make_route()
        first = await self._estimator(_SyntheticQuotePort(_linear_impact)).find_max_amount_at_slippage(route, 50)
        second = await self._estimator(_SyntheticQuotePort(_linear_impact)).find_max_amount_at_slippage(route, 50)

        self.assertEqual(first, second)

    async def test_boundary_amount_is_included(self) -> None:
        route = _make_route(decimals=0)
        boundary = 400

        def dst_for(amount: int) -> int:
            if amount < boundary:
                return amount
            if amount == boundary:
                return 398  # rate 0.995, exactly 50bps
            return amount * 99 // 100

        result = await self._estimator(
            _SyntheticQuotePort(dst_for),
            upper_bound_units=1_000,
        ).find_max_amount_at_slippage(route, 50)

        self.assertGreaterEqual(result.threshold.max_amount_in, boundary)
        self.assertEqual(result.threshold.max_amount_in, boundary)
        self.assertEqual(result.threshold.achieved_slippage_bps, 50)

    async def test_no_quote_above_limit_is_treated_as_too_large(self) -> None:
        route = _make_route()
        limit = 1_234 * 10**6

        def dst_for(amount: int) -> int:
            if amount > limit:
                raise QuoteError("No quotes available", kind=QuoteErrorKind.NO_QUOTE)
            return amount

        result = await self._estimator(_SyntheticQuotePort(dst_for)).find_max_amount_at_slippage(route, 50)

        self.assertLessEqual(result.threshold.max_amount_in, limit)
        self.assertGreater(result.threshold.max_amount_in, limit - 10**6)
        self.sleep.assert_not_awaited()

    async def test_baseline_transport_failure_aborts_after_retries(self) -> None:
        route = _make_route()
        error = QuoteError("upstream down", kind=QuoteErrorKind.TRANSIENT, status=503)
        port = AsyncMock()
        port.get_quote = AsyncMock(side_effect=error)

        with self.assertRaises(DepthSearchError) as ctx:
            await self._estimator(port).find_max_amount_at_slippage(route, 50)

        self.assertIs(ctx.exception.cause, error)
        self.assertIs(ctx.exception.__cause__, error)
        self.assertEqual(ctx.exception.target_bps, 50)
        self.assertEqual(port.get_quote.await_count, 3)

    async def test_baseline_no_quote_aborts(self) -> None:
        route = _make_route()
        port = AsyncMock()
        port.get_quote = AsyncMock(side_effect=QuoteError("none", kind=QuoteErrorKind.NO_QUOTE))

        with self.assertRaises(DepthSearchError):
            await self._estimator(port).find_max_amount_at_slippage(route, 100)

        self.assertEqual(port.get_quote.await_count, 1)

    async def test_zero_baseline_output_aborts(self) -> None:
        route = _make_route()

        with self.assertRaises(DepthSearchError):
            await self._estimator(_SyntheticQuotePort(lambda amount: 0)).find_max_amount_at_slippage(route, 50)

    async def test_client_error_during_bisection_aborts(self) -> None:
        route = _make_route()
        error = QuoteError("bad request", kind=QuoteErrorKind.CLIENT, status=400)

        def dst_for(amount: int) -> int:
            if amount > 10**6:
                raise error
            return amount

        port = _SyntheticQuotePort(dst_for)
        with self.assertRaises(DepthSearchError) as ctx:
            await self._estimator(port).find_max_amount_at_slippage(route, 50)

        self.assertIs(ctx.exception.cause, error)
        self.assertEqual(len(port.amounts), 2)

    async def test_exhausted_rate_limit_during_bisection_aborts(self) -> None:
        route = _make_route()

        def dst_for(amount: int) -> int:
            if amount > 10**6:
                raise QuoteError("slow down", kind=QuoteErrorKind.TRANSIENT, status=429)
            return amount

        port = _SyntheticQuotePort(dst_for)
        with self.assertRaises(DepthSearchError):
            await self._estimator(port).find_max_amount_at_slippage(route, 50)

        # Baseline plus three attempts at the first midpoint.
        self.assertEqual(len(port.amounts), 4)
        self.assertEqual(self.sleep.await_count, 2)

    async def test_measure_route_runs_each_target_independently(self) -> None:
        route = _make_route()
        port = _SyntheticQuotePort(_linear_impact)

        depth = await self._estimator(port).measure_route(route, (50, 100))

        self.assertEqual(depth.route, route)
        self.assertEqual([t.target_slippage_bps for t in depth.thresholds], [50, 100])
        self.assertLess(depth.thresholds[0].max_amount_in, depth.thresholds[1].max_amount_in)
        self.assertEqual(port.amounts.count(10**6), 2)
        self.assertTrue(depth.measured_at)

    async def test_failed_target_stops_sibling_searches(self) -> None:
        route = _make_route()
        amounts: list[int] = []

        class _FirstBaselineFailsPort:
            async def get_quote(self, route: Route, src_amount: int, *, src_address: str, dst_address: str) -> Quote:
                amounts.append(src_amount)
                await asyncio.sleep(0)
                if len(amounts) == 1:
                    raise QuoteError("bad request", kind=QuoteErrorKind.CLIENT, status=400)
                return Quote(src_amount=src_amount, dst_amount=_linear_impact(src_amount), dst_amount_min=0)

        with self.assertRaises(DepthSearchError):
            await self._estimator(_FirstBaselineFailsPort()).measure_route(route, (50, 100))

        issued = len(amounts)
        for _ in range(50):
            await asyncio.sleep(0)
        self.assertEqual(len(amounts), issued)
        self.assertLessEqual(issued, 6)

    async def test_cancellation_stops_further_probes(self) -> None:
        route = _make_route()
        release = asyncio.Event()
        amounts: list[int] = []

        class _BlockingPort:
            async def get_quote(self, route: Route, src_amount: int, *, src_address: str, dst_address: str) -> Quote:
                amounts.append(src_amount)
                if len(amounts) > 1:
                    await release.wait()
                return Quote(src_amount=src_amount, dst_amount=src_amount, dst_amount_min=0)

        task = asyncio.create_task(self._estimator(_BlockingPort()).find_max_amount_at_slippage(route, 50))
        while len(amounts) < 2:
            await asyncio.sleep(0)
        task.cancel()

        with self.assertRaises(asyncio.CancelledError):
            await task
        self.assertEqual(len(amounts), 2)


if __name__ == "__main__":
    unittest.main()
