from __future__ import annotations

import asyncio
import logging
import math
from fractions import Fraction
from typing import Iterable

from liquidity_probe.common import log_event
from liquidity_probe.quotes.port import QuotePort
from liquidity_probe.quotes.types import (
    DepthSearchError,
    DepthSearchResult,
    LiquidityDepth,
    Quote,
    QuoteError,
    Route,
    Sample,
    Threshold,
    now_iso,
)
from liquidity_probe.resilience.retry import ResilientCaller

DEFAULT_PROBE_ADDRESS = "0x0000000000000000000000000000000000000001"
DEFAULT_UPPER_BOUND_UNITS = 1_000_000
DEFAULT_MAX_ITERATIONS = 24
DEFAULT_TARGETS_BPS = (50, 100)
BPS_DENOMINATOR = 10_000


def exact_effective_rate(src_amount: int, dst_amount: int, src_decimals: int, dst_decimals: int) -> Fraction:
    """Decimal-normalized dst/src ratio, computed without floating point."""
    if src_amount <= 0:
        raise ValueError("effective rate is undefined for a zero source amount")
    if dst_amount <= 0:
        return Fraction(0)
    return Fraction(dst_amount * 10**src_decimals, src_amount * 10**dst_decimals)


def effective_rate(src_amount: int, dst_amount: int, src_decimals: int, dst_decimals: int) -> float:
    return float(exact_effective_rate(src_amount, dst_amount, src_decimals, dst_decimals))


def slippage_bps(rate: Fraction, base_rate: Fraction) -> int:
    if base_rate <= 0:
        raise ValueError("slippage needs a positive baseline rate")
    drop = (1 - Fraction(rate) / Fraction(base_rate)) * BPS_DENOMINATOR
    # Half-up rounding so an exact x.5 boundary rounds away from the target.
    return max(0, math.floor(drop + Fraction(1, 2)))


def total_fees(quote: Quote, src_decimals: int, usd_price: float = 1.0) -> float:
    fee_total = sum(fee.amount for fee in quote.fees)
    return float(Fraction(fee_total, 10**src_decimals)) * usd_price


class LiquidityDepthEstimator:
    def __init__(
        self,
        *,
        quote_port: QuotePort,
        caller: ResilientCaller,
        logger: logging.Logger,
        upper_bound_units: int = DEFAULT_UPPER_BOUND_UNITS,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        probe_address: str = DEFAULT_PROBE_ADDRESS,
    ) -> None:
        self._quote_port = quote_port
        self._caller = caller
        self._logger = logger
        self._upper_bound_units = max(1, int(upper_bound_units))
        self._max_iterations = max(1, int(max_iterations))
        self._probe_address = probe_address

    async def _probe(self, route: Route, amount: int) -> Quote:
        return await self._caller.call(
            lambda: self._quote_port.get_quote(
                route,
                amount,
                src_address=self._probe_address,
                dst_address=self._probe_address,
            ),
            operation_name="depth probe",
        )

    def _abort(
        self,
        route: Route,
        target_bps: int,
        *,
        stage: str,
        error: BaseException,
        samples: list[Sample],
    ) -> DepthSearchError:
        log_event(
            self._logger,
            level="warning",
            event="depth_search_aborted",
            message="Liquidity depth search aborted",
            route=route.label(),
            target_bps=target_bps,
            stage=stage,
            samples=len(samples),
            error_type=type(error).__name__,
            error=str(error),
        )
        return DepthSearchError(
            f"Depth search for {route.label()} at {target_bps}bps failed during {stage}: {error}",
            target_bps=target_bps,
            cause=error,
        )

    async def find_max_amount_at_slippage(self, route: Route, target_bps: int) -> DepthSearchResult:
        """Bisect on input amount for the largest quote whose slippage stays within `target_bps`.

        Slippage is measured against a one-unit baseline quote taken at the
        start of this search. Only a NO_QUOTE answer is read as "amount too
        large"; any other failure aborts with `DepthSearchError`.
        """
        if target_bps < 0:
            raise ValueError(f"target_bps must be non-negative, got {target_bps}")

        src_decimals = route.source.decimals
        dst_decimals = route.destination.decimals
        one_unit = route.source.one_unit
        samples: list[Sample] = []

        log_event(
            self._logger,
            level="info",
            event="depth_search_started",
            message="Liquidity depth search started",
            route=route.label(),
            target_bps=target_bps,
            upper_bound_units=self._upper_bound_units,
        )

        try:
            base_quote = await self._probe(route, one_unit)
            base_rate = exact_effective_rate(
                base_quote.src_amount,
                base_quote.dst_amount,
                src_decimals,
                dst_decimals,
            )
        except Exception as error:
            raise self._abort(route, target_bps, stage="baseline", error=error, samples=samples) from error
        if base_rate <= 0:
            error = ValueError("baseline quote returned a zero output amount")
            raise self._abort(route, target_bps, stage="baseline", error=error, samples=samples) from error

        samples.append(Sample(base_quote.src_amount, base_quote.dst_amount, 0))

        lo = one_unit
        hi = self._upper_bound_units * one_unit
        best_amount = lo
        best_slippage = 0
        iterations = 0

        for iteration in range(self._max_iterations):
            if lo > hi:
                break
            iterations = iteration + 1
            mid = (lo + hi) // 2

            try:
                quote = await self._probe(route, mid)
                rate = exact_effective_rate(quote.src_amount, quote.dst_amount, src_decimals, dst_decimals)
            except QuoteError as error:
                if not error.is_no_quote:
                    raise self._abort(route, target_bps, stage="bisection", error=error, samples=samples) from error
                log_event(
                    self._logger,
                    level="debug",
                    event="depth_probe_no_quote",
                    message="No quote at probe amount; searching lower",
                    route=route.label(),
                    target_bps=target_bps,
                    amount=str(mid),
                )
                hi = mid - 1
                continue
            except Exception as error:
                raise self._abort(route, target_bps, stage="bisection", error=error, samples=samples) from error

            observed_bps = slippage_bps(rate, base_rate)
            samples.append(Sample(quote.src_amount, quote.dst_amount, observed_bps))
            log_event(
                self._logger,
                level="debug",
                event="depth_probe_sample",
                message="Depth probe sample recorded",
                route=route.label(),
                target_bps=target_bps,
                amount=str(mid),
                slippage_bps=observed_bps,
            )

            if observed_bps <= target_bps:
                best_amount = mid
                best_slippage = observed_bps
                lo = mid + 1
            else:
                hi = mid - 1

        threshold = Threshold(
            target_slippage_bps=target_bps,
            max_amount_in=best_amount,
            achieved_slippage_bps=best_slippage,
        )
        log_event(
            self._logger,
            level="info",
            event="depth_search_completed",
            message="Liquidity depth search completed",
            route=route.label(),
            target_bps=target_bps,
            max_amount_in=str(best_amount),
            achieved_slippage_bps=best_slippage,
            iterations=iterations,
            samples=len(samples),
        )
        return DepthSearchResult(threshold=threshold, samples=tuple(samples))

    async def measure_route(
        self,
        route: Route,
        targets_bps: Iterable[int] = DEFAULT_TARGETS_BPS,
    ) -> LiquidityDepth:
        # Each target runs its own search with its own baseline; they only share the limiter.
        tasks = [
            asyncio.create_task(self.find_max_amount_at_slippage(route, target))
            for target in targets_bps
        ]
        try:
            results = await asyncio.gather(*tasks)
        except BaseException:
            # A failed or cancelled measurement must not leave sibling searches probing.
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        return LiquidityDepth(
            route=route,
            thresholds=tuple(result.threshold for result in results),
            measured_at=now_iso(),
        )
