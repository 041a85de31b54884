from __future__ import annotations

import asyncio
import logging
from typing import Any, Sequence

from liquidity_probe.common import guarded_call, log_event
from liquidity_probe.quotes.stargate import StargateClient, chain_id_for
from liquidity_probe.quotes.types import (
    Asset,
    LiquidityDepth,
    ListedAssets,
    RateQuote,
    Route,
    now_iso,
)

from .estimator import (
    DEFAULT_PROBE_ADDRESS,
    DEFAULT_TARGETS_BPS,
    LiquidityDepthEstimator,
    effective_rate,
    total_fees,
)


class DepthProbeService:
    """Aggregates rates, liquidity depth and listed assets for a set of routes.

    A route or notional that fails is logged and left out of the result.
    """

    def __init__(
        self,
        *,
        client: StargateClient,
        estimator: LiquidityDepthEstimator,
        logger: logging.Logger,
        targets_bps: Sequence[int] = DEFAULT_TARGETS_BPS,
        probe_address: str = DEFAULT_PROBE_ADDRESS,
    ) -> None:
        self._client = client
        self._estimator = estimator
        self._logger = logger
        self._targets_bps = tuple(targets_bps)
        self._probe_address = probe_address

    async def _rate_for(self, route: Route, notional: int) -> RateQuote:
        quote = await self._client.request_quote(
            route,
            notional,
            src_address=self._probe_address,
            dst_address=self._probe_address,
        )
        return RateQuote(
            route=route,
            amount_in=quote.src_amount,
            amount_out=quote.dst_amount,
            effective_rate=effective_rate(
                quote.src_amount,
                quote.dst_amount,
                route.source.decimals,
                route.destination.decimals,
            ),
            total_fees=total_fees(quote, route.source.decimals),
            quoted_at=now_iso(),
        )

    async def get_rates(self, routes: Sequence[Route], notionals: Sequence[int]) -> list[RateQuote]:
        rates: list[RateQuote] = []
        for route in routes:
            for notional in notionals:
                rate = await guarded_call(
                    lambda: self._rate_for(route, notional),
                    logger=self._logger,
                    event="rate_route_failed",
                    message="Failed to fetch rate for route",
                    route=route.label(),
                    notional=str(notional),
                )
                if rate is not None:
                    rates.append(rate)
        return rates

    async def get_liquidity(self, routes: Sequence[Route]) -> list[LiquidityDepth]:
        async def measure(route: Route) -> LiquidityDepth | None:
            return await guarded_call(
                lambda: self._estimator.measure_route(route, self._targets_bps),
                logger=self._logger,
                event="liquidity_route_failed",
                message="Failed to measure liquidity depth for route",
                route=route.label(),
                targets_bps=list(self._targets_bps),
            )

        results = await asyncio.gather(*(measure(route) for route in routes))
        return [depth for depth in results if depth is not None]

    async def list_assets(self) -> ListedAssets:
        tokens, chains = await asyncio.gather(
            self._client.get_tokens(),
            self._client.get_chains(),
        )
        chain_ids = {
            str(chain.get("chainKey")): str(chain.get("chainId"))
            for chain in chains
            if chain.get("chainKey") is not None and chain.get("chainId") is not None
        }
        assets: list[Asset] = []
        for token in tokens:
            try:
                assets.append(
                    Asset(
                        chain_id=chain_id_for(str(token["chainKey"]), chain_ids),
                        asset_id=str(token["address"]),
                        symbol=str(token.get("symbol") or ""),
                        decimals=int(token["decimals"]),
                    )
                )
            except (KeyError, TypeError, ValueError) as error:
                log_event(
                    self._logger,
                    level="debug",
                    event="listed_asset_skipped",
                    message="Skipping malformed token entry",
                    error=str(error),
                )
        return ListedAssets(assets=tuple(assets), measured_at=now_iso())

    async def get_snapshot(self, routes: Sequence[Route], notionals: Sequence[int]) -> dict[str, Any]:
        log_event(
            self._logger,
            level="info",
            event="snapshot_started",
            message="Fetching provider snapshot",
            routes=len(routes),
            notionals=[str(notional) for notional in notionals],
            targets_bps=list(self._targets_bps),
        )
        rates, liquidity, listed_assets = await asyncio.gather(
            self.get_rates(routes, notionals),
            self.get_liquidity(routes),
            guarded_call(
                self.list_assets,
                logger=self._logger,
                event="listed_assets_failed",
                message="Failed to fetch listed assets",
            ),
        )
        return {
            "rates": [rate.to_dict() for rate in rates],
            "liquidity": [depth.to_dict() for depth in liquidity],
            "listedAssets": listed_assets.to_dict() if listed_assets is not None else None,
        }

    async def ping(self) -> dict[str, str]:
        return {"status": "ok", "timestamp": now_iso()}
