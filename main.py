from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from liquidity_probe.depth import DepthProbeService, LiquidityDepthEstimator
from liquidity_probe.quotes import Route
from liquidity_probe.quotes.stargate import StargateClient
from liquidity_probe.resilience import ResilientCaller, RetryPolicy, TokenBucketLimiter
from liquidity_probe.runtime import ProbeSettings, setup_logger
from liquidity_probe.runtime.settings import parse_targets_bps


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Probe Stargate quotes and report liquidity depth per route.",
    )
    parser.add_argument(
        "--routes",
        required=True,
        help="Path to a JSON file holding a list of {source, destination} asset routes.",
    )
    parser.add_argument(
        "--notional",
        action="append",
        default=[],
        help="Source amount in smallest units to quote a rate for. Repeatable.",
    )
    parser.add_argument(
        "--targets",
        default="",
        help="Comma separated slippage targets in bps. Defaults to DEPTH_TARGETS_BPS.",
    )
    return parser.parse_args(argv)


def load_routes(path: str) -> list[Route]:
    payload = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(payload, dict):
        payload = payload.get("routes", [])
    if not isinstance(payload, list):
        raise ValueError(f"{path} must contain a list of routes")
    return [Route.from_dict(item) for item in payload]


def build_service(
    *,
    settings: ProbeSettings,
    logger: logging.Logger,
    targets_bps: tuple[int, ...],
) -> tuple[StargateClient, DepthProbeService]:
    limiter = TokenBucketLimiter(settings.rate_limit_rps, logger=logger)
    caller = ResilientCaller(
        limiter,
        RetryPolicy(
            max_retries=settings.max_retries,
            base_delay_seconds=settings.retry_base_delay_seconds,
            max_delay_seconds=settings.retry_max_delay_seconds,
        ),
        logger=logger,
    )
    client = StargateClient(
        logger=logger,
        caller=caller,
        base_url=settings.stargate_base_url,
        timeout_seconds=settings.http_timeout_seconds,
    )
    estimator = LiquidityDepthEstimator(
        quote_port=client,
        caller=caller,
        logger=logger,
        upper_bound_units=settings.depth_upper_bound_units,
        max_iterations=settings.depth_max_iterations,
        probe_address=settings.probe_address,
    )
    service = DepthProbeService(
        client=client,
        estimator=estimator,
        logger=logger,
        targets_bps=targets_bps,
        probe_address=settings.probe_address,
    )
    return client, service


async def run(args: argparse.Namespace) -> dict[str, Any]:
    settings = ProbeSettings.from_env()
    logger = setup_logger(settings.log_level)
    targets_bps = parse_targets_bps(args.targets, settings.depth_targets_bps)
    routes = load_routes(args.routes)
    notionals = [int(value) for value in args.notional]

    client, service = build_service(settings=settings, logger=logger, targets_bps=targets_bps)

    task = asyncio.current_task()
    loop = asyncio.get_running_loop()

    def request_shutdown(sig: signal.Signals) -> None:
        logger.info(
            "Shutdown signal received",
            extra={"event": "shutdown_signal_received", "signal": sig.name},
        )
        if task is not None:
            task.cancel()

    for sig in (signal.SIGTERM, signal.SIGINT):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, request_shutdown, sig)

    try:
        await client.connect()
        return await service.get_snapshot(routes, notionals)
    finally:
        await client.close()
        logger.info("Probe completed", extra={"event": "probe_completed", "routes": len(routes)})


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    args = parse_args(argv)
    try:
        snapshot = asyncio.run(run(args))
    except asyncio.CancelledError:
        return 130
    json.dump(snapshot, sys.stdout, indent=2)
    sys.stdout.write("\n")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
