from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any

DEFAULT_STARGATE_BASE_URL = "https://stargate.finance/api/v1"
DEFAULT_PROBE_ADDRESS = "0x0000000000000000000000000000000000000001"
LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def to_int(value: Any, default: int) -> int:
    try:
        if value is None or str(value).strip() == "":
            return default
        return int(float(str(value).strip()))
    except (TypeError, ValueError):
        return default


def clamp(value: int, lower: int, upper: int) -> int:
    return max(lower, min(upper, value))


def parse_targets_bps(value: str | None, default: tuple[int, ...] = (50, 100)) -> tuple[int, ...]:
    if not value:
        return default
    targets: list[int] = []
    for raw in str(value).split(","):
        target = to_int(raw, -1)
        if target > 0 and target not in targets:
            targets.append(target)
    return tuple(targets) or default


def normalize_log_level(value: str | None) -> str:
    level = (value or "").strip().upper()
    if level in LOG_LEVELS:
        return level
    return "INFO"


@dataclass(slots=True)
class ProbeSettings:
    stargate_base_url: str
    http_timeout_ms: int
    max_retries: int
    rate_limit_rps: int
    retry_base_delay_ms: int
    retry_max_delay_ms: int
    depth_targets_bps: tuple[int, ...]
    depth_upper_bound_units: int
    depth_max_iterations: int
    probe_address: str
    log_level: str

    @property
    def http_timeout_seconds(self) -> float:
        return self.http_timeout_ms / 1000.0

    @property
    def retry_base_delay_seconds(self) -> float:
        return self.retry_base_delay_ms / 1000.0

    @property
    def retry_max_delay_seconds(self) -> float:
        return self.retry_max_delay_ms / 1000.0

    @classmethod
    def from_env(cls) -> "ProbeSettings":
        retry_base_delay_ms = max(0, to_int(os.getenv("RETRY_BASE_DELAY_MS"), 500))
        return cls(
            stargate_base_url=(
                os.getenv("STARGATE_BASE_URL", DEFAULT_STARGATE_BASE_URL).strip().rstrip("/")
                or DEFAULT_STARGATE_BASE_URL
            ),
            http_timeout_ms=clamp(to_int(os.getenv("HTTP_TIMEOUT_MS"), 12_000), 1_000, 60_000),
            max_retries=clamp(to_int(os.getenv("MAX_RETRIES"), 4), 1, 10),
            rate_limit_rps=clamp(to_int(os.getenv("RATE_LIMIT_RPS_STG"), 3), 1, 100),
            retry_base_delay_ms=retry_base_delay_ms,
            retry_max_delay_ms=max(
                retry_base_delay_ms,
                to_int(os.getenv("RETRY_MAX_DELAY_MS"), 3_000),
            ),
            depth_targets_bps=parse_targets_bps(os.getenv("DEPTH_TARGETS_BPS")),
            depth_upper_bound_units=max(1, to_int(os.getenv("DEPTH_UPPER_BOUND_UNITS"), 1_000_000)),
            depth_max_iterations=clamp(to_int(os.getenv("DEPTH_MAX_ITERATIONS"), 24), 1, 128),
            probe_address=os.getenv("PROBE_ADDRESS", DEFAULT_PROBE_ADDRESS).strip() or DEFAULT_PROBE_ADDRESS,
            log_level=normalize_log_level(os.getenv("LOG_LEVEL")),
        )
