from .estimator import (
    LiquidityDepthEstimator,
    effective_rate,
    exact_effective_rate,
    slippage_bps,
    total_fees,
)
from .service import DepthProbeService

__all__ = [
    "DepthProbeService",
    "LiquidityDepthEstimator",
    "effective_rate",
    "exact_effective_rate",
    "slippage_bps",
    "total_fees",
]
