from .port import QuotePort
from .types import (
    Asset,
    DepthSearchError,
    DepthSearchResult,
    Fee,
    LiquidityDepth,
    ListedAssets,
    Quote,
    QuoteError,
    QuoteErrorKind,
    RateQuote,
    Route,
    Sample,
    Threshold,
)

__all__ = [
    "Asset",
    "DepthSearchError",
    "DepthSearchResult",
    "Fee",
    "LiquidityDepth",
    "ListedAssets",
    "Quote",
    "QuoteError",
    "QuoteErrorKind",
    "QuotePort",
    "RateQuote",
    "Route",
    "Sample",
    "Threshold",
]
