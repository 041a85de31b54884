from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class QuoteErrorKind(str, enum.Enum):
    TRANSIENT = "transient"
    CLIENT = "client"
    NO_QUOTE = "no_quote"
    MALFORMED = "malformed"


class QuoteError(RuntimeError):
    """A failed quote request, tagged with the kind of failure.

    `status` is set only when the remote side answered with an HTTP status.
    """

    def __init__(
        self,
        message: str,
        *,
        kind: QuoteErrorKind,
        status: int | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.status = status

    @classmethod
    def from_status(cls, status: int, message: str) -> "QuoteError":
        if status == 429 or status >= 500:
            return cls(message, kind=QuoteErrorKind.TRANSIENT, status=status)
        return cls(message, kind=QuoteErrorKind.CLIENT, status=status)

    @property
    def is_no_quote(self) -> bool:
        return self.kind is QuoteErrorKind.NO_QUOTE


class DepthSearchError(RuntimeError):
    def __init__(self, message: str, *, target_bps: int, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.target_bps = target_bps
        self.cause = cause


def _parse_int_string(payload: dict[str, Any], key: str, *, required: bool = True) -> int:
    raw = payload.get(key)
    if raw is None:
        if required:
            raise QuoteError(f"Quote payload is missing {key!r}", kind=QuoteErrorKind.MALFORMED)
        return 0
    if isinstance(raw, bool) or not isinstance(raw, (str, int)):
        raise QuoteError(
            f"Quote field {key!r} must be an integer string, got {type(raw).__name__}",
            kind=QuoteErrorKind.MALFORMED,
        )
    text = str(raw).strip()
    if not (text.isascii() and text.isdigit()):
        raise QuoteError(
            f"Quote field {key!r} is not a non-negative integer: {text[:64]!r}",
            kind=QuoteErrorKind.MALFORMED,
        )
    return int(text)


@dataclass(slots=True, frozen=True)
class Asset:
    chain_id: str
    asset_id: str
    symbol: str
    decimals: int

    def __post_init__(self) -> None:
        if self.decimals < 0:
            raise ValueError(f"Asset decimals must be non-negative, got {self.decimals}")

    @property
    def one_unit(self) -> int:
        return 10**self.decimals

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "Asset":
        return cls(
            chain_id=str(payload["chainId"]),
            asset_id=str(payload["assetId"]),
            symbol=str(payload.get("symbol") or ""),
            decimals=int(payload["decimals"]),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "chainId": self.chain_id,
            "assetId": self.asset_id,
            "symbol": self.symbol,
            "decimals": self.decimals,
        }


@dataclass(slots=True, frozen=True)
class Route:
    source: Asset
    destination: Asset

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "Route":
        return cls(
            source=Asset.from_dict(payload["source"]),
            destination=Asset.from_dict(payload["destination"]),
        )

    def label(self) -> str:
        return (
            f"{self.source.symbol}@{self.source.chain_id}"
            f"->{self.destination.symbol}@{self.destination.chain_id}"
        )

    def to_dict(self) -> dict[str, Any]:
        return {"source": self.source.to_dict(), "destination": self.destination.to_dict()}


@dataclass(slots=True, frozen=True)
class Fee:
    amount: int
    name: str | None = None
    token: str | None = None


@dataclass(slots=True, frozen=True)
class Quote:
    src_amount: int
    dst_amount: int
    dst_amount_min: int
    duration_seconds: float | None = None
    fees: tuple[Fee, ...] = ()

    @classmethod
    def from_payload(cls, payload: Any) -> "Quote":
        if not isinstance(payload, dict):
            raise QuoteError("Quote entry is not a JSON object", kind=QuoteErrorKind.MALFORMED)

        duration_seconds: float | None = None
        duration = payload.get("duration")
        if isinstance(duration, dict) and isinstance(duration.get("estimated"), (int, float)):
            duration_seconds = float(duration["estimated"])

        raw_fees = payload.get("fees") or []
        if not isinstance(raw_fees, list):
            raise QuoteError("Quote 'fees' must be a list", kind=QuoteErrorKind.MALFORMED)
        fees: list[Fee] = []
        for raw_fee in raw_fees:
            if not isinstance(raw_fee, dict):
                raise QuoteError("Quote fee entry is not a JSON object", kind=QuoteErrorKind.MALFORMED)
            fees.append(
                Fee(
                    amount=_parse_int_string(raw_fee, "amount"),
                    name=str(raw_fee["name"]) if raw_fee.get("name") is not None else None,
                    token=str(raw_fee["token"]) if raw_fee.get("token") is not None else None,
                )
            )

        return cls(
            src_amount=_parse_int_string(payload, "srcAmount"),
            dst_amount=_parse_int_string(payload, "dstAmount"),
            dst_amount_min=_parse_int_string(payload, "dstAmountMin"),
            duration_seconds=duration_seconds,
            fees=tuple(fees),
        )


@dataclass(slots=True, frozen=True)
class Sample:
    src_amount: int
    dst_amount: int
    slippage_bps: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "srcAmount": str(self.src_amount),
            "dstAmount": str(self.dst_amount),
            "slippageBps": self.slippage_bps,
        }


@dataclass(slots=True, frozen=True)
class Threshold:
    target_slippage_bps: int
    max_amount_in: int
    achieved_slippage_bps: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "slippageBps": self.target_slippage_bps,
            "maxAmountIn": str(self.max_amount_in),
            "achievedSlippageBps": self.achieved_slippage_bps,
        }


@dataclass(slots=True, frozen=True)
class DepthSearchResult:
    threshold: Threshold
    samples: tuple[Sample, ...] = ()


@dataclass(slots=True, frozen=True)
class LiquidityDepth:
    route: Route
    thresholds: tuple[Threshold, ...]
    measured_at: str = field(default_factory=now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "route": self.route.to_dict(),
            "thresholds": [threshold.to_dict() for threshold in self.thresholds],
            "measuredAt": self.measured_at,
        }


@dataclass(slots=True, frozen=True)
class RateQuote:
    route: Route
    amount_in: int
    amount_out: int
    effective_rate: float
    total_fees: float
    quoted_at: str = field(default_factory=now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.route.source.to_dict(),
            "destination": self.route.destination.to_dict(),
            "amountIn": str(self.amount_in),
            "amountOut": str(self.amount_out),
            "effectiveRate": self.effective_rate,
            "totalFeesUsd": self.total_fees,
            "quotedAt": self.quoted_at,
        }


@dataclass(slots=True, frozen=True)
class ListedAssets:
    assets: tuple[Asset, ...]
    measured_at: str = field(default_factory=now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "assets": [asset.to_dict() for asset in self.assets],
            "measuredAt": self.measured_at,
        }
