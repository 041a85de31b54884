from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import aiohttp

from liquidity_probe.common import log_event, sanitize_text
from liquidity_probe.resilience.retry import ResilientCaller

from .types import Quote, QuoteError, QuoteErrorKind, Route

DEFAULT_STARGATE_BASE_URL = "https://stargate.finance/api/v1"

_CHAIN_KEYS: dict[str, str] = {
    "1": "ethereum",
    "137": "polygon",
    "42161": "arbitrum",
    "10": "optimism",
    "56": "bsc",
    "43114": "avalanche",
    "8453": "base",
}

_NO_QUOTE_MARKERS = (
    "no quotes",
    "no route",
    "no routes",
    "insufficient liquidity",
    "not enough liquidity",
    "exceeds",
    "too large",
    "amount too",
)


def chain_key_for(chain_id: str) -> str:
    return _CHAIN_KEYS.get(str(chain_id).strip(), str(chain_id).strip())


def chain_id_for(chain_key: str, chains: dict[str, str] | None = None) -> str:
    if chains and chain_key in chains:
        return chains[chain_key]
    for chain_id, known_key in _CHAIN_KEYS.items():
        if known_key == chain_key:
            return chain_id
    return chain_key


def _lenient_text(body: bytes | str) -> str:
    return body.decode("utf-8", errors="replace") if isinstance(body, bytes) else body


def _sanitize_preview_for_log(body: bytes | str, *, limit: int = 240) -> str:
    if not body:
        return ""
    return sanitize_text(_lenient_text(body))[:limit]


def _decode_body(body: bytes | str) -> str:
    if isinstance(body, str):
        return body
    try:
        return body.decode("utf-8")
    except UnicodeDecodeError as error:
        raise QuoteError(
            f"Stargate returned a body that is not valid UTF-8: {_sanitize_preview_for_log(body)!r}",
            kind=QuoteErrorKind.MALFORMED,
        ) from error


def _is_no_quote_error_text(text: str) -> bool:
    normalized = (text or "").lower()
    return any(marker in normalized for marker in _NO_QUOTE_MARKERS)


def _error_message_from_payload(payload: Any) -> str:
    if isinstance(payload, dict):
        for key in ("message", "error", "details"):
            value = payload.get(key)
            if isinstance(value, dict):
                return _error_message_from_payload(value)
            if value:
                return str(value)
    return str(payload)


def parse_quotes_response(status: int, body: bytes | str) -> Quote:
    """Classify one `/quotes` response into a `Quote` or a tagged `QuoteError`."""
    if status >= 400:
        preview = _sanitize_preview_for_log(body, limit=300)
        if status == 429 or status >= 500:
            raise QuoteError.from_status(status, f"Stargate API error: status={status} body={preview!r}")
        if _is_no_quote_error_text(_lenient_text(body)):
            raise QuoteError(
                f"No quote available: status={status} body={preview!r}",
                kind=QuoteErrorKind.NO_QUOTE,
                status=None,
            )
        raise QuoteError.from_status(status, f"Stargate API error: status={status} body={preview!r}")

    try:
        data = json.loads(_decode_body(body))
    except json.JSONDecodeError as error:
        raise QuoteError(
            f"Stargate returned non-JSON response: {_sanitize_preview_for_log(body)!r}",
            kind=QuoteErrorKind.MALFORMED,
        ) from error

    if not isinstance(data, dict) or not isinstance(data.get("quotes"), list):
        raise QuoteError(
            f"Unexpected quotes response: {_sanitize_preview_for_log(body)!r}",
            kind=QuoteErrorKind.MALFORMED,
        )

    candidates = [item for item in data["quotes"] if not (isinstance(item, dict) and item.get("error"))]
    if not candidates:
        reasons = [
            _error_message_from_payload(item.get("error"))
            for item in data["quotes"]
            if isinstance(item, dict)
        ]
        detail = "; ".join(reason for reason in reasons if reason) or "empty quote list"
        raise QuoteError(
            f"No quotes available for this route: {detail[:240]}",
            kind=QuoteErrorKind.NO_QUOTE,
        )

    return Quote.from_payload(candidates[0])


def _parse_list_response(body: bytes | str, key: str) -> list[dict[str, Any]]:
    try:
        data = json.loads(_decode_body(body))
    except json.JSONDecodeError as error:
        raise QuoteError(
            f"Stargate returned non-JSON {key} response",
            kind=QuoteErrorKind.MALFORMED,
        ) from error
    items = data.get(key) if isinstance(data, dict) else None
    if not isinstance(items, list):
        raise QuoteError(f"Unexpected {key} response shape", kind=QuoteErrorKind.MALFORMED)
    return [item for item in items if isinstance(item, dict)]


class StargateClient:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        caller: ResilientCaller,
        base_url: str = DEFAULT_STARGATE_BASE_URL,
        timeout_seconds: float = 12.0,
    ) -> None:
        self._logger = logger
        self._caller = caller
        self._base_url = base_url.rstrip("/")
        self._timeout_seconds = timeout_seconds
        self._session: aiohttp.ClientSession | None = None

    async def connect(self) -> None:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self._timeout_seconds)
            self._session = aiohttp.ClientSession(
                timeout=timeout,
                headers={
                    "Accept": "application/json",
                    "User-Agent": "liquidity-probe/1.0",
                },
            )

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def _get(self, path: str, params: dict[str, str] | None = None) -> tuple[int, bytes]:
        if self._session is None:
            await self.connect()
        if self._session is None:
            raise RuntimeError("Stargate HTTP session is not initialized.")

        url = f"{self._base_url}/{path.lstrip('/')}"
        try:
            async with self._session.get(url, params=params) as response:
                return response.status, await response.read()
        except asyncio.TimeoutError as error:
            raise QuoteError(
                f"Stargate request timed out after {self._timeout_seconds}s: {path}",
                kind=QuoteErrorKind.TRANSIENT,
            ) from error
        except aiohttp.ClientError as error:
            raise QuoteError(
                f"Stargate request failed: {error}",
                kind=QuoteErrorKind.TRANSIENT,
            ) from error

    async def get_quote(
        self,
        route: Route,
        src_amount: int,
        *,
        src_address: str,
        dst_address: str,
    ) -> Quote:
        params = {
            "srcToken": route.source.asset_id,
            "dstToken": route.destination.asset_id,
            "srcChainKey": chain_key_for(route.source.chain_id),
            "dstChainKey": chain_key_for(route.destination.chain_id),
            "srcAddress": src_address,
            "dstAddress": dst_address,
            "srcAmount": str(src_amount),
            "dstAmountMin": "0",
        }
        status, body = await self._get("quotes", params)
        try:
            return parse_quotes_response(status, body)
        except QuoteError as error:
            log_event(
                self._logger,
                level="debug",
                event="stargate_quote_error",
                message="Stargate quote request did not produce a quote",
                route=route.label(),
                src_amount=str(src_amount),
                status=status,
                kind=error.kind.value,
                body_preview=_sanitize_preview_for_log(body),
            )
            raise

    async def request_quote(
        self,
        route: Route,
        src_amount: int,
        *,
        src_address: str,
        dst_address: str,
    ) -> Quote:
        return await self._caller.call(
            lambda: self.get_quote(route, src_amount, src_address=src_address, dst_address=dst_address),
            operation_name="stargate quote",
        )

    async def _fetch_list(self, path: str, key: str) -> list[dict[str, Any]]:
        async def fetch() -> list[dict[str, Any]]:
            status, body = await self._get(path)
            if status >= 400:
                raise QuoteError.from_status(
                    status,
                    f"Stargate API error: status={status} body={_sanitize_preview_for_log(body)!r}",
                )
            return _parse_list_response(body, key)

        return await self._caller.call(fetch, operation_name=f"stargate {key}")

    async def get_tokens(self) -> list[dict[str, Any]]:
        return await self._fetch_list("tokens", "tokens")

    async def get_chains(self) -> list[dict[str, Any]]:
        return await self._fetch_list("chains", "chains")
