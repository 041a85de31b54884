from __future__ import annotations

from typing import Protocol

from .types import Quote, Route


class QuotePort(Protocol):
    """Single quote request for `src_amount` smallest units along `route`.

    Implementations raise `QuoteError` with kind NO_QUOTE when the remote side
    has no viable quote for that size, and make exactly one attempt per call.
    """

    async def get_quote(
        self,
        route: Route,
        src_amount: int,
        *,
        src_address: str,
        dst_address: str,
    ) -> Quote:
        ...
