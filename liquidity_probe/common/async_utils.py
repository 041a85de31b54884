from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, TypeVar

from .logging import log_event

T = TypeVar("T")


def _failure_fields(error: BaseException) -> dict[str, Any]:
    fields: dict[str, Any] = {"error": str(error), "error_type": type(error).__name__}
    kind = getattr(error, "kind", None)
    if kind is not None:
        fields["error_kind"] = getattr(kind, "value", str(kind))
    for name in ("status", "target_bps"):
        value = getattr(error, name, None)
        if value is not None:
            fields[name] = value
    cause = getattr(error, "cause", None)
    if cause is not None:
        fields["cause"] = str(cause)
    return fields


async def guarded_call(
    action: Callable[[], Awaitable[T]],
    *,
    logger: logging.Logger,
    event: str,
    message: str,
    default: T | None = None,
    **fields: Any,
) -> T | None:
    """Await `action`; on failure log it and return `default` so sibling routes still report."""
    try:
        return await action()
    except asyncio.CancelledError:
        raise
    except Exception as error:
        log_event(
            logger,
            level="warning",
            event=event,
            message=message,
            **{**_failure_fields(error), **fields},
        )
        return default
