"""Exponential backoff for idempotent platform calls."""
from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, TypeVar

T = TypeVar("T")

log = logging.getLogger(__name__)


def _status_of(exc: BaseException) -> int | None:
    # discord.HTTPException exposes ``status``; requests-style errors a response
    status = getattr(exc, "status", None)
    if isinstance(status, int):
        return status
    return getattr(getattr(exc, "response", None), "status_code", None)


def is_transient(exc: BaseException) -> bool:
    """Return True for HTTP errors worth retrying (408, 409 and 5xx)."""
    status = _status_of(exc)
    return status in {408, 409} or bool(status and 500 <= status < 600)


async def call_with_backoff(
    fn: Callable[[], Awaitable[T]],
    retries: int = 3,
    base: float = 0.5,
    max_delay: float = 8.0,
    *,
    sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
) -> T:
    """Await *fn* with exponential backoff on transient HTTP errors."""
    for attempt in range(retries + 1):
        try:
            return await fn()
        except Exception as exc:
            if not is_transient(exc):
                raise
            # Bail out if we've exhausted all retry attempts.
            if attempt == retries:
                raise
            delay = min(max_delay, base * (2 ** attempt))
            delay += random.uniform(0, 0.1)
            log.debug("Transient error %s; retrying in %.2fs", _status_of(exc), delay)
            await sleep(delay)
    # Should be unreachable because either fn() succeeds or an exception is raised.
    raise RuntimeError("call_with_backoff reached an unreachable state")
