"""Deadlines for repository and oracle calls."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import TypeVar

from proposal_engine.errors import Timeout

T = TypeVar("T")


async def bounded(awaitable: Awaitable[T], timeout: float, what: str) -> T:
    """Await ``awaitable`` for at most ``timeout`` seconds.

    On expiry the inner call is cancelled and ``Timeout`` is raised.
    """
    try:
        async with asyncio.timeout(timeout):
            return await awaitable
    except TimeoutError as exc:
        raise Timeout(f"{what} exceeded {timeout:.1f}s deadline") from exc
