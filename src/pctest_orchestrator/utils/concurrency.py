"""Async concurrency primitives used by the process supervisor and tree walker."""

from __future__ import annotations

import asyncio
import inspect
from contextlib import suppress
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Awaitable, Mapping

T = TypeVar("T")


class CancellationToken:
    """Cooperative cancellation token backed by ``asyncio.Event``."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise asyncio.CancelledError("operation cancelled")


async def first_completed(
    contenders: Mapping[str, Awaitable[object]],
    *,
    timeout_seconds: float | None = None,
) -> str:
    """
    Race named awaitables and return the name of the first one to finish.

    ``"timeout"`` is returned when ``timeout_seconds`` elapses first. Losers are cancelled
    and awaited before returning, so no task outlives the race.
    """
    if not contenders:
        raise ValueError("contenders must not be empty")
    if timeout_seconds is not None and timeout_seconds <= 0:
        for awaitable in contenders.values():
            _close_unscheduled_coroutine(awaitable)
        raise ValueError("timeout_seconds must be > 0")

    tasks: dict[asyncio.Future[object], str] = {
        asyncio.ensure_future(_await_value(awaitable)): name
        for name, awaitable in contenders.items()
    }
    try:
        done, _ = await asyncio.wait(
            set(tasks),
            timeout=timeout_seconds,
            return_when=asyncio.FIRST_COMPLETED,
        )
        if not done:
            return "timeout"
        # Declaration order breaks ties between contenders finishing in the same tick.
        for task, name in tasks.items():
            if task in done:
                return name
        return "timeout"
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
        for task in tasks:
            with suppress(asyncio.CancelledError):
                await task


async def _await_value(awaitable: Awaitable[T]) -> T:
    return await awaitable


def _close_unscheduled_coroutine(awaitable: Awaitable[object]) -> None:
    # If validation fails before scheduling, close raw coroutine objects
    # so CPython does not emit "coroutine was never awaited" at GC time.
    if inspect.iscoroutine(awaitable):
        awaitable.close()


__all__ = [
    "CancellationToken",
    "first_completed",
]
