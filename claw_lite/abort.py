"""Cooperative cancellation signal shared between a run and its owner."""

import asyncio
import inspect
from collections.abc import Awaitable
from typing import Any, TypeVar

from claw_lite.exceptions import RunAbortedError

T = TypeVar("T")


class AbortSignal:
    """One-shot abort flag with a reason.

    The owner calls ``abort()``; the run checks ``aborted`` or awaits
    work through ``guard()`` at its suspension points.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: str = ""

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    def abort(self, reason: str = "aborted") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_aborted(self) -> None:
        if self._event.is_set():
            raise RunAbortedError(self.reason or "aborted")

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the signal fires first.

        On abort the pending work is cancelled and ``RunAbortedError`` is
        raised.
        """
        if self._event.is_set():
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            raise RunAbortedError(self.reason or "aborted")
        work: asyncio.Future[Any] = asyncio.ensure_future(awaitable)
        abort_wait = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {work, abort_wait},
                return_when=asyncio.FIRST_COMPLETED,
            )
            if work in done:
                return work.result()
            await _cancel_task(work)
            raise RunAbortedError(self.reason or "aborted")
        except asyncio.CancelledError:
            await _cancel_task(work)
            raise
        finally:
            await _cancel_task(abort_wait)


async def _cancel_task(task: asyncio.Future[Any] | None) -> None:
    """Cancel task and await it to avoid pending task warnings."""
    if task is None or task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception:
        pass
