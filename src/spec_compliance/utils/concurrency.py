"""Async concurrency primitives used by the run orchestrator and watch loop."""

from __future__ import annotations

import asyncio
import inspect
from typing import TYPE_CHECKING, Generic, TypeVar

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Iterable

T = TypeVar("T")

_DEFAULT_REASON = "operation cancelled"


class CancellationError(asyncio.CancelledError):
    """Cooperative cancellation requested through a :class:`CancellationToken`.

    A normal terminal outcome for a run, not a failure.
    """


class CancellationToken:
    """One-shot cancellation flag that async code can poll or await."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = _DEFAULT_REASON) -> None:
        # The first reason wins.
        self.reason = self.reason or reason
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self.is_cancelled:
            raise CancellationError(self.reason or _DEFAULT_REASON)


class WorkerPool(Generic[T]):
    """Run coroutines at most ``max_concurrency`` at a time, yielding results as they finish.

    Jobs still waiting for a slot when the token fires are skipped and the
    iterator raises :class:`CancellationError`. The first job error cancels the
    remaining jobs and propagates.
    """

    def __init__(
        self, max_concurrency: int, cancel_token: CancellationToken | None = None
    ) -> None:
        if max_concurrency <= 0:
            raise ValueError("max_concurrency must be > 0")
        self.max_concurrency = max_concurrency
        self.in_flight = 0
        self._token = cancel_token or CancellationToken()
        self._slots = asyncio.Semaphore(max_concurrency)

    async def run(self, coroutines: Iterable[Awaitable[T]]) -> AsyncIterator[T]:
        jobs = list(coroutines)
        if self._token.is_cancelled:
            for job in jobs:
                _discard(job)
            self._token.raise_if_cancelled()

        running = {asyncio.create_task(self._guarded(job)) for job in jobs}
        stop = asyncio.create_task(self._token.wait())
        try:
            while running:
                done, _ = await asyncio.wait(
                    {*running, stop}, return_when=asyncio.FIRST_COMPLETED
                )
                running -= done
                for task in done - {stop}:
                    if task.cancelled():
                        self._token.raise_if_cancelled()
                        raise asyncio.CancelledError("worker task cancelled")
                    error = task.exception()
                    if error is not None:
                        raise error
                    yield task.result()
                self._token.raise_if_cancelled()
        finally:
            stop.cancel()
            for task in running:
                task.cancel()
            await asyncio.gather(stop, *running, return_exceptions=True)

    async def _guarded(self, job: Awaitable[T]) -> T:
        try:
            async with self._slots:
                self._token.raise_if_cancelled()
                self.in_flight += 1
                try:
                    return await job
                finally:
                    self.in_flight -= 1
        finally:
            _discard(job)


async def run_with_timeout(
    coroutine: Awaitable[T],
    timeout_seconds: float,
    cancel_token: CancellationToken | None = None,
) -> T:
    """Await ``coroutine`` for at most ``timeout_seconds``.

    Raises ``TimeoutError`` on expiry and :class:`CancellationError` when the token
    fires first. The inner work is cancelled in both cases.
    """
    if timeout_seconds <= 0:
        _discard(coroutine)
        raise ValueError("timeout_seconds must be > 0")
    token = cancel_token or CancellationToken()
    if token.is_cancelled:
        _discard(coroutine)
        token.raise_if_cancelled()

    work = asyncio.ensure_future(coroutine)
    stop = asyncio.create_task(token.wait())
    try:
        done, _ = await asyncio.wait(
            {work, stop}, timeout=timeout_seconds, return_when=asyncio.FIRST_COMPLETED
        )
        if work in done:
            return work.result()
        token.raise_if_cancelled()
        raise TimeoutError(f"operation timed out after {timeout_seconds} seconds")
    finally:
        work.cancel()
        stop.cancel()
        await asyncio.gather(work, stop, return_exceptions=True)


def _discard(awaitable: Awaitable[object]) -> None:
    # Unstarted coroutines warn "never awaited" at GC; closing a finished one is a no-op.
    if inspect.iscoroutine(awaitable):
        awaitable.close()


__all__ = [
    "CancellationError",
    "CancellationToken",
    "WorkerPool",
    "run_with_timeout",
]
