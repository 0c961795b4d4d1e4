"""Cooperative cancellation shared by harvest, rendering and delivery waits.

A ``CancelScope`` is passed down through every blocking call. Cancelling a
scope (or letting its deadline pass) wakes all of its pending waits, and the
waits of any child scope, with ``OperationCancelledError``.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable
from typing import TypeVar

T = TypeVar("T")


class OperationCancelledError(Exception):
    def __init__(self, reason: str = "cancelled") -> None:
        super().__init__(reason)
        self.reason = reason


class CancelScope:
    def __init__(
        self,
        *,
        timeout_seconds: float | None = None,
        parent: CancelScope | None = None,
    ) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None
        self._deadline = time.monotonic() + timeout_seconds if timeout_seconds is not None else None
        self._children: list[CancelScope] = []
        if parent is not None:
            if parent._deadline is not None:
                self._deadline = (
                    parent._deadline if self._deadline is None else min(self._deadline, parent._deadline)
                )
            parent._children.append(self)
            if parent.cancelled:
                self.cancel(parent.reason or "cancelled")

    @property
    def reason(self) -> str | None:
        self._check_deadline()
        return self._reason

    @property
    def cancelled(self) -> bool:
        self._check_deadline()
        return self._event.is_set()

    def remaining_seconds(self) -> float | None:
        if self._deadline is None:
            return None
        return max(self._deadline - time.monotonic(), 0.0)

    def child(self, *, timeout_seconds: float | None = None) -> CancelScope:
        return CancelScope(timeout_seconds=timeout_seconds, parent=self)

    def cancel(self, reason: str = "cancelled") -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        for child in self._children:
            child.cancel(reason)

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise OperationCancelledError(self._reason or "cancelled")

    async def sleep(self, seconds: float) -> None:
        self.raise_if_cancelled()
        if seconds <= 0:
            return
        await self._wait_event(seconds)

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the scope is cancelled first."""
        self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _pending = await asyncio.wait(
                {task, waiter},
                timeout=self.remaining_seconds(),
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()
        if task in done:
            return task.result()
        task.cancel()
        try:
            await task
        except (asyncio.CancelledError, Exception):
            pass
        self._check_deadline(force=True)
        raise OperationCancelledError(self._reason or "cancelled")

    async def _wait_event(self, seconds: float) -> None:
        remaining = self.remaining_seconds()
        bounded_by_deadline = remaining is not None and remaining <= seconds
        timeout = remaining if bounded_by_deadline else seconds
        try:
            await asyncio.wait_for(self._event.wait(), timeout=timeout)
        except TimeoutError:
            if not bounded_by_deadline:
                return
            self._check_deadline(force=True)
        raise OperationCancelledError(self._reason or "cancelled")

    def _check_deadline(self, *, force: bool = False) -> None:
        if self._event.is_set() or self._deadline is None:
            return
        if force or time.monotonic() >= self._deadline:
            self.cancel("deadline_exceeded")


async def sleep(seconds: float, cancel: CancelScope | None = None) -> None:
    if cancel is None:
        if seconds > 0:
            await asyncio.sleep(seconds)
        return
    await cancel.sleep(seconds)


async def run(awaitable: Awaitable[T], cancel: CancelScope | None = None) -> T:
    if cancel is None:
        return await awaitable
    return await cancel.run(awaitable)


def raise_if_cancelled(cancel: CancelScope | None) -> None:
    if cancel is not None:
        cancel.raise_if_cancelled()
