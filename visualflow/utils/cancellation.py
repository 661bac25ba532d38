"""
Execution Cancellation Utility
==============================

Cooperative cancellation for pipeline executions.

A token is created per execution and threaded through the pipeline and stage
executors. It is checked between stages and raced against every service
call, so a cancelled or overdue execution stops at the next suspension point
instead of running to completion.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable
from typing import TypeVar

from visualflow.core.exceptions import ExecutionCancelledError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    """
    Token for cooperative cancellation with an optional deadline.

    Usage:
        token = CancellationToken(deadline_s=30)

        for stage in stages:
            token.raise_if_cancelled(stage.id)
            output = await token.run(invoke(stage), stage=stage.id)
    """

    def __init__(self, deadline_s: float | None = None):
        self._event = asyncio.Event()
        self._reason: str | None = None
        self.deadline_s = deadline_s
        self._deadline = time.monotonic() + deadline_s if deadline_s else None

    @property
    def reason(self) -> str | None:
        return self._reason

    @property
    def remaining(self) -> float | None:
        """Seconds until the deadline, or None when there is no deadline."""
        if self._deadline is None:
            return None
        return max(self._deadline - time.monotonic(), 0.0)

    @property
    def is_cancelled(self) -> bool:
        if not self._event.is_set() and self.remaining == 0.0:
            self.cancel(f"Execution deadline of {self.deadline_s}s exceeded")
        return self._event.is_set()

    def cancel(self, reason: str = "Execution cancelled") -> None:
        """Request cancellation. Only the first reason is kept."""
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        logger.debug("Cancellation requested: %s", reason)

    def raise_if_cancelled(self, stage: str = "unknown") -> None:
        if self.is_cancelled:
            raise ExecutionCancelledError(self._reason or "Execution cancelled", stage=stage)

    async def run(self, awaitable: Awaitable[T], stage: str = "unknown") -> T:
        """
        Await ``awaitable`` unless the token is cancelled first.

        On cancellation (or deadline expiry) the pending work is cancelled and
        ExecutionCancelledError is raised.
        """
        task = asyncio.ensure_future(awaitable)
        if self.is_cancelled:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            self.raise_if_cancelled(stage)

        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter},
                timeout=self.remaining,
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
        await asyncio.gather(task, return_exceptions=True)
        if not self._event.is_set():
            # asyncio.wait timed out on the deadline
            self.cancel(f"Execution deadline of {self.deadline_s}s exceeded")
        self.raise_if_cancelled(stage)
        raise ExecutionCancelledError(self._reason or "Execution cancelled", stage=stage)


__all__ = ["CancellationToken"]
