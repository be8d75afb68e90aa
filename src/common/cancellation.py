"""
Cooperative cancellation for bulk runs.

A CancellationToken is handed to the batch runner and checked at every
wait point: before each batch, before each attempt, and during backoff
and inter-batch sleeps. Operation calls already in flight run to
completion.

Usage:
    token = CancellationToken()
    task = asyncio.create_task(runner.run(items, operation, cancel_token=token))
    ...
    token.cancel("User closed the dialog")
"""

import asyncio
from typing import Awaitable, Callable, Optional

from src.common.error_handling import OperationCancelledError

SleepFn = Callable[[float], Awaitable[None]]


class CancellationToken:
    """Cancellation signal shared between a caller and a running batch."""

    def __init__(self):
        self._event = asyncio.Event()
        self._reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: str = "Operation cancelled") -> None:
        """Signal cancellation. Only the first reason is kept."""
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelledError(self._reason)

    async def wait(self) -> None:
        """Block until the token is cancelled."""
        await self._event.wait()

    async def sleep(self, seconds: float, sleep_fn: SleepFn = asyncio.sleep) -> None:
        """
        Sleep for `seconds`, waking early if the token is cancelled.

        Args:
            seconds: Delay in seconds
            sleep_fn: Sleep implementation (injectable for tests)

        Raises:
            OperationCancelledError: If cancelled before or during the sleep
        """
        self.raise_if_cancelled()

        sleeper = asyncio.ensure_future(sleep_fn(seconds))
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sleeper, waiter):
                if not task.done():
                    task.cancel()

        self.raise_if_cancelled()
