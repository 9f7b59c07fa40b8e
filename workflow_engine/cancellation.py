"""
Run-level cancellation token.

Checked before every step dispatch and at every suspension point (dependency
wait, batch window, retry backoff). Cancelling never interrupts an executor
call that is already in flight.
"""

from __future__ import annotations

import asyncio
from typing import Optional

from .errors import RunCancelledError


class CancellationToken:

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: Optional[str] = None) -> None:
        if not self._event.is_set():
            self.reason = reason or "cancelled"
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RunCancelledError(f"Run cancelled: {self.reason}")

    async def sleep(self, delay: float) -> None:
        """Sleep for ``delay`` seconds, waking early (and raising) on cancellation."""
        self.raise_if_cancelled()
        if delay <= 0:
            await asyncio.sleep(0)
        else:
            try:
                await asyncio.wait_for(self._event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                return
        self.raise_if_cancelled()

    async def wait(self) -> None:
        await self._event.wait()
