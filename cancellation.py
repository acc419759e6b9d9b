"""
cancellation.py — Cooperative Cancellation for Clip Sessions
==============================================================
One CancellationToken per clip session, passed explicitly to every stage
(image processing, retries, publishing). Nothing is forcibly aborted:
stages check the token between units of work and stop scheduling new ones
once it has fired.
"""

from __future__ import annotations

import asyncio


class CancelledByUser(Exception):
    """Raised by CancellationToken.raise_if_cancelled() after cancel()."""


class CancellationToken:
    """A one-shot flag that can also be awaited."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise CancelledByUser(self.reason or "cancelled")

    async def wait(self) -> None:
        await self._event.wait()
