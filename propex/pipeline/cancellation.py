"""Cooperative cancellation shared by every task of one job."""

from __future__ import annotations

import asyncio

from propex.errors import JobCancelledError


class CancellationToken:
    """Tasks poll this between steps and abandon their result once it is set."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    def cancel(self, reason: str = "cancelled by caller") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise JobCancelledError(self._reason)
