"""
Cooperative cancellation for harness work.

A CancellationToken is handed to adapters with each query and probe. The
caller cancels it; adapters observe it by polling ``cancelled``, awaiting
``wait()``, or registering callbacks (used to signal child processes).
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

logger = logging.getLogger(__name__)


class CancellationToken:
    """One-shot cancellation signal shared between a caller and an adapter."""

    def __init__(self) -> None:
        self._cancelled = False
        self._event: asyncio.Event | None = None
        self._callbacks: list[Callable[[], None]] = []
        self._unlink: Callable[[], None] | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        """Cancel the token. Repeated calls are no-ops."""
        if self._cancelled:
            return
        self._cancelled = True
        if self._unlink is not None:
            self._unlink()
            self._unlink = None
        if self._event is not None:
            self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.warning(f"Cancellation callback failed: {e}")

    async def wait(self) -> None:
        """Suspend until the token is cancelled."""
        if self._cancelled:
            return
        if self._event is None:
            self._event = asyncio.Event()
        await self._event.wait()

    def add_callback(self, callback: Callable[[], None]) -> Callable[[], None]:
        """
        Run ``callback`` once when the token is cancelled.

        If the token is already cancelled the callback runs immediately.

        Returns:
            A function that unregisters the callback.
        """
        if self._cancelled:
            callback()
            return lambda: None

        self._callbacks.append(callback)

        def remove() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return remove

    @classmethod
    def linked(cls, parent: CancellationToken | None) -> CancellationToken:
        """
        Create a child token that is cancelled whenever ``parent`` is.

        Cancelling the child detaches it from ``parent``.
        """
        child = cls()
        if parent is not None:
            child._unlink = parent.add_callback(child.cancel)
        return child
