"""Broadcastable cancellation token.

A single token can be triggered by several independent sources (a timeout
timer, an external caller, a signal handler) and observed by any number of
waiters and listeners. Cancelling is idempotent.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

__all__ = ["CancelToken"]

logger = logging.getLogger(__name__)


class CancelToken:
    """Cancellation handle shared between a caller and a running command.

    The token is bound to the event loop it is first awaited on; use
    ``cancel_threadsafe`` to trigger it from another thread.

    Example:
        token = CancelToken()
        remove = token.add_listener(lambda: print("cancelled"))
        ...
        token.cancel("user request")
        remove()
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._listeners: list[Callable[[], None]] = []
        self._reason: str | None = None

    @property
    def cancelled(self) -> bool:
        """Whether cancel() has been called."""
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        """Reason given to the first cancel() call."""
        return self._reason

    def cancel(self, reason: str = "cancelled") -> bool:
        """Signal cancellation.

        Returns:
            True if this call cancelled the token, False if it was already
            cancelled.
        """
        if self._event.is_set():
            return False

        self._reason = reason
        self._event.set()
        logger.debug(f"CancelToken cancelled: reason={reason}")

        # Listeners may unregister themselves while being notified
        for listener in list(self._listeners):
            try:
                listener()
            except Exception as e:
                logger.warning(f"Error in cancel listener: {e}")
        return True

    def cancel_threadsafe(
        self,
        loop: asyncio.AbstractEventLoop,
        reason: str = "cancelled",
    ) -> None:
        """Schedule cancel() on ``loop`` from another thread."""
        loop.call_soon_threadsafe(self.cancel, reason)

    def add_listener(self, listener: Callable[[], None]) -> Callable[[], None]:
        """Register a callback fired once on cancellation.

        If the token is already cancelled the callback runs immediately.

        Returns:
            A function that unregisters the listener. Calling it more than
            once is harmless.
        """
        if self._event.is_set():
            listener()
            return lambda: None

        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    async def wait(self) -> None:
        """Block until the token is cancelled."""
        await self._event.wait()

    def __repr__(self) -> str:
        state = f"cancelled({self._reason})" if self.cancelled else "active"
        return f"CancelToken({state}, listeners={len(self._listeners)})"
