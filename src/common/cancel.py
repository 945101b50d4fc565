"""Cooperative cancellation shared by every suspension point."""
from __future__ import annotations

import threading

from common.errors import OperationCancelled


class CancelToken:
    """External cancellation signal.

    Waits go through :meth:`sleep` so a cancel wakes them immediately
    instead of letting the full delay elapse.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled("operation cancelled")

    def sleep(self, seconds: float) -> None:
        """Wait ``seconds`` unless cancelled first.

        Raises:
            OperationCancelled: if the token is cancelled before or during the wait.
        """
        self.raise_if_cancelled()
        if seconds > 0 and self._event.wait(seconds):
            raise OperationCancelled("operation cancelled")
