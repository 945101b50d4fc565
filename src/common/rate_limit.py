"""Request spacing for upstreams that publish a rate limit."""
from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

from common.cancel import CancelToken
from common.logging_utils import extra_context, is_debug_enabled

logger = logging.getLogger(__name__)


class RateLimiter:
    """Bound concurrent requests and keep a minimum gap between request starts.

    This is independent of retry backoff: every request, first attempt or
    retry, passes through :meth:`slot`.
    """

    def __init__(
        self,
        max_concurrent: int,
        min_delay_ms: int,
        *,
        cancel: Optional[CancelToken] = None,
        clock: Callable[[], float] = time.monotonic,
        name: str = "upstream",
    ) -> None:
        self._semaphore = threading.BoundedSemaphore(max(1, max_concurrent))
        self._min_delay = max(0, min_delay_ms) / 1000.0
        self._lock = threading.Lock()
        self._next_start: Optional[float] = None
        self._cancel = cancel or CancelToken()
        self._clock = clock
        self._name = name

    def _reserve(self) -> float:
        """Claim the next start time and return how long to wait for it."""
        with self._lock:
            now = self._clock()
            start = now if self._next_start is None else max(now, self._next_start)
            self._next_start = start + self._min_delay
            return start - now

    def acquire(self) -> None:
        self._cancel.raise_if_cancelled()
        self._semaphore.acquire()
        try:
            wait = self._reserve()
            if wait > 0:
                if is_debug_enabled(logger):
                    logger.debug(
                        "Rate limit wait",
                        extra=extra_context(
                            event="rate_limit_wait",
                            component="rate_limit",
                            target=self._name,
                            wait_ms=int(wait * 1000),
                        ),
                    )
                self._cancel.sleep(wait)
        except BaseException:
            self._semaphore.release()
            raise

    def release(self) -> None:
        self._semaphore.release()

    @contextmanager
    def slot(self) -> Iterator[None]:
        self.acquire()
        try:
            yield
        finally:
            self.release()
