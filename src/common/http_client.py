"""HTTP access with bounded exponential-backoff retry.

All networked sources go through :class:`RetryingClient`. Only idempotent
requests are accepted; the client never rewrites or deduplicates them.
"""
from __future__ import annotations

import dataclasses
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import requests

from constants import Constants
from common.cancel import CancelToken
from common.errors import NetworkError, NetworkExhausted, TransientNetworkError
from common.logging_utils import extra_context, is_debug_enabled, safe_url, Timer
from common.rate_limit import RateLimiter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Immutable retry settings; derive per-call variants with :meth:`replace`."""

    max_retries: int = Constants.HTTP_RETRY_MAX
    initial_backoff_ms: int = Constants.HTTP_INITIAL_BACKOFF_MS
    max_backoff_ms: int = Constants.HTTP_MAX_BACKOFF_MS
    multiplier: float = Constants.HTTP_BACKOFF_MULTIPLIER

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def delay_before(self, attempt: int) -> int:
        """Delay in milliseconds before the given 1-based attempt."""
        if attempt < 2:
            return 0
        delay = self.initial_backoff_ms * (self.multiplier ** (attempt - 2))
        return int(min(self.max_backoff_ms, delay))

    def replace(self, **overrides: Any) -> "RetryPolicy":
        return dataclasses.replace(self, **overrides)


@dataclass(frozen=True)
class RetryEvent:
    """Emitted after a failed attempt that will be retried."""

    attempt: int
    status_or_error: Any
    next_delay_ms: int


def _is_retryable_exception(exc: requests.RequestException) -> bool:
    return isinstance(exc, (requests.ConnectionError, requests.Timeout))


class RetryingClient:
    """Execute GET-like requests, retrying retryable failures.

    A response whose status is in ``Constants.RETRYABLE_STATUSES`` or a
    connect/read timeout, DNS failure, refusal or reset is retried. Any other
    response is returned untouched and any other error raises at once.
    """

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        *,
        session: Optional[requests.Session] = None,
        timeout: float = Constants.REQUEST_TIMEOUT,
        cancel: Optional[CancelToken] = None,
        rate_limiter: Optional[RateLimiter] = None,
        on_retry: Optional[Callable[[RetryEvent], None]] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ) -> None:
        self.policy = policy or RetryPolicy()
        self._session = session or requests.Session()
        self._session.headers.setdefault("User-Agent", Constants.USER_AGENT)
        self._timeout = timeout
        self._cancel = cancel or CancelToken()
        self._rate_limiter = rate_limiter
        self._on_retry = on_retry
        self._sleep = sleep or self._cancel.sleep

    def execute(self, request: requests.Request, policy: Optional[RetryPolicy] = None) -> requests.Response:
        """Send ``request`` under ``policy`` (the client default when omitted).

        Returns:
            The first non-retryable response, whatever its status.

        Raises:
            ValueError: for non-idempotent methods.
            NetworkError: on a non-retryable transport error.
            NetworkExhausted: when every attempt failed retryably.
            OperationCancelled: when cancelled during a backoff wait.
        """
        method = (request.method or "GET").upper()
        if method not in Constants.IDEMPOTENT_METHODS:
            raise ValueError(f"refusing to retry non-idempotent {method} request")
        policy = policy or self.policy
        target = safe_url(request.url)
        last: Any = None

        for attempt in range(1, policy.max_attempts + 1):
            if attempt > 1:
                self._sleep(policy.delay_before(attempt) / 1000.0)
            self._cancel.raise_if_cancelled()
            try:
                response = self._send(method, request, target, attempt)
            except TransientNetworkError as exc:
                last = exc.status_or_error
            else:
                if response.status_code not in Constants.RETRYABLE_STATUSES:
                    return response
                last = response.status_code

            if attempt < policy.max_attempts:
                event = RetryEvent(attempt, last, policy.delay_before(attempt + 1))
                logger.warning(
                    "%s %s failed (%s), retrying in %d ms (attempt %d/%d)",
                    method,
                    target,
                    last,
                    event.next_delay_ms,
                    attempt + 1,
                    policy.max_attempts,
                    extra=extra_context(
                        event="http_retry",
                        component="http_client",
                        action=method,
                        target=target,
                        attempt=attempt,
                    ),
                )
                if self._on_retry is not None:
                    self._on_retry(event)

        raise NetworkExhausted(target, policy.max_attempts, last)

    def _send(self, method: str, request: requests.Request, target: str, attempt: int) -> requests.Response:
        if is_debug_enabled(logger):
            logger.debug(
                "HTTP request",
                extra=extra_context(
                    event="http_request",
                    component="http_client",
                    action=method,
                    target=target,
                    attempt=attempt,
                ),
            )
        with Timer() as t:
            try:
                if self._rate_limiter is not None:
                    with self._rate_limiter.slot():
                        response = self._request(method, request)
                else:
                    response = self._request(method, request)
            except requests.RequestException as exc:
                if _is_retryable_exception(exc):
                    raise TransientNetworkError(type(exc).__name__) from exc
                logger.error("%s %s failed: %s", method, target, exc)
                raise NetworkError(f"{target}: {exc}") from exc
        if is_debug_enabled(logger):
            logger.debug(
                "HTTP response",
                extra=extra_context(
                    event="http_response",
                    component="http_client",
                    action=method,
                    status_code=response.status_code,
                    duration_ms=t.duration_ms(),
                    target=target,
                ),
            )
        return response

    def _request(self, method: str, request: requests.Request) -> requests.Response:
        return self._session.request(
            method,
            request.url,
            params=request.params or None,
            headers=request.headers or None,
            timeout=self._timeout,
        )

    def get(self, url: str, *, params: Optional[Dict[str, Any]] = None,
            policy: Optional[RetryPolicy] = None) -> requests.Response:
        return self.execute(requests.Request("GET", url, params=params or {}), policy)

    def get_json(self, url: str, *, params: Optional[Dict[str, Any]] = None,
                 policy: Optional[RetryPolicy] = None) -> Any:
        """GET ``url`` and decode the JSON body.

        Raises:
            NetworkError: on a non-success status or an undecodable body.
        """
        response = self.get(url, params=params, policy=policy)
        _raise_for_status(response, url)
        try:
            return response.json()
        except (ValueError, json.JSONDecodeError) as exc:
            raise NetworkError(f"{safe_url(url)}: invalid JSON response") from exc

    def download(self, url: str, *, policy: Optional[RetryPolicy] = None) -> bytes:
        response = self.get(url, policy=policy)
        _raise_for_status(response, url)
        return response.content


def _raise_for_status(response: requests.Response, url: str) -> None:
    if not 200 <= response.status_code < 300:
        raise NetworkError(f"{safe_url(url)} returned HTTP {response.status_code}")


def retry_delays(policy: RetryPolicy) -> List[int]:
    """Backoff delays in milliseconds before attempts 2..N."""
    return [policy.delay_before(k) for k in range(2, policy.max_attempts + 1)]
