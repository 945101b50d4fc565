"""Logging helpers shared by every component.

Structured context travels on ``extra=`` so handlers that understand it
(JSON formatters, test capture) can use the fields while the default
console format stays a single readable line.
"""
from __future__ import annotations

import logging
import os
import time
from typing import Any, Dict, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from constants import Constants

_REDACTED = "***"


def configure_logging(level: Optional[str] = None) -> None:
    """Configure the root logger once for console output.

    Args:
        level: Explicit level name; falls back to the UNIPAC_LOG_LEVEL
            environment variable and then INFO.
    """
    level_name = (level or os.environ.get(Constants.ENV_LOG_LEVEL) or "INFO").upper()
    numeric = getattr(logging, level_name, logging.INFO)
    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(Constants.LOG_FORMAT))
        root.addHandler(handler)
    root.setLevel(numeric)


def extra_context(**fields: Any) -> Dict[str, Any]:
    """Build an ``extra`` mapping for a log call, dropping empty fields."""
    return {k: v for k, v in fields.items() if v is not None}


def is_debug_enabled(logger: logging.Logger) -> bool:
    return logger.isEnabledFor(logging.DEBUG)


def redact(value: Optional[str]) -> str:
    """Mask a secret, keeping only enough of it to tell values apart."""
    if not value:
        return ""
    if len(value) <= 4:
        return _REDACTED
    return f"{value[:2]}{_REDACTED}"


def safe_url(url: str) -> str:
    """Return ``url`` with credentials and sensitive query values masked."""
    try:
        parts = urlsplit(url)
    except ValueError:
        return url
    netloc = parts.netloc
    if "@" in netloc:
        netloc = f"{_REDACTED}@{netloc.split('@', 1)[1]}"
    query = parts.query
    if query:
        pairs = []
        for key, val in parse_qsl(query, keep_blank_values=True):
            if any(marker in key.lower() for marker in Constants.SENSITIVE_QUERY_KEYS):
                val = _REDACTED
            pairs.append((key, val))
        query = urlencode(pairs, safe="[]*")
    return urlunsplit((parts.scheme, netloc, parts.path, query, parts.fragment))


class Timer:
    """Context manager measuring wall-clock duration in milliseconds."""

    def __init__(self) -> None:
        self._start: Optional[float] = None
        self._end: Optional[float] = None

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self._end = time.perf_counter()

    def duration_ms(self) -> int:
        if self._start is None:
            return 0
        end = self._end if self._end is not None else time.perf_counter()
        return int((end - self._start) * 1000)
