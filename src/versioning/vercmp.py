"""Version ordering compatible with pacman's ``vercmp``.

Versions have the form ``[epoch:]version[-release]``. Fields compare in
that order; the release only takes part when both sides carry one. Within
a field, alternating numeric and alphabetic segments are compared
segment by segment: numbers numerically, letters lexically, and a numeric
segment is always newer than an alphabetic one (so ``1.0a < 1.0``).
"""
from __future__ import annotations

from dataclasses import dataclass
from functools import total_ordering
from typing import Optional


def _isalnum(ch: str) -> bool:
    return ch.isascii() and ch.isalnum()


def _isdigit(ch: str) -> bool:
    return "0" <= ch <= "9"


def _isalpha(ch: str) -> bool:
    return ch.isascii() and ch.isalpha()


def rpmvercmp(a: str, b: str) -> int:
    """Compare two version fields. Returns -1, 0 or 1."""
    if a == b:
        return 0
    i = j = 0
    seg_end_a = seg_end_b = 0
    len_a, len_b = len(a), len(b)

    while i < len_a and j < len_b:
        while i < len_a and not _isalnum(a[i]):
            i += 1
        while j < len_b and not _isalnum(b[j]):
            j += 1
        if i >= len_a or j >= len_b:
            break
        # Differing separator runs decide the comparison
        if (i - seg_end_a) != (j - seg_end_b):
            return -1 if (i - seg_end_a) < (j - seg_end_b) else 1

        end_a, end_b = i, j
        if _isdigit(a[end_a]):
            while end_a < len_a and _isdigit(a[end_a]):
                end_a += 1
            while end_b < len_b and _isdigit(b[end_b]):
                end_b += 1
            numeric = True
        else:
            while end_a < len_a and _isalpha(a[end_a]):
                end_a += 1
            while end_b < len_b and _isalpha(b[end_b]):
                end_b += 1
            numeric = False

        seg_a, seg_b = a[i:end_a], b[j:end_b]
        if not seg_b:
            return 1 if numeric else -1
        if numeric:
            seg_a = seg_a.lstrip("0")
            seg_b = seg_b.lstrip("0")
            if len(seg_a) != len(seg_b):
                return 1 if len(seg_a) > len(seg_b) else -1
        if seg_a != seg_b:
            return -1 if seg_a < seg_b else 1

        i = seg_end_a = end_a
        j = seg_end_b = end_b

    rest_a, rest_b = a[i:], b[j:]
    if not rest_a and not rest_b:
        return 0
    # A remaining alpha segment never beats an empty string
    if (not rest_a and not _isalpha(rest_b[0])) or (rest_a and _isalpha(rest_a[0])):
        return -1
    return 1


@total_ordering
@dataclass(frozen=True, eq=False)
class EVR:
    """A parsed ``epoch:version-release`` triple."""

    epoch: str
    version: str
    release: Optional[str] = None

    def __str__(self) -> str:
        text = self.version
        if self.epoch != "0":
            text = f"{self.epoch}:{text}"
        if self.release is not None:
            text = f"{text}-{self.release}"
        return text

    def compare(self, other: "EVR") -> int:
        rc = rpmvercmp(self.epoch, other.epoch)
        if rc == 0:
            rc = rpmvercmp(self.version, other.version)
        if rc == 0 and self.release is not None and other.release is not None:
            rc = rpmvercmp(self.release, other.release)
        return rc

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, EVR):
            return NotImplemented
        return self.compare(other) == 0

    def __lt__(self, other: "EVR") -> bool:
        return self.compare(other) < 0


def parse_evr(text: str) -> EVR:
    """Split a version string into epoch, version and release."""
    text = text.strip()
    epoch = "0"
    head, sep, rest = text.partition(":")
    if sep and head.isdigit():
        epoch = head or "0"
        text = rest
    elif sep and head == "":
        text = rest
    version, sep, release = text.rpartition("-")
    if not sep:
        return EVR(epoch, text, None)
    return EVR(epoch, version, release or None)


def vercmp(a: str, b: str) -> int:
    """Compare two full version strings. Returns -1, 0 or 1."""
    if a == b:
        return 0
    return parse_evr(a).compare(parse_evr(b))
