"""Signing-key recovery for recipes whose sources fail PGP verification.

makepkg refuses to build when a source signature was made by a key that is
not in the user's keyring. Recipes name the keys they trust in
``validpgpkeys``; those are fetched from a keyserver and the build is
retried once.
"""
from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import List, Optional, Sequence

import gnupg

from constants import Constants
from common.errors import KeyImportFailed
from common.logging_utils import extra_context

logger = logging.getLogger(__name__)

# Comments may contain parentheses, so they are consumed whole
_VALIDPGPKEYS_RE = re.compile(r"^\s*validpgpkeys=\(((?:[^()#]|#[^\n]*)*)\)", re.MULTILINE)
_KEY_RE = re.compile(r"\b(?:[0-9A-Fa-f]{40}|[0-9A-Fa-f]{16})\b")


def has_pgp_error(output: str) -> bool:
    """Whether makepkg output reports a signature it could not check."""
    return any(marker in output for marker in Constants.PGP_ERROR_MARKERS)


def valid_pgp_keys(pkgbuild: Path) -> List[str]:
    """Key fingerprints listed in a recipe's ``validpgpkeys`` array.

    Returns an empty list when the recipe has no such array or does not exist.
    """
    try:
        text = pkgbuild.read_text(encoding="utf-8", errors="replace")
    except FileNotFoundError:
        return []
    match = _VALIDPGPKEYS_RE.search(text)
    if not match:
        return []
    keys: List[str] = []
    for line in match.group(1).splitlines():
        for key in _KEY_RE.findall(line.split("#", 1)[0]):
            if key.upper() not in keys:
                keys.append(key.upper())
    return keys


class KeyImporter:
    """Receives keys into the user's GnuPG keyring, trying each keyserver in turn."""

    def __init__(
        self,
        keyservers: Sequence[str] = Constants.PGP_KEYSERVERS,
        gpg: Optional[gnupg.GPG] = None,
    ) -> None:
        self._keyservers = tuple(keyservers)
        self._gpg = gpg

    def _client(self) -> gnupg.GPG:
        # Created on first use so hosts without gpg only fail when a key is needed
        if self._gpg is None:
            try:
                self._gpg = gnupg.GPG()
            except (OSError, ValueError) as exc:
                raise KeyImportFailed("*", f"gpg is unavailable: {exc}") from exc
        return self._gpg

    def import_keys(self, keys: Sequence[str]) -> None:
        """Fetch every key in ``keys``.

        Raises:
            KeyImportFailed: if a key is not found on any keyserver.
        """
        gpg = self._client()
        for key in keys:
            for keyserver in self._keyservers:
                result = gpg.recv_keys(keyserver, key)
                if result.fingerprints:
                    logger.info(
                        "Imported PGP key %s",
                        key,
                        extra=extra_context(event="pgp_import", component="pgp", target=key,
                                            keyserver=keyserver, outcome="success"),
                    )
                    break
                logger.warning("Could not receive PGP key %s from %s", key, keyserver)
            else:
                raise KeyImportFailed(key, "not found on any keyserver")
