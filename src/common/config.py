"""Resolved configuration values consumed by every component.

A :class:`CoreConfig` is built once per invocation and passed explicitly
into constructors; nothing reads configuration from module globals.
"""
from __future__ import annotations

import dataclasses
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml

from constants import Constants
from common.http_client import RetryPolicy

logger = logging.getLogger(__name__)


def _xdg_dir(env_var: str, fallback: str) -> Path:
    base = os.environ.get(env_var)
    root = Path(base) if base else Path.home() / fallback
    return root / Constants.APP_NAME


def default_cache_dir() -> Path:
    return _xdg_dir("XDG_CACHE_HOME", ".cache")


def default_data_dir() -> Path:
    return _xdg_dir("XDG_DATA_HOME", ".local/share")


def default_config_path() -> Path:
    return _xdg_dir("XDG_CONFIG_HOME", ".config") / Constants.CONFIG_FILE


_BOOL_TRUE = {"1", "true", "yes", "on"}
_BOOL_FALSE = {"0", "false", "no", "off"}


def _coerce(name: str, kind: Any, value: Any) -> Any:
    if kind is bool:
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in _BOOL_TRUE:
            return True
        if text in _BOOL_FALSE:
            return False
        raise ValueError(f"{name}: expected a boolean, got {value!r}")
    if kind is int:
        number = int(value)
        if number < 0:
            raise ValueError(f"{name}: must not be negative")
        return number
    if kind is float:
        return float(value)
    if kind is Path:
        return Path(os.path.expanduser(str(value)))
    return value


@dataclass(frozen=True)
class CoreConfig:  # pylint: disable=too-many-instance-attributes
    """Immutable configuration for one run."""

    concurrent_downloads: int = Constants.CONCURRENT_DOWNLOADS
    max_concurrent_requests: int = Constants.MAX_CONCURRENT_REQUESTS
    request_delay_ms: int = Constants.REQUEST_DELAY_MS
    review_before_build: bool = False
    use_clone_transport: bool = True
    unattended: bool = False
    remove_make_deps: bool = False
    max_retries: int = Constants.HTTP_RETRY_MAX
    initial_backoff_ms: int = Constants.HTTP_INITIAL_BACKOFF_MS
    max_backoff_ms: int = Constants.HTTP_MAX_BACKOFF_MS
    backoff_multiplier: float = Constants.HTTP_BACKOFF_MULTIPLIER
    max_resolve_depth: int = Constants.MAX_RESOLVE_DEPTH
    cache_dir: Path = field(default_factory=default_cache_dir)
    data_dir: Path = field(default_factory=default_data_dir)
    editor: str = field(default_factory=lambda: os.environ.get("EDITOR", "vi"))
    debian_mirror: str = Constants.DEBIAN_MIRROR
    debian_release: str = Constants.DEBIAN_RELEASE
    flatpak_remote: str = Constants.FLATPAK_REMOTE

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.max_retries,
            initial_backoff_ms=self.initial_backoff_ms,
            max_backoff_ms=self.max_backoff_ms,
            multiplier=self.backoff_multiplier,
        )

    @property
    def clone_dir(self) -> Path:
        return self.cache_dir / Constants.CACHE_CLONE_DIR

    @property
    def pkg_dir(self) -> Path:
        return self.cache_dir / Constants.CACHE_PKG_DIR

    @property
    def debian_dir(self) -> Path:
        return self.cache_dir / Constants.CACHE_DEBIAN_DIR

    @property
    def build_dir(self) -> Path:
        return self.cache_dir / Constants.BUILD_DIR

    @property
    def history_path(self) -> Path:
        return self.data_dir / Constants.HISTORY_FILE

    def replace(self, **overrides: Any) -> "CoreConfig":
        return dataclasses.replace(self, **overrides)

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "CoreConfig":
        """Build a config from a plain mapping such as a parsed YAML document.

        Keys may use dashes or underscores. A nested ``retry`` section is
        flattened onto the retry fields. Unknown keys are ignored with a warning.

        Raises:
            ValueError: if a value cannot be coerced to the field's type.
        """
        if not data:
            return cls()
        flat = {}
        for key, value in data.items():
            if key == "retry" and isinstance(value, Mapping):
                for sub_key, sub_value in value.items():
                    flat[str(sub_key).replace("-", "_")] = sub_value
            else:
                flat[str(key).replace("-", "_")] = value
        if "multiplier" in flat and "backoff_multiplier" not in flat:
            flat["backoff_multiplier"] = flat.pop("multiplier")

        kinds = {f.name: f.type for f in dataclasses.fields(cls)}
        types = {"int": int, "bool": bool, "float": float, "Path": Path, "str": str}
        values = {}
        for key, value in flat.items():
            if key not in kinds:
                logger.warning("Ignoring unknown configuration key: %s", key)
                continue
            values[key] = _coerce(key, types.get(str(kinds[key]), str), value)
        return cls(**values)


def load_config(path: Optional[os.PathLike] = None) -> CoreConfig:
    """Load configuration from a YAML file.

    Args:
        path: Explicit file; defaults to ``$XDG_CONFIG_HOME/unipac/config.yml``.

    Returns:
        The resolved configuration; defaults when the default file is absent.

    Raises:
        FileNotFoundError: if an explicit ``path`` does not exist.
        ValueError: if the document is not a mapping or holds invalid values.
    """
    explicit = path is not None
    config_path = Path(path) if explicit else default_config_path()
    if not config_path.is_file():
        if explicit:
            raise FileNotFoundError(str(config_path))
        return CoreConfig()
    with open(config_path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return CoreConfig()
    if not isinstance(data, dict):
        raise ValueError(f"{config_path}: expected a mapping at the top level")
    logger.debug("Loaded configuration from %s", config_path)
    return CoreConfig.from_mapping(data)
