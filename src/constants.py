"""Constants used in the project."""

from enum import Enum


class ExitCodes(Enum):
    """Exit codes for the program.

    Args:
        Enum (int): Exit codes for the program.
    """

    SUCCESS = 0
    FAILURE = 1
    CONNECTION_ERROR = 2
    RESOLVE_ERROR = 3
    CANCELLED = 130


class Constants:  # pylint: disable=too-few-public-methods
    """General constants used in the project.
    Data holder for configuration constants; not intended to provide behavior.
    """

    APP_NAME = "unipac"
    LOG_FORMAT = "[%(levelname)s] %(message)s"
    ENV_LOG_LEVEL = "UNIPAC_LOG_LEVEL"
    REQUEST_TIMEOUT = 30  # Timeout in seconds for all HTTP requests
    USER_AGENT = "unipac/0.1"

    # AUR (source-build) endpoints
    AUR_RPC_URL = "https://aur.archlinux.org/rpc/v5"
    AUR_SNAPSHOT_URL = "https://aur.archlinux.org/cgit/aur.git/snapshot/{name}.tar.gz"
    AUR_CLONE_URL = "https://aur.archlinux.org/{name}.git"
    AUR_MIN_QUERY_LENGTH = 2
    AUR_INFO_BATCH_SIZE = 150

    # Debian archive
    DEBIAN_MIRROR = "http://deb.debian.org/debian"
    DEBIAN_RELEASE = "bookworm"
    DEBIAN_COMPONENT = "main"
    DEBIAN_ARCH_MAP = {
        "x86_64": "amd64",
        "aarch64": "arm64",
        "i686": "i386",
        "armv7h": "armhf",
    }
    DEBIAN_INDEX_TTL_SEC = 24 * 60 * 60
    FLATPAK_REMOTE = "flathub"

    # Retry policy defaults
    RETRYABLE_STATUSES = frozenset({408, 429, 500, 502, 503, 504})
    IDEMPOTENT_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})
    HTTP_RETRY_MAX = 3
    HTTP_INITIAL_BACKOFF_MS = 500
    HTTP_MAX_BACKOFF_MS = 10000
    HTTP_BACKOFF_MULTIPLIER = 2.0

    # Concurrency defaults
    CONCURRENT_DOWNLOADS = 4
    MAX_CONCURRENT_REQUESTS = 10
    REQUEST_DELAY_MS = 100
    MAX_RESOLVE_DEPTH = 64

    # Cache layout
    CACHE_CLONE_DIR = "clone"
    CACHE_PKG_DIR = "pkg"
    CACHE_DEBIAN_DIR = "debian"
    BUILD_DIR = "build"
    CACHE_ENTRY_FILE = "entry.json"
    HISTORY_FILE = "history.jsonl"
    CONFIG_FILE = "config.yml"

    # makepkg exit status when --syncdeps could not install dependencies
    MAKEPKG_EXIT_DEPS_FAILED = 8
    PACMAN_DEP_CONFLICT_MARKERS = ("could not satisfy dependencies", "breaks dependency")
    # makepkg source verification failures caused by missing signing keys
    PGP_ERROR_MARKERS = (
        "One or more PGP signatures could not be verified",
        "PGP signature verification failed",
        "unknown public key",
        "public key not found",
        "No public key",
    )
    PGP_KEYSERVERS = ("hkps://keyserver.ubuntu.com", "hkps://keys.openpgp.org")
    PACKAGE_SUFFIXES = (".pkg.tar.zst", ".pkg.tar.xz", ".pkg.tar.gz")
    SENSITIVE_QUERY_KEYS = ("token", "key", "secret", "password", "auth")
