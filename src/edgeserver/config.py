"""
=============================================================================
EDGE SERVER CONFIGURATION
=============================================================================

Centralized, immutable configuration for the edge server.

=============================================================================
WHERE VALUES COME FROM
=============================================================================

    ┌─────────────────────────────────────────────────────────────────────┐
    │                    CONFIGURATION SOURCES                            │
    ├─────────────────────────────────────────────────────────────────────┤
    │                                                                      │
    │   1. Environment variables (read ONCE, in EdgeConfig.from_env)      │
    │      └── PORT=8080 NODE_ENV=production python -m edgeserver        │
    │                                                                      │
    │   2. Compiled-in defaults (the dataclass field defaults)            │
    │      └── static root, proxy base, tracking endpoint, site id       │
    │                                                                      │
    │   3. CLI overrides for logging only (see __main__.py)               │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

The config object is a FROZEN dataclass. It is built at startup, validated,
and then handed by reference to every component (redirect guard, static
resolver, proxy forwarder, tracking beacon). Nothing else in the package
reads os.environ.

=============================================================================
ENVIRONMENT VARIABLES
=============================================================================

    PORT              Listening port (REQUIRED, 1-65535)
    HOST              Bind address (default: 0.0.0.0)
    NODE_ENV          "production" enables the HTTPS redirect guard
    STATIC_ROOT       Static asset directory (default: ./public)
    PROXY_BASE        Upstream origin (default: http://github.bodil.lol)
    PROXY_TIMEOUT     Upstream timeout in seconds (default: 30)
    TRACKING_ENABLED  Emit analytics beacons (default: true)
    MATOMO_URL        Analytics endpoint
    MATOMO_SITE_ID    Analytics site identifier (default: 1)
    MATOMO_TOKEN      Analytics auth token (REQUIRED when tracking enabled)
    TRACKING_TIMEOUT  Beacon timeout in seconds (default: 10)
    LOG_LEVEL         DEBUG, INFO, WARNING, ERROR (default: INFO)
    LOG_FORMAT        text or json (default: text)
    CACHE_MAX_AGE     Cache-Control max-age for static files (default: 3600)

=============================================================================
"""

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Mapping, Optional

from . import __version__


DEFAULT_STATIC_ROOT = "./public"
DEFAULT_PROXY_BASE = "http://github.bodil.lol"
DEFAULT_TRACKING_ENDPOINT = "https://tortuga.lol.camp/matomo/matomo.php"
DEFAULT_TRACKING_SITE_ID = "1"

_FALSE_VALUES = {"0", "false", "no", "off"}
_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class ConfigError(ValueError):
    """
    Raised when the environment does not describe a runnable server.

    Configuration errors are FATAL: __main__ logs them and exits with
    status 1 before any socket is bound.
    """


@dataclass(frozen=True)
class EdgeConfig:
    """
    Process-wide, read-only configuration.

    =========================================================================
    CONFIGURATION GROUPS
    =========================================================================

    NETWORK
    - host, port, backlog, buffer_size, timeout

    HTTP
    - keep_alive, keep_alive_timeout, max_request_size, server_name

    RESOLUTION
    - production, static_root, cache_max_age, proxy_base, proxy_timeout

    TRACKING
    - tracking_enabled, tracking_endpoint, tracking_site_id,
      tracking_token, tracking_timeout

    LOGGING
    - log_level, log_format

    =========================================================================
    """

    # ─────────────────────────────────────────────────────────────────────
    # NETWORK SETTINGS
    # ─────────────────────────────────────────────────────────────────────

    port: int
    """Listening port. There is no default: PORT must be set."""

    host: str = "0.0.0.0"
    """Bind address. All interfaces by default (the server sits behind a LB)."""

    backlog: int = 128
    buffer_size: int = 8192

    timeout: Optional[float] = 30.0
    """Seconds to wait for the first request on a fresh connection."""

    # ─────────────────────────────────────────────────────────────────────
    # HTTP SETTINGS
    # ─────────────────────────────────────────────────────────────────────

    keep_alive: bool = True
    keep_alive_timeout: float = 5.0
    max_request_size: int = 10 * 1024 * 1024  # 10 MB
    server_name: str = f"edgeserver/{__version__}"

    # ─────────────────────────────────────────────────────────────────────
    # RESOLUTION CHAIN
    # ─────────────────────────────────────────────────────────────────────

    production: bool = False
    """
    True when NODE_ENV == "production".
    Only in production does the redirect guard force HTTPS.
    """

    static_root: str = DEFAULT_STATIC_ROOT
    cache_max_age: int = 3600

    proxy_base: str = DEFAULT_PROXY_BASE
    """Upstream origin. The original path and query are appended verbatim."""

    proxy_timeout: float = 30.0

    # ─────────────────────────────────────────────────────────────────────
    # TRACKING BEACON
    # ─────────────────────────────────────────────────────────────────────

    tracking_enabled: bool = True
    tracking_endpoint: str = DEFAULT_TRACKING_ENDPOINT
    tracking_site_id: str = DEFAULT_TRACKING_SITE_ID
    tracking_token: Optional[str] = None
    tracking_timeout: float = 10.0

    # ─────────────────────────────────────────────────────────────────────
    # LOGGING
    # ─────────────────────────────────────────────────────────────────────

    log_level: str = "INFO"
    log_format: str = "text"

    @property
    def static_path(self) -> Path:
        """The static root as an absolute, resolved path."""
        return Path(self.static_root).resolve()

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "EdgeConfig":
        """
        Build the configuration from environment variables.

        Args:
            environ: Mapping to read from. Defaults to os.environ; tests
                     pass a plain dict.

        Returns:
            A validated EdgeConfig.

        Raises:
            ConfigError: If a required variable is missing or malformed.
        """
        env = os.environ if environ is None else environ

        config = cls(
            port=_parse_port(env.get("PORT")),
            host=env.get("HOST", "0.0.0.0"),
            production=env.get("NODE_ENV") == "production",
            static_root=env.get("STATIC_ROOT", DEFAULT_STATIC_ROOT),
            cache_max_age=_parse_int(env, "CACHE_MAX_AGE", 3600),
            proxy_base=env.get("PROXY_BASE", DEFAULT_PROXY_BASE),
            proxy_timeout=_parse_float(env, "PROXY_TIMEOUT", 30.0),
            tracking_enabled=env.get("TRACKING_ENABLED", "true").strip().lower() not in _FALSE_VALUES,
            tracking_endpoint=env.get("MATOMO_URL", DEFAULT_TRACKING_ENDPOINT),
            tracking_site_id=env.get("MATOMO_SITE_ID", DEFAULT_TRACKING_SITE_ID),
            tracking_token=env.get("MATOMO_TOKEN") or None,
            tracking_timeout=_parse_float(env, "TRACKING_TIMEOUT", 10.0),
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
            log_format=env.get("LOG_FORMAT", "text").lower(),
        )
        config.validate()
        return config

    def with_overrides(self, **changes) -> "EdgeConfig":
        """Return a validated copy with some fields replaced."""
        config = replace(self, **changes)
        config.validate()
        return config

    def validate(self) -> None:
        """
        Validate configuration values.

        =====================================================================
        FAIL-FAST PRINCIPLE
        =====================================================================

        Everything that would make a request fail later (missing static
        root, tracking enabled without a token, malformed upstream URL) is
        rejected here, at startup, with a message naming the variable.

        =====================================================================
        """
        if not 0 < self.port < 65536:
            raise ConfigError(f"Invalid PORT: {self.port}. Must be 1-65535.")

        if not self.static_path.is_dir():
            raise ConfigError(f"STATIC_ROOT does not exist or is not a directory: {self.static_root}")

        if not self.proxy_base.startswith(("http://", "https://")):
            raise ConfigError(f"PROXY_BASE must be an http(s) URL, got {self.proxy_base!r}")

        if self.tracking_enabled:
            if not self.tracking_token:
                raise ConfigError("MATOMO_TOKEN must be set while tracking is enabled (set TRACKING_ENABLED=0 to disable)")
            if not self.tracking_endpoint.startswith(("http://", "https://")):
                raise ConfigError(f"MATOMO_URL must be an http(s) URL, got {self.tracking_endpoint!r}")
            if not self.tracking_site_id:
                raise ConfigError("MATOMO_SITE_ID must not be empty")

        if self.log_level not in _LOG_LEVELS:
            raise ConfigError(f"Invalid LOG_LEVEL: {self.log_level}")

        if self.log_format not in ("text", "json"):
            raise ConfigError(f"Invalid LOG_FORMAT: {self.log_format}. Use 'text' or 'json'.")

        if self.buffer_size < 1024:
            raise ConfigError("buffer_size must be >= 1024")

        if self.timeout is not None and self.timeout <= 0:
            raise ConfigError("timeout must be > 0")

        if self.proxy_timeout <= 0 or self.tracking_timeout <= 0:
            raise ConfigError("PROXY_TIMEOUT and TRACKING_TIMEOUT must be > 0")


def _parse_port(raw: Optional[str]) -> int:
    if raw is None or not raw.strip():
        raise ConfigError("No PORT environment variable set.")
    try:
        port = int(raw.strip())
    except ValueError:
        raise ConfigError(f"Unable to parse value of PORT environment variable: {raw!r}") from None
    if port <= 0:
        raise ConfigError(f"PORT must be a positive integer, got {port}")
    return port


def _parse_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from None


def _parse_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from None
