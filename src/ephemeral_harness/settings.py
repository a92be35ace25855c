"""Harness configuration settings.

HarnessSettings is the single configuration object shared by the sequencer,
the server lifecycle and the pytest plugin. It is a plain frozen dataclass
(not env-coupled) so tests can build one directly; ``from_env`` is the
convenience factory used by the plugin and the CLI.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from .namespace import DEFAULT_PREFIX, validate_prefix

DEFAULT_PORT = 8765
"""Suite-reserved port. Only one suite instance may run per host."""


@dataclass(frozen=True, slots=True)
class HarnessSettings:
    """Configuration for one harness suite.

    All fields have defaults suitable for a developer workstation.
    """

    # ── Namespace ──────────────────────────────────────────────────
    namespace_prefix: str = DEFAULT_PREFIX
    """Prefix marking every record the harness creates as test-owned."""

    # ── Listener ───────────────────────────────────────────────────
    host: str = "127.0.0.1"
    port: int = DEFAULT_PORT
    startup_timeout: float = 10.0
    """Upper bound for the listener to start accepting connections."""

    shutdown_timeout: float = 5.0
    """Upper bound for a graceful stop before forcing exit."""

    # ── Synchronizer ───────────────────────────────────────────────
    poll_interval: float = 0.1
    wait_timeout: float = 15.0
    """Default bound for waits that do not pass an explicit timeout."""

    probe_timeout: float = 5.0
    """Per-request HTTP timeout for the probe client."""

    # ── Store ──────────────────────────────────────────────────────
    store_url: str = "memory://"
    """``memory://`` or ``sqlite:///path/to/file.db``."""

    # ── Logging ────────────────────────────────────────────────────
    log_level: str = "INFO"
    log_format: str = "console"
    """``json`` or ``console``."""

    env_errors: tuple[str, ...] = field(default=(), compare=False, repr=False)
    """Variables ``from_env`` could not parse; reported by ``validate``."""

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    def validate(self) -> list[str]:
        """Return a list of configuration errors. Empty means valid."""
        errors: list[str] = [*self.env_errors, *validate_prefix(self.namespace_prefix)]
        # 0 binds any free port; suites normally use the fixed default.
        if not 0 <= self.port < 65536:
            errors.append(f"port {self.port} is out of range")
        for name in (
            "startup_timeout",
            "shutdown_timeout",
            "poll_interval",
            "wait_timeout",
            "probe_timeout",
        ):
            if getattr(self, name) <= 0:
                errors.append(f"{name} must be > 0")
        if self.poll_interval > self.wait_timeout:
            errors.append("poll_interval must not exceed wait_timeout")
        if not (
            self.store_url == "memory://" or self.store_url.startswith("sqlite:///")
        ):
            errors.append(
                f"store_url {self.store_url!r} must be memory:// or sqlite:///<path>"
            )
        if self.log_format not in ("json", "console"):
            errors.append(f"log_format {self.log_format!r} must be json or console")
        return errors

    @classmethod
    def from_env(cls, env: dict[str, str] | None = None) -> HarnessSettings:
        """Build settings from ``HARNESS_*`` environment variables."""
        if env is None:
            env = dict(os.environ)
        defaults = cls()
        # Unparseable numbers keep their default and surface through validate().
        env_errors: list[str] = []

        def _number(key: str, default, parse):
            raw = env.get(key, "").strip()
            if not raw:
                return default
            try:
                return parse(raw)
            except ValueError:
                env_errors.append(f"{key}={raw!r} is not a valid {parse.__name__}")
                return default

        def _float(key: str, default: float) -> float:
            return _number(key, default, float)

        return cls(
            namespace_prefix=env.get("HARNESS_NAMESPACE", "").strip() or DEFAULT_PREFIX,
            host=env.get("HARNESS_HOST", "").strip() or defaults.host,
            port=_number("HARNESS_PORT", DEFAULT_PORT, int),
            startup_timeout=_float("HARNESS_STARTUP_TIMEOUT", defaults.startup_timeout),
            shutdown_timeout=_float("HARNESS_SHUTDOWN_TIMEOUT", defaults.shutdown_timeout),
            poll_interval=_float("HARNESS_POLL_INTERVAL", defaults.poll_interval),
            wait_timeout=_float("HARNESS_WAIT_TIMEOUT", defaults.wait_timeout),
            probe_timeout=_float("HARNESS_PROBE_TIMEOUT", defaults.probe_timeout),
            store_url=env.get("HARNESS_STORE_URL", "").strip() or defaults.store_url,
            log_level=env.get("HARNESS_LOG_LEVEL", "").strip() or defaults.log_level,
            log_format=env.get("HARNESS_LOG_FORMAT", "").strip() or defaults.log_format,
            env_errors=tuple(env_errors),
        )
