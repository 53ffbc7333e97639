"""Configuration data structures."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class KubectlConfig:
    """Command executor settings."""

    context: str = ""
    namespace: str = "default"
    request_timeout_seconds: int = 15
    log_failures: bool = True


@dataclass(frozen=True)
class WatchConfig:
    """Watch loop settings.

    ``global_timeout`` is a duration string (``"30m"``, ``"PT1H"``); empty
    disables the global ceiling and leaves only per-kind timeouts.
    ``fetch_debug_events`` and ``fetch_debug_logs`` control what is collected
    to explain a failed or timed-out resource.
    """

    poll_delay_seconds: float = 3.0
    reminder_interval_seconds: float = 30.0
    global_timeout: str = ""
    max_workers: int = 8
    fetch_debug_events: bool = True
    fetch_debug_logs: bool = True


@dataclass(frozen=True)
class LogConfig:
    """Logging settings."""

    level: str = "info"


@dataclass(frozen=True)
class KubeConvergeConfig:
    """Top-level configuration."""

    kubectl: KubectlConfig = field(default_factory=KubectlConfig)
    watch: WatchConfig = field(default_factory=WatchConfig)
    log: LogConfig = field(default_factory=LogConfig)
