"""Environment-variable configuration loading.

Every setting is read from a ``KUBECONVERGE_*`` environment variable.
Numeric values are clamped into their allowed range; values that cannot be
interpreted raise ``ValueError`` so misconfiguration fails before any
cluster call is made.
"""

from __future__ import annotations

import os

from kubeconverge.errors import DurationParseError
from kubeconverge.models.config import KubeConvergeConfig, KubectlConfig, LogConfig, WatchConfig
from kubeconverge.observability.logging import resolve_level
from kubeconverge.utils.duration import parse_duration

_PREFIX = "KUBECONVERGE_"

_TRUTHY: frozenset[str] = frozenset({"1", "true", "yes", "on"})

_REQUEST_TIMEOUT_MIN: int = 1
_REQUEST_TIMEOUT_MAX: int = 300
_POLL_DELAY_MIN: float = 0.1
_POLL_DELAY_MAX: float = 60.0
_REMINDER_MIN: float = 1.0
_REMINDER_MAX: float = 3_600.0
_MAX_WORKERS_MIN: int = 1
_MAX_WORKERS_MAX: int = 32


def _env(name: str, default: str) -> str:
    return os.environ.get(_PREFIX + name, default)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(_PREFIX + name)
    if raw is None:
        return default
    return raw.strip().lower() in _TRUTHY


def _env_int(name: str, default: int, minimum: int, maximum: int) -> int:
    raw = os.environ.get(_PREFIX + name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(f"Invalid integer for {_PREFIX}{name}: {raw!r}") from exc
    return max(minimum, min(maximum, value))


def _env_float(name: str, default: float, minimum: float, maximum: float) -> float:
    raw = os.environ.get(_PREFIX + name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ValueError(f"Invalid number for {_PREFIX}{name}: {raw!r}") from exc
    return max(minimum, min(maximum, value))


def _validate_log_level(level: str) -> str:
    resolve_level(level)
    return level.strip().lower()


def _validate_global_timeout(value: str) -> str:
    if not value.strip():
        return ""
    try:
        seconds = parse_duration(value)
    except DurationParseError as exc:
        raise ValueError(f"Invalid global timeout format: {value!r}") from exc
    if seconds <= 0:
        raise ValueError(f"Invalid global timeout format: {value!r} must be positive")
    return value.strip()


def load_config() -> KubeConvergeConfig:
    """Build a :class:`KubeConvergeConfig` from the process environment."""
    kubectl = KubectlConfig(
        context=_env("CONTEXT", ""),
        namespace=_env("NAMESPACE", "default"),
        request_timeout_seconds=_env_int(
            "KUBECTL_REQUEST_TIMEOUT", 15, _REQUEST_TIMEOUT_MIN, _REQUEST_TIMEOUT_MAX
        ),
        log_failures=_env_bool("KUBECTL_LOG_FAILURES", True),
    )
    watch = WatchConfig(
        poll_delay_seconds=_env_float("WATCH_POLL_DELAY", 3.0, _POLL_DELAY_MIN, _POLL_DELAY_MAX),
        reminder_interval_seconds=_env_float("WATCH_REMINDER_INTERVAL", 30.0, _REMINDER_MIN, _REMINDER_MAX),
        global_timeout=_validate_global_timeout(_env("WATCH_GLOBAL_TIMEOUT", "")),
        max_workers=_env_int("MAX_WORKERS", 8, _MAX_WORKERS_MIN, _MAX_WORKERS_MAX),
        fetch_debug_events=_env_bool("DEBUG_EVENTS", True),
        fetch_debug_logs=_env_bool("DEBUG_LOGS", True),
    )
    log = LogConfig(level=_validate_log_level(_env("LOG_LEVEL", "info")))
    return KubeConvergeConfig(kubectl=kubectl, watch=watch, log=log)
