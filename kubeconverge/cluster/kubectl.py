"""kubectl command executor with bounded retry and backoff.

Every call is scoped to the executor's namespace and context unless the
caller suppresses either flag, and carries a ``--request-timeout``.

Retry policy
------------
``attempts`` (default 1) bounds the number of tries. Between tries the
executor sleeps ``min(2 ** (k - 1), 16) - jitter`` seconds, where ``jitter``
is drawn from ``[0, 0.5)`` and rounded to a tenth of a second.

A failure whose stderr looks like a client or context deadline grants one
extra attempt on top of ``attempts``: such failures are transient and are
not charged against the caller's budget. ``NotFound`` failures are never
retried.
"""

from __future__ import annotations

import random
import re
import subprocess
import time
from collections.abc import Callable, Sequence
from typing import NamedTuple

from kubeconverge.errors import KubectlError, ResourceNotFoundError
from kubeconverge.observability.logging import get_logger, redact_output
from kubeconverge.observability.metrics import kubectl_duration_seconds, kubectl_errors_total

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_TIMEOUT_S: int = 15
MAX_RETRY_DELAY_S: int = 16
_MAX_JITTER_S: float = 0.5
_COMMAND_NOT_FOUND_RC: int = 127

_NOT_FOUND = re.compile(r"NotFound")
_DEADLINE_EXCEEDED = re.compile(
    r"context deadline exceeded|Client\.Timeout exceeded while awaiting headers",
    re.IGNORECASE,
)
_VERSION_LINE = re.compile(r"^(?P<side>Client|Server) Version:.*?v(?P<version>\d+\.\d+\.\d+[^\s\",]*)", re.MULTILINE)


class KubectlResult(NamedTuple):
    """Outcome of one kubectl invocation (after all retries)."""

    stdout: str
    stderr: str
    success: bool


class CompletedCommand(NamedTuple):
    """Raw process outcome returned by a runner."""

    returncode: int
    stdout: str
    stderr: str


Runner = Callable[[Sequence[str]], CompletedCommand]


def retry_delay(attempt: int, rng: Callable[[], float] = random.random) -> float:
    """Return the backoff delay in seconds to sleep after *attempt* failed.

    The window doubles per attempt and is capped at ``MAX_RETRY_DELAY_S``.
    Only the window is monotonic: the jitter is drawn afresh on every call,
    so a later attempt may sleep slightly less than an earlier one once the
    cap is reached. The result lies in ``[window - 0.5, window]`` and is
    never negative.
    """
    window = min(2 ** max(attempt - 1, 0), MAX_RETRY_DELAY_S)
    jitter = round(rng() * _MAX_JITTER_S, 1)
    return max(0.0, window - jitter)


def _run_subprocess(command: Sequence[str]) -> CompletedCommand:
    try:
        proc = subprocess.run(list(command), capture_output=True, text=True, check=False)
    except FileNotFoundError:
        return CompletedCommand(_COMMAND_NOT_FOUND_RC, "", f"{command[0]}: command not found")
    return CompletedCommand(proc.returncode, proc.stdout, proc.stderr)


class Kubectl:
    """Issue kubectl commands against one context and namespace.

    Example::

        kubectl = Kubectl("my-app", "prod-east", log_failure_by_default=True)
        out, err, ok = kubectl.run("get", "deployment", "web", output="json")
    """

    def __init__(
        self,
        namespace: str,
        context: str,
        *,
        log_failure_by_default: bool = True,
        default_timeout: int = DEFAULT_TIMEOUT_S,
        output_is_sensitive_default: bool = False,
        runner: Runner | None = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: Callable[[], float] = random.random,
        binary: str = "kubectl",
    ) -> None:
        self.namespace = namespace
        self.context = context
        self._log_failure_by_default = log_failure_by_default
        self._default_timeout = default_timeout
        self._output_is_sensitive_default = output_is_sensitive_default
        self._runner: Runner = runner or _run_subprocess
        self._sleep = sleep
        self._rng = rng
        self._binary = binary
        self._version_info: dict[str, str] | None = None
        self._log = get_logger("cluster.kubectl")

    def run(
        self,
        *args: str,
        log_failure: bool | None = None,
        use_context: bool = True,
        use_namespace: bool = True,
        output: str | None = None,
        raise_if_not_found: bool = False,
        attempts: int = 1,
        output_is_sensitive: bool | None = None,
    ) -> KubectlResult:
        """Run ``kubectl *args`` and return its final result.

        Raises:
            ResourceNotFoundError: if *raise_if_not_found* is set and kubectl
                reported ``NotFound``.
            ValueError: if a namespaced call is made without a namespace.
        """
        if log_failure is None:
            log_failure = self._log_failure_by_default
        if output_is_sensitive is None:
            output_is_sensitive = self._output_is_sensitive_default
        if attempts < 1:
            raise ValueError("attempts must be at least 1")

        command = self._build_command(args, use_context, use_namespace, output)
        cmd = args[0] if args else ""
        max_attempts = attempts
        deadline_bonus_granted = False
        attempt = 0

        while True:
            attempt += 1
            started = time.monotonic()
            completed = self._runner(command)
            kubectl_duration_seconds.labels(cmd=cmd).observe(time.monotonic() - started)

            if completed.returncode == 0:
                return KubectlResult(completed.stdout, completed.stderr, True)

            not_found = bool(_NOT_FOUND.search(completed.stderr))
            if not deadline_bonus_granted and _DEADLINE_EXCEEDED.search(completed.stderr):
                deadline_bonus_granted = True
                max_attempts += 1
            retriable = not not_found and attempt < max_attempts

            kubectl_errors_total.labels(context=self.context, namespace=self.namespace, cmd=cmd).inc()
            if log_failure:
                self._log.warning(
                    "kubectl_command_failed",
                    command=" ".join(command),
                    attempt=attempt,
                    max_attempts=max_attempts,
                    will_retry=retriable,
                    stdout=redact_output(completed.stdout, output_is_sensitive),
                    stderr=redact_output(completed.stderr, output_is_sensitive),
                )

            if not_found and raise_if_not_found:
                raise ResourceNotFoundError(redact_output(completed.stderr, output_is_sensitive))
            if not retriable:
                return KubectlResult(completed.stdout, completed.stderr, False)
            self._sleep(retry_delay(attempt, self._rng))

    def version_info(self) -> dict[str, str]:
        """Return ``{"client": "x.y.z", "server": "x.y.z"}`` from ``kubectl version``.

        The result is cached for the lifetime of the executor.

        Raises:
            KubectlError: if the command fails or its output is unrecognised.
        """
        if self._version_info is not None:
            return self._version_info

        out, err, ok = self.run("version", use_namespace=False, log_failure=True, attempts=2)
        if not ok:
            raise KubectlError(f"Could not retrieve kubectl version info: {err}")

        versions = {m.group("side").lower(): m.group("version") for m in _VERSION_LINE.finditer(out)}
        if "client" not in versions or "server" not in versions:
            raise KubectlError(f"Could not parse kubectl version output: {out!r}")
        self._version_info = versions
        return versions

    def client_version(self) -> str:
        return self.version_info()["client"]

    def server_version(self) -> str:
        return self.version_info()["server"]

    def _build_command(
        self,
        args: Sequence[str],
        use_context: bool,
        use_namespace: bool,
        output: str | None,
    ) -> list[str]:
        command = [self._binary, *args]
        if use_namespace:
            if not self.namespace:
                raise ValueError("Namespace missing for namespaced command")
            command.append(f"--namespace={self.namespace}")
        if use_context and self.context:
            command.append(f"--context={self.context}")
        if output:
            command.append(f"--output={output}")
        command.append(f"--request-timeout={self._default_timeout}")
        return command
