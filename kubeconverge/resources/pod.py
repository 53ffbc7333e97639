"""Pod rollout status and per-container diagnostics.

A managed pod (one attributed to a workload) succeeds once it is Running
and Ready; an unmanaged pod succeeds when it runs to completion. Either
fails as soon as its phase is Failed or one of its containers is in a state
that will not recover without a new rollout:

    ContainerCannotRun         -- current or last termination
    CrashLoopBackOff           -- restarting repeatedly
    ImagePullBackOff / ErrImagePull with "not found" or "back-off"
    CreateContainerConfigError -- missing ConfigMap/Secret keys, etc.
    non-zero exit              -- unmanaged pods only
"""

from __future__ import annotations

import re
from typing import Any

from kubeconverge.cluster.kubectl import Kubectl
from kubeconverge.resources.base import STANDARD_TIMEOUT_MESSAGE, KubernetesResource, register_kind
from kubeconverge.utils.data import dig, find_condition

_FAILED_PHASE: str = "Failed"
_TRANSIENT_FAILURE_REASONS: frozenset[str] = frozenset({"Evicted", "Preempting"})
_IMAGE_PULL_REASONS: frozenset[str] = frozenset({"ImagePullBackOff", "ErrImagePull"})
_IMAGE_PULL_DOOMED = re.compile(r"not found|back-off", re.IGNORECASE)


class Container:
    """Desired container spec plus its latest reported status."""

    def __init__(self, definition: dict[str, Any], *, init_container: bool = False) -> None:
        self.name: str = str(definition.get("name", ""))
        self.image: str = str(definition.get("image", ""))
        self.init_container = init_container
        self._readiness_http_path = dig(definition, "readinessProbe", "httpGet", "path")
        self._readiness_exec_command = dig(definition, "readinessProbe", "exec", "command")
        self._status: dict[str, Any] = {}

    def update_status(self, data: dict[str, Any] | None) -> None:
        self._status = data or {}

    def reset_status(self) -> None:
        self._status = {}

    @property
    def ready(self) -> bool:
        return self._status.get("ready") is True

    @property
    def doomed(self) -> bool:
        return self.doom_reason is not None

    @property
    def doom_reason(self) -> str | None:
        waiting_reason = dig(self._status, "state", "waiting", "reason")
        waiting_message = str(dig(self._status, "state", "waiting", "message", default=""))

        if dig(self._status, "lastState", "terminated", "reason") == "ContainerCannotRun":
            exit_code = dig(self._status, "lastState", "terminated", "exitCode")
            message = dig(self._status, "lastState", "terminated", "message", default="")
            return f"Failed to start (exit {exit_code}): {message}"
        if dig(self._status, "state", "terminated", "reason") == "ContainerCannotRun":
            exit_code = dig(self._status, "state", "terminated", "exitCode")
            message = dig(self._status, "state", "terminated", "message", default="")
            return f"Failed to start (exit {exit_code}): {message}"
        if waiting_reason == "CrashLoopBackOff":
            exit_code = dig(self._status, "lastState", "terminated", "exitCode")
            return f"Crashing repeatedly (exit {exit_code}). See logs for more information."
        if waiting_reason in _IMAGE_PULL_REASONS and _IMAGE_PULL_DOOMED.search(waiting_message):
            return (
                f"Failed to pull image {self.image}. "
                "Did you wait for it to be built and pushed to the registry before deploying?"
            )
        if waiting_message == "Generate Container Config Failed":
            return f"Failed to generate container configuration: {waiting_reason}"
        if waiting_reason == "CreateContainerConfigError":
            return f"Failed to generate container configuration: {waiting_message}"
        return None

    @property
    def exit_failure(self) -> str | None:
        """Non-zero termination, reported only for pods nothing will restart."""
        exit_code = dig(self._status, "state", "terminated", "exitCode")
        if exit_code is None or exit_code == 0:
            return None
        reason = dig(self._status, "state", "terminated", "reason", default="Error")
        return f"Exited with non-zero status (exit {exit_code}, reason {reason})"

    @property
    def readiness_fail_reason(self) -> str | None:
        if self.ready or self.init_container:
            return None
        if self._readiness_http_path:
            return f"> {self.name} must respond with a good status code at '{self._readiness_http_path}'"
        if self._readiness_exec_command:
            command = " ".join(str(part) for part in self._readiness_exec_command)
            return f"> {self.name} must exit 0 from the following command: '{command}'"
        return None


@register_kind
class Pod(KubernetesResource):
    KIND = "Pod"
    TIMEOUT = 10 * 60

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        spec = self.definition.get("spec") or {}
        self.containers = [Container(c) for c in spec.get("containers") or []]
        self.containers += [Container(c, init_container=True) for c in spec.get("initContainers") or []]

    def validate_definition(self) -> list[str]:
        errors = super().validate_definition()
        if all(c.init_container for c in self.containers):
            errors.append("template is missing required field spec.containers")
        return errors

    @property
    def print_debug_logs(self) -> bool:
        return self.exists

    def fetch_debug_logs(self, kubectl: Kubectl) -> dict[str, list[str]]:
        return self.fetch_container_logs(kubectl, [c.name for c in self.containers])

    @property
    def unmanaged(self) -> bool:
        return not self.parent

    @property
    def phase(self) -> str:
        return str(dig(self.instance_data, "status", "phase", default="Unknown"))

    @property
    def reason(self) -> str | None:
        return dig(self.instance_data, "status", "reason")

    @property
    def node_name(self) -> str | None:
        return dig(self.instance_data, "spec", "nodeName")

    @property
    def ready(self) -> bool:
        condition = find_condition(self.instance_data, "Ready")
        return condition is not None and condition.get("status") == "True"

    @property
    def status(self) -> str:
        if not self.exists:
            return "Unknown"
        if self.reason:
            return f"{self.phase} (Reason: {self.reason})"
        return self.phase

    def after_sync(self, cache: Any) -> None:
        status = self.instance_data.get("status") or {}
        for container in self.containers:
            key = "initContainerStatuses" if container.init_container else "containerStatuses"
            if key in status:
                data = next((s for s in status[key] or [] if s.get("name") == container.name), None)
                container.update_status(data)
            else:
                container.reset_status()

    def deploy_succeeded(self) -> bool:
        if self.unmanaged:
            return self.phase == "Succeeded"
        return self.phase == "Running" and self.ready

    def deploy_failed(self) -> bool:
        return bool(self.failure_message)

    @property
    def failure_message(self) -> str:
        parts: list[str] = []
        phase_problem = self._phase_failure_message()
        if phase_problem:
            parts.append(phase_problem)

        doomed = [(c.name, c.doom_reason) for c in self.containers if c.doomed]
        if self.unmanaged and self.phase == _FAILED_PHASE:
            doomed += [(c.name, c.exit_failure) for c in self.containers if not c.doomed and c.exit_failure]
        if doomed:
            if self.unmanaged:
                parts.append("The following containers encountered errors:")
            else:
                parts.append("The following containers are in a state that is unlikely to be recoverable:")
            parts.extend(f"> {name}: {reason}" for name, reason in doomed)
        return "\n".join(parts)

    def _phase_failure_message(self) -> str | None:
        if self.phase == _FAILED_PHASE and self.reason not in _TRANSIENT_FAILURE_REASONS:
            return f"Pod status: {self.status}."
        if not self.unmanaged:
            return None
        if dig(self.instance_data, "metadata", "deletionTimestamp"):
            return "Pod status: Terminating."
        if self.disappeared:
            return "Pod status: Disappeared."
        return None

    @property
    def timeout_message(self) -> str:
        if self._readiness_check_failure():
            reasons = [c.readiness_fail_reason for c in self.containers if c.readiness_fail_reason]
            header = "The following containers have not passed their readiness checks on at least one pod:"
            return "\n".join([header, *reasons])
        schedule_failure = self._failed_schedule_reason()
        if schedule_failure:
            return f"Pod could not be scheduled because {schedule_failure}"
        return STANDARD_TIMEOUT_MESSAGE

    def _readiness_check_failure(self) -> bool:
        if self.ready or self.unmanaged or self.phase != "Running":
            return False
        return any(c.readiness_fail_reason for c in self.containers)

    def _failed_schedule_reason(self) -> str | None:
        if self.phase != "Pending":
            return None
        condition = find_condition(self.instance_data, "PodScheduled")
        if condition is None or condition.get("status") != "False":
            return None
        return condition.get("message")
