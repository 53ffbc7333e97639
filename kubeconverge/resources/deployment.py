"""Deployment rollout status.

A Deployment is judged through its *latest* ReplicaSet: the one owned by
the Deployment whose ``deployment.kubernetes.io/revision`` annotation
matches the Deployment's own. Older ReplicaSets never count toward success.

When the Deployment reports a ``Progressing`` condition and no timeout
override is set, the controller's progress deadline replaces the hard
timeout: the rollout times out once that condition turns False on an
up-to-date status.
"""

from __future__ import annotations

from typing import Any

from kubeconverge.cluster.kubectl import Kubectl
from kubeconverge.errors import FatalDeploymentError
from kubeconverge.resources.base import (
    STANDARD_TIMEOUT_MESSAGE,
    KubernetesResource,
    ObservationCache,
    register_kind,
)
from kubeconverge.resources.pod_set_base import owned_by
from kubeconverge.resources.replica_set import ReplicaSet, pluralize
from kubeconverge.resources.rollout_policy import (
    DEFAULT_REQUIRED_ROLLOUT,
    REQUIRED_ROLLOUT_SUFFIX,
    is_percent,
    min_available_replicas,
    rollout_annotation_error,
    validate_rollout,
)
from kubeconverge.utils.data import as_int, dig, find_condition

_REVISION_ANNOTATION: str = "deployment.kubernetes.io/revision"
_DEFAULT_MAX_UNAVAILABLE: str = "25%"


@register_kind
class Deployment(KubernetesResource):
    KIND = "Deployment"
    TIMEOUT = 7 * 60
    SYNC_DEPENDENCIES = ("ReplicaSet", "Pod")

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.latest_rs: ReplicaSet | None = None

    def after_sync(self, cache: ObservationCache) -> None:
        self.latest_rs = self._find_latest_rs(cache) if self.exists else None

    def _find_latest_rs(self, cache: ObservationCache) -> ReplicaSet | None:
        selector = dict(dig(self.instance_data, "spec", "selector", "matchLabels", default={}))
        uid = dig(self.instance_data, "metadata", "uid")
        revision = dig(self.instance_data, "metadata", "annotations", _REVISION_ANNOTATION)

        latest = next(
            (
                rs
                for rs in cache.list_all(ReplicaSet.KIND, selector)
                if owned_by(rs, uid) and dig(rs, "metadata", "annotations", _REVISION_ANNOTATION) == revision
            ),
            None,
        )
        if latest is None:
            return None

        rs = ReplicaSet(
            self.namespace,
            self.context,
            latest,
            self._log,
            parent=f"{self.name.capitalize()} deployment",
            deploy_started_at=self.deploy_started_at,
            clock=self._clock,
        )
        rs.sync_with(latest, cache)
        return rs

    # ------------------------------------------------------------------
    # Observed counters
    # ------------------------------------------------------------------

    @property
    def required_rollout(self) -> str:
        return self.annotation_value(REQUIRED_ROLLOUT_SUFFIX) or DEFAULT_REQUIRED_ROLLOUT

    @property
    def desired_replicas(self) -> int:
        if not self.exists:
            return -1
        return as_int(dig(self.instance_data, "spec", "replicas"))

    @property
    def updated_replicas(self) -> int:
        return as_int(dig(self.instance_data, "status", "updatedReplicas"))

    @property
    def available_replicas(self) -> int:
        return as_int(dig(self.instance_data, "status", "availableReplicas"))

    @property
    def max_unavailable(self) -> Any:
        source = self.instance_data if self.exists else self.definition
        return dig(source, "spec", "strategy", "rollingUpdate", "maxUnavailable", default=_DEFAULT_MAX_UNAVAILABLE)

    @property
    def progress_condition(self) -> dict[str, Any] | None:
        if not self.exists:
            return None
        return find_condition(self.instance_data, "Progressing")

    @property
    def progress_deadline(self) -> int | None:
        source = self.instance_data if self.exists else self.definition
        value = dig(source, "spec", "progressDeadlineSeconds")
        return None if value is None else as_int(value)

    @property
    def status(self) -> str:
        if not self.exists:
            return super().status
        status = self.instance_data.get("status") or {}
        parts = [pluralize(as_int(status.get("replicas")), "replica")]
        for key, label in (
            ("updatedReplicas", "updatedReplica"),
            ("availableReplicas", "availableReplica"),
            ("unavailableReplicas", "unavailableReplica"),
        ):
            if key in status:
                parts.append(pluralize(as_int(status[key]), label))
        return ", ".join(parts)

    # ------------------------------------------------------------------
    # Predicates
    # ------------------------------------------------------------------

    def deploy_succeeded(self) -> bool:
        if not self.exists or self.latest_rs is None:
            return False
        if self.stale_status():
            return False

        rollout = self.required_rollout
        if rollout == "full":
            return (
                self.latest_rs.deploy_succeeded()
                and self.latest_rs.desired_replicas == self.desired_replicas
                and self.updated_replicas == self.desired_replicas
                and self.updated_replicas == self.available_replicas
            )
        if rollout == "none":
            return True
        if rollout == "maxUnavailable" or is_percent(rollout):
            minimum = min_available_replicas(self.desired_replicas, rollout, self.max_unavailable)
            return (
                self.latest_rs.desired_replicas >= minimum
                and self.latest_rs.ready_replicas >= minimum
                and self.latest_rs.available_replicas >= minimum
            )
        raise FatalDeploymentError(rollout_annotation_error(rollout))

    def deploy_failed(self) -> bool:
        return self.latest_rs is not None and self.latest_rs.deploy_failed() and not self.stale_status()

    def deploy_timed_out(self) -> bool:
        if self.deploy_failed():
            return False
        if self.timeout_override is not None or self.progress_condition is None:
            return super().deploy_timed_out()
        return self._failing_to_progress()

    def _failing_to_progress(self) -> bool:
        condition = self.progress_condition
        if condition is None:
            return False
        return self.deploy_started and not self.stale_status() and condition.get("status") == "False"

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    @property
    def failure_message(self) -> str:
        if self.latest_rs is None:
            return ""
        return f"Latest ReplicaSet: {self.latest_rs.name}\n\n{self.latest_rs.failure_message}".rstrip()

    @property
    def timeout_message(self) -> str:
        condition = self.progress_condition
        if self.timeout_override is not None:
            reason = STANDARD_TIMEOUT_MESSAGE
        elif condition is not None:
            reason = f"Timeout reason: {condition.get('reason')}"
        else:
            reason = f"Timeout reason: hard deadline for {self.kind}"
        if self.latest_rs is None:
            return reason
        return f"{reason}\nLatest ReplicaSet: {self.latest_rs.name}\n\n{self.latest_rs.timeout_message}"

    @property
    def pretty_timeout_type(self) -> str:
        if self.timeout_override is not None:
            return f"timeout override: {self.timeout}s"
        if self.progress_condition is not None and self.progress_deadline is not None:
            return f"progress deadline: {self.progress_deadline}s"
        return super().pretty_timeout_type

    @property
    def print_debug_logs(self) -> bool:
        return self.latest_rs is not None and self.latest_rs.print_debug_logs

    def fetch_debug_logs(self, kubectl: Kubectl) -> dict[str, list[str]]:
        return self.latest_rs.fetch_debug_logs(kubectl) if self.latest_rs is not None else {}

    def fetch_events(self, kubectl: Kubectl) -> dict[str, list[str]]:
        events = super().fetch_events(kubectl)
        if self.latest_rs is not None:
            events.update(self.latest_rs.fetch_events(kubectl))
        return events

    def validate_definition(self) -> list[str]:
        errors = super().validate_definition()
        strategy = str(dig(self.definition, "spec", "strategy", "type", default=""))
        errors.extend(validate_rollout(self.required_rollout, strategy))
        self.validation_errors = errors
        return errors
