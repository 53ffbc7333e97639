"""DaemonSet rollout status.

Only pods of the current template generation count: the pod's
``pod-template-generation`` label must equal ``spec.templateGeneration``
(or the ``deprecated.daemonset.template.generation`` annotation on newer
clusters). When ``numberReady`` lags behind ``desiredNumberScheduled``, the
rollout is still accepted if every current pod scheduled on a known node is
ready.
"""

from __future__ import annotations

from typing import Any

from kubeconverge.cluster.kubectl import Kubectl
from kubeconverge.errors import FatalDeploymentError
from kubeconverge.resources.base import ObservationCache, register_kind
from kubeconverge.resources.pod_set_base import PodSetBase, owned_by
from kubeconverge.resources.rollout_policy import (
    DEFAULT_REQUIRED_ROLLOUT,
    REQUIRED_ROLLOUT_SUFFIX,
    is_percent,
    min_available_replicas,
    rollout_annotation_error,
    validate_rollout,
)
from kubeconverge.utils.data import as_int, dig

_TEMPLATE_GENERATION_ANNOTATION: str = "deprecated.daemonset.template.generation"
_TEMPLATE_GENERATION_LABEL: str = "pod-template-generation"
_NODE_KIND: str = "Node"


@register_kind
class DaemonSet(PodSetBase):
    KIND = "DaemonSet"
    TIMEOUT = 5 * 60
    SYNC_DEPENDENCIES = ("Pod", _NODE_KIND)

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.node_names: list[str] = []

    def after_sync(self, cache: ObservationCache) -> None:
        super().after_sync(cache)
        if not self.node_names:
            self.node_names = [
                str(dig(node, "metadata", "name", default="")) for node in cache.list_all(_NODE_KIND)
            ]

    @property
    def required_rollout(self) -> str:
        return self.annotation_value(REQUIRED_ROLLOUT_SUFFIX) or DEFAULT_REQUIRED_ROLLOUT

    def _status_count(self, key: str) -> int:
        return as_int(dig(self.instance_data, "status", key))

    @property
    def desired_replicas(self) -> int:
        if not self.exists:
            return -1
        return self._status_count("desiredNumberScheduled")

    @property
    def max_unavailable(self) -> Any:
        source = self.instance_data if self.exists else self.definition
        return dig(source, "spec", "updateStrategy", "rollingUpdate", "maxUnavailable", default=1)

    @property
    def status(self) -> str:
        if not self.exists:
            return super().status
        status = self.instance_data.get("status") or {}
        keys = ("updatedNumberScheduled", "desiredNumberScheduled", "numberReady", "numberAvailable")
        return ", ".join(f"{status[k]} {k}" for k in keys if k in status)

    def deploy_succeeded(self) -> bool:
        if not self.exists or self.stale_status():
            return False

        rollout = self.required_rollout
        if rollout == "full":
            return (
                self._status_count("desiredNumberScheduled") == self._status_count("updatedNumberScheduled")
                and self._relevant_pods_ready()
            )
        if rollout == "none":
            return True
        if rollout == "maxUnavailable" or is_percent(rollout):
            minimum = min_available_replicas(self.desired_replicas, rollout, self.max_unavailable)
            return (
                self._status_count("updatedNumberScheduled") >= minimum
                and self._status_count("numberReady") >= minimum
                and self._status_count("numberAvailable") >= minimum
            )
        raise FatalDeploymentError(rollout_annotation_error(rollout))

    def deploy_failed(self) -> bool:
        return bool(self.pods) and any(p.deploy_failed() for p in self.pods) and not self.stale_status()

    def _relevant_pods_ready(self) -> bool:
        number_ready = self._status_count("numberReady")
        if self._status_count("desiredNumberScheduled") == number_ready:
            return True
        nodes = set(self.node_names)
        considered = [p for p in self.pods if p.node_name in nodes]
        self._log.debug(
            "daemon_set_pods_considered",
            number_ready=number_ready,
            considered=len(considered),
            pods=len(self.pods),
            nodes=len(nodes),
        )
        return bool(considered) and all(p.deploy_succeeded() for p in considered) and number_ready >= len(considered)

    def parent_of_pod(self, pod_data: dict[str, Any]) -> bool:
        template_generation = dig(self.instance_data, "spec", "templateGeneration")
        if template_generation is None:
            template_generation = dig(self.instance_data, "metadata", "annotations", _TEMPLATE_GENERATION_ANNOTATION)
        if template_generation is None:
            return False
        pod_generation = dig(pod_data, "metadata", "labels", _TEMPLATE_GENERATION_LABEL)
        return owned_by(pod_data, self.uid) and as_int(pod_generation, -1) == as_int(template_generation)

    def fetch_debug_logs(self, kubectl: Kubectl) -> dict[str, list[str]]:
        pod = self.most_useful_pod
        return pod.fetch_debug_logs(kubectl) if pod is not None else {}

    def validate_definition(self) -> list[str]:
        errors = super().validate_definition()
        strategy = str(dig(self.definition, "spec", "updateStrategy", "type", default=""))
        errors.extend(validate_rollout(self.required_rollout, strategy))
        self.validation_errors = errors
        return errors
