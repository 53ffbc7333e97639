from __future__ import annotations

from typing import Any

from kubeconverge.resources.base import register_kind
from kubeconverge.resources.pod_set_base import PodSetBase, owned_by
from kubeconverge.utils.data import as_int, dig


def pluralize(count: int, word: str) -> str:
    return f"{count} {word}" if count == 1 else f"{count} {word}s"


@register_kind
class ReplicaSet(PodSetBase):
    """ReplicaSet: available == ready == desired on an up-to-date status."""

    KIND = "ReplicaSet"
    TIMEOUT = 5 * 60
    SYNC_DEPENDENCIES = ("Pod",)

    @property
    def status(self) -> str:
        if not self.exists:
            return super().status
        return ", ".join(pluralize(as_int(n), label) for label, n in self._rollout_data().items())

    def _rollout_data(self) -> dict[str, Any]:
        status = self.instance_data.get("status") or {}
        data: dict[str, Any] = {"replica": status.get("replicas", 0)}
        if "availableReplicas" in status:
            data["availableReplica"] = status["availableReplicas"]
        if "readyReplicas" in status:
            data["readyReplica"] = status["readyReplicas"]
        return data

    @property
    def desired_replicas(self) -> int:
        if not self.exists:
            return -1
        return as_int(dig(self.instance_data, "spec", "replicas"))

    @property
    def ready_replicas(self) -> int:
        if not self.exists:
            return -1
        return as_int(dig(self.instance_data, "status", "readyReplicas"))

    @property
    def available_replicas(self) -> int:
        if not self.exists:
            return -1
        return as_int(dig(self.instance_data, "status", "availableReplicas"))

    def deploy_succeeded(self) -> bool:
        if self.stale_status():
            return False
        return self.desired_replicas == self.available_replicas == self.ready_replicas

    def deploy_failed(self) -> bool:
        return bool(self.pods) and all(p.deploy_failed() for p in self.pods) and not self.stale_status()

    def parent_of_pod(self, pod_data: dict[str, Any]) -> bool:
        return owned_by(pod_data, self.uid)
