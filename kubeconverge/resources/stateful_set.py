from __future__ import annotations

from typing import Any

from kubeconverge.resources.base import register_kind
from kubeconverge.resources.pod_set_base import PodSetBase, owned_by
from kubeconverge.resources.replica_set import pluralize
from kubeconverge.resources.rollout_policy import REQUIRED_ROLLOUT_SUFFIX
from kubeconverge.utils.data import as_int, dig

_ON_DELETE: str = "OnDelete"
_REVISION_LABEL: str = "controller-revision-hash"


@register_kind
class StatefulSet(PodSetBase):
    """StatefulSet: ready == updated == desired once the spec is observed.

    With the ``OnDelete`` strategy the controller never replaces pods on its
    own, so unless ``required-rollout: full`` is set only the generation is
    checked and pod failures are ignored.
    """

    KIND = "StatefulSet"
    TIMEOUT = 10 * 60
    SYNC_DEPENDENCIES = ("Pod",)

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._on_delete_warned = False

    @property
    def update_strategy(self) -> str:
        if not self.exists:
            return "Unknown"
        return str(dig(self.instance_data, "spec", "updateStrategy", "type", default="RollingUpdate"))

    @property
    def required_rollout(self) -> str | None:
        return self.annotation_value(REQUIRED_ROLLOUT_SUFFIX)

    @property
    def desired_replicas(self) -> int:
        if not self.exists:
            return -1
        return as_int(dig(self.instance_data, "spec", "replicas"))

    @property
    def status(self) -> str:
        status = self.instance_data.get("status") or {}
        if not status:
            return super().status
        labels = (("replicas", "replica"), ("readyReplicas", "readyReplica"), ("currentReplicas", "currentReplica"))
        return ", ".join(pluralize(as_int(status[k]), label) for k, label in labels if k in status)

    def _relies_on_generation_only(self) -> bool:
        return self.update_strategy == _ON_DELETE and self.required_rollout != "full"

    def deploy_succeeded(self) -> bool:
        if not self.exists or self.stale_status():
            return False
        if self._relies_on_generation_only():
            if not self._on_delete_warned:
                self._log.warning(
                    "stateful_set_on_delete_strategy",
                    detail=f"{self.id} uses the {_ON_DELETE} update strategy; updates will not be "
                    "applied until its pods are deleted.",
                )
                self._on_delete_warned = True
            return True
        ready = as_int(dig(self.instance_data, "status", "readyReplicas"))
        updated = as_int(dig(self.instance_data, "status", "updatedReplicas"))
        return self.desired_replicas == ready == updated

    def deploy_failed(self) -> bool:
        if self._relies_on_generation_only():
            return False
        return bool(self.pods) and any(p.deploy_failed() for p in self.pods) and not self.stale_status()

    def parent_of_pod(self, pod_data: dict[str, Any]) -> bool:
        update_revision = dig(self.instance_data, "status", "updateRevision")
        pod_revision = dig(pod_data, "metadata", "labels", _REVISION_LABEL)
        return owned_by(pod_data, self.uid) and update_revision is not None and update_revision == pod_revision
