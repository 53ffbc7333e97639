"""Policy kinds: PodDisruptionBudget and ResourceQuota."""

from __future__ import annotations

from kubeconverge.resources.base import UNUSUAL_FAILURE_MESSAGE, KubernetesResource, register_kind
from kubeconverge.utils.data import dig


@register_kind
class PodDisruptionBudget(KubernetesResource):
    KIND = "PodDisruptionBudget"
    TIMEOUT = 10

    @property
    def status(self) -> str:
        return "Available" if self.exists else "Not Found"

    def deploy_succeeded(self) -> bool:
        return self.exists and not self.stale_status()

    def deploy_failed(self) -> bool:
        return False

    @property
    def timeout_message(self) -> str:
        return UNUSUAL_FAILURE_MESSAGE


@register_kind
class ResourceQuota(KubernetesResource):
    """Succeeds once the quota controller has mirrored ``spec.hard`` into status."""

    KIND = "ResourceQuota"
    TIMEOUT = 30

    @property
    def status(self) -> str:
        return "In effect" if self.exists else "Not Found"

    def deploy_succeeded(self) -> bool:
        if not self.exists:
            return False
        return dig(self.instance_data, "spec", "hard") == dig(self.instance_data, "status", "hard")

    def deploy_failed(self) -> bool:
        return False

    @property
    def timeout_message(self) -> str:
        return UNUSUAL_FAILURE_MESSAGE
