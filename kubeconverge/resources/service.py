"""Service rollout status.

A Service is healthy when it can route traffic:

    LoadBalancer  -- an ingress address has been published
    ExternalName  -- exists
    selector      -- selects at least one pod, or every workload whose pod
                     template it matches is scaled to zero
"""

from __future__ import annotations

from typing import Any

from kubeconverge.resources.base import KubernetesResource, ObservationCache, register_kind
from kubeconverge.utils.data import as_int, dig

_WORKLOAD_KINDS: tuple[str, ...] = ("Deployment", "StatefulSet")


@register_kind
class Service(KubernetesResource):
    KIND = "Service"
    TIMEOUT = 7 * 60
    SYNC_DEPENDENCIES = ("Pod", *_WORKLOAD_KINDS)

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.related_pods: list[dict[str, Any]] = []
        self.related_workloads: list[dict[str, Any]] = []

    @property
    def selector(self) -> dict[str, str]:
        return dict(dig(self.definition, "spec", "selector", default={}))

    @property
    def service_type(self) -> str | None:
        return dig(self.definition, "spec", "type")

    def after_sync(self, cache: ObservationCache) -> None:
        if not self.selector:
            self.related_pods = []
            self.related_workloads = []
            return
        self.related_pods = cache.list_all("Pod", self.selector)
        self.related_workloads = [
            workload
            for kind in _WORKLOAD_KINDS
            for workload in cache.list_all(kind)
            if self._selects_template(workload)
        ]

    def _selects_template(self, workload: dict[str, Any]) -> bool:
        labels = dig(workload, "spec", "template", "metadata", "labels", default={})
        return all(labels.get(k) == v for k, v in self.selector.items())

    def _related_replica_count(self) -> int | None:
        if not self.selector:
            return 0
        if not self.related_workloads:
            return None
        return sum(as_int(dig(w, "spec", "replicas")) for w in self.related_workloads)

    def _requires_endpoints(self) -> bool:
        if self.service_type == "ExternalName":
            return False
        count = self._related_replica_count()
        return count is None or count > 0

    def _requires_publishing(self) -> bool:
        return self.service_type == "LoadBalancer"

    def _published(self) -> bool:
        return bool(dig(self.instance_data, "status", "loadBalancer", "ingress"))

    def _selects_some_pods(self) -> bool:
        return bool(self.selector) and bool(self.related_pods)

    def _exposes_zero_replica_workload(self) -> bool:
        return self._related_replica_count() == 0

    @property
    def status(self) -> str:
        if not self.exists:
            return "Not Found"
        if self._requires_publishing() and not self._published():
            return "LoadBalancer IP address is not provisioned yet"
        if not self._requires_endpoints():
            return "Doesn't require any endpoints"
        if self._selects_some_pods():
            return "Selects at least 1 pod"
        return "Selects 0 pods"

    def deploy_succeeded(self) -> bool:
        if not self.exists:
            return False
        if self._requires_publishing():
            return self._published()
        if not self._requires_endpoints():
            return True
        return self._exposes_zero_replica_workload() or self._selects_some_pods()

    def deploy_failed(self) -> bool:
        return False

    @property
    def timeout_message(self) -> str:
        return (
            "This service does not seem to select any pods and this is likely invalid. "
            "Please confirm the spec.selector is correct and the targeted workload is healthy."
        )
